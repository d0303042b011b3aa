"""
Unit tests for the FastAPI surface.

Tests:
- Status endpoints
- Opening positions directly and through a strategy
- Manual close (success, unknown id, pending action, price outage, failed sell)
- Failure counter reset
- Strategy listing and updates
"""

import pytest
from fastapi.testclient import TestClient

from trader_tony.app import TradingApplication
from trader_tony.config.settings import (
    AppConfig,
    MonitorConfig,
    NotificationConfig,
    StrategyConfig,
)
from trader_tony.main import create_app
from trader_tony.storage.duckdb_store import MEMORY_DATABASE, DuckDBStore


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def trading(market):
    config = AppConfig(
        monitor=MonitorConfig(tick_interval_seconds=3600),
        notification=NotificationConfig(enabled=False),
        strategies=[StrategyConfig(strategy_id="sniper", max_position_size=0.1, total_budget=1.0)],
    )
    return TradingApplication(
        config,
        oracle=market,
        executor=market,
        store=DuckDBStore(MEMORY_DATABASE),
    )


@pytest.fixture
def client(trading):
    with TestClient(create_app(application=trading)) as test_client:
        yield test_client


def open_direct(client, amount=2.0):
    response = client.post(
        "/positions",
        json={"token_id": "MINT", "entry_price": 100.0, "amount": amount},
    )
    assert response.status_code == 201
    return response.json()


# ============================================================================
# Status
# ============================================================================

def test_root_and_health(client):
    root = client.get("/").json()
    assert root["name"] == "Trader Tony"
    assert root["mode"] == "simulation"
    assert root["components"]["position_monitor"] == "active"
    assert root["components"]["notifications"] == "inactive"

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["components"]["position_monitor"]["open_positions"] == 0


def test_stats(client):
    stats = client.get("/stats").json()

    assert stats["executor"] == "fake"
    assert "notifications" not in stats
    assert stats["positions"]["open_positions"] == 0


# ============================================================================
# Opening positions
# ============================================================================

def test_open_direct_position(client):
    position = open_direct(client)

    assert position["status"] == "open"
    assert position["amount_remaining"] == 2.0
    assert position["cost_basis"] == 100.0

    listed = client.get("/positions").json()
    assert listed["count"] == 1
    assert client.get(f"/positions/{position['position_id']}").status_code == 200


def test_open_requires_fill_or_strategy(client):
    assert client.post("/positions", json={"token_id": "MINT"}).status_code == 422
    response = client.post(
        "/positions", json={"token_id": "MINT", "entry_price": 100.0, "amount": 0}
    )
    assert response.status_code == 422


def test_open_through_strategy(client, market):
    response = client.post("/positions", json={"token_id": "MINT", "strategy_id": "sniper"})

    assert response.status_code == 201
    position = response.json()
    assert position["strategy_id"] == "sniper"
    assert position["amount_total"] == pytest.approx(0.001)
    assert market.trades_for("buy")[0][2] == pytest.approx(0.1)


def test_open_unknown_strategy(client):
    response = client.post("/positions", json={"token_id": "MINT", "strategy_id": "nope"})

    assert response.status_code == 400


def test_open_rejected_by_strategy(client):
    client.patch("/strategies/sniper", json={"enabled": False})

    response = client.post("/positions", json={"token_id": "MINT", "strategy_id": "sniper"})

    assert response.status_code == 409
    assert "disabled" in response.json()["detail"]


def test_open_entry_buy_fails(client, market):
    market.fail_buys = True

    response = client.post("/positions", json={"token_id": "MINT", "strategy_id": "sniper"})

    assert response.status_code == 502


def test_unknown_position_404(client):
    assert client.get("/positions/pos_missing").status_code == 404


# ============================================================================
# Manual close
# ============================================================================

def test_manual_close(client, market):
    position_id = open_direct(client)["position_id"]
    market.set_price("MINT", 110.0)

    response = client.post(f"/positions/{position_id}/close")

    assert response.status_code == 200
    closed = response.json()
    assert closed["status"] == "closed"
    assert closed["exit_reason"] == "manual"
    assert closed["exit_price"] == 110.0

    assert client.get("/positions").json()["count"] == 0
    assert client.get("/positions", params={"include_closed": True}).json()["count"] == 1


def test_close_unknown_position(client):
    assert client.post("/positions/pos_missing/close").status_code == 404


def test_close_while_action_pending(client, trading):
    position_id = open_direct(client)["position_id"]
    trading.manager.get_position(position_id).pending_action = "partial_close:tp_30"

    response = client.post(f"/positions/{position_id}/close")

    assert response.status_code == 409


def test_close_without_price(client, market):
    position_id = open_direct(client)["position_id"]
    market.unavailable.add("MINT")

    assert client.post(f"/positions/{position_id}/close").status_code == 503


def test_close_with_unusable_price(client, market):
    position_id = open_direct(client)["position_id"]
    market.set_price("MINT", 0.0)

    response = client.post(f"/positions/{position_id}/close")

    assert response.status_code == 503
    assert market.trades_for("sell") == []
    assert client.get(f"/positions/{position_id}").json()["status"] == "open"


def test_close_sell_fails(client, market):
    position_id = open_direct(client)["position_id"]
    market.fail_sells = True

    response = client.post(f"/positions/{position_id}/close")

    assert response.status_code == 502
    assert "sell rejected" in response.json()["detail"]
    assert client.get(f"/positions/{position_id}").json()["status"] == "open"


# ============================================================================
# Failure counters
# ============================================================================

def test_reset_failures(client, trading):
    position_id = open_direct(client)["position_id"]
    trading.manager.get_position(position_id).failed_attempts["full_close"] = 3

    response = client.post(f"/positions/{position_id}/reset-failures")

    assert response.json() == {"position_id": position_id, "reset": "all"}
    assert trading.manager.get_position(position_id).failed_attempts == {}
    assert client.post("/positions/pos_missing/reset-failures").status_code == 404


# ============================================================================
# Strategies
# ============================================================================

def test_list_and_update_strategies(client):
    listed = client.get("/strategies").json()
    assert [s["strategy_id"] for s in listed["strategies"]] == ["sniper"]

    updated = client.patch("/strategies/sniper", json={"max_position_size": 0.2})
    assert updated.status_code == 200
    assert updated.json()["max_position_size"] == 0.2

    assert client.patch("/strategies/sniper", json={"stats": {}}).status_code == 400
    assert client.patch("/strategies/missing", json={"enabled": True}).status_code == 400


def test_update_strategy_malformed_rules(client):
    response = client.patch(
        "/strategies/sniper",
        json={"exit_rules": {"partial_profit_levels": [{"sell_fraction": 0.5}]}},
    )

    assert response.status_code == 400
