"""
Unit tests for configuration loading.

Tests:
- Shipped config files validate
- ${VAR} / ${VAR:default} placeholders
- Environment overrides
- Defaults when files are missing
- Validation failures
- Template conversion to exit rules and scale-in plans
"""

import pytest
from pydantic import ValidationError

from trader_tony.config.loader import PROJECT_ROOT, ConfigLoader
from trader_tony.config.settings import (
    AppConfig,
    ExitRulesConfig,
    MonitorConfig,
    ScaleInConfig,
    ScaleInPhaseConfig,
)


ENV_VARS = (
    "ENVIRONMENT", "LOG_LEVEL", "DATA_DIR", "API_PORT", "TRADING_MODE",
    "TICK_INTERVAL_SECONDS", "DATABASE_PATH", "WALLET_PUBLIC_KEY", "ALERT_FROM_EMAIL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path, name, text):
    (tmp_path / f"{name}.yaml").write_text(text)


# ============================================================================
# Loading
# ============================================================================

def test_shipped_config_is_valid():
    config = ConfigLoader(PROJECT_ROOT / "config").load_app_config(use_cache=False)

    assert isinstance(config, AppConfig)
    assert config.execution.mode == "simulation"
    assert config.monitor.tick_interval_seconds == 8
    assert [s.strategy_id for s in config.strategies] == ["conservative", "scale-in"]
    assert config.strategies[1].scale_in.enabled
    assert config.exit_rules.max_hold_time_minutes == 240


def test_missing_files_fall_back_to_defaults(tmp_path):
    config = ConfigLoader(tmp_path).load_app_config(use_cache=False)

    assert config == AppConfig()


def test_placeholders_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv("ALERT_FROM_EMAIL", "ops@example.com")
    write_config(tmp_path, "config", """
notification:
  from_email: "${ALERT_FROM_EMAIL}"
storage:
  database_path: "${DATABASE_PATH:/tmp/default.duckdb}"
""")

    config = ConfigLoader(tmp_path).load_app_config(use_cache=False)

    assert config.notification.from_email == "ops@example.com"
    assert config.storage.database_path == "/tmp/default.duckdb"


def test_environment_overrides(tmp_path, monkeypatch):
    write_config(
        tmp_path, "config", "monitor:\n  tick_interval_seconds: 8\n  price_cache_ttl_seconds: 1\n"
    )
    monkeypatch.setenv("TICK_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("TRADING_MODE", "LIVE")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = ConfigLoader(tmp_path).load_app_config(use_cache=False)

    assert config.monitor.tick_interval_seconds == 2.5
    assert config.execution.mode == "live"
    assert config.system.log_level == "DEBUG"


def test_invalid_config_raises(tmp_path):
    write_config(tmp_path, "config", "execution:\n  max_action_retries: 0\n")

    with pytest.raises(ValidationError):
        ConfigLoader(tmp_path).load_app_config(use_cache=False)


def test_price_cache_must_expire_before_next_tick(tmp_path, monkeypatch):
    with pytest.raises(ValidationError):
        MonitorConfig(tick_interval_seconds=1)
    assert MonitorConfig(tick_interval_seconds=1, price_cache_ttl_seconds=0.5)

    write_config(tmp_path, "config", "monitor:\n  price_cache_ttl_seconds: 5\n")
    monkeypatch.setenv("TICK_INTERVAL_SECONDS", "1")
    with pytest.raises(ValidationError):
        ConfigLoader(tmp_path).load_app_config(use_cache=False)


def test_duplicate_strategy_ids_rejected(tmp_path):
    write_config(tmp_path, "strategies", """
strategies:
  - strategy_id: same
  - strategy_id: same
""")

    with pytest.raises(ValidationError):
        ConfigLoader(tmp_path).load_app_config(use_cache=False)


def test_cache_and_reload(tmp_path):
    write_config(tmp_path, "config", "monitor:\n  tick_interval_seconds: 10\n")
    loader = ConfigLoader(tmp_path)

    first = loader.load_app_config()
    assert loader.load_app_config() is first

    write_config(tmp_path, "config", "monitor:\n  tick_interval_seconds: 12\n")
    assert loader.load_app_config().monitor.tick_interval_seconds == 10
    assert loader.reload().monitor.tick_interval_seconds == 12


# ============================================================================
# Templates
# ============================================================================

def test_exit_rules_template_conversion():
    rules = ExitRulesConfig(
        stop_loss_percent=5,
        take_profit_percent=None,
        max_hold_time_minutes=30,
    ).to_exit_rules()

    assert rules.stop_loss_percent == 5
    assert rules.take_profit_percent is None
    assert rules.max_hold_time_seconds == 1800
    assert [lvl.level_id for lvl in rules.partial_profit_levels] == ["tp_30", "tp_50", "tp_100"]


def test_exit_rules_template_rejects_oversold_levels():
    with pytest.raises(ValidationError):
        ExitRulesConfig(partial_profit_levels=[
            {"threshold_percent": 10, "sell_fraction": 0.6},
            {"threshold_percent": 20, "sell_fraction": 0.6},
        ])


def test_scale_in_template_to_plan():
    config = ScaleInConfig(
        enabled=True,
        phases=[
            ScaleInPhaseConfig(trigger_drop_percent=5, size_fraction=0.3),
            ScaleInPhaseConfig(trigger_drop_percent=15, size_fraction=0.3),
        ],
    )

    plan = config.to_plan(1.0)

    assert config.initial_fraction == pytest.approx(0.4)
    assert [p.phase_number for p in plan.phases] == [1, 2]
    assert plan.budget == 1.0
    assert ScaleInConfig().to_plan(1.0) is None
