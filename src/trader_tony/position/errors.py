"""
Error taxonomy for the position engine.

Every failure the engine can observe maps onto one of these classes so the
monitoring loop can decide whether to skip, retry, alert or stop.
"""

from typing import Optional


class TraderError(Exception):
    """Base exception for the position engine."""
    pass


class InvalidInputError(TraderError):
    """Malformed request to the position manager; nothing was applied."""
    pass


class PriceUnavailableError(TraderError):
    """The price oracle could not produce a usable price for a token."""

    def __init__(self, token_id: str, message: str = ""):
        self.token_id = token_id
        super().__init__(message or f"Price unavailable for {token_id}")


class TradeExecutionError(TraderError):
    """A buy or sell did not complete."""

    def __init__(self, message: str, tx_ref: Optional[str] = None):
        self.tx_ref = tx_ref
        super().__init__(message)


class ConcurrencyViolation(TraderError):
    """An action was attempted while another one is pending on the same position."""

    def __init__(self, position_id: str, pending_action: str, attempted: str):
        self.position_id = position_id
        self.pending_action = pending_action
        self.attempted = attempted
        super().__init__(
            f"Position {position_id} already has pending action "
            f"'{pending_action}', dropped '{attempted}'"
        )


class StorageCorruptionError(TraderError):
    """A persisted record could not be decoded on load."""

    def __init__(self, kind: str, record_id: str, reason: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"Corrupted {kind} record {record_id}: {reason}")


class EntryRejectedError(TraderError):
    """A strategy refused to open a new position."""

    def __init__(self, strategy_id: str, reason: str):
        self.strategy_id = strategy_id
        self.reason = reason
        super().__init__(f"Strategy {strategy_id} rejected entry: {reason}")
