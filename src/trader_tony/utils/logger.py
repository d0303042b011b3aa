"""
Logging Utilities

Provides structured logging with:
- JSON formatting for production
- Position / token / strategy context on every lifecycle line
- Timing of monitoring ticks
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


# Extra attributes copied into JSON log lines when present
CONTEXT_FIELDS = (
    "position_id",
    "token_id",
    "strategy_id",
    "action",
    "reason",
    "price",
    "amount",
    "tx_ref",
    "attempts",
    "position_event",
    "order_event",
    "alert_type",
    "severity",
    "execution_time",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class PerformanceLogger:
    """Logger for tracking performance metrics."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    @contextmanager
    def timer(self, operation: str, level: int = logging.DEBUG, **context):
        """Context manager for timing operations."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            execution_time = time.perf_counter() - start_time
            extra = {'execution_time': round(execution_time, 4), **context}
            self.logger.log(level, f"Operation completed: {operation}", extra=extra)


class TradingLogger:
    """Specialized logger for position lifecycle operations."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.performance = PerformanceLogger(self.logger)

    def order_event(self, token_id: str, event: str, side: str, amount: float, **context):
        """Log buy/sell submissions and results."""
        extra = {
            'token_id': token_id,
            'order_event': event,
            'amount': amount,
            **context
        }
        self.logger.info(f"Order {event}: {side} {amount:.6g} {token_id}", extra=extra)

    def position_event(self, position_id: str, event: str, token_id: str, price: float, **context):
        """Log position events."""
        extra = {
            'position_id': position_id,
            'token_id': token_id,
            'position_event': event,
            'price': price,
            **context
        }
        self.logger.info(f"Position {event}: {position_id} ({token_id}) @ {price:.10g}", extra=extra)

    def risk_alert(self, alert_type: str, severity: str, message: str, **context):
        """Log alerts that need operator attention."""
        extra = {
            'alert_type': alert_type,
            'severity': severity,
            **context
        }
        if severity.lower() in ['high', 'critical']:
            self.logger.error(f"Risk Alert [{alert_type}]: {message}", extra=extra)
        else:
            self.logger.warning(f"Risk Alert [{alert_type}]: {message}", extra=extra)


class ContextFormatter(logging.Formatter):
    """Plain-text formatter that appends position context as key=value pairs."""

    def __init__(self):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}"
            for name in ("position_id", "token_id", "strategy_id")
            if getattr(record, name, None) is not None
        )
        return f"{line} [{context}]" if context else line


# Libraries that log every request at INFO
NOISY_LOGGERS = ("aiohttp.access", "uvicorn.access", "python_http_client")


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the root logger for the engine.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path; parent directories are created
        json_format: One JSON object per line instead of plain text
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(log_level).upper()))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = JSONFormatter() if json_format else ContextFormatter()

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_trading_logger(name: str) -> TradingLogger:
    """Get a lifecycle logger for the given module."""
    return TradingLogger(name)
