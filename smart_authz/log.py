"""
Structured JSON logging for authorization decisions.

Host processes usually ship stdout to a log collector (Cloud Logging, ELK,
Datadog). One JSON object per line lets those systems index the structured
fields, so auth failures can be filtered by decision, reason or operation.

Decision data is attached through the standard `extra` mechanism:

    logger.warning(
        "User supplied scopes are insufficient",
        extra={"auth_data": {"decision": "denied", "operation": "read"}},
    )

and is merged into the JSON line by JSONLogFormatter. Access tokens are never
put into auth_data.
"""

import json
import logging
import sys

LOGGER_NAME = "smart-authz"


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

        {"timestamp": "2026-02-06 10:30:00,123", "level": "WARNING", "logger": "smart-authz",
         "message": "User supplied scopes are insufficient", "decision": "denied"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        return json.dumps(log_entry, default=str)


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def configure_logging(level: str = "info") -> logging.Logger:
    """
    Route the engine's logger to stdout as JSON.

    Only the engine's own logger is configured; the host's root logger is
    left alone.
    """
    logger = get_logger()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    logger.handlers = [handler]
    logger.propagate = False
    logger.setLevel(getattr(logging, level.upper()))
    return logger
