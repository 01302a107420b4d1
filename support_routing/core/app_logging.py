"""Logging setup for the routing service.

Installs a single stream handler on the ``support_routing`` logger tree with
either a human-readable or a JSON formatter (``LOG_JSON``). Modules log
through ``logging.getLogger(__name__)`` and never configure handlers
themselves.
"""

import json
import logging

from support_routing.core.config import Settings

ROOT_LOGGER_NAME = "support_routing"


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def configure_logging(settings: Settings) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(settings.log_level.upper())

    # Reconfiguring (tests, reload) replaces our handler instead of stacking.
    for handler in list(logger.handlers):
        if getattr(handler, "_support_routing", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(_get_formatter(settings.log_json))
    handler._support_routing = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.propagate = False
    return logger
