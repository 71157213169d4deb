# flask_app/utils/logging_config.py

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line, including ``extra`` keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                payload[key] = value
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends ``sync_*`` extras."""

    def __init__(self):
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {key: value for key, value in record.__dict__.items() if key.startswith("sync_")}
        if extras:
            line += " " + json.dumps(extras, default=str, sort_keys=True)
        return line


def _formatter(app) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter()
    return TextFormatter()


def setup_logging(app):
    """
    Configure the Flask app logger from ``LOG_*`` settings.

    Safe to call repeatedly: handlers installed by a previous call are replaced.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _formatter(app)

    for handler in list(app.logger.handlers):
        if getattr(handler, "_sync_managed", False):
            app.logger.removeHandler(handler)
            handler.close()

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    os.path.join(log_dir, "sync.log"),
                    maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
                    backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
                )
            )
        except OSError as exc:
            app.logger.warning("Could not configure file logging in %s: %s", log_dir, exc)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        handler._sync_managed = True  # type: ignore[attr-defined]
        app.logger.addHandler(handler)

    app.logger.setLevel(level)
    # Pipeline modules log through module-level loggers under ``flask_app``.
    package_logger = logging.getLogger("flask_app")
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        if getattr(handler, "_sync_managed", False):
            package_logger.removeHandler(handler)
    for handler in handlers:
        package_logger.addHandler(handler)

    app.logger.info(
        "Logging configured",
        extra={"sync_log_level": level_name, "sync_log_format": app.config.get("LOG_FORMAT")},
    )
    return app.logger
