import json
import logging
import sys
from typing import Any, Dict
from datetime import datetime, timezone


class StructuredLogger:
    """
    A logger that writes one JSON object per record.

    Keyword arguments passed to the level methods become top-level fields,
    e.g. ``logger.info("Disk mounted", host="sql01", access_path="C:\\clone")``.
    """

    def __init__(self, name: str, level: int = logging.INFO):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # Clear existing handlers to avoid duplicate logs
        if self.logger.handlers:
            self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(self.JsonFormatter())
        self.logger.addHandler(handler)
        self.logger.propagate = False

    class JsonFormatter(logging.Formatter):
        # LogRecord attributes that are not user extras
        STANDARD_ATTRS = set(
            logging.LogRecord("", 0, "", 0, "", (), None).__dict__
        ) | {"message", "asctime", "taskName"}

        def format(self, record: logging.LogRecord) -> str:
            log_entry: Dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }

            if record.exc_info:
                log_entry["exception"] = self.formatException(record.exc_info)

            for key, value in record.__dict__.items():
                if key not in self.STANDARD_ATTRS:
                    log_entry[key] = value

            return json.dumps(log_entry, default=str)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        self.logger.error(message, exc_info=exc_info, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs)

    def critical(self, message: str, exc_info: bool = True, **kwargs: Any) -> None:
        self.logger.critical(message, exc_info=exc_info, extra=kwargs)


# Global logger instance
logger = StructuredLogger("dbclone")
