import json
import logging
import sys
import time


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record; message text is escaped by json.dumps."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def get_logger(name: str = "did_wallet", level=None) -> logging.Logger:
    """Structured JSON-line logger shared by all wallet components."""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonLineFormatter())
        logger.addHandler(handler)
        if level is None and logger.level == logging.NOTSET:
            logger.setLevel(logging.INFO)

    return logger
