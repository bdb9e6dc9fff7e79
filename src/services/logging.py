import logging
import json
import os
from typing import Optional


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
        }
        for extra in ("feed", "item"):
            value = getattr(record, extra, None)
            if value is not None:
                payload[extra] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: int | str = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configure the root logger. The terminal belongs to the interface while it runs,
    so records go to `log_file` when one is given.
    """
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # per-request lines from the HTTP stack would drown the feed log
    logging.getLogger("httpx").setLevel(logging.WARNING)
