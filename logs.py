"""Process-wide logging setup.

Every module logs through ``logging.getLogger(__name__)``; this only decides
where records go and how they look (one JSON object per line).
"""
import json
import logging
import logging.handlers
import os

from config import settings

_FORMAT = json.dumps({
    "timestamp": "%(asctime)s",
    "level": "%(levelname)s",
    "logger": "%(name)s",
    "message": "%(message)s",
}, ensure_ascii=False)


def configure_logging(log_file: str | None = None, max_log_days: int = 7) -> logging.Logger:
    """Install the JSON formatter on the root logger.

    Safe to call more than once: existing handlers are replaced, not stacked.
    """
    log_file = log_file or settings.LOG_FILE
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    formatter = logging.Formatter(_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when="midnight",
            interval=1,
            backupCount=max_log_days,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Socket.IO internals are noisy at INFO
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)
    return root
