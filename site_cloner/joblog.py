import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Tuple

MAX_ENTRIES = 200

LEVEL_TYPES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class JobLogHandler(logging.Handler):
    """Keeps the most recent records of one job as ``{message, type, timestamp}``.

    Pass ``extra={"entry_type": "success"}`` to override the level-derived type.
    """

    def __init__(self, max_entries: int = MAX_ENTRIES, level: int = logging.INFO):
        super().__init__(level)
        self.entries: Deque[Dict[str, str]] = deque(maxlen=max_entries)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        entry = {
            "message": message,
            "type": getattr(record, "entry_type", None)
            or LEVEL_TYPES.get(record.levelno, record.levelname.lower()),
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        }
        with self._entries_lock:
            self.entries.append(entry)

    def records(self) -> List[Dict[str, str]]:
        with self._entries_lock:
            return list(self.entries)

    def messages(self) -> List[str]:
        return [e["message"] for e in self.records()]

    def last_message(self) -> str:
        with self._entries_lock:
            return self.entries[-1]["message"] if self.entries else ""


def job_logger(job_id: str, max_entries: int = MAX_ENTRIES) -> Tuple[logging.Logger, JobLogHandler]:
    """Child logger ``site_cloner.job.<id>`` with a fresh capture handler.

    Records still propagate to the root handlers configured by the CLI, so the
    logger only opens up to INFO for the capture handler and otherwise follows
    the level of its parents.
    """
    logger = logging.getLogger(f"site_cloner.job.{job_id}")
    logger.setLevel(logging.NOTSET)
    logger.setLevel(min(logging.INFO, logger.getEffectiveLevel()))
    for h in list(logger.handlers):
        if isinstance(h, JobLogHandler):
            logger.removeHandler(h)
    handler = JobLogHandler(max_entries)
    logger.addHandler(handler)
    return logger, handler


def release_job_logger(logger: logging.Logger, handler: JobLogHandler) -> None:
    logger.removeHandler(handler)
    handler.close()
