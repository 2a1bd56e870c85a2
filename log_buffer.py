import logging
import threading
from collections import deque
from typing import Iterable, Optional

# library loggers that would otherwise flood the diagnostics view
IGNORED_LOGGERS = ("apscheduler", "httpcore", "httpx", "multipart", "sqlalchemy", "uvicorn")


class _IgnoreLoggers(logging.Filter):
    def __init__(self, prefixes: Iterable[str]) -> None:
        super().__init__()
        self.prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        return not any(
            name == prefix or name.startswith(prefix + ".") for prefix in self.prefixes
        )


class LogBuffer(logging.Handler):
    """Keeps the newest log records in memory for the diagnostics view."""

    def __init__(
        self,
        capacity: int = 100,
        level: int = logging.INFO,
        ignored_loggers: Iterable[str] = IGNORED_LOGGERS,
    ) -> None:
        super().__init__(level=level)
        self.addFilter(_IgnoreLoggers(ignored_loggers))
        self.capacity = max(1, capacity)
        self._entries: deque[dict] = deque(maxlen=self.capacity)
        self._entries_lock = threading.Lock()
        self._attached_to: Optional[logging.Logger] = None
        self._previous_level: Optional[int] = None

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        exc_text = None
        if record.exc_info:
            exc_text = logging.Formatter().formatException(record.exc_info)
        entry = {
            "timestamp": int(record.created * 1000),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": message,
            "exception": exc_text,
        }
        with self._entries_lock:
            self._entries.appendleft(entry)

    def entries(self) -> list[dict]:
        with self._entries_lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def attach(self, target: Optional[logging.Logger] = None) -> None:
        target = target or logging.getLogger()
        if self._attached_to is target:
            return
        self.detach()
        target.addHandler(self)
        self._attached_to = target
        if target.getEffectiveLevel() > self.level:
            # records below the logger level never reach any handler
            self._previous_level = target.level
            target.setLevel(self.level)

    def detach(self) -> None:
        if self._attached_to is not None:
            self._attached_to.removeHandler(self)
            if self._previous_level is not None:
                self._attached_to.setLevel(self._previous_level)
                self._previous_level = None
            self._attached_to = None
