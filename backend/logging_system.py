"""
Structured diagnostic logging for the CTMS sync service.

JSON log lines with request correlation, kept in a bounded in-process buffer so
soft sync failures (skipped milestone fetches, failed upserts) stay queryable
through the diagnostics router after the SyncData call has returned.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from enum import Enum
from collections import deque
import contextvars
import json
import os
import sys
import time
import traceback
import uuid


class LogLevel(str, Enum):
    """Log severity levels"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def numeric(self) -> int:
        levels = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}
        return levels.get(self.value, 20)


class LogCategory(str, Enum):
    """Log categories for filtering"""
    REQUEST = "request"
    AUTH = "auth"
    CTMS = "ctms"
    SYNC = "sync"
    DATABASE = "database"
    SYSTEM = "system"


@dataclass
class LogEntry:
    """A structured log entry"""
    id: str
    timestamp: str
    level: LogLevel
    category: LogCategory
    message: str
    service: str
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    configuration_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "service": self.service,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "configuration_id": self.configuration_id,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
            "error": self.error,
            "stack_trace": self.stack_trace,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    user_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @staticmethod
    def create(request_id: Optional[str] = None, correlation_id: Optional[str] = None) -> "RequestContext":
        request_id = request_id or str(uuid.uuid4())
        return RequestContext(request_id=request_id, correlation_id=correlation_id or request_id)

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000


# Async-safe context var (works with FastAPI/asyncio)
_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def reset_current_context(token: contextvars.Token) -> None:
    _context_var.reset(token)


def current_request_id() -> str:
    context = _context_var.get()
    return context.request_id if context else str(uuid.uuid4())


def bind_user(user_id: str) -> None:
    """Attach the authenticated caller to the current request context."""
    context = _context_var.get()
    if context is not None:
        context.user_id = user_id


class LogBuffer:
    """Bounded ring buffer of recent entries"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._buffer: deque = deque(maxlen=max_size)

    def append(self, entry: LogEntry) -> None:
        self._buffer.append(entry)

    def get_all(self) -> List[LogEntry]:
        return list(self._buffer)

    def clear(self) -> int:
        count = len(self._buffer)
        self._buffer.clear()
        return count

    def filter(
        self,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        user_id: Optional[str] = None,
        configuration_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[LogEntry]:
        results = []
        for entry in reversed(self._buffer):
            if level and entry.level.numeric < level.numeric:
                continue
            if category and entry.category != category:
                continue
            if user_id and entry.user_id != user_id:
                continue
            if configuration_id and entry.configuration_id != configuration_id:
                continue
            if correlation_id and entry.correlation_id != correlation_id:
                continue
            if search and search.lower() not in entry.message.lower():
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results


class StructuredLogger:
    """Structured logger writing JSON lines and buffering entries"""

    def __init__(
        self,
        service_name: str = "trial-sync",
        min_level: LogLevel = LogLevel.INFO,
        buffer_size: int = 10000,
        echo: bool = True,
    ):
        self.service_name = service_name
        self.min_level = min_level
        self.buffer = LogBuffer(buffer_size)
        self.echo = echo

    def _create_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        duration_ms: Optional[float] = None,
        user_id: Optional[str] = None,
        configuration_id: Optional[str] = None,
    ) -> LogEntry:
        context = get_current_context()

        entry = LogEntry(
            id=str(uuid.uuid4())[:12],
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            category=category,
            message=message,
            service=self.service_name,
            correlation_id=context.correlation_id if context else None,
            request_id=context.request_id if context else None,
            user_id=user_id or (context.user_id if context else None),
            configuration_id=configuration_id,
            duration_ms=duration_ms,
            metadata=metadata or {},
        )

        if error:
            entry.error = {
                "type": type(error).__name__,
                "message": str(error),
            }
            entry.stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return entry

    def _log(self, level: LogLevel, category: LogCategory, message: str, **kwargs) -> Optional[LogEntry]:
        if level.numeric < self.min_level.numeric:
            return None

        entry = self._create_entry(level, category, message, **kwargs)
        self.buffer.append(entry)

        if self.echo:
            # JSON output to stderr for errors, stdout for info
            out = sys.stderr if level.numeric >= LogLevel.ERROR.numeric else sys.stdout
            print(entry.to_json(), file=out)

        return entry

    def debug(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.DEBUG, category, message, **kwargs)

    def info(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.INFO, category, message, **kwargs)

    def warning(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.WARNING, category, message, **kwargs)

    def error(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.ERROR, category, message, **kwargs)

    def critical(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.CRITICAL, category, message, **kwargs)

    # Convenience methods
    def upstream_call(self, method: str, url: str, status_code: Optional[int], duration_ms: float, **kwargs) -> Optional[LogEntry]:
        ok = status_code is not None and status_code < 400
        metadata = {"method": method, "url": url, "status_code": status_code, **kwargs.pop("metadata", {})}
        return self._log(
            LogLevel.INFO if ok else LogLevel.WARNING,
            LogCategory.CTMS,
            f"CTMS {method} {url} -> {status_code if status_code is not None else 'transport error'}",
            duration_ms=duration_ms,
            metadata=metadata,
            **kwargs,
        )

    def soft_failure(self, message: str, configuration_id: str, **kwargs) -> Optional[LogEntry]:
        return self.warning(message, category=LogCategory.SYNC, configuration_id=configuration_id, **kwargs)

    def get_logs(self, **filters) -> List[LogEntry]:
        return self.buffer.filter(**filters)

    def get_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        logs = [log for log in self.buffer.get_all() if user_id is None or log.user_id == user_id]
        level_counts: Dict[str, int] = {}
        category_counts: Dict[str, int] = {}
        error_types: Dict[str, int] = {}

        for log in logs:
            level_counts[log.level.value] = level_counts.get(log.level.value, 0) + 1
            category_counts[log.category.value] = category_counts.get(log.category.value, 0) + 1
            if log.error:
                error_type = log.error.get("type", "Unknown")
                error_types[error_type] = error_types.get(error_type, 0) + 1

        return {
            "total_logs": len(logs),
            "level_distribution": level_counts,
            "category_distribution": category_counts,
            "error_types": error_types,
            "buffer_size": self.buffer.max_size,
        }


# Global singleton
_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create the global structured logger"""
    global _logger
    if _logger is None:
        _logger = StructuredLogger(
            service_name=os.getenv("OTEL_SERVICE_NAME", "trial-sync"),
            min_level=LogLevel.DEBUG if os.getenv("DEBUG") else LogLevel.INFO,
            echo=os.getenv("ENVIRONMENT", "development") != "test",
        )
    return _logger
