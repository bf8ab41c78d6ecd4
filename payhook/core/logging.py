"""
Structured Logging Infrastructure

JSON log lines carrying two context ids:
- correlation_id: one inbound request or one Celery task run
- event_id: the webhook event currently being processed, so a single event
  can be followed across intake, every retry attempt and the final alert
"""
import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
# מזהה האירוע שבעיבוד - מצורף לכל שורת לוג בזמן ניסיון עיבוד
event_id_var: ContextVar[str] = ContextVar("webhook_event_id", default="")

_service_name = "payhook"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; context ids only when set."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": _service_name,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (("correlation_id", correlation_id_var), ("event_id", event_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, "extra_data", None)
        if extra_data is not None:
            entry["extra"] = extra_data

        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger accepting `extra_data=` on every level method (debug ... exception)."""

    def _log(
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        # +1: דילוג על המסגרת הזו כדי ש-funcName/lineno יצביעו על הקורא
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Exposes correlation_id / event_id to plain-text format strings"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.event_id = event_id_var.get() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "payhook"
) -> None:
    """
    Configure the root logger once per process.

    Args:
        level: Logging level name
        json_format: JSON lines (production) or a readable text format (DEBUG)
        app_name: Service name stamped on every line
    """
    global _service_name
    _service_name = app_name
    numeric_level = getattr(logging, level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s | {app_name} | %(levelname)-8s | %(name)s | "
            "[%(correlation_id)s] [%(event_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        handler.addFilter(ContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # ספריות צד שלישי רועשות
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation id; creates one for contexts that never set it"""
    return correlation_id_var.get() or set_correlation_id()


@contextmanager
def bind_event_id(event_id: str) -> Iterator[None]:
    """מצמיד event_id ללוגים בתוך הבלוק ומשחזר את הערך הקודם ביציאה"""
    token = event_id_var.set(event_id)
    try:
        yield
    finally:
        event_id_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log start, completion (with duration) or failure of an async operation."""
    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.monotonic()
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name})
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.monotonic() - started, 3),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                raise

            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.monotonic() - started, 3),
                },
            )
            return result

        return wrapper
    return decorator
