"""JSON logs on stdout carrying the trace, provider event and order being worked on."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from lumira.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")

_CONTEXT_FIELDS = {
    "trace_id": trace_id_ctx,
    "event_id": event_id_ctx,
    "order_id": order_id_ctx,
}

# Chatty client libraries: their request lines duplicate our own dispatch and upload logs.
_QUIET_LOGGERS = ("httpx", "httpcore", "stripe", "openai", "weasyprint", "fontTools")


class OrderContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT_FIELDS.items():
            setattr(record, field, var.get())
        return True


def mask(value: str | None, keep: int = 6) -> str:
    """Shorten a signature or secret to a prefix that is safe to log."""

    if not value:
        return ""
    return value[:keep] + "..." if len(value) > keep else "***"


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the root logger, replacing any existing ones."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(OrderContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(order_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("lumira")
