"""Structured JSON logging with request/order context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from orderflow.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.order_id = order_id_ctx.get()
        return True


@contextmanager
def bound_order(order_id: str):
    """Tag every record emitted inside the block with `order_id`."""

    token = order_id_ctx.set(order_id)
    try:
        yield
    finally:
        order_id_ctx.reset(token)


def configure_logging(level: str | None = None) -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(order_id)s %(message)s",
        rename_fields={"asctime": "ts", "levelname": "level"},
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)
    # Producer reconnect chatter drowns out pipeline logs at INFO.
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


logger = logging.getLogger("orderflow")
