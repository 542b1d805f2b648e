"""JSON logging with the checkout identifiers bound to the current request."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import IO, Iterator

from pythonjsonlogger.json import JsonFormatter

from cafepay.common.config import settings

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "trace_id": trace_id_ctx,
    "order_id": order_id_ctx,
    "payment_id": payment_id_ctx,
}


class ContextFilter(logging.Filter):
    """Stamp the service name and every bound checkout identifier on a record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get())
        return True


@contextmanager
def bound(**identifiers: str) -> Iterator[None]:
    """Bind identifiers (trace_id, order_id, payment_id) for the enclosed block."""

    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(str(value))) for name, value in identifiers.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(level: str | None = None, stream: IO[str] | None = None) -> None:
    """Route all records through one JSON handler on the root logger."""

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.addFilter(ContextFilter())
    fields = ("asctime", "levelname", "name", "service_name", *CONTEXT_FIELDS, "message")
    handler.setFormatter(
        JsonFormatter(
            " ".join(f"%({field})s" for field in fields),
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)


logger = logging.getLogger("cafepay")
