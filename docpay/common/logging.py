"""JSON logs carrying the order and payment being reconciled.

Every record gets the request trace id plus, while `log_context` is active,
the order id, provider payment id and reconcile source, so one order's path
through webhook, cron and dashboard sync can be filtered out of the stream.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from docpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
source_ctx: ContextVar[str] = ContextVar("source", default="")

_CONTEXT_VARS = {
    "trace_id": trace_id_ctx,
    "order_id": order_id_ctx,
    "payment_id": payment_id_ctx,
    "source": source_ctx,
}


@contextmanager
def log_context(**ids: str | None) -> Iterator[None]:
    """Bind correlation ids for the duration of the block, then restore them.

    Keys are `trace_id`, `order_id`, `payment_id` and `source`; None values are
    left untouched.
    """

    tokens = []
    for name, value in ids.items():
        if value is None:
            continue
        tokens.append((_CONTEXT_VARS[name], _CONTEXT_VARS[name].set(str(value))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


def configure_logging() -> None:
    """Send JSON lines to stdout; called once when the app module loads."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(trace_id)s %(order_id)s %(payment_id)s %(source)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
            static_fields={"service": settings.service_name},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    # uvicorn's access log duplicates the metrics middleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("docpay")
