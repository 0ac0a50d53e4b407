"""Structured logging for calbridge, tagged with the account alias in use.

Records from plain ``logging.getLogger(__name__)`` loggers are rendered by a
structlog ProcessorFormatter on the root handler, so modules keep using the
standard library API.  ``configure_logging`` picks the renderer:

- ``text`` renders coloured lines for a terminal
- ``json`` renders one JSON object per record for collectors

Each record gains ``account`` (from a ContextVar) plus ``trace_id`` and
``span_id`` (from the active OTel span).  :class:`CredentialRedactionFilter`
masks token values before the formatter sees the message.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Account context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_account_context: ContextVar[str | None] = ContextVar("calbridge_account", default=None)


def set_account_context(alias: str | None) -> None:
    """Set the account alias for the current async context."""
    _account_context.set(alias)


def get_account_context() -> str | None:
    """Get the account alias for the current async context."""
    return _account_context.get()


@contextmanager
def account_context(alias: str | None) -> Iterator[None]:
    """Scope log records emitted inside the block to *alias*."""
    token = _account_context.set(alias)
    try:
        yield
    finally:
        _account_context.reset(token)


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"client_secret|refresh_token|access_token|id_token|token"
_KV_PATTERN = re.compile(rf"(?i)\b({_SECRET_KEYS})\s*=\s*([^\s,;&]+)")
_QUOTED_PATTERN = re.compile(rf"""(?i)(['"]?(?:{_SECRET_KEYS})['"]?\s*:\s*)(['"]).*?\2""")
_COLON_PATTERN = re.compile(rf"(?i)\b({_SECRET_KEYS})\s*:\s*([^\s,;'\"]+)")
_BEARER_PATTERN = re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]+")


def redact_secrets(message: str) -> str:
    """Mask token-like values in *message*."""
    redacted = _KV_PATTERN.sub(r"\1=[REDACTED]", message)
    redacted = _QUOTED_PATTERN.sub(r'\1"[REDACTED]"', redacted)
    redacted = _COLON_PATTERN.sub(r"\1: [REDACTED]", redacted)
    return _BEARER_PATTERN.sub(r"\1 [REDACTED]", redacted)


class CredentialRedactionFilter(logging.Filter):
    """Rewrite log records so token values never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_account_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Tag the record with the alias set by :func:`account_context`."""
    event_dict["account"] = _account_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Tag the record with the active span's ids, zero-filled outside a span."""
    ctx = trace.get_current_span().get_span_context()
    trace_id = ctx.trace_id if ctx else 0
    span_id = ctx.span_id if trace_id else 0
    event_dict["trace_id"] = format(trace_id, "032x")
    event_dict["span_id"] = format(span_id, "016x")
    return event_dict


# HTTP client internals log every request at INFO.
_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
)

_RENDERERS = {
    "json": ("iso", structlog.processors.JSONRenderer),
    "text": ("%H:%M:%S", structlog.dev.ConsoleRenderer),
}


def _shared_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_account_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install the calbridge handler on the root logger.

    Parameters
    ----------
    level:
        Name of the root level; unknown names fall back to INFO.
    fmt:
        ``"json"`` for JSON lines, anything else for the console renderer.
    """
    time_fmt, renderer_cls = _RENDERERS.get(fmt, _RENDERERS["text"])
    shared = _shared_processors(time_fmt)

    # stderr only: stdout may carry the protocol stream of the host process.
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(CredentialRedactionFilter())
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer_cls(),
            ],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
