"""Structured logging for delta sync: context-aware, text or JSON.

Uses structlog's ProcessorFormatter so every ``logging.getLogger(__name__)``
call site in the package is rendered through the same processor chain.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The account and resource type of the sync cycle in progress, plus the OTel
trace context, are injected automatically via processors that read from a
ContextVar and the current OTel span.  Bearer tokens and delta/skip tokens
are scrubbed from every record by :class:`CredentialRedactionFilter`.

Log directory layout (when ``log_root`` is set)::

    logs/
      deltasync/        # Application logs (JSON)
        deltasync.log
      http/             # httpx/httpcore transport logs (JSON)
        deltasync.log
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Sync context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_sync_context: ContextVar[dict[str, str] | None] = ContextVar("deltasync_context", default=None)


def get_sync_context() -> dict[str, str] | None:
    """Get the sync identity bound to the current async context."""
    return _sync_context.get()


@contextmanager
def sync_context(account_id: str, resource_type: str, **extra: str) -> Iterator[None]:
    """Bind ``account_id``/``resource_type`` (plus *extra*) to log records in this block."""
    token = _sync_context.set(
        {"account_id": account_id, "resource_type": str(resource_type), **extra}
    )
    try:
        yield
    finally:
        _sync_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_sync_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject the bound sync identity from the ContextVar into the event dict."""
    context = _sync_context.get()
    if context:
        for key, value in context.items():
            event_dict.setdefault(key, value)
    return event_dict


_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id``; zeros when no span is recording."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    else:
        event_dict["trace_id"] = _NO_TRACE_ID
        event_dict["span_id"] = _NO_SPAN_ID
    return event_dict


# ---------------------------------------------------------------------------
# Credential redaction
# ---------------------------------------------------------------------------

_REDACTED = "[REDACTED]"

# Bearer tokens, plus the provider state tokens embedded in delta/next links.
_CREDENTIAL_PATTERNS = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"([?&]\$?(?:deltatoken|skiptoken)=)[^&\s\"']+", re.IGNORECASE),
)


class CredentialRedactionFilter(logging.Filter):
    """Scrub access tokens and change-feed state tokens from log messages.

    Never drops a record.  When something is redacted the formatted message
    replaces ``msg`` and ``args`` is cleared so it is not interpolated again.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True

        redacted = message
        for pattern in _CREDENTIAL_PATTERNS:
            redacted = pattern.sub(rf"\1{_REDACTED}", redacted)

        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

# Transport chatter: WARNING+ on the console, everything in the http/ file.
_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncpg",
)

_DIR_APP = "deltasync"
_DIR_HTTP = "http"


def _pre_chain(timestamp: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp),
        add_sync_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _redacting(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(CredentialRedactionFilter())
    return handler


def _json_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = _redacting(
        logging.FileHandler(path),
        _formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")),
    )
    handler.setLevel(logging.DEBUG)
    return handler


def _reset_noise_loggers() -> None:
    for name in _NOISE_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.WARNING)
        for handler in [h for h in noisy.handlers if isinstance(h, logging.FileHandler)]:
            noisy.removeHandler(handler)
            handler.close()


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    log_name: str = "deltasync",
) -> None:
    """Configure structured logging for the process.

    Safe to call more than once; each call replaces the previous setup.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` renders colored console lines, ``"json"`` renders JSON lines.
    log_root:
        When set, JSON copies of the logs are also written to::

            {log_root}/deltasync/{log_name}.log   (application logs)
            {log_root}/http/{log_name}.log        (transport logs)

    log_name:
        File stem for the log files.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    for existing in [f for f in root.filters if isinstance(f, CredentialRedactionFilter)]:
        root.removeFilter(existing)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addFilter(CredentialRedactionFilter())
    root.addHandler(_redacting(logging.StreamHandler(sys.stderr), _formatter(renderer, pre_chain)))
    _reset_noise_loggers()

    if log_root is not None:
        log_root = Path(log_root)
        root.addHandler(_json_file_handler(log_root / _DIR_APP / f"{log_name}.log"))
        http_handler = _json_file_handler(log_root / _DIR_HTTP / f"{log_name}.log")
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    # Direct structlog.get_logger() callers share the console chain.
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
