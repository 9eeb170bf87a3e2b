"""structlog setup and timing / exception helpers shared by the import services."""

import logging
import sys
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import EventDict, Processor, WrappedLogger

from ledger_import import __version__
from ledger_import.config import settings

SERVICE_NAME = "ledger-import"


def _add_service_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("env", settings.environment)
    event_dict.setdefault("version", __version__)
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_service_fields,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging() -> None:
    """Route structlog through stdlib logging: console output in debug, JSON lines otherwise."""
    shared = _shared_processors()
    renderer: Processor = structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared))
    logging.basicConfig(handlers=[handler], level=logging.DEBUG if settings.debug else logging.INFO)


def get_logger(name: str | None = None) -> BoundLogger:
    return structlog.get_logger(name)


def _emit_timing(
    log: BoundLogger,
    level: str,
    operation: str,
    started: float,
    context: dict[str, Any],
    collected: dict[str, Any],
) -> None:
    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    collected["duration_ms"] = duration_ms
    fields = {**context, **{k: v for k, v in collected.items() if k != "duration_ms"}}
    getattr(log, level, log.info)(f"{operation} completed", operation=operation, duration_ms=duration_ms, **fields)


@contextmanager
def log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> Iterator[dict[str, Any]]:
    """Log how long a block took.

    The yielded dict collects result fields while the block runs; they are logged
    together with ``duration_ms`` when it exits, also on error.

        with log_timing("build_conflict_set", logger=logger, candidates=len(batch)) as timing:
            conflict_set = build(...)
            timing["exact_duplicates"] = conflict_set.statistics.exact_duplicates
    """
    log = logger or get_logger(__name__)
    started = time.perf_counter()
    collected: dict[str, Any] = {}
    try:
        yield collected
    finally:
        _emit_timing(log, level, operation, started, context, collected)


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """``log_timing`` for ``async with`` blocks."""
    log = logger or get_logger(__name__)
    started = time.perf_counter()
    collected: dict[str, Any] = {}
    try:
        yield collected
    finally:
        _emit_timing(log, level, operation, started, context, collected)


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    message: str,
    *,
    level: str = "error",
    include_traceback: bool = True,
    **extra: Any,
) -> None:
    """Log ``exc`` under ``message`` with its type and module attached.

        except TransferLinkError as exc:
            log_exception(logger, exc, "Failed to apply import decision", candidate_id=candidate_id)
    """
    fields: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "error_module": type(exc).__module__,
        **extra,
    }
    if include_traceback:
        fields["exc_info"] = exc
    getattr(logger, level, logger.error)(message, **fields)
