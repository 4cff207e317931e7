"""Central logging configuration helpers for datacoherence.

Every module logs through :func:`component_logger`, so each record carries a
``component`` extra (``cache_store``, ``realtime``, ``mutations``...). Debug
scopes can name either a component or a module prefix.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, TextIO

from loguru import logger

if TYPE_CHECKING:
    from loguru import Logger

    from datacoherence.config import DataLayerSettings

DEFAULT_COMPONENT = "-"
DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]: <12} | "
    "{name}:{function}:{line} - {message}"
)


def _scope_matches(record: Mapping[str, Any], scopes: tuple[str, ...]) -> bool:
    component = record["extra"].get("component", DEFAULT_COMPONENT)
    module = record.get("name") or ""
    for scope in scopes:
        if scope == component:
            return True
        if module.startswith(scope) or module.startswith(f"datacoherence.{scope}"):
            return True
    return False


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
    sink: TextIO | Any = sys.stderr,
) -> tuple[int, ...]:
    """Replace all loguru handlers and return the ids of the new ones.

    Records below ``level`` are dropped, except DEBUG records whose component
    or module matches one of ``debug_scopes`` (``"realtime"``,
    ``"core.cache_store"``).
    """
    logger.remove()
    logger.configure(extra={"component": DEFAULT_COMPONENT})
    threshold = logger.level(level.upper()).no
    scopes = tuple(s.strip() for s in debug_scopes if s.strip())

    handler_ids = [
        logger.add(sink, level=level.upper(), format=DEFAULT_LOG_FORMAT, colorize=colorize)
    ]
    if scopes and threshold > logger.level("DEBUG").no:
        handler_ids.append(
            logger.add(
                sink,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=lambda record: record["level"].no < threshold
                and _scope_matches(record, scopes),
            )
        )
    return tuple(handler_ids)


def configure_logging_from_settings(
    settings: DataLayerSettings, *, sink: TextIO | Any = sys.stderr
) -> tuple[int, ...]:
    """Apply the logging section of :class:`DataLayerSettings`."""
    return configure_logging(
        settings.log_level,
        debug_scopes=settings.debug_scopes,
        colorize=settings.log_colorize,
        sink=sink,
    )


def component_logger(component: str, **context: object) -> Logger:
    """Logger bound to a layer component; extra context lands in ``record["extra"]``."""
    return logger.bind(component=component, **context)
