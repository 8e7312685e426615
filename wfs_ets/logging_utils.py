# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Logging helpers: JSON formatter and the known-logger registry.

Provides :class:`WfsJsonFormatter`, a :class:`logging.Formatter` subclass
that serializes log records as single-line JSON objects.  All ``extra``
fields attached to a record (lock ids, stored query ids, bindings, status
codes) are automatically included.

The library itself never attaches handlers; :func:`configure_logging` is
called by the CLI only.  Import it explicitly::

    from wfs_ets.logging_utils import WfsJsonFormatter
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Sequence
from typing import TextIO

__all__ = ["KNOWN_LOGGERS", "KNOWN_LOGGER_NAMES", "WfsJsonFormatter", "configure_logging"]

# Build the set of attribute names that every LogRecord has by default.
# Anything *not* in this set was injected via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})

KNOWN_LOGGERS: tuple[tuple[str, str, str], ...] = (
    ("wfs_ets", "Root logger for all wfs-ets output", "Enable to see all verifier logging"),
    ("wfs_ets.conformance", "One record per completed check", "Follow run progress and verdicts"),
    ("wfs_ets.capabilities", "Capabilities parsing", "Debug missing operations or constraints"),
    ("wfs_ets.sampling", "Feature sampling", "Debug checks skipped for lack of instances"),
    ("wfs_ets.dispatch", "Binding and endpoint resolution", "Debug requests sent to the wrong endpoint"),
    ("wfs_ets.validate", "Response validation", "Debug schema and predicate failures"),
    ("wfs_ets.ledger", "Resource cleanup", "Debug locks or stored queries left behind"),
    ("wfs_ets.locking", "Lock lifecycle", "Debug acquisition, expiry and release"),
    ("wfs_ets.paging", "Result paging", "Debug continuation references"),
    ("wfs_ets.storedquery", "Stored query lifecycle", "Debug create, invoke and drop"),
    ("wfs_ets.reference", "Reference service", "Debug the built-in service"),
    ("wfs_ets.wire.request", "Request entities and URLs", "See exactly what was sent"),
    ("wfs_ets.wire.response", "Response status and bodies", "See exactly what came back"),
)

KNOWN_LOGGER_NAMES: frozenset[str] = frozenset(name for name, _, _ in KNOWN_LOGGERS)


class WfsJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``message``) are
    always present and cannot be overwritten by extra fields with the same
    name.  Every other non-default attribute on the ``LogRecord`` is emitted
    as an additional key.

    Exception information is included under the ``"exception"`` key when
    present.

    Non-serializable values are coerced to strings via ``default=str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    level: str,
    loggers: Sequence[str] = (),
    fmt: str = "text",
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach a handler to the target loggers at *level*.

    Args:
        level: Level name (``DEBUG``, ``INFO``, ...).
        loggers: Logger names to configure; defaults to ``wfs_ets``.
        fmt: ``text`` or ``json``.
        stream: Destination (defaults to stderr).

    Returns:
        The handler that was attached.

    Raises:
        ValueError: If *level* is not a known level name.

    """
    levels = logging.getLevelNamesMapping()
    if level.upper() not in levels:
        raise ValueError(f"Unknown log level {level!r}")
    handler = logging.StreamHandler(stream or sys.stderr)
    if fmt == "json":
        handler.setFormatter(WfsJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(name)-30s %(levelname)-5s %(message)s"))

    for name in loggers or ("wfs_ets",):
        if name not in KNOWN_LOGGER_NAMES:
            sys.stderr.write(f"Warning: unknown logger '{name}'\n")
            sys.stderr.flush()
        logger = logging.getLogger(name)
        logger.setLevel(levels[level.upper()])
        logger.addHandler(handler)
    return handler
