# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tracking and guaranteed release of server-side resources.

Every lock id and stored query id created while a check runs is recorded in
that check's :class:`ResourceLedger`. :meth:`ResourceLedger.release_all` runs
when the check ends, whatever its outcome: locks are released with an empty
``Transaction`` (``releaseAction="ALL"``) and stored queries are dropped.

A failed release is logged at WARNING and turned into a
:class:`~wfs_ets.errors.ResourceLeakWarning`; the remaining resources are
still released. Resources the service already forgot (an expired lock, an
already-dropped query) count as released.

Logger: ``wfs_ets.ledger``
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from types import TracebackType

from wfs_ets.builder import RequestBuilder, RequestParams
from wfs_ets.dispatch import BindingDispatcher, ResponseRecord
from wfs_ets.errors import ResourceLeakWarning
from wfs_ets.protocol import Binding, ExceptionCode, Operation, ReleaseAction

__all__ = ["LedgerEntry", "ResourceKind", "ResourceLedger", "ServiceReleaser"]

_logger = logging.getLogger("wfs_ets.ledger")


class ResourceKind(StrEnum):
    """Kinds of server-side resources a run can create."""

    LOCK = "lock"
    STORED_QUERY = "stored_query"


# Exception codes meaning "the service no longer knows this resource".
_ALREADY_GONE: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.LOCK: frozenset({ExceptionCode.LOCK_HAS_EXPIRED}),
    ResourceKind.STORED_QUERY: frozenset({ExceptionCode.INVALID_PARAMETER_VALUE}),
}


@dataclass
class LedgerEntry:
    """One tracked resource."""

    kind: ResourceKind
    resource_id: str
    released: bool = False


Releaser = Callable[[ResourceKind, str], ResponseRecord]
"""Sends the release request for one resource and returns the response."""


class ServiceReleaser:
    """Releases resources by sending requests to the service.

    Args:
        builder: Request builder.
        dispatcher: Dispatcher used for the release requests.

    """

    def __init__(self, builder: RequestBuilder, dispatcher: BindingDispatcher) -> None:
        """Initialize with the builder and dispatcher of the run."""
        self.builder = builder
        self.dispatcher = dispatcher

    def __call__(self, kind: ResourceKind, resource_id: str) -> ResponseRecord:
        """Release one resource."""
        if kind is ResourceKind.LOCK:
            payload = self.builder.build(
                Operation.TRANSACTION,
                RequestParams(lock_id=resource_id, release_action=ReleaseAction.ALL),
                check_schema=False,
            )
        else:
            payload = self.builder.build(Operation.DROP_STORED_QUERY, RequestParams(stored_query_ids=(resource_id,)))
        return self.dispatcher.dispatch(payload, Binding.ANY)


class ResourceLedger:
    """Per-check record of created resources with guaranteed cleanup.

    Usable as a context manager; leaving the block calls :meth:`release_all`.

    Args:
        releaser: Callable that releases one resource. Without one,
            :meth:`release_all` only reports what would leak.

    """

    def __init__(self, releaser: Releaser | None = None) -> None:
        """Initialize an empty ledger."""
        self._releaser = releaser
        self._entries: dict[tuple[ResourceKind, str], LedgerEntry] = {}
        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self.warnings: list[ResourceLeakWarning] = []

    def __enter__(self) -> ResourceLedger:
        """Enter the context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release everything still held."""
        self.release_all()

    def __len__(self) -> int:
        """Number of tracked resources."""
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        """Whether ``(kind, resource_id)`` is tracked."""
        return key in self._entries

    @property
    def entries(self) -> list[LedgerEntry]:
        """Tracked resources in creation order."""
        with self._lock:
            return list(self._entries.values())

    def pending(self, kind: ResourceKind | None = None) -> list[str]:
        """Ids not yet released, optionally filtered by *kind*."""
        return [e.resource_id for e in self.entries if not e.released and kind in (None, e.kind)]

    def record(self, kind: ResourceKind, resource_id: str) -> bool:
        """Track *resource_id*.

        An id that was released and shows up again is tracked again, since
        the service evidently still holds it.

        Returns:
            ``False`` if the id was already tracked and pending.

        """
        key = (kind, resource_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not entry.released:
                return False
            if entry is not None:
                entry.released = False
            else:
                self._entries[key] = LedgerEntry(kind, resource_id)
        _logger.debug("Tracking %s %s", kind, resource_id, extra={"kind": str(kind), "resource_id": resource_id})
        return True

    def mark_released(self, kind: ResourceKind, resource_id: str) -> None:
        """Note that *resource_id* was released during the check itself."""
        with self._lock:
            entry = self._entries.get((kind, resource_id))
            if entry is not None:
                entry.released = True

    def release_all(self) -> list[ResourceLeakWarning]:
        """Release every tracked resource that is still held.

        Continues past failures. Calling it again only retries what failed.
        Safe to call while another thread is still recording; resources
        recorded during the call are left for the next one.

        Returns:
            Warnings for resources that could not be released in this call.

        """
        leaks: list[ResourceLeakWarning] = []
        with self._drain_lock:
            for entry in self.entries:
                if entry.released:
                    continue
                reason = self._release_one(entry)
                if reason is None:
                    entry.released = True
                    continue
                warning = ResourceLeakWarning(str(entry.kind), entry.resource_id, reason)
                _logger.warning(
                    "Failed to release %s %s: %s",
                    entry.kind,
                    entry.resource_id,
                    reason,
                    extra={"kind": str(entry.kind), "resource_id": entry.resource_id},
                )
                leaks.append(warning)
            self.warnings.extend(leaks)
        return leaks

    def _release_one(self, entry: LedgerEntry) -> str | None:
        """Release one resource; return a failure reason or ``None``."""
        if self._releaser is None:
            return "no releaser configured"
        try:
            record = self._releaser(entry.kind, entry.resource_id)
        except Exception as exc:
            return f"{type(exc).__name__}: {exc}"
        if record.ok:
            _logger.debug("Released %s %s", entry.kind, entry.resource_id)
            return None
        if record.exception_code in _ALREADY_GONE[entry.kind]:
            _logger.debug("%s %s already gone (%s)", entry.kind, entry.resource_id, record.exception_code)
            return None
        return f"HTTP {record.status} {record.exception_code or ''}".strip()
