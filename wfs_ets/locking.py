# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Lock lifecycle model: acquisition, renewal, expiry and release.

:class:`LockLifecycleModel` drives ``LockFeature`` / ``GetFeatureWithLock``
requests against the service while keeping its own model of every lock it
obtained. The model predicts what the service must do; a response that
contradicts the prediction is a failure.

State machine::

    REQUESTED ──> ACTIVE ──renew──> ACTIVE
                    │
                    ├──> EXPIRED   (clock passed acquired_at + expiry)
                    └──> RELEASED  (Transaction releaseAction=ALL)

    EXPIRED and RELEASED are terminal.

Rules enforced:

* At most one ACTIVE lock covers a feature identifier. An ``ALL`` request
  overlapping an active lock must be rejected; a ``SOME`` response must
  exclude the already-locked features.
* An operation presenting an expired (or released) lock id must be rejected
  with ``LockHasExpired``; it is never treated as unlocked.
* Releasing a lock that is no longer ACTIVE is a no-op.

Service rejections surface as :class:`~wfs_ets.errors.ServiceException` so
checks can assert them with
:meth:`~wfs_ets.validate.ResponseValidator.expect_exception`. Acceptances
the model knows to be wrong raise
:class:`~wfs_ets.errors.SemanticAssertionFailure`.

Every lock id seen in a response is recorded in the context's ledger before
the response is validated, so it is released even if validation fails.

Logger: ``wfs_ets.locking``
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from wfs_ets._xml import qn
from wfs_ets.builder import (
    ActionKind,
    QueryExpression,
    RequestParams,
    StoredQueryInvocation,
    TransactionAction,
)
from wfs_ets.capabilities import TypeName
from wfs_ets.errors import (
    PreconditionNotMet,
    SemanticAssertionFailure,
    ServiceException,
    StructuralValidationFailure,
)
from wfs_ets.ledger import ResourceKind
from wfs_ets.protocol import (
    QRY_GET_FEATURE_BY_ID,
    Binding,
    ExceptionCode,
    LockAction,
    Operation,
    ReleaseAction,
    ResultType,
)
from wfs_ets.validate import feature_ids

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext
    from wfs_ets.dispatch import ResponseRecord

__all__ = ["Lock", "LockLifecycleModel", "LockOutcome", "LockState"]

_logger = logging.getLogger("wfs_ets.locking")


class LockState(StrEnum):
    """Lifecycle states of a lock."""

    REQUESTED = "REQUESTED"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    RELEASED = "RELEASED"


_TRANSITIONS: dict[LockState, frozenset[LockState]] = {
    LockState.REQUESTED: frozenset({LockState.ACTIVE}),
    LockState.ACTIVE: frozenset({LockState.ACTIVE, LockState.EXPIRED, LockState.RELEASED}),
    LockState.EXPIRED: frozenset(),
    LockState.RELEASED: frozenset(),
}


@dataclass
class Lock:
    """A lock obtained from the service.

    Attributes:
        lock_id: Service-assigned identifier.
        type_names: Feature types the lock request targeted.
        resources: Identifiers of the features the lock covers.
        action: Lock action used to acquire it.
        expiry: Current expiry duration in seconds.
        acquired_at: Clock time of acquisition or the latest renewal.
        state: Current lifecycle state.
        renewals: Number of successful renewals.

    """

    lock_id: str
    type_names: tuple[TypeName, ...]
    resources: frozenset[str]
    action: LockAction
    expiry: int
    acquired_at: float
    state: LockState = LockState.REQUESTED
    renewals: int = 0

    @property
    def expires_at(self) -> float:
        """Clock time at which the lock expires without renewal."""
        return self.acquired_at + self.expiry

    def remaining(self, now: float) -> float:
        """Seconds until expiry (negative once expired)."""
        return self.expires_at - now

    def transition(self, new: LockState) -> None:
        """Move to *new*, enforcing forward-only transitions.

        Raises:
            ValueError: If the transition is not allowed.

        """
        if new not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal lock transition {self.state} -> {new} for {self.lock_id}")
        _logger.debug("Lock %s: %s -> %s", self.lock_id, self.state, new, extra={"lock_id": self.lock_id})
        self.state = new


@dataclass(frozen=True)
class LockOutcome:
    """Result of a successful acquisition.

    Attributes:
        lock: The new lock (ACTIVE).
        response: The service response.
        locked: Identifiers the service reported as locked.
        not_locked: Identifiers the service reported as not locked.

    """

    lock: Lock
    response: ResponseRecord
    locked: frozenset[str] = field(default_factory=frozenset)
    not_locked: frozenset[str] = field(default_factory=frozenset)


def _resource_ids(parent: ET.Element | None) -> frozenset[str]:
    if parent is None:
        return frozenset()
    return frozenset(rid for rid in (r.get("rid") for r in parent.iter(qn("fes", "ResourceId"))) if rid)


class LockLifecycleModel:
    """Drives and models the locks of one check.

    Args:
        ctx: Verification context (its ledger receives every lock id).

    """

    def __init__(self, ctx: VerificationContext) -> None:
        """Initialize with no locks."""
        self.ctx = ctx
        self._locks: dict[str, Lock] = {}

    # -- model queries -------------------------------------------------------

    @property
    def locks(self) -> list[Lock]:
        """All locks obtained so far, after refreshing expiry."""
        self.refresh()
        return list(self._locks.values())

    def refresh(self) -> None:
        """Expire ACTIVE locks whose expiry has passed on the clock.

        The ledger entry stays pending: only the service can confirm the lock
        is gone, so teardown still sends the release.
        """
        now = self.ctx.clock.now()
        for lock in self._locks.values():
            if lock.state is LockState.ACTIVE and now > lock.expires_at:
                lock.transition(LockState.EXPIRED)
                _logger.info("Lock %s expired", lock.lock_id, extra={"lock_id": lock.lock_id})

    def active_locks(self) -> list[Lock]:
        """Locks currently ACTIVE."""
        return [lock for lock in self.locks if lock.state is LockState.ACTIVE]

    def locked_resources(self) -> frozenset[str]:
        """Identifiers covered by ACTIVE locks."""
        covered: set[str] = set()
        for lock in self.active_locks():
            covered |= lock.resources
        return frozenset(covered)

    def conflicts(self, type_name: TypeName, resources: frozenset[str] | None) -> frozenset[str]:
        """Identifiers of *resources* already covered by an ACTIVE lock.

        With ``resources=None`` (every instance of *type_name*), every
        identifier locked under that type conflicts.
        """
        conflicting: set[str] = set()
        for lock in self.active_locks():
            if resources is None:
                if type_name in lock.type_names:
                    conflicting |= lock.resources
            else:
                conflicting |= lock.resources & resources
        return frozenset(conflicting)

    # -- acquisition ---------------------------------------------------------

    def acquire(
        self,
        type_name: TypeName,
        resources: Iterable[str] | None = None,
        *,
        action: LockAction = LockAction.ALL,
        expiry: int | None = None,
        binding: Binding = Binding.ANY,
        with_features: bool = False,
        result_type: ResultType | None = None,
        by_stored_query: bool = False,
    ) -> LockOutcome:
        """Request a lock on *resources* (or every instance of *type_name*).

        Args:
            type_name: Feature type to lock.
            resources: Feature identifiers; ``None`` locks the whole type.
            action: ``ALL`` or ``SOME``.
            expiry: Lock duration in seconds (defaults to the configured one).
            binding: Binding to send the request over.
            with_features: Use ``GetFeatureWithLock`` instead of ``LockFeature``.
            result_type: ``resultType`` for ``GetFeatureWithLock``.
            by_stored_query: Select a single feature through the
                ``GetFeatureById`` stored query instead of an ad hoc query.

        Returns:
            The outcome with the new ACTIVE lock.

        Raises:
            ServiceException: If the service rejected the request.
            SemanticAssertionFailure: If the service granted a lock it must
                refuse, or the locked set violates mutual exclusion.
            StructuralValidationFailure: If the response is malformed.

        """
        requested = frozenset(resources) if resources is not None else None
        expiry = self.ctx.config.lock_expiry if expiry is None else expiry
        self.refresh()
        predicted = self.conflicts(type_name, requested)
        query: QueryExpression | StoredQueryInvocation
        if by_stored_query:
            if requested is None or len(requested) != 1:
                raise ValueError("by_stored_query needs exactly one resource id")
            query = StoredQueryInvocation(QRY_GET_FEATURE_BY_ID, {"id": next(iter(requested))})
        else:
            query = QueryExpression(type_names=(type_name,), resource_ids=tuple(sorted(requested or ())))
        operation = Operation.GET_FEATURE_WITH_LOCK if with_features else Operation.LOCK_FEATURE
        params = RequestParams(queries=(query,), expiry=expiry, lock_action=action, result_type=result_type)
        record = self.ctx.send(operation, params, binding)
        lock_id = self._record_lock_id(record)
        if not record.ok:
            _logger.debug("Lock request rejected: %s", record.exception_code)
            raise ServiceException(record)
        if with_features and result_type is ResultType.HITS:
            raise SemanticAssertionFailure(
                "GetFeatureWithLock with resultType=hits was accepted",
                expected=(ExceptionCode.INVALID_PARAMETER_VALUE.status, str(ExceptionCode.INVALID_PARAMETER_VALUE)),
                actual=(record.status, lock_id),
            )
        if action is LockAction.ALL and predicted:
            raise SemanticAssertionFailure(
                "Lock with lockAction=ALL granted over features already locked",
                expected=str(ExceptionCode.CANNOT_LOCK_ALL_FEATURES),
                actual=sorted(predicted),
            )
        locked, not_locked = self._parse_lock_response(record, operation, action, requested, predicted)
        if not lock_id:
            raise StructuralValidationFailure("Lock response has no lockId", expected="@lockId", actual=None)
        overlap = locked & self.locked_resources()
        if overlap:
            raise SemanticAssertionFailure(
                "Features locked by two active locks", expected=[], actual=sorted(overlap)
            )
        if requested is not None and action is LockAction.ALL and not requested <= locked:
            raise SemanticAssertionFailure(
                "lockAction=ALL did not lock every requested feature",
                expected=sorted(requested),
                actual=sorted(locked),
            )
        lock = Lock(
            lock_id=lock_id,
            type_names=(type_name,),
            resources=locked,
            action=action,
            expiry=expiry,
            acquired_at=self.ctx.clock.now(),
        )
        lock.transition(LockState.ACTIVE)
        self._locks[lock_id] = lock
        _logger.info(
            "Acquired lock %s on %d feature(s) of %s",
            lock_id,
            len(locked),
            type_name.prefixed(),
            extra={"lock_id": lock_id, "lock_action": str(action), "expiry": expiry},
        )
        return LockOutcome(lock=lock, response=record, locked=locked, not_locked=not_locked)

    def _record_lock_id(self, record: ResponseRecord) -> str | None:
        lock_id = record.root.get("lockId") if record.root is not None else None
        if lock_id:
            self.ctx.ledger.record(ResourceKind.LOCK, lock_id)
        return lock_id

    def _parse_lock_response(
        self,
        record: ResponseRecord,
        operation: Operation,
        action: LockAction,
        requested: frozenset[str] | None,
        predicted: frozenset[str],
    ) -> tuple[frozenset[str], frozenset[str]]:
        validator = self.ctx.validator
        root = validator.assert_structure(record, operation.response_element, ("lockId",))
        if operation is Operation.GET_FEATURE_WITH_LOCK:
            locked = frozenset(feature_ids(root))
            not_locked: frozenset[str] = frozenset()
        else:
            locked_elem = root.find(qn("wfs", "FeaturesLocked"))
            not_locked_elem = root.find(qn("wfs", "FeaturesNotLocked"))
            locked = _resource_ids(locked_elem)
            not_locked = _resource_ids(not_locked_elem)
            expect_some = requested is None or bool(requested - predicted)
            if expect_some and not locked:
                raise StructuralValidationFailure(
                    "LockFeatureResponse has no locked features",
                    expected="non-empty wfs:FeaturesLocked",
                    actual="absent" if locked_elem is None else "empty",
                )
            if action is LockAction.ALL and not_locked_elem is not None:
                raise StructuralValidationFailure(
                    "wfs:FeaturesNotLocked present in a lockAction=ALL response",
                    expected="absent",
                    actual=sorted(not_locked),
                )
        if action is LockAction.SOME and locked & predicted:
            raise SemanticAssertionFailure(
                "lockAction=SOME response includes features locked by another lock",
                expected=sorted(locked - predicted),
                actual=sorted(locked),
            )
        return locked, not_locked

    # -- renewal -------------------------------------------------------------

    def renew(self, lock: Lock, expiry: int | None = None, binding: Binding = Binding.ANY) -> ResponseRecord:
        """Reset the expiry of *lock* with a ``LockFeature`` carrying only its lockId.

        For an ACTIVE lock the renewal must succeed and keep the id. For an
        EXPIRED or RELEASED lock the service must answer ``LockHasExpired``.

        Raises:
            ServiceException: If the service rejected the renewal.
            SemanticAssertionFailure: If an expired or released lock was renewed,
                or the renewal changed the lock id.

        """
        self.refresh()
        expiry = lock.expiry if expiry is None else expiry
        record = self.renew_id(lock.lock_id, expiry, binding, known_dead=lock.state is not LockState.ACTIVE)
        returned = record.root.get("lockId") if record.root is not None else None
        if returned and returned != lock.lock_id:
            self.ctx.ledger.record(ResourceKind.LOCK, returned)
            raise SemanticAssertionFailure("Renewal changed the lock id", expected=lock.lock_id, actual=returned)
        lock.transition(LockState.ACTIVE)
        lock.acquired_at = self.ctx.clock.now()
        lock.expiry = expiry
        lock.renewals += 1
        _logger.info("Renewed lock %s for %ds", lock.lock_id, expiry, extra={"lock_id": lock.lock_id})
        return record

    def renew_id(
        self, lock_id: str, expiry: int | None = None, binding: Binding = Binding.ANY, *, known_dead: bool = True
    ) -> ResponseRecord:
        """Send a renewal for a raw *lock_id*.

        Args:
            lock_id: Lock identifier to present.
            expiry: New expiry in seconds.
            binding: Binding to send the request over.
            known_dead: Whether the id is known to be expired, released or
                never issued, so that acceptance is a violation.

        Raises:
            ServiceException: If the service rejected the renewal.
            SemanticAssertionFailure: If *known_dead* and the service accepted it.

        """
        params = RequestParams(lock_id=lock_id, expiry=self.ctx.config.lock_expiry if expiry is None else expiry)
        record = self.ctx.send(Operation.LOCK_FEATURE, params, binding)
        if not record.ok:
            raise ServiceException(record)
        if known_dead:
            self.ctx.ledger.record(ResourceKind.LOCK, lock_id)
            raise SemanticAssertionFailure(
                f"Service accepted lock id {lock_id!r} that is not active",
                expected=(ExceptionCode.LOCK_HAS_EXPIRED.status, str(ExceptionCode.LOCK_HAS_EXPIRED)),
                actual=record.status,
            )
        return record

    # -- expiry --------------------------------------------------------------

    def wait_for_expiry(self, lock: Lock) -> None:
        """Block until *lock* has expired (plus the configured buffer).

        Raises:
            PreconditionNotMet: If the wait would exceed ``max_lock_wait``.
            RunCancelled: If the run timeout cancelled the wait.

        """
        self.refresh()
        if lock.state is not LockState.ACTIVE:
            return
        wait = lock.remaining(self.ctx.clock.now()) + self.ctx.config.expiry_buffer
        if wait > self.ctx.config.max_lock_wait:
            raise PreconditionNotMet(
                "Lock expiry wait exceeds the configured limit",
                expected=f"<= {self.ctx.config.max_lock_wait}s",
                actual=f"{wait:.1f}s",
            )
        _logger.info("Waiting %.1fs for lock %s to expire", wait, lock.lock_id, extra={"lock_id": lock.lock_id})
        self.ctx.clock.sleep(wait)
        self.refresh()

    # -- release -------------------------------------------------------------

    def release(self, lock: Lock) -> ResponseRecord | None:
        """Release *lock* with ``Transaction releaseAction=ALL``.

        A lock that is not ACTIVE is left alone and ``None`` is returned.

        Raises:
            ServiceException: If the service rejected the release.

        """
        self.refresh()
        if lock.state is not LockState.ACTIVE:
            _logger.debug("Lock %s already %s; release is a no-op", lock.lock_id, lock.state)
            return None
        params = RequestParams(lock_id=lock.lock_id, release_action=ReleaseAction.ALL)
        record = self.ctx.send(Operation.TRANSACTION, params, check_schema=False)
        if record.exception_code == ExceptionCode.LOCK_HAS_EXPIRED:
            lock.transition(LockState.EXPIRED)
            self.ctx.ledger.mark_released(ResourceKind.LOCK, lock.lock_id)
            _logger.warning(
                "Lock %s expired on the service before its expiry time", lock.lock_id, extra={"lock_id": lock.lock_id}
            )
            return record
        if not record.ok:
            _logger.warning(
                "Release of lock %s failed: HTTP %d",
                lock.lock_id,
                record.status,
                extra={"lock_id": lock.lock_id, "status": record.status},
            )
            raise ServiceException(record)
        lock.transition(LockState.RELEASED)
        self.ctx.ledger.mark_released(ResourceKind.LOCK, lock.lock_id)
        _logger.info("Released lock %s", lock.lock_id, extra={"lock_id": lock.lock_id})
        return record

    # -- invalid use ---------------------------------------------------------

    def submit_composite(self, lock_id: str, query: QueryExpression | StoredQueryInvocation) -> ResponseRecord:
        """Send a ``LockFeature`` carrying both *lock_id* and a fresh *query*.

        The model never acquires with such a request; this only checks that
        the service rejects it (``OperationParsingFailed``).

        Raises:
            ServiceException: If the service rejected the request.
            SemanticAssertionFailure: If the service accepted it.

        """
        params = RequestParams(queries=(query,), lock_id=lock_id, expiry=self.ctx.config.lock_expiry)
        record = self.ctx.send(Operation.LOCK_FEATURE, params)
        returned = self._record_lock_id(record)
        if not record.ok:
            raise ServiceException(record)
        raise SemanticAssertionFailure(
            "LockFeature with both lockId and a query was accepted",
            expected=(ExceptionCode.OPERATION_PARSING_FAILED.status, str(ExceptionCode.OPERATION_PARSING_FAILED)),
            actual=(record.status, returned),
        )

    def attempt_unlocked_delete(self, lock: Lock, resource_id: str, type_name: TypeName | None = None) -> ResponseRecord:
        """Try to delete a feature covered by *lock* without presenting its id.

        Raises:
            ServiceException: If the service rejected the deletion.
            SemanticAssertionFailure: If the locked feature was deleted.

        """
        if resource_id not in lock.resources:
            raise ValueError(f"{resource_id} is not covered by lock {lock.lock_id}")
        action = TransactionAction(
            ActionKind.DELETE, type_name or lock.type_names[0], resource_ids=(resource_id,)
        )
        record = self.ctx.send(Operation.TRANSACTION, RequestParams(actions=(action,)))
        if not record.ok:
            raise ServiceException(record)
        raise SemanticAssertionFailure(
            "Locked feature deleted without its lockId",
            expected=str(ExceptionCode.MISSING_PARAMETER_VALUE),
            actual=(record.status, resource_id),
        )
