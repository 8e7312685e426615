# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for wfs_ets.locking: the lock lifecycle model against the reference service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from wfs_ets.builder import QueryExpression
from wfs_ets.capabilities import TypeName
from wfs_ets.config import VerifierConfig
from wfs_ets.errors import PreconditionNotMet, SemanticAssertionFailure, ServiceException
from wfs_ets.ledger import ResourceKind
from wfs_ets.locking import Lock, LockLifecycleModel, LockState
from wfs_ets.protocol import Binding, ExceptionCode, LockAction, ResultType
from wfs_ets.reference import REFERENCE_NS, Faults

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext

    from tests.conftest import ContextFactory

ROAD = TypeName(REFERENCE_NS, "Road", "tns")
BUILDING = TypeName(REFERENCE_NS, "Building", "tns")
ALL_ROADS = frozenset(f"road.{n}" for n in range(1, 6))


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestLockState:
    """Transitions of a single lock."""

    def _lock(self) -> Lock:
        return Lock("lock-1", (ROAD,), frozenset({"road.1"}), LockAction.ALL, expiry=10, acquired_at=100.0)

    def test_forward_transitions(self) -> None:
        """REQUESTED -> ACTIVE -> ACTIVE -> RELEASED."""
        lock = self._lock()
        lock.transition(LockState.ACTIVE)
        lock.transition(LockState.ACTIVE)
        lock.transition(LockState.RELEASED)
        assert lock.state is LockState.RELEASED

    @pytest.mark.parametrize("terminal", [LockState.EXPIRED, LockState.RELEASED])
    def test_terminal_states(self, terminal: LockState) -> None:
        """Nothing leaves EXPIRED or RELEASED."""
        lock = self._lock()
        lock.transition(LockState.ACTIVE)
        lock.transition(terminal)
        with pytest.raises(ValueError, match="Illegal lock transition"):
            lock.transition(LockState.ACTIVE)

    def test_requested_cannot_expire(self) -> None:
        """A lock that was never granted cannot expire."""
        with pytest.raises(ValueError):
            self._lock().transition(LockState.EXPIRED)

    def test_expiry_arithmetic(self) -> None:
        """expires_at and remaining follow acquired_at + expiry."""
        lock = self._lock()
        assert lock.expires_at == 110.0
        assert lock.remaining(104.0) == 6.0


# ---------------------------------------------------------------------------
# Acquisition
# ---------------------------------------------------------------------------


class TestAcquire:
    """LockFeature and GetFeatureWithLock."""

    def test_lock_whole_type(self, ctx: VerificationContext) -> None:
        """Locking a type covers every instance and records the lock id."""
        model = LockLifecycleModel(ctx)
        outcome = model.acquire(ROAD)
        assert outcome.locked == ALL_ROADS
        assert outcome.not_locked == frozenset()
        assert outcome.lock.state is LockState.ACTIVE
        assert outcome.lock.expiry == ctx.config.lock_expiry
        assert (ResourceKind.LOCK, outcome.lock.lock_id) in ctx.ledger
        assert model.locked_resources() == ALL_ROADS

    @pytest.mark.parametrize("binding", [Binding.GET, Binding.POST, Binding.SOAP])
    def test_each_binding(self, ctx: VerificationContext, binding: Binding) -> None:
        """Acquisition works over every advertised binding."""
        outcome = LockLifecycleModel(ctx).acquire(BUILDING, ["building.2"], binding=binding)
        assert outcome.locked == {"building.2"}
        assert outcome.response.binding is binding

    def test_all_over_locked_features_is_refused(self, ctx: VerificationContext) -> None:
        """An ALL request overlapping an active lock is rejected."""
        model = LockLifecycleModel(ctx)
        model.acquire(ROAD, ["road.1"])
        with ctx.validator.expect_exception(ExceptionCode.CANNOT_LOCK_ALL_FEATURES) as expected:
            model.acquire(ROAD, ["road.1", "road.2"])
        assert expected.response is not None
        assert len(model.active_locks()) == 1

    def test_some_excludes_locked_features(self, ctx: VerificationContext) -> None:
        """A SOME request locks only what is free and reports the rest."""
        model = LockLifecycleModel(ctx)
        model.acquire(ROAD, ["road.1", "road.2"])
        outcome = model.acquire(ROAD, action=LockAction.SOME)
        assert outcome.locked == ALL_ROADS - {"road.1", "road.2"}
        assert outcome.not_locked == {"road.1", "road.2"}
        assert model.locked_resources() == ALL_ROADS

    def test_double_lock_is_detected(self, make_ctx: ContextFactory) -> None:
        """A service granting overlapping ALL locks fails mutual exclusion."""
        ctx = make_ctx(faults=Faults(allow_double_lock=True))
        model = LockLifecycleModel(ctx)
        model.acquire(ROAD, ["road.1"])
        with pytest.raises(SemanticAssertionFailure, match="already locked"):
            model.acquire(ROAD, ["road.1"])
        # The second lock id is still tracked for release.
        assert len(ctx.ledger.pending(ResourceKind.LOCK)) == 2

    def test_get_feature_with_lock(self, ctx: VerificationContext) -> None:
        """Returned features are the locked ones."""
        outcome = LockLifecycleModel(ctx).acquire(BUILDING, with_features=True)
        assert outcome.locked == {"building.1", "building.2", "building.3"}
        assert outcome.response.root is not None
        assert outcome.response.root.get("lockId") == outcome.lock.lock_id

    def test_get_feature_with_lock_hits(self, ctx: VerificationContext) -> None:
        """resultType=hits is rejected for GetFeatureWithLock."""
        model = LockLifecycleModel(ctx)
        with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="resultType"):
            model.acquire(ROAD, with_features=True, result_type=ResultType.HITS)
        assert model.locks == []

    def test_by_stored_query(self, ctx: VerificationContext) -> None:
        """A single feature can be locked through GetFeatureById."""
        outcome = LockLifecycleModel(ctx).acquire(ROAD, ["road.3"], by_stored_query=True)
        assert outcome.locked == {"road.3"}

    def test_by_stored_query_needs_one_id(self, ctx: VerificationContext) -> None:
        """The stored query selects exactly one feature."""
        with pytest.raises(ValueError):
            LockLifecycleModel(ctx).acquire(ROAD, ["road.1", "road.2"], by_stored_query=True)


# ---------------------------------------------------------------------------
# Renewal, expiry and release
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Renewal, expiry and release."""

    def test_renew_active_lock(self, ctx: VerificationContext) -> None:
        """Renewal keeps the id and restarts the expiry."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.4"], expiry=30).lock
        ctx.clock.sleep(20)
        model.renew(lock, expiry=30)
        assert lock.renewals == 1
        assert lock.acquired_at == ctx.clock.now()
        ctx.clock.sleep(20)
        assert model.active_locks() == [lock]

    def test_expiry(self, ctx: VerificationContext) -> None:
        """After the wait the lock is EXPIRED and renewal is refused."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.5"], expiry=ctx.config.expiry_probe).lock
        model.wait_for_expiry(lock)
        assert lock.state is LockState.EXPIRED
        assert ctx.ledger.pending(ResourceKind.LOCK) == [lock.lock_id]
        with ctx.validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED, locator="lockId"):
            model.renew(lock)
        assert lock.state is LockState.EXPIRED
        # The service already forgot it, so teardown reports no leak.
        assert ctx.ledger.release_all() == []
        assert ctx.ledger.pending() == []

    def test_ignored_expiry_is_detected(self, make_ctx: ContextFactory) -> None:
        """A service that renews an expired lock fails."""
        ctx = make_ctx(faults=Faults(ignore_expiry=True))
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.5"], expiry=ctx.config.expiry_probe).lock
        model.wait_for_expiry(lock)
        with pytest.raises(SemanticAssertionFailure, match="not active"):
            model.renew(lock)
        assert ctx.ledger.pending(ResourceKind.LOCK) == [lock.lock_id]
        assert ctx.ledger.release_all() == []
        # Teardown released the lock the service kept alive.
        assert LockLifecycleModel(ctx).acquire(ROAD, ["road.5"]).locked == {"road.5"}

    def test_wait_limit(self, make_ctx: ContextFactory) -> None:
        """A wait longer than max_lock_wait is a precondition failure."""
        ctx = make_ctx(config=VerifierConfig(max_lock_wait=3.0))
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.5"], expiry=5).lock
        before = ctx.clock.now()
        with pytest.raises(PreconditionNotMet):
            model.wait_for_expiry(lock)
        assert ctx.clock.now() == before
        assert lock.state is LockState.ACTIVE

    def test_release(self, ctx: VerificationContext) -> None:
        """Release frees the features and is a no-op the second time."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.1"]).lock
        assert model.release(lock) is not None
        assert lock.state is LockState.RELEASED
        assert ctx.ledger.pending() == []
        assert model.release(lock) is None
        # The feature can be locked again.
        assert model.acquire(ROAD, ["road.1"]).locked == {"road.1"}

    def test_renew_released_lock(self, ctx: VerificationContext) -> None:
        """A released lock id is refused with LockHasExpired."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.2"]).lock
        model.release(lock)
        with ctx.validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED):
            model.renew(lock)

    def test_unknown_lock_id(self, ctx: VerificationContext) -> None:
        """A lock id that was never issued is refused."""
        with ctx.validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED):
            LockLifecycleModel(ctx).renew_id(f"lock-{ctx.selector.token()}")


# ---------------------------------------------------------------------------
# Invalid use
# ---------------------------------------------------------------------------


class TestInvalidUse:
    """Requests the service must reject."""

    def test_composite_request(self, ctx: VerificationContext) -> None:
        """lockId with a query is a parsing failure."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.1"]).lock
        with ctx.validator.expect_exception(ExceptionCode.OPERATION_PARSING_FAILED):
            model.submit_composite(lock.lock_id, QueryExpression(type_names=(ROAD,), resource_ids=("road.2",)))

    def test_composite_accepted(self, make_ctx: ContextFactory) -> None:
        """A service accepting the composite request fails."""
        ctx = make_ctx(faults=Faults(accept_composite_lock=True))
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.1"]).lock
        with pytest.raises(SemanticAssertionFailure):
            model.submit_composite(lock.lock_id, QueryExpression(type_names=(ROAD,), resource_ids=("road.2",)))
        assert len(ctx.ledger.pending(ResourceKind.LOCK)) == 2

    def test_delete_without_lock_id(self, ctx: VerificationContext) -> None:
        """Deleting a locked feature without its lock id is refused."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.3"]).lock
        with ctx.validator.expect_exception(ExceptionCode.MISSING_PARAMETER_VALUE, locator="lockId"):
            model.attempt_unlocked_delete(lock, "road.3")

    def test_delete_uncovered_feature(self, ctx: VerificationContext) -> None:
        """The composite request only targets features the lock covers."""
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.3"]).lock
        with pytest.raises(ValueError):
            model.attempt_unlocked_delete(lock, "road.4")

    def test_delete_locked_accepted(self, make_ctx: ContextFactory) -> None:
        """A service deleting a locked feature fails."""
        ctx = make_ctx(faults=Faults(delete_locked=True))
        model = LockLifecycleModel(ctx)
        lock = model.acquire(ROAD, ["road.3"]).lock
        with pytest.raises(SemanticAssertionFailure, match="deleted"):
            model.attempt_unlocked_delete(lock, "road.3")


class TestCleanup:
    """Locks are released through the ledger."""

    def test_ledger_releases_held_locks(self, ctx: VerificationContext) -> None:
        """Locks left active are released when the ledger is drained."""
        model = LockLifecycleModel(ctx)
        model.acquire(ROAD, ["road.1"])
        model.acquire(BUILDING)
        assert ctx.ledger.release_all() == []
        # Everything is free again on the service.
        assert LockLifecycleModel(ctx).acquire(ROAD).locked == ALL_ROADS
