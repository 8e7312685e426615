# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Locking checks: acquisition, mutual exclusion, expiry, renewal and release."""

from __future__ import annotations

from wfs_ets.builder import QueryExpression
from wfs_ets.conformance._runner import _conformance_test
from wfs_ets.conformance._support import instantiated_type, pick_ids, require_subset
from wfs_ets.context import VerificationContext
from wfs_ets.errors import SemanticAssertionFailure
from wfs_ets.locking import LockLifecycleModel, LockState
from wfs_ets.protocol import ConformanceClass, ExceptionCode, LockAction, Operation, ResultType

_LOCKING = (ConformanceClass.LOCKING_WFS, Operation.LOCK_FEATURE)


@_conformance_test(category="locking", name="lock_all_instances", requires=_LOCKING)
def _lock_all_instances(ctx: VerificationContext) -> None:
    """Lock every instance of a type; the response lists the sampled features."""
    type_name = instantiated_type(ctx)
    model = LockLifecycleModel(ctx)
    outcome = model.acquire(type_name)
    require_subset("Not every sampled feature was locked", frozenset(ctx.samples.ids(type_name)), outcome.locked)


@_conformance_test(
    category="locking", name="lock_each_binding", requires=(*_LOCKING, Operation.TRANSACTION)
)
def _lock_each_binding(ctx: VerificationContext) -> None:
    """Lock and release one feature over every binding advertised for LockFeature."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    for binding in sorted(ctx.capabilities.bindings(Operation.LOCK_FEATURE), key=lambda b: b.value):
        outcome = model.acquire(type_name, [fid], binding=binding, by_stored_query=True)
        require_subset(f"Feature not locked over {binding.value}", {fid}, outcome.locked)
        model.release(outcome.lock)


@_conformance_test(category="locking", name="already_locked", requires=_LOCKING)
def _already_locked(ctx: VerificationContext) -> None:
    """A second lockAction=ALL lock over a locked feature fails with CannotLockAllFeatures."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    model.acquire(type_name, [fid], by_stored_query=True)
    with ctx.validator.expect_exception(ExceptionCode.CANNOT_LOCK_ALL_FEATURES):
        model.acquire(type_name, [fid], by_stored_query=True)


@_conformance_test(category="locking", name="lock_some_excludes_locked", requires=_LOCKING)
def _lock_some_excludes_locked(ctx: VerificationContext) -> None:
    """A lockAction=SOME lock succeeds and leaves out features held by another lock."""
    type_name = instantiated_type(ctx, 2)
    held, free = pick_ids(ctx, type_name, 2)
    model = LockLifecycleModel(ctx)
    model.acquire(type_name, [held])
    outcome = model.acquire(type_name, [held, free], action=LockAction.SOME)
    if held in outcome.locked:
        raise SemanticAssertionFailure(
            "lockAction=SOME locked a feature held by another lock", expected=[free], actual=sorted(outcome.locked)
        )
    require_subset("lockAction=SOME did not lock the free feature", {free}, outcome.locked)


@_conformance_test(category="locking", name="lock_expiry", requires=_LOCKING)
def _lock_expiry(ctx: VerificationContext) -> None:
    """Once a lock has expired, renewing it fails with LockHasExpired."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    lock = model.acquire(type_name, [fid], expiry=ctx.config.expiry_probe, by_stored_query=True).lock
    model.wait_for_expiry(lock)
    with ctx.validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED):
        model.renew(lock)


@_conformance_test(category="locking", name="reset_unknown_lock", requires=_LOCKING)
def _reset_unknown_lock(ctx: VerificationContext) -> None:
    """Renewing a lock id the service never issued fails with LockHasExpired."""
    model = LockLifecycleModel(ctx)
    with ctx.validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED):
        model.renew_id(f"lock-{ctx.selector.token()}")


@_conformance_test(category="locking", name="renew_active_lock", requires=_LOCKING)
def _renew_active_lock(ctx: VerificationContext) -> None:
    """Renewing an active lock succeeds and keeps its id."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    lock = model.acquire(type_name, [fid], by_stored_query=True).lock
    model.renew(lock)
    assert lock.state is LockState.ACTIVE and lock.renewals == 1, f"lock {lock.lock_id} not renewed"


@_conformance_test(
    category="locking", name="renew_released_lock", requires=(*_LOCKING, Operation.TRANSACTION)
)
def _renew_released_lock(ctx: VerificationContext) -> None:
    """A released lock cannot be renewed."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    lock = model.acquire(type_name, [fid], by_stored_query=True).lock
    model.release(lock)
    with ctx.validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED):
        model.renew(lock)


@_conformance_test(category="locking", name="lock_id_with_query", requires=_LOCKING)
def _lock_id_with_query(ctx: VerificationContext) -> None:
    """LockFeature carrying both a lockId and a query fails with OperationParsingFailed."""
    type_name = instantiated_type(ctx, 2)
    locked_fid, other_fid = pick_ids(ctx, type_name, 2)
    model = LockLifecycleModel(ctx)
    lock = model.acquire(type_name, [locked_fid], by_stored_query=True).lock
    with ctx.validator.expect_exception(ExceptionCode.OPERATION_PARSING_FAILED):
        model.submit_composite(lock.lock_id, QueryExpression(type_names=(type_name,), resource_ids=(other_fid,)))


@_conformance_test(
    category="locking",
    name="delete_locked_without_lock_id",
    requires=(*_LOCKING, ConformanceClass.TRANSACTIONAL_WFS, Operation.TRANSACTION),
)
def _delete_locked_without_lock_id(ctx: VerificationContext) -> None:
    """Deleting a locked feature without presenting the lock id is rejected."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    lock = model.acquire(type_name, [fid], by_stored_query=True).lock
    with ctx.validator.expect_exception(ExceptionCode.MISSING_PARAMETER_VALUE):
        model.attempt_unlocked_delete(lock, fid)


@_conformance_test(
    category="locking", name="get_feature_with_lock", requires=(*_LOCKING, Operation.GET_FEATURE_WITH_LOCK)
)
def _get_feature_with_lock(ctx: VerificationContext) -> None:
    """GetFeatureWithLock returns the selected features and locks them."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    outcome = model.acquire(type_name, [fid], with_features=True)
    require_subset("GetFeatureWithLock did not return the requested feature", {fid}, outcome.locked)
    with ctx.validator.expect_exception(ExceptionCode.CANNOT_LOCK_ALL_FEATURES):
        model.acquire(type_name, [fid])


@_conformance_test(
    category="locking", name="get_feature_with_lock_hits", requires=(*_LOCKING, Operation.GET_FEATURE_WITH_LOCK)
)
def _get_feature_with_lock_hits(ctx: VerificationContext) -> None:
    """GetFeatureWithLock with resultType=hits fails with InvalidParameterValue."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    model = LockLifecycleModel(ctx)
    with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE):
        model.acquire(type_name, [fid], with_features=True, result_type=ResultType.HITS)
