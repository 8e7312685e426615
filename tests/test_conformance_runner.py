# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the conformance check runner."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from wfs_ets.clock import SimulatedClock, SystemClock
from wfs_ets.config import VerifierConfig
from wfs_ets.conformance import (
    ConformanceResult,
    Outcome,
    list_conformance_tests,
    run_conformance,
    run_verification,
)
from wfs_ets.conformance._runner import _ConformanceTest, _run_one, _run_with_timeout, _TestTimeoutError
from wfs_ets.errors import RunCancelled
from wfs_ets.ledger import ResourceKind
from wfs_ets.locking import LockLifecycleModel
from wfs_ets.protocol import ConformanceClass
from wfs_ets.reference import Faults

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext

    from tests.conftest import ContextFactory, ReferenceService


class TestRegistry:
    """Check names and filters."""

    def test_all_checks_registered(self) -> None:
        """Every category contributes its checks."""
        names = list_conformance_tests()
        assert len(names) == 22
        assert names == sorted(names)
        assert {n.split(".")[0] for n in names} == {"locking", "paging", "stored_queries"}

    def test_filter_by_category(self) -> None:
        """A bare category name selects the whole group."""
        assert list_conformance_tests(["paging"]) == [
            "paging.hits_first_page",
            "paging.round_trip",
            "paging.traverse_both_directions",
        ]

    def test_filter_by_glob(self) -> None:
        """Glob patterns match full names and combine as a union."""
        names = list_conformance_tests(["locking.renew_*", "stored_queries.drop_*"])
        assert names == [
            "locking.renew_active_lock",
            "locking.renew_released_lock",
            "stored_queries.drop_then_invoke",
            "stored_queries.drop_twice",
            "stored_queries.drop_unknown",
        ]


# ---------------------------------------------------------------------------
# Full runs against the reference service
# ---------------------------------------------------------------------------


class TestRunConformance:
    """Runs over an in-process service."""

    def test_full_suite_all_pass(self, ctx: VerificationContext) -> None:
        """All checks pass against a conforming service and nothing leaks."""
        suite = run_conformance(ctx)
        assert suite.success, f"Failed checks: {[(r.name, r.error) for r in suite.results if not r.passed]}"
        assert suite.total == 22
        assert suite.passed == suite.total
        assert suite.warnings == []
        assert ctx.ledger.pending() == []

    def test_progress_callback(self, ctx: VerificationContext) -> None:
        """The callback sees every result in order."""
        seen: list[ConformanceResult] = []
        suite = run_conformance(ctx, filter_patterns=["paging"], on_progress=seen.append)
        assert seen == suite.results
        assert [r.category for r in seen] == ["paging"] * 3

    def test_no_timeout(self, ctx: VerificationContext) -> None:
        """timeout=0 runs checks inline."""
        suite = run_conformance(ctx, filter_patterns=["stored_queries.create_*"], timeout=0)
        assert suite.passed == 2

    def test_results_are_logged(self, ctx: VerificationContext, caplog: pytest.LogCaptureFixture) -> None:
        """One INFO record per check carries the verdict as extra fields."""
        with caplog.at_level(logging.INFO, logger="wfs_ets.conformance"):
            run_conformance(ctx, filter_patterns=["locking.reset_unknown_lock"])
        records = [r for r in caplog.records if getattr(r, "check", None) == "locking.reset_unknown_lock"]
        assert len(records) == 1
        assert records[0].outcome == "PASSED"  # type: ignore[attr-defined]

    @pytest.mark.parametrize(
        ("faults", "check"),
        [
            (Faults(allow_double_lock=True), "locking.already_locked"),
            (Faults(ignore_expiry=True), "locking.lock_expiry"),
            (Faults(accept_composite_lock=True), "locking.lock_id_with_query"),
            (Faults(delete_locked=True), "locking.delete_locked_without_lock_id"),
            (Faults(skewed_previous=True), "paging.round_trip"),
            (Faults(accept_duplicate_queries=True), "stored_queries.duplicate_id"),
            (Faults(keep_dropped_queries=True), "stored_queries.drop_then_invoke"),
        ],
    )
    def test_fault_is_detected(self, make_ctx: ContextFactory, faults: Faults, check: str) -> None:
        """Each injected defect fails the check that targets it."""
        suite = run_conformance(make_ctx(faults=faults), filter_patterns=[check])
        (result,) = suite.results
        assert result.outcome is Outcome.FAILED
        assert result.error
        assert not suite.success

    def test_disabled_class_is_skipped(self, make_ctx: ContextFactory) -> None:
        """Checks for an unadvertised class are skipped and do not fail the run."""
        ctx = make_ctx(disabled=[ConformanceClass.MANAGE_STORED_QUERIES])
        suite = run_conformance(ctx, filter_patterns=["stored_queries"])
        assert suite.skipped == suite.total == 7
        assert suite.success
        assert all("ManageStoredQueries" in (r.error or "") for r in suite.results)

    def test_long_expiry_wait_is_skipped(self, make_ctx: ContextFactory) -> None:
        """An expiry wait beyond max_lock_wait skips the expiry check."""
        ctx = make_ctx(config=VerifierConfig(max_lock_wait=3))
        (result,) = run_conformance(ctx, filter_patterns=["locking.lock_expiry"]).results
        assert result.outcome is Outcome.SKIPPED
        assert ctx.ledger.pending() == []


# ---------------------------------------------------------------------------
# Per-check isolation
# ---------------------------------------------------------------------------


def _check(fn: object, name: str = "sample") -> _ConformanceTest:
    return _ConformanceTest(category="self", name=name, fn=fn)  # type: ignore[arg-type]


class TestRunOne:
    """Outcome mapping and teardown of a single check."""

    def test_unknown_resources_are_not_leaks(self, ctx: VerificationContext) -> None:
        """Resources the service never had count as released."""

        def leave_unknown(c: VerificationContext) -> None:
            c.ledger.record(ResourceKind.STORED_QUERY, "urn:example:never-created")
            c.ledger.record(ResourceKind.LOCK, "not-a-lock")

        result = _run_one(_check(leave_unknown), ctx.fork(), 0)
        assert result.outcome is Outcome.PASSED
        assert result.warnings == ()

    def test_leak_becomes_warning(self, make_ctx: ContextFactory) -> None:
        """A resource that cannot be released is reported on the result."""
        ctx = make_ctx(disabled=[ConformanceClass.MANAGE_STORED_QUERIES])

        def leave_query(c: VerificationContext) -> None:
            c.ledger.record(ResourceKind.STORED_QUERY, "urn:example:left")

        result = _run_one(_check(leave_query), ctx.fork(), 0)
        assert result.outcome is Outcome.PASSED
        (warning,) = result.warnings
        assert "urn:example:left" in warning

    def test_unexpected_exception_fails(self, ctx: VerificationContext) -> None:
        """Any other exception is a failure naming its type."""

        def boom(c: VerificationContext) -> None:
            raise KeyError("missing")

        result = _run_one(_check(boom), ctx.fork(), 0)
        assert result.outcome is Outcome.FAILED
        assert result.error == "KeyError: 'missing'"

    def test_bare_assertion(self, ctx: VerificationContext) -> None:
        """An AssertionError without a message still fails readably."""

        def bare(c: VerificationContext) -> None:
            raise AssertionError

        assert _run_one(_check(bare), ctx.fork(), 0).error == "Assertion failed"

    def test_timeout_cancels_wait(self, ctx: VerificationContext) -> None:
        """A check stuck in an expiry wait is cut off without cancelling the shared clock."""
        sys_ctx = replace(ctx.fork(), clock=SystemClock())

        def stuck(c: VerificationContext) -> None:
            c.clock.sleep(60)

        result = _run_one(_check(stuck), sys_ctx, 0.05)
        assert result.outcome is Outcome.FAILED
        assert result.error is not None
        assert "timeout" in result.error
        sys_ctx.clock.sleep(0.001)

    def test_late_resource_is_released(self, ctx: VerificationContext, monkeypatch: pytest.MonkeyPatch) -> None:
        """A resource recorded by an abandoned worker is released once the worker ends."""
        monkeypatch.setattr("wfs_ets.conformance._runner._CANCEL_GRACE", 0.01)
        check_ctx = ctx.fork()
        gate = threading.Event()

        def slow(c: VerificationContext) -> None:
            gate.wait(10)
            c.ledger.record(ResourceKind.LOCK, "lock-late")

        result = _run_one(_check(slow), check_ctx, 0.05)
        assert result.outcome is Outcome.FAILED
        assert result.error is not None
        assert "abandoned" in result.error
        assert check_ctx.ledger.pending() == []

        gate.set()
        deadline = time.monotonic() + 10
        while (ResourceKind.LOCK, "lock-late") not in check_ctx.ledger or check_ctx.ledger.pending():
            assert time.monotonic() < deadline, "late lock was never released"
            time.sleep(0.01)
        assert check_ctx.ledger.warnings == []
        ctx.clock.sleep(1)

    def test_expired_lock_is_released_at_teardown(self, make_ctx: ContextFactory) -> None:
        """A lock the service keeps past its expiry is released when the check ends."""
        ctx = make_ctx(faults=Faults(ignore_expiry=True))
        (result,) = run_conformance(ctx, filter_patterns=["locking.lock_expiry"]).results
        assert result.outcome is Outcome.FAILED
        assert result.warnings == ()
        model = LockLifecycleModel(ctx)
        for type_name in ctx.samples.instantiated():
            model.acquire(type_name)


class TestRunWithTimeout:
    """The worker-thread wrapper."""

    def test_returns_normally(self) -> None:
        """A fast function completes without error."""
        calls: list[int] = []
        _run_with_timeout(lambda: calls.append(1), 5, SimulatedClock())
        assert calls == [1]

    def test_reraises(self) -> None:
        """An exception in the worker propagates."""

        def fail() -> None:
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            _run_with_timeout(fail, 5, SimulatedClock())

    def test_cancels_clock(self) -> None:
        """On timeout the clock is cancelled so the worker's wait ends."""
        clock = SystemClock()
        cancelled: list[BaseException] = []

        def wait() -> None:
            try:
                clock.sleep(60)
            except RunCancelled as e:
                cancelled.append(e)
                raise

        with pytest.raises(_TestTimeoutError):
            _run_with_timeout(wait, 0.05, clock)
        assert len(cancelled) == 1

    def test_abandoned_worker_reports_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A worker that outlives the grace period calls on_abandoned when it ends."""
        monkeypatch.setattr("wfs_ets.conformance._runner._CANCEL_GRACE", 0.01)
        gate, done = threading.Event(), threading.Event()
        with pytest.raises(_TestTimeoutError) as info:
            _run_with_timeout(lambda: gate.wait(10), 0.05, SimulatedClock(), on_abandoned=done.set)
        assert info.value.abandoned
        assert not done.is_set()
        gate.set()
        assert done.wait(10)

    def test_prompt_unwind_is_not_abandoned(self) -> None:
        """A worker that stops within the grace period is not abandoned."""
        done = threading.Event()
        with pytest.raises(_TestTimeoutError) as info:
            _run_with_timeout(lambda: SystemClock().sleep(0.2), 0.05, SimulatedClock(), on_abandoned=done.set)
        assert not info.value.abandoned
        assert not done.is_set()


# ---------------------------------------------------------------------------
# run_verification
# ---------------------------------------------------------------------------


class TestRunVerification:
    """End to end from the capabilities URL."""

    def test_verify_reference_service(self, service: ReferenceService) -> None:
        """Capabilities, sampling and the selected checks run over the given client."""
        suite = run_verification(
            service.url,
            client=service.client,
            config=VerifierConfig(),
            clock=service.clock,
            seed=3,
            filter_patterns=["locking.lock_all_instances", "paging.round_trip"],
        )
        assert suite.success
        assert [r.name for r in suite.results] == ["locking.lock_all_instances", "paging.round_trip"]
        assert not service.client.is_closed
