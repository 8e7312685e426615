# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Conformance check runner.

Provides check registration, execution and result collection. Every check
receives its own :class:`~wfs_ets.context.VerificationContext` fork, so the
resources it creates are tracked in a ledger owned by that check alone and
released when the check ends, whatever its outcome.

Usage::

    from wfs_ets.conformance import run_verification

    suite = run_verification("http://localhost:8080/wfs")
    assert suite.success

Logger: ``wfs_ets.conformance``
"""

from __future__ import annotations

import fnmatch
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum

import httpx

from wfs_ets.clock import Clock
from wfs_ets.config import VerifierConfig
from wfs_ets.context import VerificationContext
from wfs_ets.dispatch import BindingDispatcher
from wfs_ets.errors import PreconditionNotMet, ServiceException
from wfs_ets.sampling import DataSampler

__all__ = [
    "DEFAULT_TEST_TIMEOUT",
    "ConformanceResult",
    "ConformanceSuite",
    "Outcome",
    "list_conformance_tests",
    "run_conformance",
    "run_verification",
]

_logger = logging.getLogger("wfs_ets.conformance")

# Default per-check timeout in seconds.
DEFAULT_TEST_TIMEOUT: float = 300.0

# How long a cancelled check may take to unwind before its ledger is drained.
_CANCEL_GRACE: float = 5.0


class _TestTimeoutError(Exception):
    """Raised when a check exceeds its timeout.

    Attributes:
        abandoned: Whether the worker was still running after the grace period.

    """

    def __init__(self, message: str, *, abandoned: bool = False) -> None:
        """Initialize with the message and whether the worker was abandoned."""
        super().__init__(message)
        self.abandoned = abandoned


def _run_with_timeout(
    fn: Callable[[], None], timeout: float, clock: Clock, on_abandoned: Callable[[], object] | None = None
) -> None:
    """Run *fn* in a worker thread, raising ``_TestTimeoutError`` if it exceeds *timeout* seconds.

    On timeout the clock is cancelled so that a pending expiry wait ends with
    ``RunCancelled``, and the worker gets a short grace period to unwind. A
    worker still running after that is abandoned; it calls *on_abandoned*
    from its own thread once *fn* finally returns.
    """
    exc: BaseException | None = None
    finished = threading.Event()
    abandoned = threading.Event()

    def _target() -> None:
        nonlocal exc
        try:
            fn()
        except BaseException as e:
            exc = e
        finally:
            finished.set()
            if abandoned.is_set() and on_abandoned is not None:
                on_abandoned()

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    if not finished.wait(timeout):
        clock.cancel()
        if finished.wait(_CANCEL_GRACE):
            raise _TestTimeoutError(f"Check exceeded {timeout}s timeout")
        abandoned.set()
        _logger.warning("Check worker did not stop within %.1fs of cancellation", _CANCEL_GRACE)
        raise _TestTimeoutError(
            f"Check exceeded {timeout}s timeout and was abandoned while still running", abandoned=True
        )
    if exc is not None:
        raise exc


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class Outcome(StrEnum):
    """Verdict of a single check."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class ConformanceResult:
    """Result of a single conformance check."""

    name: str
    category: str
    outcome: Outcome
    duration_ms: float
    error: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        """Whether the check passed."""
        return self.outcome is Outcome.PASSED


@dataclass(frozen=True)
class ConformanceSuite:
    """Aggregate results of a verification run."""

    results: list[ConformanceResult]
    total: int
    passed: int
    failed: int
    skipped: int
    duration_ms: float
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether no check failed (skipped checks do not count)."""
        return self.failed == 0


# ---------------------------------------------------------------------------
# Check registration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _ConformanceTest:
    """A registered conformance check."""

    category: str
    name: str
    fn: Callable[[VerificationContext], None]
    requires: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        """Return category.name format."""
        return f"{self.category}.{self.name}"


_TESTS: list[_ConformanceTest] = []
_PREPARE: list[Callable[[VerificationContext], None]] = []


def _conformance_test(
    *, category: str, name: str, requires: Sequence[str] = ()
) -> Callable[[Callable[[VerificationContext], None]], Callable[[VerificationContext], None]]:
    """Register a conformance check.

    Args:
        category: Check group (used by filters).
        name: Check name within the group.
        requires: Conformance classes or operations the service must
            advertise; the check is skipped otherwise.

    """

    def decorator(fn: Callable[[VerificationContext], None]) -> Callable[[VerificationContext], None]:
        _TESTS.append(_ConformanceTest(category=category, name=name, fn=fn, requires=tuple(requires)))
        return fn

    return decorator


def _prepare_step(fn: Callable[[VerificationContext], None]) -> Callable[[VerificationContext], None]:
    """Register a step run once before the checks (e.g. removing leftovers of an earlier run)."""
    _PREPARE.append(fn)
    return fn


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _matches_filter(name: str, patterns: list[str]) -> bool:
    """Check if a check name matches any of the given glob patterns."""
    return any(fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(name.split(".")[0], pattern) for pattern in patterns)


def list_conformance_tests(filter_patterns: list[str] | None = None) -> list[str]:
    """Return sorted names of available checks, optionally filtered.

    Args:
        filter_patterns: Optional glob patterns to filter checks.

    Returns:
        Sorted list of check names in ``category.name`` format.

    """
    names = [t.full_name for t in _TESTS]
    if filter_patterns:
        names = [n for n in names if _matches_filter(n, filter_patterns)]
    return sorted(names)


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, ServiceException):
        return f"ServiceException({exc.code}, HTTP {exc.status}): {exc}"
    if isinstance(exc, AssertionError):
        return str(exc) if str(exc) else "Assertion failed"
    return f"{type(exc).__name__}: {exc}"


def _run_one(test: _ConformanceTest, ctx: VerificationContext, timeout: float) -> ConformanceResult:
    start = time.monotonic()
    outcome = Outcome.PASSED
    error: str | None = None
    if timeout > 0:
        # Cancellation on timeout stays with this check.
        ctx = replace(ctx, clock=ctx.clock.child())
    try:
        ctx.require(*test.requires)
        if timeout > 0:
            _run_with_timeout(lambda: test.fn(ctx), timeout, ctx.clock, on_abandoned=ctx.ledger.release_all)
        else:
            test.fn(ctx)
    except _TestTimeoutError as e:
        outcome = Outcome.FAILED
        error = str(e)
    except PreconditionNotMet as e:
        outcome = Outcome.SKIPPED
        error = str(e)
    except Exception as e:
        outcome = Outcome.FAILED
        error = _describe_failure(e)
    finally:
        leaks = ctx.ledger.release_all()
    elapsed_ms = (time.monotonic() - start) * 1000
    return ConformanceResult(
        name=test.full_name,
        category=test.category,
        outcome=outcome,
        duration_ms=elapsed_ms,
        error=error,
        warnings=tuple(str(w) for w in leaks),
    )


def run_conformance(
    ctx: VerificationContext,
    *,
    filter_patterns: list[str] | None = None,
    on_progress: Callable[[ConformanceResult], None] | None = None,
    timeout: float | None = None,
) -> ConformanceSuite:
    """Run the registered checks against the service behind *ctx*.

    Args:
        ctx: Run context; each check gets a fork with its own ledger.
        filter_patterns: Optional glob patterns to filter which checks run.
        on_progress: Optional callback invoked after each check completes.
        timeout: Per-check timeout in seconds (defaults to the configured
            ``test_timeout``). Set to ``0`` to disable.

    Returns:
        A ConformanceSuite with all results.

    """
    timeout = ctx.config.test_timeout if timeout is None else timeout
    suite_start = time.monotonic()
    results: list[ConformanceResult] = []

    tests_to_run = _TESTS
    if filter_patterns:
        tests_to_run = [t for t in _TESTS if _matches_filter(t.full_name, filter_patterns)]

    for step in _PREPARE:
        step(ctx)

    for test in tests_to_run:
        result = _run_one(test, ctx.fork(), timeout)
        _logger.info(
            "%s %s",
            result.name,
            result.outcome,
            extra={
                "check": result.name,
                "outcome": str(result.outcome),
                "duration_ms": round(result.duration_ms, 1),
                "error": result.error,
            },
        )
        results.append(result)
        if on_progress:
            on_progress(result)

    suite_elapsed = (time.monotonic() - suite_start) * 1000
    return ConformanceSuite(
        results=results,
        total=len(results),
        passed=sum(1 for r in results if r.outcome is Outcome.PASSED),
        failed=sum(1 for r in results if r.outcome is Outcome.FAILED),
        skipped=sum(1 for r in results if r.outcome is Outcome.SKIPPED),
        duration_ms=suite_elapsed,
        warnings=[w for r in results for w in r.warnings],
    )


def run_verification(
    url: str,
    *,
    client: httpx.Client | None = None,
    config: VerifierConfig | None = None,
    clock: Clock | None = None,
    seed: int | None = None,
    filter_patterns: list[str] | None = None,
    on_progress: Callable[[ConformanceResult], None] | None = None,
) -> ConformanceSuite:
    """Verify the service whose capabilities document is at *url*.

    Fetches the capabilities once, samples the advertised feature types,
    then runs the registered checks.

    Args:
        url: Capabilities (``GetCapabilities`` KVP) endpoint of the service.
        client: HTTP client to use; one is created when omitted.
        config: Run configuration (defaults from the environment).
        clock: Clock for expiry waits (a real clock when omitted).
        seed: Seed for feature selection.
        filter_patterns: Optional glob patterns to filter which checks run.
        on_progress: Optional callback invoked after each check completes.

    Raises:
        TransportFailure: If the service cannot be reached.
        ServiceException: If the capabilities request was rejected.
        StructuralValidationFailure: If the capabilities document is malformed.

    """
    config = config or VerifierConfig.from_env()
    with BindingDispatcher(client=client, timeout=config.request_timeout, soap_version=config.soap_version) as dispatcher:
        capabilities = dispatcher.fetch_capabilities(url)
        unsampled = VerificationContext.create(capabilities, dispatcher, clock=clock, config=config, seed=seed)
        samples = DataSampler(unsampled).sample()
        ctx = VerificationContext.create(
            samples.apply_to(capabilities),
            dispatcher,
            clock=clock,
            config=config,
            seed=seed,
            samples=samples,
        )
        _logger.info(
            "Verifying %s (version %s, %d feature types)",
            url,
            capabilities.version,
            len(capabilities.feature_types),
            extra={"url": url, "conformance": sorted(capabilities.conformance)},
        )
        return run_conformance(ctx, filter_patterns=filter_patterns, on_progress=on_progress)
