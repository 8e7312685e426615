# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Conformance checks for WFS 2.0 locking, paging and stored query management.

Checks are registered on import and run against a live service.

Usage::

    from wfs_ets.conformance import run_verification

    suite = run_verification("http://localhost:8080/wfs")
    for result in suite.results:
        print(result.name, result.outcome)

"""

from wfs_ets.conformance import _locking, _paging, _stored_queries  # noqa: F401  (registers checks)
from wfs_ets.conformance._runner import (
    DEFAULT_TEST_TIMEOUT,
    ConformanceResult,
    ConformanceSuite,
    Outcome,
    list_conformance_tests,
    run_conformance,
    run_verification,
)
from wfs_ets.conformance._stored_queries import QRY_BY_NAME, QRY_BY_TYPE_NAME, QRY_INVALID_LANG

__all__ = [
    "ConformanceResult",
    "ConformanceSuite",
    "DEFAULT_TEST_TIMEOUT",
    "Outcome",
    "QRY_BY_NAME",
    "QRY_BY_TYPE_NAME",
    "QRY_INVALID_LANG",
    "list_conformance_tests",
    "run_conformance",
    "run_verification",
]
