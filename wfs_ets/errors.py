# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for verification runs.

Every failure carries the expected and the actual value so that a verdict can
be reproduced from the report alone, without re-running against the service.

Hierarchy::

    VerificationError
    ├── MalformedRequest              request cannot represent the operation
    ├── TransportFailure              connection / timeout, never retried
    │   └── ExpiredCursor             paging cursor used past its cache timeout
    ├── StructuralValidationFailure   root element / attribute / schema mismatch
    ├── SemanticAssertionFailure      predicate, count or spatial mismatch
    ├── ProtocolExceptionMismatch     expected exception code/status absent or wrong
    ├── ServiceException              the service answered with an exception report
    ├── PreconditionNotMet            capability not advertised: check is skipped
    └── RunCancelled                  a bounded wait was cancelled by the run timeout

    ResourceLeakWarning (UserWarning) cleanup failed for a tracked resource
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wfs_ets.dispatch import ResponseRecord

__all__ = [
    "ExpiredCursor",
    "MalformedRequest",
    "PreconditionNotMet",
    "ProtocolExceptionMismatch",
    "ResourceLeakWarning",
    "RunCancelled",
    "SemanticAssertionFailure",
    "ServiceException",
    "StructuralValidationFailure",
    "TransportFailure",
    "VerificationError",
]


class VerificationError(Exception):
    """Base class for all verification outcomes other than success.

    Attributes:
        message: Human-readable description of what was checked.
        expected: The value the protocol requires (``None`` if not applicable).
        actual: The value observed on the wire (``None`` if not applicable).

    """

    def __init__(self, message: str, *, expected: object = None, actual: object = None) -> None:
        """Initialize with a description and the expected/actual values."""
        self.message = message
        self.expected = expected
        self.actual = actual
        super().__init__(message)

    def __str__(self) -> str:
        """Render the message followed by expected/actual when present."""
        if self.expected is None and self.actual is None:
            return self.message
        return f"{self.message} (expected: {self.expected!r}, actual: {self.actual!r})"


class MalformedRequest(VerificationError):
    """The requested operation cannot be expressed as a protocol-legal request.

    Attributes:
        parameter: Name of the offending or missing request parameter.

    """

    def __init__(self, message: str, *, parameter: str, expected: object = None, actual: object = None) -> None:
        """Initialize with the offending parameter name."""
        self.parameter = parameter
        super().__init__(message, expected=expected, actual=actual)


class TransportFailure(VerificationError):
    """Connection, timeout or protocol-level failure below the WFS layer."""


class ExpiredCursor(TransportFailure):
    """A paging continuation was dereferenced after the service's cache timeout."""


class StructuralValidationFailure(VerificationError):
    """The response document does not have the required shape."""


class SemanticAssertionFailure(VerificationError):
    """The response is well-formed but its content violates a rule."""


class ProtocolExceptionMismatch(VerificationError):
    """An expected exception code or status was missing or wrong."""


class PreconditionNotMet(VerificationError):
    """The service does not claim the capability a check depends on."""


class RunCancelled(VerificationError):
    """A blocking wait was interrupted because the run ran out of time."""


class ServiceException(VerificationError):
    """The service answered with an exception report or an error status.

    Raised by the lifecycle models when a request they sent was rejected.
    Checks that expect a rejection catch it through
    :meth:`wfs_ets.validate.ResponseValidator.expect_exception`.

    Attributes:
        response: The normalized response that carried the report.
        code: The first exception code in the report (``None`` if absent).
        locator: The ``locator`` of the first exception (``None`` if absent).
        status: The HTTP status code.

    """

    def __init__(self, response: ResponseRecord) -> None:
        """Initialize from the response that carried the exception report."""
        self.response = response
        self.code = response.exception_code
        self.locator = response.exception_locator
        self.status = response.status
        detail = f"[{self.code}]" if self.code else "(no exception report)"
        where = f" locator={self.locator!r}" if self.locator else ""
        super().__init__(f"Service rejected request: HTTP {self.status} {detail}{where}")


class ResourceLeakWarning(UserWarning):
    """A tracked server-side resource could not be released at teardown.

    Attributes:
        kind: Resource kind (``"lock"`` or ``"stored_query"``).
        resource_id: Identifier that could not be released.
        reason: Why the release failed.

    """

    def __init__(self, kind: str, resource_id: str, reason: str) -> None:
        """Initialize with the resource that leaked and the failure reason."""
        self.kind = kind
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(f"Failed to release {kind} {resource_id!r}: {reason}")
