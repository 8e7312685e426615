# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Bidirectional traversal of paged feature collections.

A windowed ``GetFeature`` (``count`` = window size) returns a page whose
``next`` / ``previous`` attributes are opaque continuation URIs.
:class:`PagingCursorWalker` follows them and checks every page:

* the document element is ``wfs:FeatureCollection`` with ``numberReturned``,
  which matches the members present and never exceeds the window;
* continuation URIs are absolute;
* the first page has no ``previous``; a page reached by ``next`` from a
  non-empty page has one;
* a ``resultType=hits`` first page has no members, no ``previous`` and a
  non-empty ``next`` (unless nothing matched);
* every member belongs to the types of the query the walk started from.

A continuation dereferenced after the advertised ``ResponseCacheTimeout``
that fails is reported as :class:`~wfs_ets.errors.ExpiredCursor`, not as a
protocol violation.

Logger: ``wfs_ets.paging``
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

from wfs_ets.builder import QueryExpression, RequestParams
from wfs_ets.errors import (
    ExpiredCursor,
    SemanticAssertionFailure,
    ServiceException,
    StructuralValidationFailure,
    TransportFailure,
)
from wfs_ets.protocol import Binding, Constraint, Operation, ResultType
from wfs_ets.validate import feature_ids, feature_members

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext
    from wfs_ets.dispatch import ResponseRecord

__all__ = ["Direction", "Page", "PageCursor", "PagingCursorWalker", "QueryFingerprint"]

_logger = logging.getLogger("wfs_ets.paging")


class Direction(StrEnum):
    """Traversal direction of a continuation."""

    NEXT = "next"
    PREVIOUS = "previous"


@dataclass(frozen=True)
class QueryFingerprint:
    """Identity of the query a walk is anchored to (types, filter, ordering)."""

    type_names: tuple[str, ...]
    filter: str = ""
    sort_by: tuple[str, ...] = ()

    @classmethod
    def of(cls, query: QueryExpression) -> QueryFingerprint:
        """Fingerprint an ad hoc query."""
        parts: list[str] = []
        if query.resource_ids:
            parts.append("rid=" + ",".join(sorted(query.resource_ids)))
        if query.bbox is not None:
            parts.append("bbox=" + ",".join(str(v) for v in query.bbox))
        parts.extend(f"{p}={v}" for p, v in sorted(query.property_equals))
        return cls(
            type_names=tuple(str(n) for n in query.type_names),
            filter="&".join(parts),
            sort_by=query.sort_by,
        )


@dataclass(frozen=True)
class PageCursor:
    """A continuation reference taken from a page.

    Attributes:
        token: The continuation URI.
        anchor: Fingerprint of the query the walk started from.
        window_size: Page size of the walk.
        direction: ``next`` or ``previous``.
        issued_at: Clock time at which the page carrying it was received.

    """

    token: str
    anchor: QueryFingerprint
    window_size: int
    direction: Direction
    issued_at: float


@dataclass(frozen=True)
class Page:
    """One page of a walk.

    Attributes:
        members: Feature identifiers in document order.
        number_returned: Value of ``numberReturned``.
        number_matched: Value of ``numberMatched`` (may be ``"unknown"``).
        next: Forward continuation, if any.
        previous: Backward continuation, if any.
        response: The response the page was read from.
        fingerprint: Anchor of the walk.
        window_size: Page size of the walk.

    """

    members: tuple[str, ...]
    number_returned: int
    number_matched: str | None
    next: PageCursor | None
    previous: PageCursor | None
    response: ResponseRecord = field(repr=False)
    fingerprint: QueryFingerprint
    window_size: int

    @property
    def member_set(self) -> frozenset[str]:
        """Members as a set."""
        return frozenset(self.members)


def _is_absolute(uri: str) -> bool:
    parts = urlsplit(uri)
    return bool(parts.scheme and parts.netloc)


class PagingCursorWalker:
    """Walks paged results forward and backward.

    Args:
        ctx: Verification context.

    """

    def __init__(self, ctx: VerificationContext) -> None:
        """Initialize and read the advertised paging constraints."""
        self.ctx = ctx
        self.cache_timeout = ctx.capabilities.int_constraint(Constraint.RESPONSE_CACHE_TIMEOUT)
        self.count_default = ctx.capabilities.int_constraint(Constraint.COUNT_DEFAULT)

    def first_page(
        self,
        query: QueryExpression,
        window_size: int | None = None,
        *,
        result_type: ResultType = ResultType.RESULTS,
        binding: Binding = Binding.ANY,
    ) -> Page:
        """Issue the windowed query and return its first page.

        Args:
            query: Query to page through.
            window_size: ``count``; defaults to ``CountDefault`` or the
                configured paging window.
            result_type: ``results`` or ``hits``.
            binding: Binding to send the query over.

        Raises:
            ServiceException: If the service rejected the query.
            StructuralValidationFailure: If the page is malformed.
            SemanticAssertionFailure: If the page content violates a paging rule.

        """
        window = window_size or self.count_default or self.ctx.config.paging_window
        params = RequestParams(queries=(query,), count=window, result_type=result_type)
        record = self.ctx.send(Operation.GET_FEATURE, params, binding)
        if not record.ok:
            raise ServiceException(record)
        page = self._read_page(record, QueryFingerprint.of(query), window)
        if page.previous is not None:
            raise StructuralValidationFailure(
                "First page carries a previous reference", expected="no @previous", actual=page.previous.token
            )
        if result_type is ResultType.HITS:
            self._check_hits_page(page)
        _logger.debug(
            "First page: %d member(s), next=%s", page.number_returned, page.next is not None,
            extra={"window_size": window, "result_type": str(result_type)},
        )
        return page

    def next(self, page: Page) -> Page:
        """Follow the forward continuation of *page*.

        Raises:
            ValueError: If *page* has no ``next`` reference.
            ExpiredCursor: If the reference failed after the cache timeout.

        """
        if page.next is None:
            raise ValueError("page has no next reference")
        following = self._dereference(page.next)
        if page.number_returned > 0 and following.previous is None:
            raise StructuralValidationFailure(
                "Page reached through next has no previous reference", expected="@previous", actual=None
            )
        return following

    def previous(self, page: Page) -> Page:
        """Follow the backward continuation of *page*.

        Raises:
            ValueError: If *page* has no ``previous`` reference.
            ExpiredCursor: If the reference failed after the cache timeout.

        """
        if page.previous is None:
            raise ValueError("page has no previous reference")
        return self._dereference(page.previous)

    def traverse(self, page: Page, direction: Direction = Direction.NEXT, max_pages: int = 100) -> Iterator[Page]:
        """Yield *page* and every page reachable in *direction*, up to *max_pages*."""
        current: Page | None = page
        count = 0
        while current is not None and count < max_pages:
            yield current
            count += 1
            cursor = current.next if direction is Direction.NEXT else current.previous
            if cursor is None:
                return
            current = self.next(current) if direction is Direction.NEXT else self.previous(current)
        if count >= max_pages:
            _logger.warning("Stopped traversal after %d pages", max_pages)

    def assert_round_trip(self, page: Page) -> Page:
        """Check ``previous(next(page))`` covers every member of *page*.

        Returns:
            The page reached by going forward and back.

        Raises:
            SemanticAssertionFailure: If members were lost or the anchor changed.

        """
        back = self.previous(self.next(page))
        if back.fingerprint != page.fingerprint:
            raise SemanticAssertionFailure("Walk changed query anchor", expected=page.fingerprint,
                                           actual=back.fingerprint)
        missing = page.member_set - back.member_set
        if missing:
            raise SemanticAssertionFailure(
                "Members lost after next then previous", expected=sorted(page.member_set), actual=sorted(back.members)
            )
        return back

    # -- internals -----------------------------------------------------------

    def _dereference(self, cursor: PageCursor) -> Page:
        age = self.ctx.clock.now() - cursor.issued_at
        expired = self.cache_timeout is not None and age > self.cache_timeout
        try:
            record = self.ctx.dispatcher.retrieve(cursor.token, timeout=self.ctx.config.request_timeout)
        except TransportFailure as exc:
            if expired:
                raise ExpiredCursor(
                    f"Continuation failed after cache timeout: {exc.message}",
                    expected=f"<= {self.cache_timeout}s",
                    actual=f"{age:.1f}s",
                ) from exc
            raise
        if not record.ok:
            if expired:
                raise ExpiredCursor(
                    "Continuation rejected after cache timeout",
                    expected=f"<= {self.cache_timeout}s",
                    actual=(f"{age:.1f}s", record.status, record.exception_code),
                )
            raise ServiceException(record)
        _logger.debug("Dereferenced %s cursor (age %.1fs)", cursor.direction, age)
        return self._read_page(record, cursor.anchor, cursor.window_size)

    def _read_page(self, record: ResponseRecord, fingerprint: QueryFingerprint, window: int) -> Page:
        validator = self.ctx.validator
        root = validator.assert_structure(record, "FeatureCollection", ("numberReturned",))
        try:
            number_returned = int(root.get("numberReturned", ""))
        except ValueError:
            raise StructuralValidationFailure(
                "numberReturned is not an integer", expected="integer", actual=root.get("numberReturned")
            ) from None
        members = tuple(feature_ids(root))
        features = feature_members(root)
        if number_returned != len(features):
            raise SemanticAssertionFailure("numberReturned does not match members", expected=len(features),
                                           actual=number_returned)
        if number_returned > window:
            raise SemanticAssertionFailure("Page exceeds window size", expected=f"<= {window}",
                                           actual=number_returned)
        allowed = {t for t in fingerprint.type_names if t.startswith("{")}
        stray = sorted({f.tag for f in features} - allowed) if allowed else []
        if stray:
            raise SemanticAssertionFailure(
                "Page contains features outside the queried types", expected=sorted(allowed), actual=stray
            )
        now = self.ctx.clock.now()
        cursors: dict[Direction, PageCursor | None] = {}
        for direction in Direction:
            token = root.get(direction.value)
            if token is None or not token.strip():
                cursors[direction] = None
                continue
            if not _is_absolute(token):
                raise StructuralValidationFailure(
                    f"@{direction} is not an absolute URI", expected="absolute URI", actual=token
                )
            cursors[direction] = PageCursor(token, fingerprint, window, direction, now)
        return Page(
            members=members,
            number_returned=number_returned,
            number_matched=root.get("numberMatched"),
            next=cursors[Direction.NEXT],
            previous=cursors[Direction.PREVIOUS],
            response=record,
            fingerprint=fingerprint,
            window_size=window,
        )

    @staticmethod
    def _check_hits_page(page: Page) -> None:
        if page.number_returned != 0 or page.members:
            raise SemanticAssertionFailure(
                "resultType=hits returned members", expected=0, actual=page.number_returned
            )
        if page.number_matched != "0" and page.next is None:
            raise StructuralValidationFailure(
                "resultType=hits page has no next reference", expected="@next", actual=None
            )
