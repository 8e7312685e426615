# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Stored query lifecycle: create, invoke, drop.

:class:`StoredQueryRegistry` creates stored queries on the service, invokes
them through ``GetFeature`` and drops them, keeping a model of each query's
state (DEFINED or DROPPED). The model predicts rejections:

* a definition in a language the service does not advertise must fail with
  ``InvalidParameterValue`` (locator ``language``);
* re-creating an id that is DEFINED must fail with
  ``DuplicateStoredQueryIdValue``;
* dropping an id that was already dropped must fail with
  ``InvalidParameterValue``;
* invoking a dropped id must fail with ``InvalidParameterValue``, every time.

Rejections raise :class:`~wfs_ets.errors.ServiceException`; acceptances the
model knows to be wrong raise
:class:`~wfs_ets.errors.SemanticAssertionFailure`. Created ids are recorded in
the ledger so they are dropped at teardown.

Logger: ``wfs_ets.storedquery``
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from wfs_ets._xml import qn
from wfs_ets.builder import RequestParams, StoredQueryDefinition, StoredQueryInvocation
from wfs_ets.capabilities import TypeName
from wfs_ets.errors import PreconditionNotMet, SemanticAssertionFailure, ServiceException
from wfs_ets.ledger import ResourceKind
from wfs_ets.protocol import Binding, ExceptionCode, Operation

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext
    from wfs_ets.dispatch import ResponseRecord

__all__ = ["StoredQuery", "StoredQueryRegistry", "StoredQueryState"]

_logger = logging.getLogger("wfs_ets.storedquery")


class StoredQueryState(StrEnum):
    """Lifecycle states of a stored query."""

    DEFINED = "DEFINED"
    DROPPED = "DROPPED"


@dataclass
class StoredQuery:
    """A stored query created during the check."""

    query_id: str
    definition: StoredQueryDefinition
    state: StoredQueryState = StoredQueryState.DEFINED


class StoredQueryRegistry:
    """Creates, invokes and drops stored queries for one check.

    Args:
        ctx: Verification context (its ledger receives every created id).

    """

    def __init__(self, ctx: VerificationContext) -> None:
        """Initialize with no queries."""
        self.ctx = ctx
        self._queries: dict[str, StoredQuery] = {}

    def state(self, query_id: str) -> StoredQueryState | None:
        """Model state of *query_id*, ``None`` if it was never created here."""
        query = self._queries.get(query_id)
        return query.state if query else None

    def create(self, definition: StoredQueryDefinition, binding: Binding = Binding.ANY) -> str:
        """Create a stored query.

        Returns:
            The query id.

        Raises:
            ServiceException: If the service rejected the definition.
            SemanticAssertionFailure: If the service accepted a definition it
                must reject (unsupported language, duplicate id).

        """
        query_id = definition.query_id
        unsupported = definition.language not in self.ctx.capabilities.query_languages
        duplicate = self.state(query_id) is StoredQueryState.DEFINED
        record = self.ctx.send(Operation.CREATE_STORED_QUERY, RequestParams(definition=definition), binding)
        if not record.ok:
            _logger.debug("CreateStoredQuery %s rejected: %s", query_id, record.exception_code)
            raise ServiceException(record)
        # Accepted: the service now holds the id whatever the verdict below.
        self.ctx.ledger.record(ResourceKind.STORED_QUERY, query_id)
        if unsupported:
            raise SemanticAssertionFailure(
                "Stored query in an unsupported language was accepted",
                expected=(str(ExceptionCode.INVALID_PARAMETER_VALUE), "language"),
                actual=definition.language,
            )
        if duplicate:
            raise SemanticAssertionFailure(
                "Duplicate stored query id was accepted",
                expected=(str(ExceptionCode.DUPLICATE_STORED_QUERY_ID_VALUE), query_id),
                actual=record.status,
            )
        self.ctx.validator.assert_structure(record, qn("wfs", Operation.CREATE_STORED_QUERY.response_element))
        self._queries[query_id] = StoredQuery(query_id, definition)
        _logger.info("Created stored query %s", query_id, extra={"stored_query_id": query_id})
        return query_id

    def drop(self, query_id: str, binding: Binding = Binding.ANY) -> ResponseRecord:
        """Drop *query_id*.

        Raises:
            ServiceException: If the service rejected the drop (unknown id).
            SemanticAssertionFailure: If an already-dropped id was dropped again.

        """
        already_dropped = self.state(query_id) is StoredQueryState.DROPPED
        record = self.ctx.send(
            Operation.DROP_STORED_QUERY, RequestParams(stored_query_ids=(query_id,)), binding
        )
        if not record.ok:
            raise ServiceException(record)
        if already_dropped:
            raise SemanticAssertionFailure(
                "Dropped stored query was dropped again",
                expected=(str(ExceptionCode.INVALID_PARAMETER_VALUE), query_id),
                actual=record.status,
            )
        self.ctx.ledger.mark_released(ResourceKind.STORED_QUERY, query_id)
        if query_id in self._queries:
            self._queries[query_id].state = StoredQueryState.DROPPED
        _logger.info("Dropped stored query %s", query_id, extra={"stored_query_id": query_id})
        return record

    def invoke(
        self,
        query_id: str,
        parameters: Mapping[str, str | TypeName] | None = None,
        *,
        binding: Binding = Binding.ANY,
        count: int | None = None,
    ) -> ResponseRecord:
        """Invoke *query_id* through ``GetFeature``.

        Raises:
            ServiceException: If the service rejected the invocation.
            SemanticAssertionFailure: If a dropped query could still be invoked.

        """
        invocation = StoredQueryInvocation(query_id, dict(parameters or {}))
        record = self.ctx.send(Operation.GET_FEATURE, RequestParams(queries=(invocation,), count=count), binding)
        if not record.ok:
            raise ServiceException(record)
        if self.state(query_id) is StoredQueryState.DROPPED:
            raise SemanticAssertionFailure(
                "Dropped stored query was invoked successfully",
                expected=(str(ExceptionCode.INVALID_PARAMETER_VALUE), query_id),
                actual=record.status,
            )
        self.ctx.validator.assert_structure(record, qn("wfs", "FeatureCollection"))
        return record

    def list_ids(self) -> list[str]:
        """Ids returned by ``ListStoredQueries``.

        Raises:
            ServiceException: If the service rejected the request.

        """
        record = self.ctx.validator.raise_for_exception(self.ctx.send(Operation.LIST_STORED_QUERIES))
        root = self.ctx.validator.assert_structure(
            record, qn("wfs", Operation.LIST_STORED_QUERIES.response_element)
        )
        return [sq.get("id", "") for sq in root.findall(qn("wfs", "StoredQuery"))]

    def describe(self, query_ids: Sequence[str] = ()) -> ResponseRecord:
        """Send ``DescribeStoredQueries`` for *query_ids* (all when empty).

        Raises:
            ServiceException: If the service rejected the request.

        """
        record = self.ctx.send(Operation.DESCRIBE_STORED_QUERIES, RequestParams(stored_query_ids=tuple(query_ids)))
        return self.ctx.validator.raise_for_exception(record)

    def drop_leftovers(self, query_ids: Sequence[str]) -> list[str]:
        """Drop any of *query_ids* the service already knows (from an earlier run).

        Returns:
            The ids that were dropped.

        Raises:
            PreconditionNotMet: If a leftover query cannot be dropped.

        """
        known = set(self.list_ids())
        dropped: list[str] = []
        for query_id in query_ids:
            if query_id not in known:
                continue
            record = self.ctx.send(Operation.DROP_STORED_QUERY, RequestParams(stored_query_ids=(query_id,)))
            if not record.ok:
                raise PreconditionNotMet(
                    f"Cannot drop leftover stored query {query_id}",
                    expected=200,
                    actual=(record.status, record.exception_code),
                )
            _logger.info("Dropped leftover stored query %s", query_id, extra={"stored_query_id": query_id})
            dropped.append(query_id)
        return dropped
