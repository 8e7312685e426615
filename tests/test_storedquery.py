# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for wfs_ets.storedquery: create, invoke and drop against the reference service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from wfs_ets.builder import ParameterSpec, QueryExpression, StoredQueryDefinition
from wfs_ets.capabilities import TypeName
from wfs_ets.errors import SemanticAssertionFailure
from wfs_ets.ledger import ResourceKind
from wfs_ets.protocol import QRY_GET_FEATURE_BY_ID, Binding, ExceptionCode
from wfs_ets.reference import REFERENCE_NS, Faults
from wfs_ets.storedquery import StoredQueryRegistry, StoredQueryState
from wfs_ets.validate import feature_ids

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext

    from tests.conftest import ContextFactory

ROAD = TypeName(REFERENCE_NS, "Road", "tns")
BUILDING = TypeName(REFERENCE_NS, "Building", "tns")

BY_TYPE = "urn:example:test:ByType"
BY_NAME = "urn:example:test:ByName"


def _by_type() -> StoredQueryDefinition:
    return StoredQueryDefinition(
        query_id=BY_TYPE,
        query=QueryExpression(type_names=("${typeName}",)),
        parameters=(ParameterSpec("typeName", "xsd:QName"),),
    )


def _by_name() -> StoredQueryDefinition:
    return StoredQueryDefinition(
        query_id=BY_NAME,
        query=QueryExpression(type_names=(ROAD,), property_equals=(("name", "${name}"),)),
        parameters=(ParameterSpec("name"),),
        title="Roads by name",
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestCreateAndInvoke:
    """Queries the service accepts."""

    @pytest.mark.parametrize(("type_name", "expected"), [(ROAD, 5), (BUILDING, 3)])
    def test_parameterised_type_name(self, ctx: VerificationContext, type_name: TypeName, expected: int) -> None:
        """A type-name parameter selects the features of that type."""
        registry = StoredQueryRegistry(ctx)
        assert registry.create(_by_type()) == BY_TYPE
        record = registry.invoke(BY_TYPE, {"typeName": type_name})
        assert record.root is not None
        assert len(feature_ids(record.root)) == expected
        assert registry.state(BY_TYPE) is StoredQueryState.DEFINED
        assert ctx.ledger.pending(ResourceKind.STORED_QUERY) == [BY_TYPE]

    @pytest.mark.parametrize("binding", [Binding.GET, Binding.POST, Binding.SOAP])
    def test_filter_parameter(self, ctx: VerificationContext, binding: Binding) -> None:
        """A literal parameter fills the filter."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_name())
        record = registry.invoke(BY_NAME, {"name": "Canal Road"}, binding=binding)
        assert record.root is not None
        assert feature_ids(record.root) == ["road.2"]

    def test_count(self, ctx: VerificationContext) -> None:
        """count limits an invocation like an ad hoc query."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        record = registry.invoke(BY_TYPE, {"typeName": ROAD}, count=2)
        assert record.root is not None
        assert feature_ids(record.root) == ["road.1", "road.2"]

    def test_builtin_get_feature_by_id(self, ctx: VerificationContext) -> None:
        """The mandatory GetFeatureById query is always available."""
        record = StoredQueryRegistry(ctx).invoke(QRY_GET_FEATURE_BY_ID, {"id": "building.3"}, binding=Binding.GET)
        assert record.root is not None
        assert feature_ids(record.root) == ["building.3"]

    def test_list_and_describe(self, ctx: VerificationContext) -> None:
        """Created queries are listed after the built-in one and can be described."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_name())
        assert registry.list_ids() == [QRY_GET_FEATURE_BY_ID, BY_NAME]
        assert registry.describe([BY_NAME]).ok
        assert registry.describe().ok

    def test_drop(self, ctx: VerificationContext) -> None:
        """A dropped query is no longer listed and leaves nothing to release."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        registry.drop(BY_TYPE)
        assert registry.state(BY_TYPE) is StoredQueryState.DROPPED
        assert BY_TYPE not in registry.list_ids()
        assert ctx.ledger.pending() == []

    def test_drop_leftovers(self, ctx: VerificationContext) -> None:
        """Only ids the service knows are dropped."""
        StoredQueryRegistry(ctx.fork()).create(_by_type())
        dropped = StoredQueryRegistry(ctx).drop_leftovers([BY_TYPE, BY_NAME])
        assert dropped == [BY_TYPE]
        assert StoredQueryRegistry(ctx).list_ids() == [QRY_GET_FEATURE_BY_ID]

    def test_ledger_drops_created_queries(self, ctx: VerificationContext) -> None:
        """Queries left defined are dropped when the ledger is drained."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        registry.create(_by_name())
        assert ctx.ledger.release_all() == []
        assert registry.list_ids() == [QRY_GET_FEATURE_BY_ID]


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestRejections:
    """Requests the service must refuse."""

    def test_unsupported_language(self, ctx: VerificationContext) -> None:
        """An unadvertised language fails with InvalidParameterValue on language."""
        definition = StoredQueryDefinition(
            query_id="urn:example:test:Lang", query=QueryExpression(type_names=(ROAD,)), language="urn:example:nope"
        )
        with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="language"):
            StoredQueryRegistry(ctx).create(definition)
        assert len(ctx.ledger) == 0

    def test_duplicate_id(self, ctx: VerificationContext) -> None:
        """Re-creating a defined id names the id in the locator."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        with ctx.validator.expect_exception(ExceptionCode.DUPLICATE_STORED_QUERY_ID_VALUE, locator=BY_TYPE):
            registry.create(_by_type())

    def test_duplicate_accepted(self, make_ctx: ContextFactory) -> None:
        """A service overwriting a defined query fails."""
        ctx = make_ctx(faults=Faults(accept_duplicate_queries=True))
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        with pytest.raises(SemanticAssertionFailure, match="Duplicate"):
            registry.create(_by_type())

    def test_invoke_after_drop(self, ctx: VerificationContext) -> None:
        """Every invocation of a dropped query fails."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        registry.drop(BY_TYPE)
        for _ in range(2):
            with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="id"):
                registry.invoke(BY_TYPE, {"typeName": ROAD})

    def test_dropped_query_still_answers(self, make_ctx: ContextFactory) -> None:
        """A service still answering a dropped query fails."""
        ctx = make_ctx(faults=Faults(keep_dropped_queries=True))
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        registry.drop(BY_TYPE)
        with pytest.raises(SemanticAssertionFailure, match="Dropped"):
            registry.invoke(BY_TYPE, {"typeName": ROAD})

    def test_drop_unknown(self, ctx: VerificationContext) -> None:
        """Dropping an unknown id fails with InvalidParameterValue."""
        with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="id"):
            StoredQueryRegistry(ctx).drop(f"urn:uuid:{ctx.selector.token(32)}")

    def test_drop_twice(self, ctx: VerificationContext) -> None:
        """The second drop of an id fails."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_type())
        registry.drop(BY_TYPE)
        with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE):
            registry.drop(BY_TYPE)

    def test_missing_parameter(self, ctx: VerificationContext) -> None:
        """Invoking without a declared parameter is refused."""
        registry = StoredQueryRegistry(ctx)
        registry.create(_by_name())
        with ctx.validator.expect_exception(ExceptionCode.MISSING_PARAMETER_VALUE, locator="name"):
            registry.invoke(BY_NAME)
