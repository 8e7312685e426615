# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Stored query management checks.

The checks create queries under fixed identifiers. Identifiers left behind
by an interrupted earlier run are dropped before the checks start.
"""

from __future__ import annotations

import logging

from wfs_ets.builder import ParameterSpec, QueryExpression, StoredQueryDefinition
from wfs_ets.capabilities import TypeName
from wfs_ets.conformance._runner import _conformance_test, _prepare_step
from wfs_ets.conformance._support import instantiated_type, pick_ids, property_value
from wfs_ets.context import VerificationContext
from wfs_ets.errors import SemanticAssertionFailure, VerificationError
from wfs_ets.protocol import ConformanceClass, ExceptionCode, Operation
from wfs_ets.storedquery import StoredQueryRegistry
from wfs_ets.validate import feature_members, includes_members

_logger = logging.getLogger("wfs_ets.conformance")

QRY_BY_TYPE_NAME = "urn:example:wfs2-query:GetFeatureByTypeName"
QRY_BY_NAME = "urn:example:wfs2-query:GetFeatureByName"
QRY_INVALID_LANG = "urn:example:wfs2-query:InvalidLang"

_UNSUPPORTED_LANGUAGE = "http://qry.example.org"

_MANAGE = (ConformanceClass.MANAGE_STORED_QUERIES, Operation.CREATE_STORED_QUERY, Operation.DROP_STORED_QUERY)


def _by_type_name() -> StoredQueryDefinition:
    return StoredQueryDefinition(
        query_id=QRY_BY_TYPE_NAME,
        query=QueryExpression(type_names=("${typeName}",)),
        parameters=(ParameterSpec("typeName", "xsd:QName", "Feature type name"),),
        title="Features of one type",
    )


def _by_name(type_name: TypeName) -> StoredQueryDefinition:
    return StoredQueryDefinition(
        query_id=QRY_BY_NAME,
        query=QueryExpression(type_names=(type_name,), property_equals=(("name", "${name}"),)),
        parameters=(ParameterSpec("name", "xsd:string", "Feature name"),),
        title="Features with a given name",
    )


@_prepare_step
def _drop_leftover_queries(ctx: VerificationContext) -> None:
    """Drop stored queries left behind by an earlier run."""
    caps = ctx.capabilities
    if not (
        caps.implements(ConformanceClass.MANAGE_STORED_QUERIES)
        and caps.supports(Operation.LIST_STORED_QUERIES)
        and caps.supports(Operation.DROP_STORED_QUERY)
    ):
        return
    try:
        StoredQueryRegistry(ctx).drop_leftovers((QRY_BY_TYPE_NAME, QRY_BY_NAME, QRY_INVALID_LANG))
    except VerificationError as exc:
        _logger.warning("Could not drop leftover stored queries: %s", exc)


@_conformance_test(category="stored_queries", name="create_and_invoke", requires=_MANAGE)
def _create_and_invoke(ctx: VerificationContext) -> None:
    """A query parameterised by type name returns features of every instantiated type."""
    types = ctx.samples.instantiated()
    if not types:
        instantiated_type(ctx)
    registry = StoredQueryRegistry(ctx)
    registry.create(_by_type_name())
    for type_name in types:
        record = registry.invoke(QRY_BY_TYPE_NAME, {"typeName": type_name})
        assert record.root is not None
        members = feature_members(record.root)
        assert members, f"{QRY_BY_TYPE_NAME} returned no features of {type_name.prefixed()}"
        stray = sorted({m.tag for m in members} - {type_name.clark})
        if stray:
            raise SemanticAssertionFailure(
                f"{QRY_BY_TYPE_NAME} returned features of another type", expected=type_name.clark, actual=stray
            )
    registry.drop(QRY_BY_TYPE_NAME)


@_conformance_test(category="stored_queries", name="create_by_name_and_invoke", requires=_MANAGE)
def _create_by_name_and_invoke(ctx: VerificationContext) -> None:
    """A query filtering on a name property finds the feature carrying that name."""
    type_name = instantiated_type(ctx)
    (fid,) = pick_ids(ctx, type_name, 1)
    name = property_value(ctx, type_name, fid, "name")
    registry = StoredQueryRegistry(ctx)
    registry.create(_by_name(type_name))
    record = registry.invoke(QRY_BY_NAME, {"name": name})
    ctx.validator.assert_semantic(record, includes_members([fid]))


@_conformance_test(category="stored_queries", name="unsupported_language", requires=_MANAGE)
def _unsupported_language(ctx: VerificationContext) -> None:
    """A definition in an unadvertised query language fails with InvalidParameterValue."""
    type_name = instantiated_type(ctx)
    definition = StoredQueryDefinition(
        query_id=QRY_INVALID_LANG,
        query=QueryExpression(type_names=(type_name,)),
        language=_UNSUPPORTED_LANGUAGE,
    )
    with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="language"):
        StoredQueryRegistry(ctx).create(definition)


@_conformance_test(category="stored_queries", name="duplicate_id", requires=_MANAGE)
def _duplicate_id(ctx: VerificationContext) -> None:
    """Re-creating a defined id fails with DuplicateStoredQueryIdValue naming the id."""
    registry = StoredQueryRegistry(ctx)
    registry.create(_by_type_name())
    with ctx.validator.expect_exception(ExceptionCode.DUPLICATE_STORED_QUERY_ID_VALUE, locator=QRY_BY_TYPE_NAME):
        registry.create(_by_type_name())


@_conformance_test(category="stored_queries", name="drop_then_invoke", requires=_MANAGE)
def _drop_then_invoke(ctx: VerificationContext) -> None:
    """Every invocation of a dropped query fails with InvalidParameterValue."""
    type_name = instantiated_type(ctx)
    registry = StoredQueryRegistry(ctx)
    registry.create(_by_type_name())
    registry.drop(QRY_BY_TYPE_NAME)
    for _ in range(2):
        with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="id"):
            registry.invoke(QRY_BY_TYPE_NAME, {"typeName": type_name})


@_conformance_test(category="stored_queries", name="drop_unknown", requires=_MANAGE)
def _drop_unknown(ctx: VerificationContext) -> None:
    """Dropping an id the service does not know fails with InvalidParameterValue."""
    with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="id"):
        StoredQueryRegistry(ctx).drop(f"urn:uuid:{ctx.selector.token(32)}")


@_conformance_test(category="stored_queries", name="drop_twice", requires=_MANAGE)
def _drop_twice(ctx: VerificationContext) -> None:
    """Dropping a query a second time fails with InvalidParameterValue."""
    registry = StoredQueryRegistry(ctx)
    registry.create(_by_type_name())
    registry.drop(QRY_BY_TYPE_NAME)
    with ctx.validator.expect_exception(ExceptionCode.INVALID_PARAMETER_VALUE, locator="id"):
        registry.drop(QRY_BY_TYPE_NAME)
