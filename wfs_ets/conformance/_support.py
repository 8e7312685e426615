# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Helpers shared by the conformance checks."""

from __future__ import annotations

from wfs_ets._xml import local_name
from wfs_ets.builder import QueryExpression, RequestParams
from wfs_ets.capabilities import TypeName
from wfs_ets.context import VerificationContext
from wfs_ets.errors import PreconditionNotMet, SemanticAssertionFailure
from wfs_ets.protocol import Operation
from wfs_ets.validate import feature_members


def instantiated_type(ctx: VerificationContext, minimum: int = 1) -> TypeName:
    """Return a feature type with at least *minimum* sampled instances.

    Raises:
        PreconditionNotMet: If no advertised type has that many instances.

    """
    candidates = [t for t in ctx.samples.instantiated() if len(ctx.samples.ids(t)) >= minimum]
    if not candidates:
        raise PreconditionNotMet(
            f"No feature type with at least {minimum} instance(s)",
            expected=f">= {minimum}",
            actual={str(t): len(ctx.samples.ids(t)) for t in ctx.samples.by_type},
        )
    return ctx.selector.choice(candidates)


def pick_ids(ctx: VerificationContext, type_name: TypeName, k: int) -> list[str]:
    """Pick *k* distinct sampled identifiers of *type_name*."""
    return ctx.selector.sample(ctx.samples.ids(type_name), k)


def require_subset(description: str, expected: set[str] | frozenset[str], actual: set[str] | frozenset[str]) -> None:
    """Fail unless every element of *expected* is in *actual*."""
    if not set(expected) <= set(actual):
        raise SemanticAssertionFailure(description, expected=sorted(expected), actual=sorted(actual))


def property_value(ctx: VerificationContext, type_name: TypeName, fid: str, prop: str) -> str:
    """Fetch feature *fid* and return the text of its property *prop*.

    Raises:
        PreconditionNotMet: If the feature has no such property.

    """
    params = RequestParams(queries=(QueryExpression(type_names=(type_name,), resource_ids=(fid,)),))
    record = ctx.validator.raise_for_exception(ctx.send(Operation.GET_FEATURE, params))
    root = ctx.validator.assert_structure(record, Operation.GET_FEATURE.response_element)
    for feature in feature_members(root):
        for child in feature:
            if local_name(child.tag) == prop and child.text and child.text.strip():
                return child.text.strip()
    raise PreconditionNotMet(f"Feature {fid} has no {prop!r} property", expected=prop, actual=None)
