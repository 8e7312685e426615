# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Result paging checks."""

from __future__ import annotations

from wfs_ets.builder import QueryExpression
from wfs_ets.conformance._runner import _conformance_test
from wfs_ets.conformance._support import instantiated_type, require_subset
from wfs_ets.context import VerificationContext
from wfs_ets.errors import SemanticAssertionFailure
from wfs_ets.paging import Direction, PagingCursorWalker
from wfs_ets.protocol import ConformanceClass, Operation, ResultType

_PAGING = (ConformanceClass.RESULT_PAGING, Operation.GET_FEATURE)


@_conformance_test(category="paging", name="hits_first_page", requires=_PAGING)
def _hits_first_page(ctx: VerificationContext) -> None:
    """count=1 with resultType=hits returns no members and a next page holding one."""
    type_name = instantiated_type(ctx)
    walker = PagingCursorWalker(ctx)
    page = walker.first_page(QueryExpression(type_names=(type_name,)), 1, result_type=ResultType.HITS)
    following = walker.next(page)
    if following.number_returned != 1:
        raise SemanticAssertionFailure(
            "Page after a hits page has the wrong size", expected=1, actual=following.number_returned
        )


@_conformance_test(category="paging", name="round_trip", requires=_PAGING)
def _round_trip(ctx: VerificationContext) -> None:
    """previous(next(page)) contains every member of page."""
    type_name = instantiated_type(ctx, 2)
    walker = PagingCursorWalker(ctx)
    page = walker.first_page(QueryExpression(type_names=(type_name,)), 1)
    walker.assert_round_trip(page)


@_conformance_test(category="paging", name="traverse_both_directions", requires=_PAGING)
def _traverse_both_directions(ctx: VerificationContext) -> None:
    """Walking to the last page and back again visits the same features once each."""
    type_name = instantiated_type(ctx, 2)
    walker = PagingCursorWalker(ctx)
    first = walker.first_page(QueryExpression(type_names=(type_name,)), ctx.config.paging_window)
    forward = list(walker.traverse(first))
    seen = [fid for page in forward for fid in page.members]
    if len(seen) != len(set(seen)):
        duplicates = sorted({fid for fid in seen if seen.count(fid) > 1})
        raise SemanticAssertionFailure("Feature returned on more than one page", expected=[], actual=duplicates)
    require_subset("Forward walk missed sampled features", frozenset(ctx.samples.ids(type_name)), frozenset(seen))
    matched = first.number_matched
    if matched is not None and matched.isdigit() and int(matched) != len(seen):
        raise SemanticAssertionFailure("numberMatched disagrees with the walk", expected=len(seen), actual=matched)
    backward = list(walker.traverse(forward[-1], Direction.PREVIOUS))
    returned = frozenset(fid for page in backward for fid in page.members)
    if returned != frozenset(seen):
        raise SemanticAssertionFailure(
            "Backward walk visited different features", expected=sorted(seen), actual=sorted(returned)
        )
