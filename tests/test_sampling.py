# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for wfs_ets.sampling and the run context."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from wfs_ets.capabilities import TypeName
from wfs_ets.config import VerifierConfig
from wfs_ets.context import FeatureSelector
from wfs_ets.errors import PreconditionNotMet
from wfs_ets.ledger import ResourceKind
from wfs_ets.protocol import ConformanceClass, Operation
from wfs_ets.reference import REFERENCE_NS
from wfs_ets.sampling import DataSampler, FeatureSamples

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext

    from tests.conftest import ContextFactory

ROAD = TypeName(REFERENCE_NS, "Road", "tns")
BUILDING = TypeName(REFERENCE_NS, "Building", "tns")
RIVER = TypeName(REFERENCE_NS, "River", "tns")


class TestDataSampler:
    """Sampling every advertised type."""

    def test_sample(self, make_ctx: ContextFactory) -> None:
        """Instantiated types carry their ids; empty types are kept empty."""
        samples = DataSampler(make_ctx(sample=False)).sample()
        assert samples.ids(ROAD) == ("road.1", "road.2", "road.3", "road.4", "road.5")
        assert samples.ids(BUILDING) == ("building.1", "building.2", "building.3")
        assert samples.ids(RIVER) == ()
        assert samples.instantiated() == [ROAD, BUILDING]

    def test_sample_size(self, make_ctx: ContextFactory) -> None:
        """At most sample_size ids are taken per type."""
        samples = DataSampler(make_ctx(sample=False, config=VerifierConfig(sample_size=2))).sample()
        assert samples.ids(ROAD) == ("road.1", "road.2")

    def test_apply_to(self, ctx: VerificationContext) -> None:
        """The sampled context marks which advertised types have instances."""
        flags = {d.name.local: d.instantiated for d in ctx.capabilities.feature_types}
        assert flags == {"Road": True, "Building": True, "River": False}


class TestFeatureSamples:
    """Lookups over a sample."""

    def test_type_with_at_least(self) -> None:
        """The first type with enough instances is chosen."""
        samples = FeatureSamples({RIVER: (), BUILDING: ("b.1",), ROAD: ("r.1", "r.2")})
        assert samples.type_with_at_least(1) == BUILDING
        assert samples.type_with_at_least(2) == ROAD
        assert samples.type_with_at_least(3) is None
        assert samples.ids(TypeName(REFERENCE_NS, "Lake")) == ()


class TestFeatureSelector:
    """Seeded randomness."""

    def test_seed_is_reproducible(self) -> None:
        """The same seed yields the same choices."""
        items = [f"f.{i}" for i in range(20)]
        a, b = FeatureSelector(42), FeatureSelector(42)
        assert a.sample(items, 5) == b.sample(items, 5)
        assert a.token(16) == b.token(16)

    def test_sample_keeps_order(self) -> None:
        """Picked items keep their sequence order and k is capped."""
        items = ["a", "b", "c"]
        assert FeatureSelector(1).sample(items, 10) == items
        picked = FeatureSelector(1).sample(items, 2)
        assert picked == sorted(picked, key=items.index)

    def test_token_length(self) -> None:
        """Tokens are zero-padded hex of the requested length."""
        token = FeatureSelector(3).token(12)
        assert len(token) == 12
        int(token, 16)

    def test_empty_choice(self) -> None:
        """Choosing from nothing is an error."""
        with pytest.raises(ValueError):
            FeatureSelector(0).choice([])


class TestVerificationContext:
    """Forking and requirements."""

    def test_fork_has_own_ledger(self, ctx: VerificationContext) -> None:
        """A fork shares everything except the ledger."""
        child = ctx.fork()
        child.ledger.record(ResourceKind.LOCK, "lock-x")
        assert len(ctx.ledger) == 0
        assert child.dispatcher is ctx.dispatcher
        assert child.samples is ctx.samples

    def test_require_present(self, ctx: VerificationContext) -> None:
        """Advertised classes and operations satisfy the requirement."""
        ctx.require(ConformanceClass.LOCKING_WFS, Operation.LOCK_FEATURE)

    def test_require_missing(self, make_ctx: ContextFactory) -> None:
        """A withdrawn operation raises PreconditionNotMet naming it."""
        ctx = make_ctx(disabled=[ConformanceClass.LOCKING_WFS])
        with pytest.raises(PreconditionNotMet, match="ImplementsLockingWFS"):
            ctx.require(ConformanceClass.LOCKING_WFS, Operation.LOCK_FEATURE)
        with pytest.raises(PreconditionNotMet, match="LockFeature"):
            ctx.require(Operation.LOCK_FEATURE)
