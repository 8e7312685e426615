# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Per-run and per-check verification context.

A :class:`VerificationContext` bundles the collaborators every component
needs: capabilities, builder, dispatcher, validator, ledger, clock, the
seedable :class:`FeatureSelector` and the run configuration. Components
receive it explicitly; no state is shared through module globals.

:meth:`VerificationContext.fork` gives each check its own empty ledger so
cleanup of one check never touches another's resources.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import TypeVar

from wfs_ets.builder import RequestBuilder, RequestParams
from wfs_ets.capabilities import CapabilitySet
from wfs_ets.clock import Clock, SystemClock
from wfs_ets.config import VerifierConfig
from wfs_ets.dispatch import BindingDispatcher, ResponseRecord
from wfs_ets.errors import PreconditionNotMet
from wfs_ets.ledger import ResourceLedger, ServiceReleaser
from wfs_ets.protocol import Binding, Operation
from wfs_ets.sampling import FeatureSamples
from wfs_ets.validate import ResponseValidator

__all__ = ["FeatureSelector", "VerificationContext"]

T = TypeVar("T")

_OPERATION_NAMES = frozenset(op.value for op in Operation)


class FeatureSelector:
    """Seedable source of every random choice made during a run.

    Args:
        seed: Seed for reproducible runs; ``None`` draws one at random.

    """

    def __init__(self, seed: int | None = None) -> None:
        """Initialize with *seed*."""
        self.seed = seed if seed is not None else random.SystemRandom().randrange(2**32)
        self._random = random.Random(self.seed)

    def choice(self, items: Sequence[T]) -> T:
        """Pick one element of *items*."""
        if not items:
            raise ValueError("cannot choose from an empty sequence")
        return items[self._random.randrange(len(items))]

    def sample(self, items: Sequence[T], k: int) -> list[T]:
        """Pick up to *k* distinct elements of *items*, in sequence order."""
        k = min(k, len(items))
        picked = sorted(self._random.sample(range(len(items)), k))
        return [items[i] for i in picked]

    def token(self, length: int = 8) -> str:
        """Return a random lowercase hex string for unique identifiers."""
        return f"{self._random.getrandbits(length * 4):0{length}x}"


@dataclass
class VerificationContext:
    """Collaborators shared by the components of one check.

    Attributes:
        capabilities: Parsed service capabilities.
        builder: Request builder bound to the capabilities.
        dispatcher: Wire dispatcher bound to the capabilities.
        validator: Response validator.
        ledger: Resources created by the current check.
        clock: Time source (real or simulated).
        selector: Seedable random choices.
        config: Run configuration.
        samples: Sampled feature identifiers per type.

    """

    capabilities: CapabilitySet
    builder: RequestBuilder
    dispatcher: BindingDispatcher
    validator: ResponseValidator
    ledger: ResourceLedger
    clock: Clock
    selector: FeatureSelector
    config: VerifierConfig
    samples: FeatureSamples = field(default_factory=FeatureSamples)

    @classmethod
    def create(
        cls,
        capabilities: CapabilitySet,
        dispatcher: BindingDispatcher,
        *,
        clock: Clock | None = None,
        config: VerifierConfig | None = None,
        seed: int | None = None,
        validator: ResponseValidator | None = None,
        samples: FeatureSamples | None = None,
    ) -> VerificationContext:
        """Assemble a context around *capabilities* and *dispatcher*."""
        builder = RequestBuilder(capabilities, capabilities.version or RequestBuilder().version)
        if dispatcher.capabilities is not capabilities:
            dispatcher = dispatcher.with_capabilities(capabilities)
        return cls(
            capabilities=capabilities,
            builder=builder,
            dispatcher=dispatcher,
            validator=validator or ResponseValidator(),
            ledger=ResourceLedger(ServiceReleaser(builder, dispatcher)),
            clock=clock or SystemClock(),
            selector=FeatureSelector(seed),
            config=config or VerifierConfig(),
            samples=samples if samples is not None else FeatureSamples(),
        )

    def fork(self) -> VerificationContext:
        """Return a copy with a fresh, empty ledger."""
        return replace(self, ledger=ResourceLedger(ServiceReleaser(self.builder, self.dispatcher)))

    def require(self, *requirements: str) -> None:
        """Skip unless every conformance class or operation in *requirements* is advertised.

        Raises:
            PreconditionNotMet: Naming the first missing requirement.

        """
        for requirement in requirements:
            if requirement in _OPERATION_NAMES:
                present = self.capabilities.supports(requirement)
            else:
                present = self.capabilities.implements(requirement)
            if not present:
                raise PreconditionNotMet(
                    f"Service does not advertise {requirement}", expected=requirement, actual="not advertised"
                )

    def send(
        self,
        operation: Operation,
        params: RequestParams | None = None,
        binding: Binding = Binding.ANY,
        *,
        check_schema: bool = True,
    ) -> ResponseRecord:
        """Build and dispatch one request."""
        payload = self.builder.build(operation, params, check_schema=check_schema)
        return self.dispatcher.dispatch(payload, binding, timeout=self.config.request_timeout)
