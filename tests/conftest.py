# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for wfs-ets tests.

Every test talks to the in-process reference service through
``httpx.WSGITransport``; the service and the verifier share one
``SimulatedClock`` so lock expiry and cursor lifetimes can be driven
without sleeping.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

import httpx
import pytest

from wfs_ets.capabilities import CapabilitySet
from wfs_ets.clock import SimulatedClock
from wfs_ets.config import VerifierConfig
from wfs_ets.context import VerificationContext
from wfs_ets.dispatch import BindingDispatcher
from wfs_ets.protocol import ConformanceClass
from wfs_ets.reference import Faults, make_wsgi_app
from wfs_ets.sampling import DataSampler

BASE_URL = "http://testserver"
SERVICE_URL = f"{BASE_URL}/wfs"


@dataclass
class ReferenceService:
    """An in-process reference service and a client wired to it."""

    client: httpx.Client
    clock: SimulatedClock
    url: str = SERVICE_URL

    def dispatcher(self, capabilities: CapabilitySet | None = None, **kwargs: object) -> BindingDispatcher:
        """Return a dispatcher that sends through the in-process client."""
        return BindingDispatcher(capabilities, client=self.client, **kwargs)  # type: ignore[arg-type]

    def capabilities(self) -> CapabilitySet:
        """Fetch the capabilities document."""
        return self.dispatcher().fetch_capabilities(self.url)


ServiceFactory = Callable[..., ReferenceService]
"""Type alias for the ``make_service`` fixture return type."""

ContextFactory = Callable[..., VerificationContext]
"""Type alias for the ``make_ctx`` fixture return type."""


@pytest.fixture
def clock() -> SimulatedClock:
    """Virtual clock shared by the reference service and the verifier."""
    return SimulatedClock(start=1000.0)


@pytest.fixture
def make_service(clock: SimulatedClock) -> Iterator[ServiceFactory]:
    """Return a factory that starts a fresh reference service per call."""
    clients: list[httpx.Client] = []

    def factory(*, faults: Faults | None = None, disabled: Iterable[ConformanceClass] = ()) -> ReferenceService:
        app = make_wsgi_app(clock=clock, faults=faults, disabled=disabled)
        client = httpx.Client(transport=httpx.WSGITransport(app=app), base_url=BASE_URL)
        clients.append(client)
        return ReferenceService(client=client, clock=clock)

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def service(make_service: ServiceFactory) -> ReferenceService:
    """A conforming reference service."""
    return make_service()


@pytest.fixture
def make_ctx(make_service: ServiceFactory, clock: SimulatedClock) -> ContextFactory:
    """Return a factory building a sampled verification context against a new service."""

    def factory(
        *,
        faults: Faults | None = None,
        disabled: Iterable[ConformanceClass] = (),
        config: VerifierConfig | None = None,
        seed: int = 7,
        sample: bool = True,
    ) -> VerificationContext:
        svc = make_service(faults=faults, disabled=disabled)
        config = config or VerifierConfig()
        dispatcher = svc.dispatcher(timeout=config.request_timeout, soap_version=config.soap_version)
        capabilities = dispatcher.fetch_capabilities(svc.url)
        unsampled = VerificationContext.create(capabilities, dispatcher, clock=clock, config=config, seed=seed)
        if not sample:
            return unsampled
        samples = DataSampler(unsampled).sample()
        return VerificationContext.create(
            samples.apply_to(capabilities), dispatcher, clock=clock, config=config, seed=seed, samples=samples
        )

    return factory


@pytest.fixture
def ctx(make_ctx: ContextFactory) -> VerificationContext:
    """A sampled context against a conforming reference service."""
    return make_ctx()
