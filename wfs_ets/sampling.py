# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Discovery of instantiated feature types and sample identifiers.

Checks need real feature identifiers to lock, page through and query by
id. :class:`DataSampler` sends one ``GetFeature`` per advertised feature
type (``count`` = the configured sample size) and records the ``gml:id`` of
every returned feature. Types with no instances are kept with an empty
sample so checks can tell "unknown" from "empty".

Logger: ``wfs_ets.sampling``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from wfs_ets.builder import QueryExpression, RequestParams
from wfs_ets.capabilities import CapabilitySet, TypeName
from wfs_ets.errors import VerificationError
from wfs_ets.protocol import Operation
from wfs_ets.validate import feature_ids

if TYPE_CHECKING:
    from wfs_ets.context import VerificationContext

__all__ = ["DataSampler", "FeatureSamples"]

_logger = logging.getLogger("wfs_ets.sampling")


@dataclass
class FeatureSamples:
    """Sampled feature identifiers keyed by feature type."""

    by_type: dict[TypeName, tuple[str, ...]] = field(default_factory=dict)

    def instantiated(self) -> list[TypeName]:
        """Types for which at least one instance was found, in sampling order."""
        return [name for name, ids in self.by_type.items() if ids]

    def ids(self, type_name: TypeName) -> tuple[str, ...]:
        """Sampled identifiers of *type_name* (empty if none)."""
        return self.by_type.get(type_name, ())

    def type_with_at_least(self, n: int) -> TypeName | None:
        """First type with at least *n* sampled instances."""
        for name, ids in self.by_type.items():
            if len(ids) >= n:
                return name
        return None

    def apply_to(self, capabilities: CapabilitySet) -> CapabilitySet:
        """Return *capabilities* with the instantiation flags set from this sample."""
        return capabilities.with_feature_types(
            d.with_instances(bool(self.ids(d.name))) for d in capabilities.feature_types
        )


class DataSampler:
    """Samples each advertised feature type.

    Args:
        ctx: Context supplying capabilities, builder, dispatcher and config.

    """

    def __init__(self, ctx: VerificationContext) -> None:
        """Initialize with the run context."""
        self.ctx = ctx

    def sample(self) -> FeatureSamples:
        """Query every advertised type and collect identifiers.

        A type whose query fails is recorded as uninstantiated and logged at
        WARNING; sampling continues with the next type.
        """
        samples = FeatureSamples()
        for descriptor in self.ctx.capabilities.feature_types:
            name = descriptor.name
            params = RequestParams(queries=(QueryExpression(type_names=(name,)),), count=self.ctx.config.sample_size)
            try:
                record = self.ctx.send(Operation.GET_FEATURE, params)
            except VerificationError as exc:
                _logger.warning("Sampling %s failed: %s", name.prefixed(), exc, extra={"type_name": str(name)})
                samples.by_type[name] = ()
                continue
            if not record.ok or record.root is None:
                _logger.warning(
                    "Sampling %s failed: HTTP %d %s",
                    name.prefixed(),
                    record.status,
                    record.exception_code or "",
                    extra={"type_name": str(name)},
                )
                samples.by_type[name] = ()
                continue
            samples.by_type[name] = tuple(feature_ids(record.root))
        _logger.info(
            "Sampled %d feature types, %d instantiated",
            len(samples.by_type),
            len(samples.instantiated()),
        )
        return samples
