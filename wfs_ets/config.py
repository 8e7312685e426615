# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Run configuration.

``VerifierConfig`` holds every tunable duration and size used by a run.
Values are validated on construction; :meth:`VerifierConfig.from_env` reads
``WFS_ETS_*`` overrides (the CLI applies its own options on top).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace

__all__ = ["ENV_PREFIX", "VerifierConfig"]

ENV_PREFIX = "WFS_ETS_"

_SOAP_VERSIONS = frozenset({"1.1", "1.2"})


@dataclass(frozen=True)
class VerifierConfig:
    """Tunable settings for a verification run.

    Attributes:
        request_timeout: Per-dispatch network timeout in seconds.
        lock_expiry: Expiry (seconds) requested by locking checks that do not
            exercise expiry itself.
        expiry_probe: Short expiry (seconds) requested by the expiry check.
        expiry_buffer: Extra seconds waited past a lock's expiry before
            probing it.
        max_lock_wait: Upper bound on any single expiry wait; longer waits
            skip the check instead of blocking.
        sample_size: Features requested per type while sampling data.
        paging_window: ``count`` used by the paging checks.
        soap_version: SOAP envelope version, ``"1.1"`` or ``"1.2"``.
        test_timeout: Wall-clock budget for one check in seconds.

    Raises:
        ValueError: If a duration or size is not positive, or
            *soap_version* is not ``"1.1"``/``"1.2"``.

    """

    request_timeout: float = 30.0
    lock_expiry: int = 60
    expiry_probe: int = 5
    expiry_buffer: float = 2.0
    max_lock_wait: float = 120.0
    sample_size: int = 10
    paging_window: int = 1
    soap_version: str = "1.2"
    test_timeout: float = 300.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        for name in ("request_timeout", "lock_expiry", "expiry_probe", "max_lock_wait", "sample_size",
                     "paging_window", "test_timeout"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
        if self.expiry_buffer < 0:
            raise ValueError(f"expiry_buffer must be >= 0, got {self.expiry_buffer}")
        if self.soap_version not in _SOAP_VERSIONS:
            raise ValueError(f"soap_version must be one of {sorted(_SOAP_VERSIONS)}, got {self.soap_version!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> VerifierConfig:
        """Build a config from ``WFS_ETS_<FIELD>`` variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).

        Raises:
            ValueError: If a variable cannot be converted to the field's type.

        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        overrides: dict[str, object] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = getattr(defaults, f.name)
            try:
                overrides[f.name] = type(current)(raw)
            except ValueError as exc:
                raise ValueError(f"{ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid {type(current).__name__}") from exc
        return cls(**overrides)  # type: ignore[arg-type]

    def with_overrides(self, **changes: object) -> VerifierConfig:
        """Return a copy with non-``None`` *changes* applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})  # type: ignore[arg-type]
