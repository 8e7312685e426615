# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-memory reference WFS 2.0 service.

A small Falcon application with locking, result paging and stored query
management over a fixed feature set. It backs the self-tests and
``wfs-ets serve``; :class:`Faults` switches on specific rule violations so
the checks can be shown to catch them.

Usage::

    from wfs_ets.reference import serve

    serve(port=8080)

"""

from wfs_ets.reference._server import make_wsgi_app, serve
from wfs_ets.reference._store import REFERENCE_NS, Feature, FeatureStore, Faults, default_store

__all__ = [
    "REFERENCE_NS",
    "Faults",
    "Feature",
    "FeatureStore",
    "default_store",
    "make_wsgi_app",
    "serve",
]
