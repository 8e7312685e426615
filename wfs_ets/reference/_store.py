# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-memory state of the reference service.

Holds the features, the locks, the paging cursors and the stored queries,
and implements the operation semantics on top of them. All time-dependent
behaviour (lock expiry, cursor lifetime) reads the injected clock.

:class:`Faults` switches individual rules off so the self-tests can prove
that the verifier notices a non-conforming service.

Logger: ``wfs_ets.reference``
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from xml.sax.saxutils import escape

from wfs_ets._xml import resolve_qname
from wfs_ets.capabilities import TypeName
from wfs_ets.clock import Clock
from wfs_ets.protocol import DEFAULT_LOCK_EXPIRY, QRY_GET_FEATURE_BY_ID, WFS_QUERY_LANGUAGE, ExceptionCode
from wfs_ets.reference._parse import QuerySpec, StoredDefinition, TxAction, WfsError, parse_query_text

__all__ = ["REFERENCE_NS", "Feature", "FeatureStore", "Faults", "default_store"]

_logger = logging.getLogger("wfs_ets.reference")

REFERENCE_NS = "http://example.org/wfs-ets/reference"


@dataclass(frozen=True)
class Faults:
    """Deliberate rule violations for exercising the verifier.

    Attributes:
        allow_double_lock: Grant ``ALL`` locks over already-locked features.
        ignore_expiry: Never expire locks.
        keep_dropped_queries: Keep answering invocations of dropped queries.
        accept_duplicate_queries: Overwrite a stored query on re-creation.
        accept_composite_lock: Accept ``lockId`` together with a query.
        skewed_previous: Point ``previous`` one window too far forward.
        delete_locked: Let transactions touch locked features without a lockId.

    """

    allow_double_lock: bool = False
    ignore_expiry: bool = False
    keep_dropped_queries: bool = False
    accept_duplicate_queries: bool = False
    accept_composite_lock: bool = False
    skewed_previous: bool = False
    delete_locked: bool = False


@dataclass
class Feature:
    """A feature instance. ``point`` is ``(lon, lat)``."""

    type_name: TypeName
    fid: str
    properties: dict[str, str] = field(default_factory=dict)
    point: tuple[float, float] | None = None


@dataclass
class _Lock:
    lock_id: str
    ids: set[str]
    expires_at: float


@dataclass(frozen=True)
class _Cursor:
    queries: tuple[QuerySpec, ...]
    start: int
    count: int
    issued_at: float


@dataclass
class PageResult:
    """Outcome of a (possibly windowed) query."""

    features: list[Feature]
    number_matched: int
    next_cursor: str | None = None
    previous_cursor: str | None = None
    hits: bool = False


@dataclass
class LockResult:
    """Outcome of a lock request."""

    lock_id: str
    locked: list[str]
    not_locked: list[str]
    features: list[Feature] = field(default_factory=list)


@dataclass
class TransactionResult:
    """Outcome of a transaction."""

    inserted: list[str] = field(default_factory=list)
    updated: int = 0
    replaced: int = 0
    deleted: int = 0


class FeatureStore:
    """Features, locks, cursors and stored queries behind the reference service.

    Args:
        clock: Time source for lock expiry and cursor lifetime.
        feature_types: Property names per feature type.
        features: Initial features.
        faults: Rules to break.
        cache_timeout: Cursor lifetime in seconds.
        query_languages: Accepted stored query languages.

    """

    def __init__(
        self,
        clock: Clock,
        feature_types: Mapping[TypeName, Sequence[str]],
        features: Iterable[Feature] = (),
        *,
        faults: Faults | None = None,
        cache_timeout: int = 300,
        query_languages: Sequence[str] = (WFS_QUERY_LANGUAGE,),
    ) -> None:
        """Initialize the store."""
        self.clock = clock
        self.feature_types: dict[TypeName, tuple[str, ...]] = {k: tuple(v) for k, v in feature_types.items()}
        self.features: dict[str, Feature] = {f.fid: f for f in features}
        self.faults = faults or Faults()
        self.cache_timeout = cache_timeout
        self.query_languages = tuple(query_languages)
        self._locks: dict[str, _Lock] = {}
        self._cursors: dict[str, _Cursor] = {}
        self._queries: dict[str, StoredDefinition] = {}
        self._dropped: dict[str, StoredDefinition] = {}
        self._ids = itertools.count(1)
        self._mutex = threading.RLock()

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):04d}"

    # -- type resolution -----------------------------------------------------

    def resolve_type(self, text: str, prefixes: Mapping[str, str]) -> TypeName:
        """Resolve ``prefix:local`` (or Clark notation) to a served type.

        An unbound prefix falls back to a unique local-name match.

        Raises:
            WfsError: ``InvalidParameterValue`` (locator ``typeNames``) if unknown.

        """
        if text.startswith("{"):
            candidate = TypeName.from_clark(text)
        else:
            namespace, local, _ = resolve_qname(text, dict(prefixes))
            candidate = TypeName(namespace, local)
        if candidate in self.feature_types:
            return next(t for t in self.feature_types if t == candidate)
        matches = [t for t in self.feature_types if t.local == candidate.local]
        if not candidate.namespace and len(matches) == 1:
            return matches[0]
        raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "typeNames", f"Unknown feature type {text}")

    # -- queries -------------------------------------------------------------

    def expand(self, query: QuerySpec) -> QuerySpec:
        """Replace a stored query invocation by its (substituted) body.

        Raises:
            WfsError: ``InvalidParameterValue`` (locator ``id``) if the id is unknown.

        """
        if query.stored_query is None:
            return query
        if query.stored_query == QRY_GET_FEATURE_BY_ID:
            fid = query.parameters.get("ID")
            if not fid:
                raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "id", "GetFeatureById requires id")
            return QuerySpec(resource_ids=(fid,), prefixes=query.prefixes)
        definition = self._queries.get(query.stored_query)
        if definition is None and self.faults.keep_dropped_queries:
            definition = self._dropped.get(query.stored_query)
        if definition is None:
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "id", f"Unknown stored query {query.stored_query}")
        text = definition.template
        for name, _type in definition.parameters:
            value = query.parameters.get(name.upper())
            if value is None:
                raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, name, f"Missing parameter {name}")
            text = text.replace("${" + name + "}", escape(value, {'"': "&quot;"}))
        return parse_query_text(text, {**definition.prefixes, **query.prefixes})

    def select(self, query: QuerySpec) -> list[Feature]:
        """Features matching *query*, in store order (or sorted as requested)."""
        query = self.expand(query)
        types = {self.resolve_type(t, query.prefixes) for t in query.type_names}
        found: list[Feature] = []
        for feature in self.features.values():
            if types and feature.type_name not in types:
                continue
            if query.resource_ids and feature.fid not in query.resource_ids:
                continue
            if query.bbox is not None:
                if feature.point is None:
                    continue
                lon, lat = feature.point
                west, south, east, north = query.bbox
                if not (west <= lon <= east and south <= lat <= north):
                    continue
            if any(feature.properties.get(p.split(":")[-1]) != v for p, v in query.equals):
                continue
            found.append(feature)
        for prop in reversed(query.sort_by):
            key = prop.split(":")[-1]
            found.sort(key=lambda f, k=key: f.properties.get(k, ""))
        return found

    def _select_all(self, queries: Sequence[QuerySpec]) -> list[Feature]:
        seen: dict[str, Feature] = {}
        for query in queries:
            for feature in self.select(query):
                seen.setdefault(feature.fid, feature)
        return list(seen.values())

    def get_feature(
        self, queries: Sequence[QuerySpec], count: int | None, start: int, *, hits: bool = False
    ) -> PageResult:
        """Evaluate *queries* and cut the window ``[start, start + count)``."""
        with self._mutex:
            matched = self._select_all(queries)
            total = len(matched)
            if hits:
                following = self._cursor(queries, start, count) if count is not None and start < total else None
                return PageResult([], total, next_cursor=following, hits=True)
            if count is None:
                return PageResult(matched[start:], total)
            window = matched[start : start + count]
            following = self._cursor(queries, start + count, count) if start + count < total else None
            preceding = None
            if start > 0:
                back = max(start - count, 0)
                if self.faults.skewed_previous:
                    back = min(back + count, max(total - 1, 0))
                preceding = self._cursor(queries, back, count)
            return PageResult(window, total, next_cursor=following, previous_cursor=preceding)

    def _cursor(self, queries: Sequence[QuerySpec], start: int, count: int) -> str:
        cursor_id = self._new_id("cursor")
        self._cursors[cursor_id] = _Cursor(tuple(queries), start, count, self.clock.now())
        return cursor_id

    def resume(self, cursor_id: str) -> PageResult:
        """Serve the page a continuation reference points to.

        Raises:
            WfsError: ``InvalidParameterValue`` if the cursor is unknown or
                older than the cache timeout.

        """
        with self._mutex:
            cursor = self._cursors.get(cursor_id)
            if cursor is None or self.clock.now() - cursor.issued_at > self.cache_timeout:
                self._cursors.pop(cursor_id, None)
                raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "cursor", f"Result set {cursor_id} has expired")
            return self.get_feature(cursor.queries, cursor.count, cursor.start)

    # -- locking -------------------------------------------------------------

    def _expire_locks(self) -> None:
        if self.faults.ignore_expiry:
            return
        now = self.clock.now()
        for lock_id in [k for k, v in self._locks.items() if now > v.expires_at]:
            del self._locks[lock_id]
            _logger.debug("Lock %s expired", lock_id, extra={"lock_id": lock_id})

    def _locked_by(self, fid: str) -> str | None:
        for lock in self._locks.values():
            if fid in lock.ids:
                return lock.lock_id
        return None

    def _live_lock(self, lock_id: str) -> _Lock:
        lock = self._locks.get(lock_id)
        if lock is None:
            raise WfsError(ExceptionCode.LOCK_HAS_EXPIRED, "lockId", f"Lock {lock_id} has expired or does not exist")
        return lock

    def lock(
        self,
        queries: Sequence[QuerySpec],
        expiry: int | None,
        action: str,
        lock_id: str | None = None,
        *,
        with_features: bool = False,
    ) -> LockResult:
        """Acquire a new lock, or reset the expiry of *lock_id* when no query is given.

        Raises:
            WfsError: On a lockId combined with a query, an expired lock id,
                or an ``ALL`` lock that cannot lock every feature.

        """
        with self._mutex:
            self._expire_locks()
            expiry = DEFAULT_LOCK_EXPIRY if expiry is None else expiry
            if lock_id and queries and not self.faults.accept_composite_lock:
                raise WfsError(
                    ExceptionCode.OPERATION_PARSING_FAILED, "lockId", "lockId cannot be combined with a query"
                )
            if lock_id and not queries:
                lock = self._live_lock(lock_id)
                lock.expires_at = self.clock.now() + expiry
                _logger.debug("Lock %s reset to %ds", lock_id, expiry, extra={"lock_id": lock_id})
                return LockResult(lock_id, sorted(lock.ids), [])
            if not queries:
                raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "Query", "LockFeature requires a query")
            matched = self._select_all(queries)
            conflicts = [f.fid for f in matched if self._locked_by(f.fid)]
            if action == "ALL" and conflicts and not self.faults.allow_double_lock:
                raise WfsError(
                    ExceptionCode.CANNOT_LOCK_ALL_FEATURES, "lockAction", f"Already locked: {', '.join(conflicts)}"
                )
            granted = [f for f in matched if f.fid not in conflicts] if action == "SOME" else matched
            new_id = self._new_id("lock")
            self._locks[new_id] = _Lock(new_id, {f.fid for f in granted}, self.clock.now() + expiry)
            _logger.debug("Lock %s granted on %d feature(s)", new_id, len(granted), extra={"lock_id": new_id})
            not_locked = conflicts if action == "SOME" else []
            return LockResult(new_id, [f.fid for f in granted], not_locked, granted if with_features else [])

    # -- transactions --------------------------------------------------------

    def transaction(
        self, actions: Sequence[TxAction], lock_id: str | None, release_action: str, prefixes: Mapping[str, str]
    ) -> TransactionResult:
        """Apply *actions* atomically and release *lock_id* as requested.

        Raises:
            WfsError: On an expired lock id, a locked target without lockId,
                or an unknown target.

        """
        with self._mutex:
            self._expire_locks()
            lock = self._live_lock(lock_id) if lock_id else None
            touched: set[str] = set()
            for action in actions:
                for fid in action.resource_ids:
                    holder = self._locked_by(fid)
                    if holder is not None and holder != lock_id and not self.faults.delete_locked:
                        if lock_id is None:
                            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "lockId", f"{fid} is locked")
                        raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "lockId", f"{fid} is locked by another lock")
                    touched.add(fid)
            staged = dict(self.features)
            result = TransactionResult()
            for action in actions:
                self._apply(action, staged, result, prefixes)
            self.features = staged
            for fid in list(touched):
                if fid not in staged:
                    for held in self._locks.values():
                        held.ids.discard(fid)
            if lock is not None:
                if release_action == "SOME":
                    lock.ids -= touched
                    if not lock.ids:
                        del self._locks[lock.lock_id]
                else:
                    del self._locks[lock.lock_id]
                    _logger.debug("Lock %s released", lock.lock_id, extra={"lock_id": lock.lock_id})
            return result

    def _apply(
        self, action: TxAction, staged: dict[str, Feature], result: TransactionResult, prefixes: Mapping[str, str]
    ) -> None:
        type_name = self.resolve_type(action.type_name, prefixes)
        unknown_props = [p for p in action.properties if p not in self.feature_types[type_name]]
        if unknown_props:
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, unknown_props[0], "Unknown property")
        if action.kind == "Insert":
            fid = action.new_id or self._new_id(type_name.local.lower())
            if fid in staged:
                raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "gml:id", f"Duplicate feature id {fid}")
            staged[fid] = Feature(type_name, fid, dict(action.properties))
            result.inserted.append(fid)
            return
        targets = [staged[fid] for fid in action.resource_ids if fid in staged]
        if len(targets) != len(action.resource_ids):
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "filter", "Unknown resource id")
        for target in targets:
            if action.kind == "Delete":
                del staged[target.fid]
                result.deleted += 1
            elif action.kind == "Update":
                staged[target.fid] = replace(target, properties={**target.properties, **action.properties})
                result.updated += 1
            else:
                staged[target.fid] = replace(target, properties=dict(action.properties))
                result.replaced += 1

    # -- stored queries ------------------------------------------------------

    def create_stored_query(self, definition: StoredDefinition) -> None:
        """Register *definition*.

        Raises:
            WfsError: On an unsupported language or an id already in use.

        """
        with self._mutex:
            if definition.language not in self.query_languages:
                raise WfsError(
                    ExceptionCode.INVALID_PARAMETER_VALUE, "language", f"Unsupported language {definition.language}"
                )
            taken = definition.query_id in self._queries or definition.query_id == QRY_GET_FEATURE_BY_ID
            if taken and not self.faults.accept_duplicate_queries:
                raise WfsError(
                    ExceptionCode.DUPLICATE_STORED_QUERY_ID_VALUE, definition.query_id, "Stored query id already in use"
                )
            for name in definition.return_types:
                if name.startswith("${"):
                    continue
                self.resolve_type(name, definition.prefixes)
            self._queries[definition.query_id] = definition
            self._dropped.pop(definition.query_id, None)
            _logger.debug("Stored query %s created", definition.query_id)

    def drop_stored_query(self, query_id: str) -> None:
        """Remove a stored query.

        Raises:
            WfsError: ``InvalidParameterValue`` (locator ``id``) if unknown.

        """
        with self._mutex:
            definition = self._queries.pop(query_id, None)
            if definition is None:
                raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "id", f"Unknown stored query {query_id}")
            self._dropped[query_id] = definition
            _logger.debug("Stored query %s dropped", query_id)

    def stored_queries(self) -> list[StoredDefinition]:
        """Definitions of every stored query, the built-in one first."""
        builtin = StoredDefinition(
            query_id=QRY_GET_FEATURE_BY_ID,
            language=WFS_QUERY_LANGUAGE,
            template="",
            prefixes={},
            parameters=(("id", "xs:string"),),
            title="Get feature by identifier",
        )
        return [builtin, *self._queries.values()]


def _road(n: int, name: str, lanes: int, lon: float, lat: float) -> Feature:
    return Feature(TypeName(REFERENCE_NS, "Road", "tns"), f"road.{n}", {"name": name, "lanes": str(lanes)}, (lon, lat))


def default_store(clock: Clock, *, faults: Faults | None = None, cache_timeout: int = 300) -> FeatureStore:
    """A store with two instantiated types (Road, Building) and one empty type (River)."""
    road = TypeName(REFERENCE_NS, "Road", "tns")
    building = TypeName(REFERENCE_NS, "Building", "tns")
    river = TypeName(REFERENCE_NS, "River", "tns")
    features = [
        _road(1, "High Street", 2, 4.89, 52.37),
        _road(2, "Canal Road", 1, 4.90, 52.36),
        _road(3, "Ring Road", 4, 4.85, 52.40),
        _road(4, "Harbour Lane", 2, 4.95, 52.38),
        _road(5, "Market Way", 1, 4.88, 52.35),
        Feature(building, "building.1", {"name": "Town Hall", "height": "32"}, (4.89, 52.37)),
        Feature(building, "building.2", {"name": "Library", "height": "18"}, (4.91, 52.36)),
        Feature(building, "building.3", {"name": "Station", "height": "24"}, (4.90, 52.38)),
    ]
    types = {road: ("name", "lanes", "geometry"), building: ("name", "height", "geometry"), river: ("name",)}
    return FeatureStore(clock, types, features, faults=faults, cache_timeout=cache_timeout)
