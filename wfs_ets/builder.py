# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request construction for every operation the verifier sends.

:class:`RequestBuilder` turns an operation name plus typed
:class:`RequestParams` into a :class:`Payload`: an XML request entity (used by
the POST and SOAP bindings) and, where the operation has one, the equivalent
key-value pair mapping (used by the GET binding). Building is pure: no
network access and no state.

Parameters are checked against the operation's required attributes and, when
a :class:`~wfs_ets.capabilities.CapabilitySet` is available, against the
advertised feature types. Violations raise
:class:`~wfs_ets.errors.MalformedRequest`.

Some deliberately non-conforming combinations (a ``lockId`` together with a
query, for instance) are still buildable so that checks can send them and
assert the service rejects them.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from wfs_ets._xml import declare_namespace, qn, to_bytes
from wfs_ets.capabilities import CapabilitySet, TypeName
from wfs_ets.errors import MalformedRequest
from wfs_ets.protocol import (
    NAMESPACES,
    SERVICE,
    VERSION,
    WFS_QUERY_LANGUAGE,
    LockAction,
    Operation,
    ReleaseAction,
    ResultType,
)

__all__ = [
    "ActionKind",
    "ParameterSpec",
    "Payload",
    "QueryExpression",
    "RequestBuilder",
    "RequestParams",
    "StoredQueryDefinition",
    "StoredQueryInvocation",
    "TransactionAction",
]

_KVP_LESS: frozenset[Operation] = frozenset({Operation.TRANSACTION, Operation.CREATE_STORED_QUERY})
_QUERY_OPERATIONS: frozenset[Operation] = frozenset(
    {Operation.GET_FEATURE, Operation.GET_FEATURE_WITH_LOCK, Operation.LOCK_FEATURE, Operation.GET_PROPERTY_VALUE}
)
_BBOX_CRS = "urn:ogc:def:crs:EPSG::4326"


# ---------------------------------------------------------------------------
# Parameter types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryExpression:
    """An ad hoc query over one or more feature types.

    ``type_names`` entries are normally :class:`TypeName`; a plain string is
    written verbatim, which is how stored-query templates reference a
    parameter (``"${typeName}"``).

    Attributes:
        type_names: Feature types queried.
        resource_ids: Feature identifiers (``fes:ResourceId``); exclusive
            with the other predicates.
        bbox: ``(min_lon, min_lat, max_lon, max_lat)`` spatial filter.
        property_equals: ``(property, literal)`` equality predicates, ANDed.
        sort_by: Property names to sort on, ascending.

    """

    type_names: tuple[TypeName | str, ...]
    resource_ids: tuple[str, ...] = ()
    bbox: tuple[float, float, float, float] | None = None
    property_equals: tuple[tuple[str, str], ...] = ()
    sort_by: tuple[str, ...] = ()

    @property
    def has_filter(self) -> bool:
        """Whether any predicate is present."""
        return bool(self.resource_ids or self.bbox or self.property_equals)


@dataclass(frozen=True)
class StoredQueryInvocation:
    """Invocation of a stored query by id with named parameter values."""

    query_id: str
    parameters: Mapping[str, str | TypeName] = field(default_factory=dict)


@dataclass(frozen=True)
class ParameterSpec:
    """One declared parameter of a stored query definition."""

    name: str
    type: str = "xs:string"
    title: str = ""


@dataclass(frozen=True)
class StoredQueryDefinition:
    """Definition submitted by ``CreateStoredQuery``.

    Attributes:
        query_id: Identifier (a URI) the query is registered under.
        query: Query expression body; may reference parameters as ``${name}``.
        parameters: Declared parameters.
        language: Query language URI.
        return_types: Value of ``returnFeatureTypes``; derived from the query
            when empty.
        title: Human-readable title.

    """

    query_id: str
    query: QueryExpression
    parameters: tuple[ParameterSpec, ...] = ()
    language: str = WFS_QUERY_LANGUAGE
    return_types: tuple[TypeName | str, ...] = ()
    title: str = ""


class ActionKind(StrEnum):
    """Transaction action element names."""

    INSERT = "Insert"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"


@dataclass(frozen=True)
class TransactionAction:
    """One action inside a ``Transaction``.

    Attributes:
        kind: Insert, Update, Replace or Delete.
        type_name: Feature type acted on.
        resource_ids: Targets (Update/Replace/Delete) or the new id (Insert).
        properties: Property values written (Insert/Update/Replace).

    """

    kind: ActionKind
    type_name: TypeName
    resource_ids: tuple[str, ...] = ()
    properties: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RequestParams:
    """Typed parameters for :meth:`RequestBuilder.build`.

    Only the fields relevant to the operation being built are read.
    """

    queries: tuple[QueryExpression | StoredQueryInvocation, ...] = ()
    count: int | None = None
    start_index: int | None = None
    result_type: ResultType | None = None
    expiry: int | None = None
    lock_action: LockAction | None = None
    lock_id: str | None = None
    release_action: ReleaseAction | None = None
    actions: tuple[TransactionAction, ...] = ()
    definition: StoredQueryDefinition | None = None
    stored_query_ids: tuple[str, ...] = ()
    type_names: tuple[TypeName, ...] = ()
    value_reference: str | None = None


@dataclass(frozen=True)
class Payload:
    """A built request, independent of wire encoding.

    Attributes:
        operation: The operation.
        root: XML request entity.
        kvp: Key-value pairs for the GET binding, ``None`` if the operation
            (or this particular request) has no KVP form.
        namespaces: Prefix bindings declared for qualified names in content.

    """

    operation: Operation
    root: ET.Element
    kvp: dict[str, str] | None
    namespaces: dict[str, str]

    def to_xml(self) -> bytes:
        """Serialize the request entity."""
        return to_bytes(self.root)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class _Prefixes:
    """Assigns stable prefixes to namespaces used in qualified-name content."""

    def __init__(self) -> None:
        self.bindings: dict[str, str] = {}

    def prefix_for(self, name: TypeName) -> str:
        for prefix, uri in self.bindings.items():
            if uri == name.namespace:
                return prefix
        preferred = name.prefix if name.prefix and name.prefix not in NAMESPACES else "tns"
        candidate, n = preferred, 1
        while candidate in self.bindings:
            candidate = f"tns{n}"
            n += 1
        self.bindings[candidate] = name.namespace
        return candidate

    def write(self, name: TypeName | str) -> str:
        if isinstance(name, str):
            return name
        if not name.namespace:
            return name.local
        return name.prefixed(self.prefix_for(name))


class RequestBuilder:
    """Builds protocol-legal request payloads.

    Args:
        capabilities: Service capabilities used to validate type names and
            property references; ``None`` disables those checks.
        version: Protocol version written into every request.

    """

    def __init__(self, capabilities: CapabilitySet | None = None, version: str = VERSION) -> None:
        """Initialize with optional capabilities for schema checks."""
        self.capabilities = capabilities
        self.version = version

    def build(self, operation: Operation, params: RequestParams | None = None, *, check_schema: bool = True) -> Payload:
        """Build a request for *operation*.

        Args:
            operation: Operation to build.
            params: Operation parameters.
            check_schema: Whether referenced types/properties must be advertised.

        Returns:
            The built payload.

        Raises:
            MalformedRequest: If a required parameter is missing or a
                referenced type or property is unknown.

        """
        params = params or RequestParams()
        self._validate(operation, params)
        if check_schema:
            self._check_schema(params)
        prefixes = _Prefixes()
        root = ET.Element(qn("wfs", operation.value), {"service": SERVICE})
        if operation is not Operation.GET_CAPABILITIES:
            root.set("version", self.version)
        kvp: dict[str, str] = {"SERVICE": SERVICE, "VERSION": self.version, "REQUEST": operation.value}
        has_kvp = operation not in _KVP_LESS
        if operation is Operation.GET_CAPABILITIES:
            kvp.pop("VERSION")
            kvp["ACCEPTVERSIONS"] = self.version
            versions = ET.SubElement(root, qn("ows", "AcceptVersions"))
            ET.SubElement(versions, qn("ows", "Version")).text = self.version
        elif operation is Operation.DESCRIBE_FEATURE_TYPE:
            for name in params.type_names:
                ET.SubElement(root, qn("wfs", "TypeName")).text = prefixes.write(name)
            if params.type_names:
                kvp["TYPENAMES"] = ",".join(prefixes.write(n) for n in params.type_names)
        elif operation in _QUERY_OPERATIONS:
            has_kvp = self._build_query_operation(params, root, kvp, prefixes)
        elif operation is Operation.TRANSACTION:
            self._build_transaction(params, root, prefixes)
        elif operation is Operation.LIST_STORED_QUERIES:
            pass
        elif operation is Operation.DESCRIBE_STORED_QUERIES:
            for query_id in params.stored_query_ids:
                ET.SubElement(root, qn("wfs", "StoredQueryId")).text = query_id
            if params.stored_query_ids:
                kvp["STOREDQUERY_ID"] = ",".join(params.stored_query_ids)
        elif operation is Operation.CREATE_STORED_QUERY:
            assert params.definition is not None
            self._build_definition(params.definition, root, prefixes)
        elif operation is Operation.DROP_STORED_QUERY:
            root.set("id", params.stored_query_ids[0])
            kvp["STOREDQUERY_ID"] = params.stored_query_ids[0]
        for prefix, uri in prefixes.bindings.items():
            declare_namespace(root, prefix, uri)
        if prefixes.bindings:
            kvp["NAMESPACES"] = ",".join(f"xmlns({p},{u})" for p, u in prefixes.bindings.items())
        return Payload(
            operation=operation, root=root, kvp=kvp if has_kvp else None, namespaces=dict(prefixes.bindings)
        )

    # -- validation ----------------------------------------------------------

    def _validate(self, operation: Operation, params: RequestParams) -> None:
        if params.count is not None and params.count < 1:
            raise MalformedRequest("count must be a positive integer", parameter="count", expected=">= 1",
                                   actual=params.count)
        if params.start_index is not None and params.start_index < 0:
            raise MalformedRequest("startIndex must not be negative", parameter="startIndex", expected=">= 0",
                                   actual=params.start_index)
        if params.expiry is not None and params.expiry < 0:
            raise MalformedRequest("expiry must not be negative", parameter="expiry", expected=">= 0",
                                   actual=params.expiry)
        for query in params.queries:
            if isinstance(query, QueryExpression):
                if not query.type_names:
                    raise MalformedRequest("Query has no typeNames", parameter="typeNames", expected="type name",
                                           actual=None)
                if query.resource_ids and (query.bbox or query.property_equals):
                    raise MalformedRequest("ResourceId cannot be combined with other predicates", parameter="filter",
                                           expected="ResourceId only", actual="ResourceId + predicates")
        match operation:
            case Operation.GET_FEATURE | Operation.GET_FEATURE_WITH_LOCK | Operation.GET_PROPERTY_VALUE:
                if not params.queries:
                    raise MalformedRequest(f"{operation} requires a query", parameter="Query", expected="query",
                                           actual=None)
                if params.start_index is not None and params.count is None:
                    raise MalformedRequest("Paging requires count", parameter="count", expected="count",
                                           actual=None)
                if operation is Operation.GET_PROPERTY_VALUE and not params.value_reference:
                    raise MalformedRequest("GetPropertyValue requires valueReference", parameter="valueReference",
                                           expected="property path", actual=None)
            case Operation.LOCK_FEATURE:
                if params.expiry is None:
                    raise MalformedRequest("LockFeature requires expiry", parameter="expiry", expected="seconds",
                                           actual=None)
                if not params.queries and not params.lock_id:
                    raise MalformedRequest("LockFeature requires a query or a lockId", parameter="Query",
                                           expected="query or lockId", actual=None)
            case Operation.TRANSACTION:
                if not params.actions and not params.lock_id:
                    raise MalformedRequest("Transaction requires at least one action", parameter="actions",
                                           expected="Insert/Update/Replace/Delete or lockId", actual=None)
            case Operation.CREATE_STORED_QUERY:
                definition = params.definition
                if definition is None:
                    raise MalformedRequest("CreateStoredQuery requires a definition", parameter="definition",
                                           expected="StoredQueryDefinition", actual=None)
                if not definition.language:
                    raise MalformedRequest("Stored query definition requires a language", parameter="language",
                                           expected="query language URI", actual=None)
                if not definition.query_id:
                    raise MalformedRequest("Stored query definition requires an id", parameter="id",
                                           expected="query id", actual=None)
                if not definition.query.type_names:
                    raise MalformedRequest("Stored query definition has no body", parameter="QueryExpressionText",
                                           expected="query expression", actual=None)
            case Operation.DROP_STORED_QUERY:
                if len(params.stored_query_ids) != 1:
                    raise MalformedRequest("DropStoredQuery requires exactly one id", parameter="id",
                                           expected=1, actual=len(params.stored_query_ids))
            case _:
                pass

    def _check_schema(self, params: RequestParams) -> None:
        if self.capabilities is None:
            return
        names: list[TypeName] = list(params.type_names)
        properties: list[tuple[TypeName, str]] = []
        for query in params.queries:
            if isinstance(query, QueryExpression):
                typed = [n for n in query.type_names if isinstance(n, TypeName)]
                names.extend(typed)
                for type_name in typed[:1]:
                    properties.extend((type_name, p) for p, _ in query.property_equals)
                    properties.extend((type_name, p) for p in query.sort_by)
        for action in params.actions:
            names.append(action.type_name)
            properties.extend((action.type_name, p) for p in action.properties)
        if params.definition is not None:
            names.extend(n for n in params.definition.query.type_names if isinstance(n, TypeName))
        for name in names:
            if self.capabilities.feature_type(name) is None:
                raise MalformedRequest(
                    f"Feature type {name.prefixed()} is not advertised",
                    parameter="typeNames",
                    expected=[str(d.name) for d in self.capabilities.feature_types],
                    actual=str(name),
                )
        for type_name, prop in properties:
            descriptor = self.capabilities.feature_type(type_name)
            if descriptor is None or not descriptor.properties:
                continue
            if prop.split(":")[-1] not in descriptor.properties:
                raise MalformedRequest(
                    f"Property {prop!r} is not declared by {type_name.prefixed()}",
                    parameter="valueReference",
                    expected=list(descriptor.properties),
                    actual=prop,
                )

    # -- element construction -----------------------------------------------

    def _build_query_operation(
        self,
        params: RequestParams,
        root: ET.Element,
        kvp: dict[str, str],
        prefixes: _Prefixes,
    ) -> bool:
        """Fill *root* and *kvp*; return whether the request has a KVP form."""
        attrs: dict[str, object | None] = {
            "count": params.count,
            "startIndex": params.start_index,
            "resultType": params.result_type,
            "expiry": params.expiry,
            "lockAction": params.lock_action,
            "lockId": params.lock_id,
            "valueReference": params.value_reference,
        }
        for attr, value in attrs.items():
            if value is not None:
                root.set(attr, str(value))
                kvp[attr.upper()] = str(value)
        for query in params.queries:
            if isinstance(query, QueryExpression):
                root.append(self._query_element(query, prefixes))
            else:
                sq = ET.SubElement(root, qn("wfs", "StoredQuery"), {"id": query.query_id})
                for name, value in query.parameters.items():
                    text = prefixes.write(value) if isinstance(value, TypeName) else value
                    ET.SubElement(sq, qn("wfs", "Parameter"), {"name": name}).text = text
        if len(params.queries) != 1:
            # KVP cannot express several queries with different filters
            return not params.queries
        query = params.queries[0]
        if isinstance(query, StoredQueryInvocation):
            kvp["STOREDQUERY_ID"] = query.query_id
            for name, value in query.parameters.items():
                kvp[name] = prefixes.write(value) if isinstance(value, TypeName) else value
            return True
        kvp["TYPENAMES"] = ",".join(prefixes.write(n) for n in query.type_names)
        if query.resource_ids:
            kvp["RESOURCEID"] = ",".join(query.resource_ids)
        elif query.has_filter:
            kvp["FILTER"] = ET.tostring(self._filter_element(query, prefixes), encoding="unicode")
        if query.sort_by:
            kvp["SORTBY"] = ",".join(query.sort_by)
        return True

    def _query_element(self, query: QueryExpression, prefixes: _Prefixes) -> ET.Element:
        elem = ET.Element(qn("wfs", "Query"), {"typeNames": " ".join(prefixes.write(n) for n in query.type_names)})
        if query.has_filter:
            elem.append(self._filter_element(query, prefixes))
        if query.sort_by:
            sort = ET.SubElement(elem, qn("fes", "SortBy"))
            for prop in query.sort_by:
                prop_elem = ET.SubElement(sort, qn("fes", "SortProperty"))
                ET.SubElement(prop_elem, qn("fes", "ValueReference")).text = prop
        return elem

    @staticmethod
    def _filter_element(query: QueryExpression, prefixes: _Prefixes) -> ET.Element:
        filt = ET.Element(qn("fes", "Filter"))
        if query.resource_ids:
            for rid in query.resource_ids:
                ET.SubElement(filt, qn("fes", "ResourceId"), {"rid": rid})
            return filt
        predicates: list[ET.Element] = []
        if query.bbox is not None:
            bbox = ET.Element(qn("fes", "BBOX"))
            env = ET.SubElement(bbox, qn("gml", "Envelope"), {"srsName": _BBOX_CRS})
            # EPSG:4326 axis order is latitude first
            ET.SubElement(env, qn("gml", "lowerCorner")).text = f"{query.bbox[1]} {query.bbox[0]}"
            ET.SubElement(env, qn("gml", "upperCorner")).text = f"{query.bbox[3]} {query.bbox[2]}"
            predicates.append(bbox)
        for prop, literal in query.property_equals:
            eq = ET.Element(qn("fes", "PropertyIsEqualTo"))
            ET.SubElement(eq, qn("fes", "ValueReference")).text = prop
            ET.SubElement(eq, qn("fes", "Literal")).text = literal
            predicates.append(eq)
        if len(predicates) == 1:
            filt.append(predicates[0])
        else:
            ET.SubElement(filt, qn("fes", "And")).extend(predicates)
        return filt

    @staticmethod
    def _feature_element(action: TransactionAction, prefixes: _Prefixes) -> ET.Element:
        # Literal prefixed tags: the prefix is declared on the request root.
        prefix = prefixes.prefix_for(action.type_name)
        feature = ET.Element(f"{prefix}:{action.type_name.local}")
        if action.resource_ids:
            feature.set(qn("gml", "id"), action.resource_ids[0])
        for prop, value in action.properties.items():
            ET.SubElement(feature, f"{prefix}:{prop.split(':')[-1]}").text = value
        return feature

    def _build_transaction(self, params: RequestParams, root: ET.Element, prefixes: _Prefixes) -> None:
        if params.lock_id:
            root.set("lockId", params.lock_id)
        if params.release_action is not None:
            root.set("releaseAction", str(params.release_action))
        for action in params.actions:
            elem = ET.SubElement(root, qn("wfs", action.kind.value))
            if action.kind is ActionKind.INSERT:
                elem.append(self._feature_element(action, prefixes))
                continue
            if action.kind is ActionKind.REPLACE:
                elem.append(self._feature_element(action, prefixes))
            else:
                elem.set("typeName", prefixes.write(action.type_name))
            if action.kind is ActionKind.UPDATE:
                for prop, value in action.properties.items():
                    prop_elem = ET.SubElement(elem, qn("wfs", "Property"))
                    ET.SubElement(prop_elem, qn("wfs", "ValueReference")).text = prop
                    ET.SubElement(prop_elem, qn("wfs", "Value")).text = value
            if action.resource_ids:
                target = QueryExpression(type_names=(action.type_name,), resource_ids=action.resource_ids)
                elem.append(self._filter_element(target, prefixes))

    def _build_definition(self, definition: StoredQueryDefinition, root: ET.Element, prefixes: _Prefixes) -> None:
        defn = ET.SubElement(root, qn("wfs", "StoredQueryDefinition"), {"id": definition.query_id})
        if definition.title:
            ET.SubElement(defn, qn("wfs", "Title")).text = definition.title
        for declared in definition.parameters:
            param = ET.SubElement(defn, qn("wfs", "Parameter"), {"name": declared.name, "type": declared.type})
            if declared.title:
                ET.SubElement(param, qn("wfs", "Title")).text = declared.title
        return_types = definition.return_types or definition.query.type_names
        text = ET.SubElement(
            defn,
            qn("wfs", "QueryExpressionText"),
            {
                "returnFeatureTypes": " ".join(prefixes.write(n) for n in return_types),
                "language": definition.language,
                "isPrivate": "false",
            },
        )
        text.append(self._query_element(definition.query, prefixes))
