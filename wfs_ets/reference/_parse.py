# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request decoding for the reference service.

Both encodings (XML entity and KVP query string) decode into the same
:class:`WfsRequest`. Type names stay as raw ``prefix:local`` text together
with the prefix bindings in scope; the store resolves them.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass, field

from wfs_ets._xml import local_name, parse_document, qn
from wfs_ets.protocol import WFS_NS, WFS_QUERY_LANGUAGE, ExceptionCode

__all__ = [
    "OPERATION_NOT_SUPPORTED",
    "QuerySpec",
    "StoredDefinition",
    "TxAction",
    "WfsError",
    "WfsRequest",
    "parse_kvp",
    "parse_xml",
]

_WFS_PREFIX = f"{{{WFS_NS}}}"
OPERATION_NOT_SUPPORTED = "OperationNotSupported"
_STATUS = {ExceptionCode.LOCK_HAS_EXPIRED.value: 403, OPERATION_NOT_SUPPORTED: 501}
_NAMESPACES_RE = re.compile(r"xmlns\(\s*([^,\s]*)\s*,\s*([^)\s]+)\s*\)")

# Attribute / KVP names with a fixed meaning; any other KVP key is a stored query parameter.
_KNOWN_KEYS = frozenset(
    {
        "SERVICE", "VERSION", "REQUEST", "ACCEPTVERSIONS", "NAMESPACES", "TYPENAMES", "RESOURCEID",
        "FILTER", "SORTBY", "COUNT", "STARTINDEX", "RESULTTYPE", "EXPIRY", "LOCKACTION", "LOCKID",
        "RELEASEACTION", "STOREDQUERY_ID", "VALUEREFERENCE", "CURSOR", "OUTPUTFORMAT", "SRSNAME",
    }
)


class WfsError(Exception):
    """An exception report to send back to the client.

    Attributes:
        code: Exception code.
        locator: Offending parameter, if any.
        text: Human-readable explanation.

    """

    def __init__(self, code: str, locator: str | None = None, text: str = "") -> None:
        """Initialize with the exception code, locator and text."""
        self.code = code
        self.locator = locator
        self.text = text or code
        super().__init__(f"{code}: {self.text}")

    @property
    def status(self) -> int:
        """HTTP status for this exception code."""
        return _STATUS.get(self.code, 400)


@dataclass(frozen=True)
class QuerySpec:
    """A decoded query: ad hoc predicates, or a stored query invocation."""

    type_names: tuple[str, ...] = ()
    resource_ids: tuple[str, ...] = ()
    bbox: tuple[float, float, float, float] | None = None
    equals: tuple[tuple[str, str], ...] = ()
    sort_by: tuple[str, ...] = ()
    stored_query: str | None = None
    parameters: Mapping[str, str] = field(default_factory=dict)
    prefixes: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredDefinition:
    """A stored query definition as held by the service."""

    query_id: str
    language: str
    template: str
    prefixes: Mapping[str, str]
    parameters: tuple[tuple[str, str], ...] = ()
    title: str = ""
    return_types: tuple[str, ...] = ()


@dataclass(frozen=True)
class TxAction:
    """One decoded transaction action."""

    kind: str
    type_name: str
    resource_ids: tuple[str, ...] = ()
    properties: Mapping[str, str] = field(default_factory=dict)
    new_id: str | None = None


@dataclass
class WfsRequest:
    """A decoded request, whatever its encoding."""

    operation: str
    prefixes: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    queries: list[QuerySpec] = field(default_factory=list)
    actions: list[TxAction] = field(default_factory=list)
    definition: StoredDefinition | None = None
    stored_query_ids: list[str] = field(default_factory=list)
    type_names: list[str] = field(default_factory=list)

    def int_param(self, name: str) -> int | None:
        """Integer parameter *name*, ``None`` if absent.

        Raises:
            WfsError: If the value is not a non-negative integer.

        """
        value = self.params.get(name)
        if value is None:
            return None
        try:
            number = int(value)
        except ValueError:
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, name.lower(), f"{name} must be an integer") from None
        if number < 0:
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, name.lower(), f"{name} must not be negative")
        return number


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


def _parse_filter(elem: ET.Element) -> tuple[tuple[str, ...], tuple[float, float, float, float] | None,
                                               tuple[tuple[str, str], ...]]:
    rids: list[str] = []
    bbox: tuple[float, float, float, float] | None = None
    equals: list[tuple[str, str]] = []
    for node in elem.iter():
        name = local_name(node.tag)
        if name == "ResourceId" and node.get("rid"):
            rids.append(node.get("rid", ""))
        elif name == "BBOX":
            lower = node.findtext(f".//{qn('gml', 'lowerCorner')}", default="").split()
            upper = node.findtext(f".//{qn('gml', 'upperCorner')}", default="").split()
            try:
                # EPSG:4326 axis order is latitude first
                bbox = (float(lower[1]), float(lower[0]), float(upper[1]), float(upper[0]))
            except (IndexError, ValueError):
                raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "filter", "Malformed gml:Envelope") from None
        elif name == "PropertyIsEqualTo":
            prop = node.findtext(qn("fes", "ValueReference"), default="").strip()
            literal = node.findtext(qn("fes", "Literal"), default="")
            equals.append((prop, literal))
    return tuple(rids), bbox, tuple(equals)


def _parse_query(elem: ET.Element, prefixes: Mapping[str, str]) -> QuerySpec:
    if elem.tag == qn("wfs", "StoredQuery"):
        query_id = elem.get("id")
        if not query_id:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "id", "StoredQuery requires an id")
        parameters = {p.get("name", "").upper(): (p.text or "").strip() for p in elem.findall(qn("wfs", "Parameter"))}
        return QuerySpec(stored_query=query_id, parameters=parameters, prefixes=dict(prefixes))
    type_names = tuple((elem.get("typeNames") or "").split())
    if not type_names:
        raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "typeNames", "Query requires typeNames")
    filt = elem.find(qn("fes", "Filter"))
    rids, bbox, equals = _parse_filter(filt) if filt is not None else ((), None, ())
    sort_by = tuple((v.text or "").strip() for v in elem.iterfind(f"{qn('fes', 'SortBy')}//{qn('fes', 'ValueReference')}"))
    return QuerySpec(type_names, rids, bbox, equals, sort_by, prefixes=dict(prefixes))


def parse_query_text(text: str, prefixes: Mapping[str, str]) -> QuerySpec:
    """Decode a serialized ``wfs:Query`` (a stored query body after substitution).

    Raises:
        WfsError: If the text is not a query expression.

    """
    try:
        root, declared = parse_document(text.encode("utf-8"))
    except ET.ParseError as exc:
        raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "QueryExpressionText", str(exc)) from exc
    return _parse_query(root, {**prefixes, **declared})


# ---------------------------------------------------------------------------
# XML encoding
# ---------------------------------------------------------------------------


def _parse_feature(elem: ET.Element) -> tuple[str, str | None, dict[str, str]]:
    if elem.tag.startswith("{"):
        ns, local = elem.tag[1:].split("}", 1)
        type_text = f"{{{ns}}}{local}"
    else:
        type_text = elem.tag
    properties = {local_name(child.tag): (child.text or "").strip() for child in elem if len(child) == 0}
    return type_text, elem.get(qn("gml", "id")), properties


def _parse_action(elem: ET.Element) -> TxAction:
    kind = local_name(elem.tag)
    filt = elem.find(qn("fes", "Filter"))
    rids = _parse_filter(filt)[0] if filt is not None else ()
    if kind in ("Insert", "Replace"):
        features = [c for c in elem if c.tag != qn("fes", "Filter")]
        if not features:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, kind, f"{kind} requires a feature")
        type_text, gml_id, properties = _parse_feature(features[0])
        return TxAction(kind, type_text, rids, properties, new_id=gml_id)
    if kind == "Update":
        properties = {
            (p.findtext(qn("wfs", "ValueReference"), default="").strip().split(":")[-1]):
                p.findtext(qn("wfs", "Value"), default="")
            for p in elem.findall(qn("wfs", "Property"))
        }
        return TxAction(kind, elem.get("typeName", ""), rids, properties)
    if kind == "Delete":
        return TxAction(kind, elem.get("typeName", ""), rids)
    raise WfsError(ExceptionCode.OPERATION_PARSING_FAILED, kind, f"Unknown transaction action {kind}")


def _parse_definition(elem: ET.Element, prefixes: Mapping[str, str]) -> StoredDefinition:
    query_id = elem.get("id")
    if not query_id:
        raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "id", "StoredQueryDefinition requires an id")
    text = elem.find(qn("wfs", "QueryExpressionText"))
    if text is None or len(text) == 0:
        raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "QueryExpressionText", "Definition has no query")
    return StoredDefinition(
        query_id=query_id,
        language=text.get("language", WFS_QUERY_LANGUAGE),
        template=ET.tostring(text[0], encoding="unicode"),
        prefixes=dict(prefixes),
        parameters=tuple((p.get("name", ""), p.get("type", "")) for p in elem.findall(qn("wfs", "Parameter"))),
        title=elem.findtext(qn("wfs", "Title"), default=""),
        return_types=tuple((text.get("returnFeatureTypes") or "").split()),
    )


def parse_xml(root: ET.Element, prefixes: dict[str, str]) -> WfsRequest:
    """Decode an XML request entity.

    Raises:
        WfsError: If the entity is not a WFS request.

    """
    if not root.tag.startswith(_WFS_PREFIX):
        raise WfsError(ExceptionCode.OPERATION_PARSING_FAILED, "request", f"Not a WFS request: {root.tag}")
    request = WfsRequest(operation=local_name(root.tag), prefixes=prefixes)
    request.params = {k.upper(): v for k, v in root.attrib.items() if not k.startswith("{") and ":" not in k}
    for child in root:
        name = local_name(child.tag)
        if child.tag in (qn("wfs", "Query"), qn("wfs", "StoredQuery")):
            request.queries.append(_parse_query(child, prefixes))
        elif name in ("Insert", "Update", "Replace", "Delete") and child.tag.startswith(_WFS_PREFIX):
            request.actions.append(_parse_action(child))
        elif child.tag == qn("wfs", "StoredQueryDefinition"):
            request.definition = _parse_definition(child, prefixes)
        elif child.tag == qn("wfs", "StoredQueryId"):
            request.stored_query_ids.append((child.text or "").strip())
        elif child.tag == qn("wfs", "TypeName"):
            request.type_names.append((child.text or "").strip())
    if request.operation == "DropStoredQuery" and root.get("id"):
        request.stored_query_ids.append(root.get("id", ""))
    return request


# ---------------------------------------------------------------------------
# KVP encoding
# ---------------------------------------------------------------------------


def parse_kvp(raw: Mapping[str, str]) -> WfsRequest:
    """Decode a KVP query string (keys are case-insensitive).

    Raises:
        WfsError: If ``REQUEST`` is missing or a parameter is malformed.

    """
    params = {k.upper(): v for k, v in raw.items()}
    operation = params.get("REQUEST")
    if not operation and "CURSOR" in params:
        operation = "GetFeature"
    if not operation:
        raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "request", "REQUEST is required")
    prefixes = {m.group(1): m.group(2) for m in _NAMESPACES_RE.finditer(params.get("NAMESPACES", ""))}
    request = WfsRequest(operation=operation, prefixes=prefixes, params=params)
    type_text = params.get("TYPENAMES") or params.get("TYPENAME") or ""
    type_names = tuple(t for t in type_text.split(",") if t)
    if operation == "DescribeFeatureType":
        request.type_names = list(type_names)
    if "STOREDQUERY_ID" in params:
        request.stored_query_ids = [s for s in params["STOREDQUERY_ID"].split(",") if s]
        if operation in ("GetFeature", "GetFeatureWithLock", "LockFeature", "GetPropertyValue"):
            extra = {k: v for k, v in params.items() if k not in _KNOWN_KEYS}
            request.queries.append(
                QuerySpec(stored_query=request.stored_query_ids[0], parameters=extra, prefixes=prefixes)
            )
    elif type_names or "RESOURCEID" in params:
        rids = tuple(r for r in params.get("RESOURCEID", "").split(",") if r)
        bbox = None
        equals: tuple[tuple[str, str], ...] = ()
        if "FILTER" in params:
            try:
                filt, declared = parse_document(params["FILTER"].encode("utf-8"))
            except ET.ParseError as exc:
                raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "filter", str(exc)) from exc
            prefixes.update({k: v for k, v in declared.items() if k not in prefixes})
            more_rids, bbox, equals = _parse_filter(filt)
            rids = rids + more_rids
        sort_by = tuple(s.split()[0] for s in params.get("SORTBY", "").split(",") if s.strip())
        if operation != "DescribeFeatureType":
            request.queries.append(QuerySpec(type_names, rids, bbox, equals, sort_by, prefixes=prefixes))
    return request
