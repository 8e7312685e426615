# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Falcon WSGI front end of the reference service.

One resource answers every operation: ``GET`` carries the KVP encoding,
``POST`` carries either a bare XML entity or a SOAP 1.1/1.2 envelope. Errors
become ``ows:ExceptionReport`` documents (wrapped in a SOAP fault for SOAP
requests) with the status mapped from the exception code.

Logger: ``wfs_ets.reference``
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import falcon
import waitress

from wfs_ets._xml import declare_namespace, local_name, parse_document, qn, to_bytes
from wfs_ets.capabilities import TypeName
from wfs_ets.clock import Clock, SystemClock
from wfs_ets.protocol import (
    GML_NS,
    SERVICE,
    SOAP11_NS,
    SOAP12_NS,
    VERSION,
    ConformanceClass,
    Constraint,
    ExceptionCode,
    Operation,
)
from wfs_ets.reference._parse import OPERATION_NOT_SUPPORTED, WfsError, WfsRequest, parse_kvp, parse_xml
from wfs_ets.reference._store import REFERENCE_NS, FeatureStore, Faults, PageResult, default_store

__all__ = ["make_wsgi_app", "serve"]

_logger = logging.getLogger("wfs_ets.reference")

XSD_NS = "http://www.w3.org/2001/XMLSchema"
_XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"
_CRS = "urn:ogc:def:crs:EPSG::4326"

ET.register_namespace("tns", REFERENCE_NS)
ET.register_namespace("xsd", XSD_NS)

_SOAP_VERSIONS: dict[str, str] = {SOAP12_NS: "1.2", SOAP11_NS: "1.1"}
_CONTENT_TYPES: dict[str | None, str] = {
    None: "application/xml; charset=utf-8",
    "1.2": "application/soap+xml; charset=utf-8",
    "1.1": "text/xml; charset=utf-8",
}

# Operations withdrawn when their conformance class is switched off.
_CLASS_OPERATIONS: dict[ConformanceClass, tuple[Operation, ...]] = {
    ConformanceClass.TRANSACTIONAL_WFS: (Operation.TRANSACTION,),
    ConformanceClass.LOCKING_WFS: (Operation.LOCK_FEATURE, Operation.GET_FEATURE_WITH_LOCK),
    ConformanceClass.MANAGE_STORED_QUERIES: (Operation.CREATE_STORED_QUERY, Operation.DROP_STORED_QUERY),
}

# No KVP encoding exists for these.
_POST_ONLY = frozenset({Operation.TRANSACTION, Operation.CREATE_STORED_QUERY})

_ADVERTISED_CLASSES = (
    ConformanceClass.SIMPLE_WFS,
    ConformanceClass.BASIC_WFS,
    ConformanceClass.TRANSACTIONAL_WFS,
    ConformanceClass.LOCKING_WFS,
    ConformanceClass.RESULT_PAGING,
    ConformanceClass.MANAGE_STORED_QUERIES,
    ConformanceClass.KVP_ENCODING,
    ConformanceClass.XML_ENCODING,
    ConformanceClass.SOAP_ENCODING,
)


def _wfs(local: str, parent: ET.Element | None = None, **attrs: str) -> ET.Element:
    if parent is None:
        return ET.Element(qn("wfs", local), attrs)
    return ET.SubElement(parent, qn("wfs", local), attrs)


def _exception_report(error: WfsError) -> ET.Element:
    report = ET.Element(qn("ows", "ExceptionReport"), version="2.0.0")
    exc = ET.SubElement(report, qn("ows", "Exception"), exceptionCode=error.code)
    if error.locator:
        exc.set("locator", error.locator)
    ET.SubElement(exc, qn("ows", "ExceptionText")).text = error.text
    return report


def _envelope(content: ET.Element, version: str) -> ET.Element:
    ns = SOAP12_NS if version == "1.2" else SOAP11_NS
    envelope = ET.Element(f"{{{ns}}}Envelope")
    ET.SubElement(envelope, f"{{{ns}}}Body").append(content)
    return envelope


def _fault(error: WfsError, version: str) -> ET.Element:
    if version == "1.2":
        fault = ET.Element(f"{{{SOAP12_NS}}}Fault")
        code = ET.SubElement(fault, f"{{{SOAP12_NS}}}Code")
        ET.SubElement(code, f"{{{SOAP12_NS}}}Value").text = "soap:Sender"
        reason = ET.SubElement(fault, f"{{{SOAP12_NS}}}Reason")
        ET.SubElement(reason, f"{{{SOAP12_NS}}}Text", {_XML_LANG: "en"}).text = error.text
        ET.SubElement(fault, f"{{{SOAP12_NS}}}Detail").append(_exception_report(error))
        return fault
    fault = ET.Element(f"{{{SOAP11_NS}}}Fault")
    ET.SubElement(fault, "faultcode").text = "soap11:Client"
    ET.SubElement(fault, "faultstring").text = error.text
    ET.SubElement(fault, "detail").append(_exception_report(error))
    return fault


class _WfsService:
    """Turns decoded requests into response documents."""

    def __init__(self, store: FeatureStore, disabled: frozenset[ConformanceClass], title: str) -> None:
        self.store = store
        self.disabled = disabled
        self.title = title
        self.withdrawn = frozenset(op for cls in disabled for op in _CLASS_OPERATIONS.get(cls, ()))
        self._handlers: dict[str, Callable[[WfsRequest, str], ET.Element]] = {
            Operation.GET_CAPABILITIES: self._get_capabilities,
            Operation.DESCRIBE_FEATURE_TYPE: self._describe_feature_type,
            Operation.GET_FEATURE: self._get_feature,
            Operation.GET_PROPERTY_VALUE: self._get_property_value,
            Operation.GET_FEATURE_WITH_LOCK: self._get_feature_with_lock,
            Operation.LOCK_FEATURE: self._lock_feature,
            Operation.TRANSACTION: self._transaction,
            Operation.LIST_STORED_QUERIES: self._list_stored_queries,
            Operation.DESCRIBE_STORED_QUERIES: self._describe_stored_queries,
            Operation.CREATE_STORED_QUERY: self._create_stored_query,
            Operation.DROP_STORED_QUERY: self._drop_stored_query,
        }

    def enabled(self, cls: ConformanceClass) -> bool:
        return cls not in self.disabled

    def handle(self, request: WfsRequest, base_url: str) -> ET.Element:
        handler = self._handlers.get(request.operation)
        if handler is None or request.operation in self.withdrawn:
            raise WfsError(OPERATION_NOT_SUPPORTED, "request", f"{request.operation} is not supported")
        version = request.params.get("VERSION")
        if request.operation != Operation.GET_CAPABILITIES and version and not version.startswith("2.0"):
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "version", f"Unsupported version {version}")
        return handler(request, base_url)

    # -- capabilities --------------------------------------------------------

    def _get_capabilities(self, request: WfsRequest, base_url: str) -> ET.Element:
        root = _wfs("WFS_Capabilities", version=VERSION)
        declare_namespace(root, "tns", REFERENCE_NS)
        ident = ET.SubElement(root, qn("ows", "ServiceIdentification"))
        ET.SubElement(ident, qn("ows", "Title")).text = self.title
        ET.SubElement(ident, qn("ows", "ServiceType")).text = SERVICE
        ET.SubElement(ident, qn("ows", "ServiceTypeVersion")).text = VERSION

        metadata = ET.SubElement(root, qn("ows", "OperationsMetadata"))
        kvp = self.enabled(ConformanceClass.KVP_ENCODING)
        post = self.enabled(ConformanceClass.XML_ENCODING) or self.enabled(ConformanceClass.SOAP_ENCODING)
        for operation in Operation:
            if operation in self.withdrawn:
                continue
            op = ET.SubElement(metadata, qn("ows", "Operation"), name=operation.value)
            http = ET.SubElement(ET.SubElement(op, qn("ows", "DCP")), qn("ows", "HTTP"))
            if kvp and operation not in _POST_ONLY:
                ET.SubElement(http, qn("ows", "Get"), {qn("xlink", "href"): base_url + "?"})
            if post:
                ET.SubElement(http, qn("ows", "Post"), {qn("xlink", "href"): base_url})
            if operation is Operation.CREATE_STORED_QUERY:
                param = ET.SubElement(op, qn("ows", "Parameter"), name="language")
                allowed = ET.SubElement(param, qn("ows", "AllowedValues"))
                for language in self.store.query_languages:
                    ET.SubElement(allowed, qn("ows", "Value")).text = language
        for cls in _ADVERTISED_CLASSES:
            self._constraint(metadata, cls.value, "TRUE" if self.enabled(cls) else "FALSE")
        self._constraint(metadata, Constraint.RESPONSE_CACHE_TIMEOUT.value, str(self.store.cache_timeout))
        self._constraint(metadata, Constraint.PAGING_IS_TRANSACTION_SAFE.value, "FALSE")

        type_list = _wfs("FeatureTypeList", root)
        for name in self.store.feature_types:
            feature_type = _wfs("FeatureType", type_list)
            _wfs("Name", feature_type).text = f"tns:{name.local}"
            _wfs("Title", feature_type).text = name.local
            _wfs("DefaultCRS", feature_type).text = _CRS
            west, south, east, north = self._extent(name)
            bbox = ET.SubElement(feature_type, qn("ows", "WGS84BoundingBox"))
            ET.SubElement(bbox, qn("ows", "LowerCorner")).text = f"{west} {south}"
            ET.SubElement(bbox, qn("ows", "UpperCorner")).text = f"{east} {north}"
        return root

    @staticmethod
    def _constraint(parent: ET.Element, name: str, value: str) -> None:
        constraint = ET.SubElement(parent, qn("ows", "Constraint"), name=name)
        ET.SubElement(constraint, qn("ows", "NoValues"))
        ET.SubElement(constraint, qn("ows", "DefaultValue")).text = value

    def _extent(self, name: TypeName) -> tuple[float, float, float, float]:
        points = [f.point for f in self.store.features.values() if f.type_name == name and f.point is not None]
        if not points:
            return (-180.0, -90.0, 180.0, 90.0)
        lons = [p[0] for p in points]
        lats = [p[1] for p in points]
        return (min(lons), min(lats), max(lons), max(lats))

    def _describe_feature_type(self, request: WfsRequest, base_url: str) -> ET.Element:
        names = [self.store.resolve_type(t, request.prefixes) for t in request.type_names]
        schema = ET.Element(
            f"{{{XSD_NS}}}schema", targetNamespace=REFERENCE_NS, elementFormDefault="qualified"
        )
        declare_namespace(schema, "tns", REFERENCE_NS)
        declare_namespace(schema, "gml", GML_NS)
        for name in names or list(self.store.feature_types):
            ET.SubElement(
                schema,
                f"{{{XSD_NS}}}element",
                name=name.local,
                type=f"tns:{name.local}Type",
                substitutionGroup="gml:AbstractFeature",
            )
            complex_type = ET.SubElement(schema, f"{{{XSD_NS}}}complexType", name=f"{name.local}Type")
            content = ET.SubElement(complex_type, f"{{{XSD_NS}}}complexContent")
            extension = ET.SubElement(content, f"{{{XSD_NS}}}extension", base="gml:AbstractFeatureType")
            sequence = ET.SubElement(extension, f"{{{XSD_NS}}}sequence")
            for prop in self.store.feature_types[name]:
                prop_type = "gml:PointPropertyType" if prop == "geometry" else "xsd:string"
                ET.SubElement(sequence, f"{{{XSD_NS}}}element", name=prop, type=prop_type, minOccurs="0")
        return schema

    # -- queries -------------------------------------------------------------

    def _get_feature(self, request: WfsRequest, base_url: str) -> ET.Element:
        cursor = request.params.get("CURSOR")
        if cursor:
            return self._collection(self.store.resume(cursor), base_url)
        if not request.queries:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "typeNames", "GetFeature requires a query")
        count = request.int_param("COUNT")
        if count == 0:
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "count", "count must be positive")
        hits = self._result_type(request) == "hits"
        result = self.store.get_feature(request.queries, count, request.int_param("STARTINDEX") or 0, hits=hits)
        return self._collection(result, base_url)

    @staticmethod
    def _result_type(request: WfsRequest) -> str:
        value = request.params.get("RESULTTYPE", "results").lower()
        if value not in ("results", "hits"):
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "resultType", f"Unknown resultType {value}")
        return value

    def _collection(self, result: PageResult, base_url: str, lock_id: str | None = None) -> ET.Element:
        root = _wfs(
            "FeatureCollection",
            numberMatched=str(result.number_matched),
            numberReturned=str(len(result.features)),
            timeStamp=datetime.now(UTC).isoformat(timespec="seconds"),
        )
        if lock_id is not None:
            root.set("lockId", lock_id)
        for direction, cursor in (("next", result.next_cursor), ("previous", result.previous_cursor)):
            if cursor is not None:
                root.set(
                    direction, f"{base_url}?SERVICE={SERVICE}&VERSION={VERSION}&REQUEST=GetFeature&CURSOR={cursor}"
                )
        for feature in result.features:
            member = _wfs("member", root)
            elem = ET.SubElement(member, feature.type_name.clark, {qn("gml", "id"): feature.fid})
            for prop in self.store.feature_types.get(feature.type_name, ()):
                if prop == "geometry":
                    if feature.point is None:
                        continue
                    geometry = ET.SubElement(elem, f"{{{feature.type_name.namespace}}}geometry")
                    point = ET.SubElement(
                        geometry, qn("gml", "Point"), {qn("gml", "id"): f"{feature.fid}.geom", "srsName": _CRS}
                    )
                    lon, lat = feature.point
                    ET.SubElement(point, qn("gml", "pos")).text = f"{lat} {lon}"
                elif prop in feature.properties:
                    child = ET.SubElement(elem, f"{{{feature.type_name.namespace}}}{prop}")
                    child.text = feature.properties[prop]
        return root

    def _get_property_value(self, request: WfsRequest, base_url: str) -> ET.Element:
        reference = request.params.get("VALUEREFERENCE")
        if not reference:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "valueReference", "valueReference is required")
        if not request.queries:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "typeNames", "GetPropertyValue requires a query")
        prop = local_name(reference).split(":")[-1]
        values = [
            f.properties[prop]
            for f in self.store.get_feature(request.queries, request.int_param("COUNT"), 0).features
            if prop in f.properties
        ]
        root = _wfs("ValueCollection", numberMatched=str(len(values)), numberReturned=str(len(values)))
        for value in values:
            _wfs("member", root).text = value
        return root

    # -- locking -------------------------------------------------------------

    @staticmethod
    def _lock_action(request: WfsRequest) -> str:
        action = request.params.get("LOCKACTION", "ALL").upper()
        if action not in ("ALL", "SOME"):
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "lockAction", f"Unknown lockAction {action}")
        return action

    def _lock_feature(self, request: WfsRequest, base_url: str) -> ET.Element:
        result = self.store.lock(
            request.queries, request.int_param("EXPIRY"), self._lock_action(request), request.params.get("LOCKID")
        )
        root = _wfs("LockFeatureResponse", lockId=result.lock_id)
        if result.locked:
            locked = _wfs("FeaturesLocked", root)
            for fid in result.locked:
                ET.SubElement(locked, qn("fes", "ResourceId"), rid=fid)
        if result.not_locked:
            not_locked = _wfs("FeaturesNotLocked", root)
            for fid in result.not_locked:
                ET.SubElement(not_locked, qn("fes", "ResourceId"), rid=fid)
        return root

    def _get_feature_with_lock(self, request: WfsRequest, base_url: str) -> ET.Element:
        if self._result_type(request) == "hits":
            raise WfsError(
                ExceptionCode.INVALID_PARAMETER_VALUE, "resultType", "GetFeatureWithLock does not support hits"
            )
        if not request.queries:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "typeNames", "GetFeatureWithLock requires a query")
        result = self.store.lock(
            request.queries,
            request.int_param("EXPIRY"),
            self._lock_action(request),
            request.params.get("LOCKID"),
            with_features=True,
        )
        page = PageResult(result.features, len(result.features))
        return self._collection(page, base_url, lock_id=result.lock_id)

    # -- transactions --------------------------------------------------------

    def _transaction(self, request: WfsRequest, base_url: str) -> ET.Element:
        release = request.params.get("RELEASEACTION", "ALL").upper()
        if release not in ("ALL", "SOME"):
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "releaseAction", f"Unknown releaseAction {release}")
        result = self.store.transaction(request.actions, request.params.get("LOCKID"), release, request.prefixes)
        root = _wfs("TransactionResponse", version=VERSION)
        summary = _wfs("TransactionSummary", root)
        _wfs("totalInserted", summary).text = str(len(result.inserted))
        _wfs("totalUpdated", summary).text = str(result.updated)
        _wfs("totalReplaced", summary).text = str(result.replaced)
        _wfs("totalDeleted", summary).text = str(result.deleted)
        if result.inserted:
            inserted = _wfs("InsertResults", root)
            for fid in result.inserted:
                ET.SubElement(_wfs("Feature", inserted), qn("fes", "ResourceId"), rid=fid)
        return root

    # -- stored queries ------------------------------------------------------

    def _list_stored_queries(self, request: WfsRequest, base_url: str) -> ET.Element:
        root = _wfs("ListStoredQueriesResponse")
        declare_namespace(root, "tns", REFERENCE_NS)
        for definition in self.store.stored_queries():
            query = _wfs("StoredQuery", root, id=definition.query_id)
            _wfs("Title", query).text = definition.title or definition.query_id
            for name in self._return_types(definition.return_types, definition.prefixes):
                _wfs("ReturnFeatureType", query).text = name
        return root

    def _return_types(self, raw: Iterable[str], prefixes: Mapping[str, str]) -> list[str]:
        # ${param} references resolve per invocation
        names = [self.store.resolve_type(t, prefixes) for t in raw if not t.startswith("${")]
        return [f"tns:{n.local}" for n in names or self.store.feature_types]

    def _describe_stored_queries(self, request: WfsRequest, base_url: str) -> ET.Element:
        known = {d.query_id: d for d in self.store.stored_queries()}
        unknown = [q for q in request.stored_query_ids if q not in known]
        if unknown:
            raise WfsError(ExceptionCode.INVALID_PARAMETER_VALUE, "id", f"Unknown stored query {unknown[0]}")
        root = _wfs("DescribeStoredQueriesResponse")
        declare_namespace(root, "tns", REFERENCE_NS)
        for query_id in request.stored_query_ids or list(known):
            definition = known[query_id]
            description = _wfs("StoredQueryDescription", root, id=query_id)
            _wfs("Title", description).text = definition.title or query_id
            for name, type_ in definition.parameters:
                _wfs("Parameter", description, name=name, type=type_)
            _wfs(
                "QueryExpressionText",
                description,
                returnFeatureTypes=" ".join(self._return_types(definition.return_types, definition.prefixes)),
                language=definition.language,
                isPrivate="true",
            )
        return root

    def _create_stored_query(self, request: WfsRequest, base_url: str) -> ET.Element:
        if request.definition is None:
            raise WfsError(
                ExceptionCode.MISSING_PARAMETER_VALUE, "StoredQueryDefinition", "CreateStoredQuery requires a definition"
            )
        self.store.create_stored_query(request.definition)
        return _wfs("CreateStoredQueryResponse", status="OK")

    def _drop_stored_query(self, request: WfsRequest, base_url: str) -> ET.Element:
        if not request.stored_query_ids:
            raise WfsError(ExceptionCode.MISSING_PARAMETER_VALUE, "id", "DropStoredQuery requires an id")
        for query_id in request.stored_query_ids:
            self.store.drop_stored_query(query_id)
        return _wfs("DropStoredQueryResponse", status="OK")


class _WfsResource:
    """Falcon resource exposing the service on a single endpoint."""

    def __init__(self, service: _WfsService) -> None:
        self._service = service

    def on_get(self, req: falcon.Request, resp: falcon.Response) -> None:
        """Serve a KVP-encoded request."""
        raw = {k: v if isinstance(v, str) else ",".join(v) for k, v in req.params.items()}
        try:
            request = parse_kvp(raw)
            req.context.operation = request.operation
            if request.operation in _POST_ONLY:
                raise WfsError(OPERATION_NOT_SUPPORTED, "request", f"{request.operation} has no KVP encoding")
            if request.operation != Operation.GET_CAPABILITIES and not self._service.enabled(
                ConformanceClass.KVP_ENCODING
            ):
                raise WfsError(OPERATION_NOT_SUPPORTED, "request", "KVP encoding is not supported")
            self._reply(resp, self._service.handle(request, req.prefix + req.path), None)
        except WfsError as exc:
            self._reply_error(resp, exc, None)

    def on_post(self, req: falcon.Request, resp: falcon.Response) -> None:
        """Serve an XML or SOAP request entity."""
        soap: str | None = None
        try:
            try:
                root, prefixes = parse_document(req.bounded_stream.read())
            except ET.ParseError as exc:
                raise WfsError(ExceptionCode.OPERATION_PARSING_FAILED, "request", str(exc)) from exc
            for ns, version in _SOAP_VERSIONS.items():
                if root.tag == f"{{{ns}}}Envelope":
                    soap = version
                    body = root.find(f"{{{ns}}}Body")
                    if body is None or len(body) == 0:
                        raise WfsError(ExceptionCode.OPERATION_PARSING_FAILED, "Body", "SOAP body is empty")
                    root = body[0]
            encoding = ConformanceClass.SOAP_ENCODING if soap else ConformanceClass.XML_ENCODING
            if not self._service.enabled(encoding):
                raise WfsError(OPERATION_NOT_SUPPORTED, "request", f"{encoding} is not supported")
            request = parse_xml(root, prefixes)
            req.context.operation = request.operation
            self._reply(resp, self._service.handle(request, req.prefix + req.path), soap)
        except WfsError as exc:
            self._reply_error(resp, exc, soap)

    @staticmethod
    def _reply(resp: falcon.Response, document: ET.Element, soap: str | None, status: int = 200) -> None:
        resp.status = str(status)
        resp.content_type = _CONTENT_TYPES[soap]
        resp.data = to_bytes(_envelope(document, soap) if soap else document)

    def _reply_error(self, resp: falcon.Response, error: WfsError, soap: str | None) -> None:
        _logger.debug(
            "Rejected request: %s (locator=%s)",
            error.code,
            error.locator,
            extra={"exception_code": error.code, "locator": error.locator, "status": error.status},
        )
        document = _envelope(_fault(error, soap), soap) if soap else _exception_report(error)
        resp.status = str(error.status)
        resp.content_type = _CONTENT_TYPES[soap]
        resp.data = to_bytes(document)


class _RequestLogMiddleware:
    """Falcon middleware that logs every exchange at DEBUG."""

    def process_response(
        self,
        req: falcon.Request,
        resp: falcon.Response,
        resource: object,
        req_succeeded: bool,
    ) -> None:
        """Log method, operation and status."""
        operation = getattr(req.context, "operation", None)
        _logger.debug(
            "%s %s -> %s",
            req.method,
            operation,
            resp.status,
            extra={"method": req.method, "operation": operation, "status": str(resp.status)},
        )


def make_wsgi_app(
    store: FeatureStore | None = None,
    *,
    clock: Clock | None = None,
    faults: Faults | None = None,
    disabled: Iterable[ConformanceClass] = (),
    path: str = "/wfs",
    title: str = "wfs-ets reference service",
) -> falcon.App[falcon.Request, falcon.Response]:
    """Create a Falcon WSGI app serving the reference WFS.

    Args:
        store: Backing store. Defaults to :func:`default_store` on *clock*.
        clock: Clock for the default store (ignored when *store* is given).
        faults: Rule violations for the default store.
        disabled: Conformance classes to advertise as FALSE; their
            operations are withdrawn.
        path: Route of the single service endpoint.
        title: Service title in the capabilities document.

    Returns:
        A Falcon application.

    """
    if store is None:
        store = default_store(clock or SystemClock(), faults=faults)
    service = _WfsService(store, frozenset(disabled), title)
    middleware: list[Any] = [_RequestLogMiddleware()]
    app: falcon.App[falcon.Request, falcon.Response] = falcon.App(middleware=middleware)
    app.add_route(path, _WfsResource(service))
    _logger.info(
        "WSGI app created at %s (disabled=%s)",
        path,
        sorted(service.disabled) or "none",
        extra={"path": path, "disabled": sorted(service.disabled), "faults": repr(store.faults)},
    )
    return app


def serve(host: str = "127.0.0.1", port: int = 8080, *, path: str = "/wfs", faults: Faults | None = None) -> None:
    """Serve the reference WFS with waitress until interrupted."""
    app = make_wsgi_app(faults=faults, path=path)
    _logger.info("Serving reference WFS on http://%s:%d%s", host, port, path, extra={"host": host, "port": port})
    waitress.serve(app, host=host, port=port, _quiet=True)
