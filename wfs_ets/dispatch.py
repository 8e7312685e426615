# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire dispatch over the GET (KVP), POST (XML) and SOAP bindings.

:class:`BindingDispatcher` sends a :class:`~wfs_ets.builder.Payload` over one
binding and normalizes the answer into a :class:`ResponseRecord`: SOAP
envelopes are unwrapped (faults down to their embedded exception report),
the body is parsed once, and any ``ows:ExceptionReport`` entries are
extracted. Every binding therefore yields the same record shape.

Transport errors (connection refused, timeouts) raise
:class:`~wfs_ets.errors.TransportFailure` immediately; nothing is retried.

Loggers:
    ``wfs_ets.dispatch``: one DEBUG line per exchange.
    ``wfs_ets.wire.request`` / ``wfs_ets.wire.response``: request and
    response bodies at DEBUG (guarded, zero cost when disabled).
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import TracebackType

import httpx

from wfs_ets._xml import parse_document, qn, to_bytes
from wfs_ets.builder import Payload, RequestBuilder
from wfs_ets.capabilities import CapabilitySet
from wfs_ets.errors import (
    MalformedRequest,
    PreconditionNotMet,
    ServiceException,
    StructuralValidationFailure,
    TransportFailure,
)
from wfs_ets.protocol import OWS_NS, SOAP11_NS, SOAP12_NS, Binding, Operation

__all__ = [
    "BindingDispatcher",
    "ExceptionEntry",
    "RequestContext",
    "ResponseRecord",
]

_logger = logging.getLogger("wfs_ets.dispatch")

wire_request_logger = logging.getLogger("wfs_ets.wire.request")
"""Outgoing request entities and query strings."""

wire_response_logger = logging.getLogger("wfs_ets.wire.response")
"""Incoming response bodies (after envelope unwrapping)."""

_MAX_BODY_LOG = 2000

_SOAP_CONTENT_TYPES: dict[str, str] = {
    "1.2": "application/soap+xml; charset=utf-8",
    "1.1": "text/xml; charset=utf-8",
}
_SOAP_NAMESPACES: dict[str, str] = {"1.2": SOAP12_NS, "1.1": SOAP11_NS}


def fmt_body(body: bytes) -> str:
    """Decode *body* for logging, truncated to a readable length."""
    text = body.decode("utf-8", errors="replace")
    if len(text) > _MAX_BODY_LOG:
        return f"{text[:_MAX_BODY_LOG]}... ({len(body)} bytes)"
    return text


@dataclass(frozen=True)
class ExceptionEntry:
    """One ``ows:Exception`` from an exception report."""

    code: str
    locator: str | None = None
    text: str = ""


@dataclass(frozen=True)
class RequestContext:
    """What was sent: operation, resolved binding, endpoint and payload."""

    operation: Operation | None
    binding: Binding
    endpoint: str
    payload: Payload | None = None


@dataclass(frozen=True)
class ResponseRecord:
    """Normalized response, identical in shape for every binding.

    Attributes:
        status: HTTP status code.
        body: Response entity, with any SOAP envelope removed.
        headers: Response headers (lower-cased names).
        binding: Binding the request travelled over.
        root: Parsed document element, ``None`` if the body is not XML.
        prefixes: Prefix bindings declared in the response document.
        exceptions: Entries of an ``ows:ExceptionReport`` (empty otherwise).
        request: The request that produced this response.

    """

    status: int
    body: bytes
    headers: Mapping[str, str]
    binding: Binding
    root: ET.Element | None = None
    prefixes: dict[str, str] = field(default_factory=dict)
    exceptions: tuple[ExceptionEntry, ...] = ()
    request: RequestContext | None = None

    @property
    def ok(self) -> bool:
        """Whether the status is 2xx and no exception report was returned."""
        return 200 <= self.status < 300 and not self.exceptions

    @property
    def exception_code(self) -> str | None:
        """Code of the first reported exception."""
        return self.exceptions[0].code if self.exceptions else None

    @property
    def exception_locator(self) -> str | None:
        """Locator of the first reported exception."""
        return self.exceptions[0].locator if self.exceptions else None

    @property
    def root_name(self) -> str | None:
        """Clark-notation tag of the document element."""
        return self.root.tag if self.root is not None else None


def _unwrap_soap(root: ET.Element) -> ET.Element | None:
    """Return the payload of a SOAP envelope (a fault's exception report for faults)."""
    for ns in (SOAP12_NS, SOAP11_NS):
        if root.tag != f"{{{ns}}}Envelope":
            continue
        body = root.find(f"{{{ns}}}Body")
        if body is None or len(body) == 0:
            return None
        content = body[0]
        if content.tag == f"{{{ns}}}Fault":
            report = content.find(f".//{{{OWS_NS}}}ExceptionReport")
            return report if report is not None else content
        return content
    return root


def _exception_entries(root: ET.Element | None) -> tuple[ExceptionEntry, ...]:
    if root is None or root.tag != qn("ows", "ExceptionReport"):
        return ()
    return tuple(
        ExceptionEntry(
            code=exc.get("exceptionCode", ""),
            locator=exc.get("locator"),
            text=" ".join((t.text or "").strip() for t in exc.findall(qn("ows", "ExceptionText"))),
        )
        for exc in root.findall(qn("ows", "Exception"))
    )


def normalize(
    status: int, body: bytes, headers: Mapping[str, str], binding: Binding, request: RequestContext | None = None
) -> ResponseRecord:
    """Build a :class:`ResponseRecord` from raw HTTP response parts."""
    root: ET.Element | None = None
    prefixes: dict[str, str] = {}
    if body.strip():
        try:
            root, prefixes = parse_document(body)
        except ET.ParseError:
            _logger.debug("Response body is not XML (status=%d, %d bytes)", status, len(body))
    if root is not None and binding is Binding.SOAP:
        unwrapped = _unwrap_soap(root)
        if unwrapped is not root:
            root = unwrapped
            body = to_bytes(unwrapped) if unwrapped is not None else b""
    return ResponseRecord(
        status=status,
        body=body,
        headers={k.lower(): v for k, v in headers.items()},
        binding=binding,
        root=root,
        prefixes=prefixes,
        exceptions=_exception_entries(root),
        request=request,
    )


class BindingDispatcher:
    """Sends payloads over a chosen binding and returns normalized responses.

    Args:
        capabilities: Service capabilities used to resolve ``Binding.ANY``
            and default endpoints; ``None`` requires explicit endpoints.
        client: HTTP client to use. One is created (and owned) when omitted.
        timeout: Default per-request timeout in seconds.
        soap_version: ``"1.2"`` (default) or ``"1.1"`` envelope.

    """

    def __init__(
        self,
        capabilities: CapabilitySet | None = None,
        *,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        soap_version: str = "1.2",
    ) -> None:
        """Initialize the dispatcher."""
        if soap_version not in _SOAP_NAMESPACES:
            raise ValueError(f"Unsupported SOAP version: {soap_version!r}")
        self.capabilities = capabilities
        self.timeout = timeout
        self.soap_version = soap_version
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(follow_redirects=True, timeout=timeout)

    def __enter__(self) -> BindingDispatcher:
        """Enter the context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close an owned client."""
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._owns_client:
            self._client.close()

    def with_capabilities(self, capabilities: CapabilitySet) -> BindingDispatcher:
        """Return a dispatcher sharing this one's client but using *capabilities*."""
        clone = BindingDispatcher(
            capabilities, client=self._client, timeout=self.timeout, soap_version=self.soap_version
        )
        clone._owns_client = False
        return clone

    # -- binding and endpoint resolution --------------------------------------

    def resolve_binding(self, payload: Payload, binding: Binding) -> Binding:
        """Map ``Binding.ANY`` to a concrete binding and reject impossible ones.

        Raises:
            MalformedRequest: If *payload* has no KVP form but GET was requested,
                or no advertised binding can carry it.

        """
        if binding is Binding.ANY:
            exclude = (Binding.GET,) if payload.kvp is None else ()
            if self.capabilities is None:
                return Binding.POST
            binding = self.capabilities.default_binding(payload.operation, exclude=exclude)
        if binding is Binding.GET and payload.kvp is None:
            raise MalformedRequest(
                f"{payload.operation} has no KVP encoding",
                parameter="binding",
                expected="POST or SOAP",
                actual="GET",
            )
        return binding

    def resolve_endpoint(self, operation: Operation, binding: Binding) -> str:
        """Endpoint advertised for *operation* over *binding*.

        Raises:
            PreconditionNotMet: If the service advertises no such endpoint.

        """
        url = self.capabilities.endpoint(operation, binding) if self.capabilities else None
        if url is None:
            raise PreconditionNotMet(
                f"No {binding.http_method} endpoint advertised for {operation}",
                expected=f"{binding.value} endpoint",
                actual=None,
            )
        return url

    # -- sending ---------------------------------------------------------------

    def dispatch(
        self,
        payload: Payload,
        binding: Binding = Binding.ANY,
        endpoint: str | None = None,
        *,
        timeout: float | None = None,
    ) -> ResponseRecord:
        """Send *payload* and return the normalized response.

        Args:
            payload: Built request.
            binding: Binding to use; ``ANY`` picks an advertised one.
            endpoint: Target URL; defaults to the advertised endpoint.
            timeout: Per-request timeout overriding the default.

        Raises:
            MalformedRequest: If the binding cannot carry the payload.
            PreconditionNotMet: If no endpoint is known for the binding.
            TransportFailure: On connection or timeout errors.

        """
        binding = self.resolve_binding(payload, binding)
        url = endpoint or self.resolve_endpoint(payload.operation, binding)
        request = RequestContext(operation=payload.operation, binding=binding, endpoint=url, payload=payload)
        timeout = self.timeout if timeout is None else timeout
        if binding is Binding.GET:
            assert payload.kvp is not None
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("GET %s params=%s", url, payload.kvp)
            return self._send(request, "GET", url, params=payload.kvp, timeout=timeout)
        if binding is Binding.SOAP:
            ns = _SOAP_NAMESPACES[self.soap_version]
            envelope = ET.Element(f"{{{ns}}}Envelope")
            ET.SubElement(envelope, f"{{{ns}}}Body").append(payload.root)
            content = to_bytes(envelope)
            headers = {"Content-Type": _SOAP_CONTENT_TYPES[self.soap_version]}
            if self.soap_version == "1.1":
                headers["SOAPAction"] = '""'
        else:
            content = payload.to_xml()
            headers = {"Content-Type": "application/xml; charset=utf-8"}
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug("POST %s (%s)\n%s", url, binding.value, fmt_body(content))
        return self._send(request, "POST", url, content=content, headers=headers, timeout=timeout)

    def retrieve(self, uri: str, *, timeout: float | None = None) -> ResponseRecord:
        """Dereference a continuation URI (``next``/``previous``) with a plain GET.

        Raises:
            TransportFailure: On connection or timeout errors.

        """
        request = RequestContext(operation=None, binding=Binding.GET, endpoint=uri)
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug("GET %s", uri)
        return self._send(request, "GET", uri, timeout=self.timeout if timeout is None else timeout)

    def fetch_capabilities(self, url: str) -> CapabilitySet:
        """Retrieve and parse the capabilities document at *url* (KVP GET).

        Raises:
            TransportFailure: On connection or timeout errors.
            ServiceException: If the service answers with an exception report.
            StructuralValidationFailure: If the response is not a capabilities document.

        """
        payload = RequestBuilder().build(Operation.GET_CAPABILITIES)
        record = self.dispatch(payload, Binding.GET, url)
        if not record.ok:
            raise ServiceException(record)
        if record.root is None:
            raise StructuralValidationFailure(
                "Capabilities response is not XML", expected="wfs:WFS_Capabilities", actual=record.headers.get(
                    "content-type")
            )
        caps = CapabilitySet.from_document(record.root, record.prefixes)
        _logger.info(
            "Service capabilities loaded",
            extra={"url": url, "version": caps.version, "conformance": sorted(caps.conformance)},
        )
        return caps

    def _send(self, request: RequestContext, method: str, url: str, **kwargs: object) -> ResponseRecord:
        try:
            response = self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.TransportError as exc:
            raise TransportFailure(
                f"{method} {url} failed: {type(exc).__name__}: {exc}",
                expected="HTTP response",
                actual=type(exc).__name__,
            ) from exc
        record = normalize(response.status_code, response.content, response.headers, request.binding, request)
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug(
                "HTTP %d from %s (%s)\n%s", record.status, url, request.binding.value, fmt_body(record.body)
            )
        _logger.debug(
            "%s via %s -> %d%s",
            request.operation or "GET",
            request.binding.value,
            record.status,
            f" [{record.exception_code}]" if record.exception_code else "",
            extra={"operation": str(request.operation), "binding": request.binding.value, "status": record.status},
        )
        return record
