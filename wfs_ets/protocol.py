# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire-level constants for the WFS 2.0 feature-query protocol.

Namespaces, operation names, protocol bindings, exception codes (with their
HTTP status mapping), and the named constraints and conformance classes that
a service advertises in its capabilities document.

All names mirror the spelling used on the wire so that values can be written
into request entities and compared against response content directly.
"""

from __future__ import annotations

from enum import Enum, StrEnum

__all__ = [
    "DEFAULT_LOCK_EXPIRY",
    "FES_NS",
    "GML_NS",
    "NAMESPACES",
    "OWS_NS",
    "QRY_GET_FEATURE_BY_ID",
    "SERVICE",
    "SOAP11_NS",
    "SOAP12_NS",
    "VERSION",
    "WFS_NS",
    "WFS_QUERY_LANGUAGE",
    "XLINK_NS",
    "Binding",
    "ConformanceClass",
    "Constraint",
    "ExceptionCode",
    "LockAction",
    "Operation",
    "ReleaseAction",
    "ResultType",
]

WFS_NS = "http://www.opengis.net/wfs/2.0"
FES_NS = "http://www.opengis.net/fes/2.0"
OWS_NS = "http://www.opengis.net/ows/1.1"
GML_NS = "http://www.opengis.net/gml/3.2"
XLINK_NS = "http://www.w3.org/1999/xlink"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"
SOAP11_NS = "http://schemas.xmlsoap.org/soap/envelope/"

NAMESPACES: dict[str, str] = {
    "wfs": WFS_NS,
    "fes": FES_NS,
    "ows": OWS_NS,
    "gml": GML_NS,
    "xlink": XLINK_NS,
    "xsi": XSI_NS,
}
"""Standard prefix bindings used for request construction and path lookups."""

SERVICE = "WFS"
VERSION = "2.0.2"

QRY_GET_FEATURE_BY_ID = "http://www.opengis.net/def/query/OGC-WFS/0/GetFeatureById"
WFS_QUERY_LANGUAGE = "urn:ogc:def:queryLanguage:OGC-WFS::WFSQueryExpression"

DEFAULT_LOCK_EXPIRY = 300
"""Lock duration in seconds applied by a service when ``expiry`` is omitted."""


class Operation(StrEnum):
    """Request names (the document element of each request entity)."""

    GET_CAPABILITIES = "GetCapabilities"
    DESCRIBE_FEATURE_TYPE = "DescribeFeatureType"
    GET_FEATURE = "GetFeature"
    GET_PROPERTY_VALUE = "GetPropertyValue"
    GET_FEATURE_WITH_LOCK = "GetFeatureWithLock"
    LOCK_FEATURE = "LockFeature"
    TRANSACTION = "Transaction"
    LIST_STORED_QUERIES = "ListStoredQueries"
    DESCRIBE_STORED_QUERIES = "DescribeStoredQueries"
    CREATE_STORED_QUERY = "CreateStoredQuery"
    DROP_STORED_QUERY = "DropStoredQuery"

    @property
    def response_element(self) -> str:
        """Local name of the document element of a successful response."""
        return _RESPONSE_ELEMENTS[self]


_RESPONSE_ELEMENTS: dict[Operation, str] = {
    Operation.GET_CAPABILITIES: "WFS_Capabilities",
    Operation.DESCRIBE_FEATURE_TYPE: "schema",
    Operation.GET_FEATURE: "FeatureCollection",
    Operation.GET_PROPERTY_VALUE: "ValueCollection",
    Operation.GET_FEATURE_WITH_LOCK: "FeatureCollection",
    Operation.LOCK_FEATURE: "LockFeatureResponse",
    Operation.TRANSACTION: "TransactionResponse",
    Operation.LIST_STORED_QUERIES: "ListStoredQueriesResponse",
    Operation.DESCRIBE_STORED_QUERIES: "DescribeStoredQueriesResponse",
    Operation.CREATE_STORED_QUERY: "CreateStoredQueryResponse",
    Operation.DROP_STORED_QUERY: "DropStoredQueryResponse",
}


class Binding(Enum):
    """Wire encodings that carry the same logical operation.

    ``ANY`` is resolved by the dispatcher to a binding the service advertises
    for the operation being sent.
    """

    GET = "GET"
    POST = "POST"
    SOAP = "SOAP"
    ANY = "ANY"

    @property
    def constraint_name(self) -> str:
        """Capabilities constraint that declares support for this binding."""
        return _BINDING_CONSTRAINTS[self]

    @property
    def http_method(self) -> str:
        """HTTP method used on the wire (SOAP rides on POST)."""
        return "GET" if self is Binding.GET else "POST"


_BINDING_CONSTRAINTS: dict[Binding, str] = {
    Binding.GET: "KVPEncoding",
    Binding.POST: "XMLEncoding",
    Binding.SOAP: "SOAPEncoding",
    Binding.ANY: "",
}


class ExceptionCode(StrEnum):
    """Exception codes a verification run asserts on."""

    INVALID_PARAMETER_VALUE = "InvalidParameterValue"
    MISSING_PARAMETER_VALUE = "MissingParameterValue"
    CANNOT_LOCK_ALL_FEATURES = "CannotLockAllFeatures"
    LOCK_HAS_EXPIRED = "LockHasExpired"
    OPERATION_PARSING_FAILED = "OperationParsingFailed"
    DUPLICATE_STORED_QUERY_ID_VALUE = "DuplicateStoredQueryIdValue"

    @property
    def status(self) -> int:
        """HTTP status code that must accompany this exception code."""
        return 403 if self is ExceptionCode.LOCK_HAS_EXPIRED else 400


class LockAction(StrEnum):
    """How a lock request treats features that are already locked."""

    ALL = "ALL"
    SOME = "SOME"


class ReleaseAction(StrEnum):
    """Which locks a transaction releases when it completes."""

    ALL = "ALL"
    SOME = "SOME"


class ResultType(StrEnum):
    """Whether a query returns members or only counts them."""

    RESULTS = "results"
    HITS = "hits"


class ConformanceClass(StrEnum):
    """Conformance classes advertised as capabilities constraints."""

    SIMPLE_WFS = "ImplementsSimpleWFS"
    BASIC_WFS = "ImplementsBasicWFS"
    TRANSACTIONAL_WFS = "ImplementsTransactionalWFS"
    LOCKING_WFS = "ImplementsLockingWFS"
    RESULT_PAGING = "ImplementsResultPaging"
    MANAGE_STORED_QUERIES = "ManageStoredQueries"
    KVP_ENCODING = "KVPEncoding"
    XML_ENCODING = "XMLEncoding"
    SOAP_ENCODING = "SOAPEncoding"


class Constraint(StrEnum):
    """Non-boolean service constraints consulted during verification."""

    RESPONSE_CACHE_TIMEOUT = "ResponseCacheTimeout"
    COUNT_DEFAULT = "CountDefault"
    PAGING_IS_TRANSACTION_SAFE = "PagingIsTransactionSafe"
