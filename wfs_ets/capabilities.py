# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed, immutable view of a service capabilities document.

The capabilities document is parsed once per run into a :class:`CapabilitySet`
whose queries (``supports``, ``implements``, ``constraint_value``,
``bindings``, ``endpoint``) replace ad hoc path lookups against the raw XML.

Usage::

    caps = CapabilitySet.from_document(root, prefixes)
    if caps.implements(ConformanceClass.LOCKING_WFS):
        url = caps.endpoint(Operation.LOCK_FEATURE, Binding.POST)

"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from urllib.parse import urlsplit, urlunsplit

from wfs_ets._xml import local_name, parse_document, qn, resolve_qname
from wfs_ets.errors import MalformedRequest, StructuralValidationFailure
from wfs_ets.protocol import WFS_QUERY_LANGUAGE, Binding, ConformanceClass, Operation

__all__ = [
    "CapabilitySet",
    "FeatureTypeDescriptor",
    "OperationInfo",
    "TypeName",
]

_logger = logging.getLogger("wfs_ets.capabilities")

_BINDING_PREFERENCE: tuple[Binding, ...] = (Binding.POST, Binding.GET, Binding.SOAP)
"""Order in which ``Binding.ANY`` is resolved when several bindings are advertised."""


@dataclass(frozen=True, order=True)
class TypeName:
    """Qualified name of a feature type.

    Attributes:
        namespace: Namespace URI (may be empty).
        local: Local part of the name.
        prefix: Preferred prefix when the name is written into a request.

    """

    namespace: str
    local: str
    prefix: str = field(default="", compare=False)

    @property
    def clark(self) -> str:
        """Clark notation ``{namespace}local`` used for ElementTree tags."""
        return f"{{{self.namespace}}}{self.local}" if self.namespace else self.local

    def prefixed(self, prefix: str | None = None) -> str:
        """Return ``prefix:local`` using *prefix* or the preferred prefix."""
        use = prefix if prefix is not None else (self.prefix or "tns")
        return f"{use}:{self.local}" if self.namespace else self.local

    @classmethod
    def parse(cls, text: str, prefixes: dict[str, str]) -> TypeName:
        """Resolve ``prefix:local`` text against *prefixes*."""
        namespace, local, prefix = resolve_qname(text, prefixes)
        return cls(namespace, local, prefix)

    @classmethod
    def from_clark(cls, tag: str, prefix: str = "") -> TypeName:
        """Build from a Clark-notation tag."""
        if tag.startswith("{"):
            namespace, local = tag[1:].split("}", 1)
            return cls(namespace, local, prefix)
        return cls("", tag, prefix)

    def __str__(self) -> str:
        """Return the Clark notation."""
        return self.clark


@dataclass(frozen=True)
class FeatureTypeDescriptor:
    """Read-only reference data about one advertised feature type.

    Attributes:
        name: Qualified type name.
        default_crs: Default CRS identifier, if advertised.
        other_crs: Additional CRS identifiers.
        wgs84_extent: ``(min_lon, min_lat, max_lon, max_lat)`` or ``None``.
        instantiated: Whether instances were found while sampling data.
        properties: Declared property names (empty when unknown).
        geometry_properties: Names of geometry-valued properties.

    """

    name: TypeName
    default_crs: str | None = None
    other_crs: tuple[str, ...] = ()
    wgs84_extent: tuple[float, float, float, float] | None = None
    instantiated: bool = False
    properties: tuple[str, ...] = ()
    geometry_properties: tuple[str, ...] = ()

    def with_instances(self, instantiated: bool) -> FeatureTypeDescriptor:
        """Return a copy with the instantiation flag set."""
        return replace(self, instantiated=instantiated)


@dataclass(frozen=True)
class OperationInfo:
    """One ``ows:Operation`` entry.

    Attributes:
        name: Operation name.
        endpoints: HTTP method (``"GET"``/``"POST"``) to endpoint URL, query part pruned.
        bindings: Bindings declared by operation-level constraints.
        parameters: Allowed values per advertised parameter.

    """

    name: str
    endpoints: dict[str, str]
    bindings: frozenset[Binding] = frozenset()
    parameters: dict[str, tuple[str, ...]] = field(default_factory=dict)


def _prune_query(href: str) -> str:
    parts = urlsplit(href)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def _is_true(constraint: ET.Element) -> bool:
    value = constraint.findtext(qn("ows", "DefaultValue"), default="")
    return value.strip().upper() == "TRUE"


def _declared_bindings(constraints: Iterable[ET.Element]) -> frozenset[Binding]:
    found: set[Binding] = set()
    for constraint in constraints:
        if not _is_true(constraint):
            continue
        name = constraint.get("name", "")
        for binding in (Binding.GET, Binding.POST, Binding.SOAP):
            if binding.constraint_name == name:
                found.add(binding)
    return frozenset(found)


def _parse_extent(elem: ET.Element | None) -> tuple[float, float, float, float] | None:
    if elem is None:
        return None
    try:
        lower = [float(v) for v in elem.findtext(qn("ows", "LowerCorner"), default="").split()]
        upper = [float(v) for v in elem.findtext(qn("ows", "UpperCorner"), default="").split()]
    except ValueError:
        _logger.warning("Ignoring unparseable WGS84BoundingBox")
        return None
    if len(lower) != 2 or len(upper) != 2:
        return None
    return (lower[0], lower[1], upper[0], upper[1])


@dataclass(frozen=True)
class CapabilitySet:
    """Immutable capabilities computed once from the service metadata.

    Attributes:
        version: Service version from the document element.
        operations: Advertised operations keyed by name.
        global_bindings: Bindings declared at the ``OperationsMetadata`` level.
        conformance: Names of constraints whose default value is ``TRUE``.
        constraints: Default value of every named ``OperationsMetadata`` constraint.
        feature_types: Advertised feature types in document order.
        query_languages: Stored-query languages accepted by ``CreateStoredQuery``.

    """

    version: str
    operations: dict[str, OperationInfo]
    global_bindings: frozenset[Binding]
    conformance: frozenset[str]
    constraints: dict[str, str]
    feature_types: tuple[FeatureTypeDescriptor, ...]
    query_languages: tuple[str, ...] = (WFS_QUERY_LANGUAGE,)

    # -- construction --------------------------------------------------------

    @classmethod
    def from_bytes(cls, body: bytes) -> CapabilitySet:
        """Parse a capabilities document from raw bytes.

        Raises:
            StructuralValidationFailure: If *body* is not a capabilities document.

        """
        try:
            root, prefixes = parse_document(body)
        except ET.ParseError as exc:
            raise StructuralValidationFailure(
                "Capabilities response is not well-formed XML", expected="XML document", actual=str(exc)
            ) from exc
        return cls.from_document(root, prefixes)

    @classmethod
    def from_document(cls, root: ET.Element, prefixes: dict[str, str] | None = None) -> CapabilitySet:
        """Build from a parsed ``wfs:WFS_Capabilities`` element.

        Args:
            root: The document element.
            prefixes: Prefix bindings in scope (needed to resolve feature type names).

        Raises:
            StructuralValidationFailure: If *root* is not ``wfs:WFS_Capabilities``.

        """
        if root.tag != qn("wfs", "WFS_Capabilities"):
            raise StructuralValidationFailure(
                "Not a WFS service description", expected=qn("wfs", "WFS_Capabilities"), actual=root.tag
            )
        prefixes = prefixes or {}
        metadata = root.find(qn("ows", "OperationsMetadata"))
        operations: dict[str, OperationInfo] = {}
        constraints: dict[str, str] = {}
        conformance: set[str] = set()
        global_bindings: frozenset[Binding] = frozenset()
        languages: tuple[str, ...] = (WFS_QUERY_LANGUAGE,)
        if metadata is not None:
            for op in metadata.findall(qn("ows", "Operation")):
                info = cls._parse_operation(op)
                operations[info.name] = info
                if info.name == Operation.CREATE_STORED_QUERY and "language" in info.parameters:
                    languages = info.parameters["language"]
            top_constraints = metadata.findall(qn("ows", "Constraint"))
            global_bindings = _declared_bindings(top_constraints)
            for constraint in top_constraints:
                name = constraint.get("name", "")
                value = constraint.findtext(qn("ows", "DefaultValue"), default="").strip()
                constraints[name] = value
                if value.upper() == "TRUE":
                    conformance.add(name)
        feature_types: list[FeatureTypeDescriptor] = []
        for ft in root.iter(qn("wfs", "FeatureType")):
            name_text = ft.findtext(qn("wfs", "Name"))
            if not name_text:
                continue
            feature_types.append(
                FeatureTypeDescriptor(
                    name=TypeName.parse(name_text, prefixes),
                    default_crs=ft.findtext(qn("wfs", "DefaultCRS")),
                    other_crs=tuple(e.text or "" for e in ft.findall(qn("wfs", "OtherCRS"))),
                    wgs84_extent=_parse_extent(ft.find(qn("ows", "WGS84BoundingBox"))),
                )
            )
        caps = cls(
            version=root.get("version", ""),
            operations=operations,
            global_bindings=global_bindings,
            conformance=frozenset(conformance),
            constraints=constraints,
            feature_types=tuple(feature_types),
            query_languages=languages,
        )
        _logger.debug(
            "Parsed capabilities: %d operations, %d feature types, conformance=%s",
            len(operations),
            len(feature_types),
            sorted(conformance),
        )
        return caps

    @staticmethod
    def _parse_operation(op: ET.Element) -> OperationInfo:
        endpoints: dict[str, str] = {}
        href_attr = qn("xlink", "href")
        for method in op.iter():
            name = local_name(method.tag)
            if name in ("Get", "Post") and method.get(href_attr):
                endpoints.setdefault(name.upper(), _prune_query(method.get(href_attr, "")))
        parameters: dict[str, tuple[str, ...]] = {}
        for param in op.findall(qn("ows", "Parameter")):
            values = tuple((v.text or "").strip() for v in param.iter(qn("ows", "Value")))
            parameters[param.get("name", "")] = values
        return OperationInfo(
            name=op.get("name", ""),
            endpoints=endpoints,
            bindings=_declared_bindings(op.findall(qn("ows", "Constraint"))),
            parameters=parameters,
        )

    # -- queries -------------------------------------------------------------

    def supports(self, operation: str) -> bool:
        """Whether *operation* is advertised."""
        return operation in self.operations

    def implements(self, conformance_class: str) -> bool:
        """Whether the constraint named *conformance_class* is declared ``TRUE``."""
        return conformance_class in self.conformance

    def constraint_value(self, name: str) -> str | None:
        """Return the default value of a named constraint, or ``None``."""
        return self.constraints.get(name)

    def int_constraint(self, name: str) -> int | None:
        """Return a named constraint as an integer, ``None`` if absent or not numeric."""
        value = self.constraint_value(name)
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            _logger.warning("Invalid constraint %s (expected integer value): %r", name, value)
            return None

    def bindings(self, operation: str) -> frozenset[Binding]:
        """Bindings usable for *operation*: declared, and backed by an endpoint.

        Operation-level declarations are united with global ones; ``Transaction``
        has no KVP encoding.
        """
        info = self.operations.get(operation)
        if info is None:
            return frozenset()
        declared = set(info.bindings | self.global_bindings)
        if operation == Operation.TRANSACTION:
            declared.discard(Binding.GET)
        return frozenset(b for b in declared if b.http_method in info.endpoints)

    def default_binding(self, operation: str, *, exclude: Iterable[Binding] = ()) -> Binding:
        """Resolve ``Binding.ANY`` for *operation*.

        Raises:
            MalformedRequest: If no advertised binding remains.

        """
        available = self.bindings(operation) - frozenset(exclude)
        for binding in _BINDING_PREFERENCE:
            if binding in available:
                return binding
        raise MalformedRequest(
            f"No usable binding advertised for {operation}",
            parameter="binding",
            expected="GET, POST or SOAP",
            actual=sorted(b.value for b in self.bindings(operation)),
        )

    def endpoint(self, operation: str, binding: Binding) -> str | None:
        """Endpoint URL for *operation* over *binding* (SOAP uses the POST endpoint)."""
        info = self.operations.get(operation)
        if info is None or binding is Binding.ANY:
            return None
        return info.endpoints.get(binding.http_method)

    def feature_type(self, name: TypeName) -> FeatureTypeDescriptor | None:
        """Look up an advertised feature type by qualified name."""
        for descriptor in self.feature_types:
            if descriptor.name == name:
                return descriptor
        return None

    def with_feature_types(self, feature_types: Iterable[FeatureTypeDescriptor]) -> CapabilitySet:
        """Return a copy with refined feature type descriptors (e.g. after sampling)."""
        return replace(self, feature_types=tuple(feature_types))

    def claims(self) -> list[ConformanceClass]:
        """Conformance classes the service claims, in declaration order of the enum."""
        return [cc for cc in ConformanceClass if cc.value in self.conformance]
