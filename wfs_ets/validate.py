# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Structural, semantic and exception assertions over response records.

:class:`ResponseValidator` is the single place where a verdict is reached
about a response. Every failing assertion raises a typed
:class:`~wfs_ets.errors.VerificationError` carrying the expected and the
actual value; nothing passes silently.

External oracles are pluggable:

* a :class:`SchemaValidator` for XML Schema validation (skipped when absent),
* a :class:`TopologyOracle` deciding spatial relationships (checks that need
  one are skipped when absent).

Path lookups use ElementTree's XPath subset with the standard prefixes plus
the prefixes declared by the response document.
"""

from __future__ import annotations

import contextlib
import logging
import operator
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from wfs_ets._xml import local_name, qn
from wfs_ets.dispatch import ResponseRecord
from wfs_ets.errors import (
    PreconditionNotMet,
    ProtocolExceptionMismatch,
    SemanticAssertionFailure,
    ServiceException,
    StructuralValidationFailure,
)
from wfs_ets.protocol import GML_NS, NAMESPACES, ExceptionCode

__all__ = [
    "ExpectedException",
    "PointEnvelopeTopology",
    "Predicate",
    "ResponseValidator",
    "SchemaValidator",
    "TopologyOracle",
    "excludes_members",
    "feature_ids",
    "feature_members",
    "includes_members",
    "member_count",
    "number_returned",
]

_logger = logging.getLogger("wfs_ets.validate")

_GML_ID = f"{{{GML_NS}}}id"
_GEOMETRY_TAGS = frozenset({"Point", "LineString", "Polygon", "Envelope", "MultiPoint", "MultiCurve", "MultiSurface"})


class SchemaValidator(Protocol):
    """Validates a document against the protocol schemas."""

    def validate(self, root: ET.Element) -> Sequence[str]:
        """Return validation error messages (empty when valid)."""
        ...


class TopologyOracle(Protocol):
    """Decides spatial relationships between a GML geometry and an envelope."""

    def relate(self, geometry: ET.Element, envelope: tuple[float, float, float, float], relation: str) -> bool:
        """Whether *geometry* stands in *relation* to *envelope*."""
        ...


class PointEnvelopeTopology:
    """Topology oracle for ``gml:Point`` geometries against a lon/lat envelope.

    Supports ``Intersects``, ``Within`` and ``Disjoint``. Point coordinates
    are read in the EPSG:4326 axis order (latitude first).
    """

    def relate(self, geometry: ET.Element, envelope: tuple[float, float, float, float], relation: str) -> bool:
        """Evaluate *relation* for a point geometry.

        Raises:
            PreconditionNotMet: If the geometry is not a point or the relation
                is not supported.

        """
        pos = geometry.findtext(qn("gml", "pos")) if local_name(geometry.tag) == "Point" else None
        if not pos:
            raise PreconditionNotMet(
                "Topology oracle only handles gml:Point", expected="gml:Point", actual=local_name(geometry.tag)
            )
        lat, lon = (float(v) for v in pos.split()[:2])
        inside = envelope[0] <= lon <= envelope[2] and envelope[1] <= lat <= envelope[3]
        match relation:
            case "Intersects" | "Within":
                return inside
            case "Disjoint":
                return not inside
            case _:
                raise PreconditionNotMet(
                    f"Unsupported spatial relation {relation!r}", expected="Intersects/Within/Disjoint",
                    actual=relation
                )


# ---------------------------------------------------------------------------
# Feature collection helpers
# ---------------------------------------------------------------------------


def feature_members(root: ET.Element) -> list[ET.Element]:
    """Return the features of a feature collection, flattening nested collections."""
    features: list[ET.Element] = []
    for member in root.findall(qn("wfs", "member")):
        for child in member:
            if child.tag == qn("wfs", "FeatureCollection"):
                features.extend(feature_members(child))
            else:
                features.append(child)
    return features


def feature_ids(root: ET.Element) -> list[str]:
    """Return the ``gml:id`` of every feature in a collection."""
    return [fid for fid in (f.get(_GML_ID) for f in feature_members(root)) if fid]


def _int_attr(root: ET.Element, name: str) -> int | None:
    value = root.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        raise StructuralValidationFailure(
            f"Attribute {name} is not an integer", expected="integer", actual=value
        ) from None


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Predicate:
    """A named semantic check on a response document.

    Attributes:
        description: What is checked, used in failure messages.
        expected: The expected value.
        measure: Extracts the actual value from the document element.
        compare: ``compare(actual, expected)`` returns whether the check holds.

    """

    description: str
    expected: object
    measure: Callable[[ET.Element], object]
    compare: Callable[[object, object], bool] = field(default=operator.eq)


def member_count(expected: int) -> Predicate:
    """Number of features in the collection equals *expected*."""
    return Predicate("member count", expected, lambda root: len(feature_members(root)))


def number_returned(expected: int) -> Predicate:
    """``numberReturned`` equals *expected*."""
    return Predicate("numberReturned", expected, lambda root: _int_attr(root, "numberReturned"))


def excludes_members(ids: Sequence[str]) -> Predicate:
    """None of *ids* appears in the collection."""
    excluded = frozenset(ids)
    return Predicate(
        "excluded feature identifiers", frozenset(), lambda root: frozenset(feature_ids(root)) & excluded
    )


def includes_members(ids: Sequence[str]) -> Predicate:
    """Every one of *ids* appears in the collection."""
    return Predicate(
        "included feature identifiers",
        frozenset(ids),
        lambda root: frozenset(feature_ids(root)),
        lambda actual, expected: expected <= actual,  # type: ignore[operator]
    )


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


@dataclass
class ExpectedException:
    """Filled in by :meth:`ResponseValidator.expect_exception` once the block exits."""

    code: ExceptionCode
    status: int
    locator: str | None = None
    response: ResponseRecord | None = None


class ResponseValidator:
    """Asserts structure, content and exception semantics of responses.

    Args:
        schema_validator: Optional XML Schema oracle.
        topology: Optional spatial-relationship oracle.

    """

    def __init__(self, schema_validator: SchemaValidator | None = None, topology: TopologyOracle | None = None) -> None:
        """Initialize with optional external oracles."""
        self.schema_validator = schema_validator
        self.topology = topology

    # -- status / success --------------------------------------------------------

    def assert_status(self, record: ResponseRecord, expected: int = 200) -> None:
        """Assert the HTTP status code.

        Raises:
            ProtocolExceptionMismatch: If the status differs.

        """
        if record.status != expected:
            raise ProtocolExceptionMismatch(
                "Unexpected HTTP status", expected=expected, actual=(record.status, record.exception_code)
            )

    def raise_for_exception(self, record: ResponseRecord) -> ResponseRecord:
        """Return *record* unchanged if it is a success response.

        Raises:
            ServiceException: If the service reported an exception or a non-2xx status.

        """
        if not record.ok:
            raise ServiceException(record)
        return record

    # -- structure -----------------------------------------------------------------

    def assert_structure(
        self, record: ResponseRecord, expected_root: str, required_attrs: Sequence[str] = ()
    ) -> ET.Element:
        """Assert the document element and the presence of attributes.

        Args:
            record: Response to check.
            expected_root: Clark-notation tag (or a bare local name, matched
                in any namespace).
            required_attrs: Attribute names that must be present.

        Returns:
            The document element.

        Raises:
            ServiceException: If the response is an exception report.
            StructuralValidationFailure: If the root or an attribute is wrong.

        """
        if record.exceptions:
            raise ServiceException(record)
        root = record.root
        if root is None:
            raise StructuralValidationFailure(
                "Response entity is not an XML document",
                expected=expected_root,
                actual=record.headers.get("content-type"),
            )
        actual = root.tag if expected_root.startswith("{") else local_name(root.tag)
        if actual != expected_root:
            raise StructuralValidationFailure("Unexpected document element", expected=expected_root, actual=root.tag)
        missing = [a for a in required_attrs if root.get(a) is None]
        if missing:
            raise StructuralValidationFailure(
                f"Missing attribute(s) on {local_name(root.tag)}", expected=list(required_attrs), actual=missing
            )
        return root

    def assert_schema_valid(self, record: ResponseRecord) -> None:
        """Validate against the schema oracle, if one is configured.

        Raises:
            StructuralValidationFailure: If the oracle reports errors.

        """
        if self.schema_validator is None or record.root is None:
            _logger.debug("No schema validator configured; skipping schema validation")
            return
        errors = list(self.schema_validator.validate(record.root))
        if errors:
            raise StructuralValidationFailure("Schema validation failed", expected="no errors", actual=errors)

    def assert_xpath(self, record: ResponseRecord, path: str, *, count: int | None = None) -> list[ET.Element]:
        """Evaluate *path* and assert it matches (exactly *count* nodes, if given).

        Raises:
            StructuralValidationFailure: If the match count is wrong.

        """
        if record.root is None:
            raise StructuralValidationFailure("Response entity is not an XML document", expected=path, actual=None)
        found = record.root.findall(path, {**record.prefixes, **NAMESPACES})
        if count is None and not found:
            raise StructuralValidationFailure(f"No match for {path}", expected=">= 1 node", actual=0)
        if count is not None and len(found) != count:
            raise StructuralValidationFailure(f"Wrong match count for {path}", expected=count, actual=len(found))
        return found

    # -- semantics ---------------------------------------------------------------------

    def assert_semantic(self, record: ResponseRecord | ET.Element, predicate: Predicate) -> object:
        """Run *predicate* against the document.

        Returns:
            The measured value.

        Raises:
            SemanticAssertionFailure: If the predicate does not hold.

        """
        root = record if isinstance(record, ET.Element) else record.root
        if root is None:
            raise StructuralValidationFailure(
                "Response entity is not an XML document", expected=predicate.description, actual=None
            )
        actual = predicate.measure(root)
        if not predicate.compare(actual, predicate.expected):
            expected = sorted(predicate.expected) if isinstance(predicate.expected, frozenset) else predicate.expected
            shown = sorted(actual) if isinstance(actual, frozenset) else actual
            raise SemanticAssertionFailure(f"Check failed: {predicate.description}", expected=expected, actual=shown)
        return actual

    def spatial_relation(self, relation: str, envelope: tuple[float, float, float, float]) -> Predicate:
        """Predicate: every feature geometry stands in *relation* to *envelope*.

        Raises:
            PreconditionNotMet: If no topology oracle is configured.

        """
        oracle = self.topology
        if oracle is None:
            raise PreconditionNotMet("No topology oracle configured", expected="TopologyOracle", actual=None)

        def violating(root: ET.Element) -> list[str]:
            bad: list[str] = []
            for feature in feature_members(root):
                geometries = [e for e in feature.iter() if e.tag.startswith(f"{{{GML_NS}}}")
                              and local_name(e.tag) in _GEOMETRY_TAGS]
                if geometries and not oracle.relate(geometries[0], envelope, relation):
                    bad.append(feature.get(_GML_ID, "?"))
            return bad

        return Predicate(f"features {relation} {envelope}", [], violating)

    # -- exceptions --------------------------------------------------------------------

    def assert_exception(
        self,
        record: ResponseRecord,
        code: ExceptionCode,
        status: int | None = None,
        locator: str | None = None,
    ) -> None:
        """Assert an exception report with *code* (and *locator*) and the matching status.

        The locator check is a case-insensitive substring match.

        Args:
            record: Response to check.
            code: Expected exception code.
            status: Expected HTTP status; defaults to the code's mapped status.
            locator: Expected locator fragment, if any.

        Raises:
            ProtocolExceptionMismatch: If the report, code, locator or status is wrong.

        """
        expected_status = code.status if status is None else status
        if not record.exceptions:
            raise ProtocolExceptionMismatch(
                "Expected an exception report",
                expected=(expected_status, str(code)),
                actual=(record.status, record.root_name),
            )
        matching = [e for e in record.exceptions if e.code == code]
        if not matching:
            raise ProtocolExceptionMismatch(
                "Unexpected exception code", expected=str(code), actual=[e.code for e in record.exceptions]
            )
        if locator is not None and not any(locator.lower() in (e.locator or "").lower() for e in matching):
            raise ProtocolExceptionMismatch(
                f"Unexpected locator for {code}", expected=locator, actual=[e.locator for e in matching]
            )
        if record.status != expected_status:
            raise ProtocolExceptionMismatch(
                f"Unexpected HTTP status for {code}", expected=expected_status, actual=record.status
            )

    @contextlib.contextmanager
    def expect_exception(
        self, code: ExceptionCode, status: int | None = None, locator: str | None = None
    ) -> Iterator[ExpectedException]:
        """Assert that the enclosed block is rejected with *code*.

        The block must raise :class:`~wfs_ets.errors.ServiceException`
        (the lifecycle models do so when the service rejects a request).

        Usage::

            with validator.expect_exception(ExceptionCode.LOCK_HAS_EXPIRED):
                model.renew(lock)

        Raises:
            ProtocolExceptionMismatch: If the block completes without a
                rejection or the rejection does not match.

        """
        expected = ExpectedException(code=code, status=code.status if status is None else status, locator=locator)
        try:
            yield expected
        except ServiceException as exc:
            expected.response = exc.response
            self.assert_exception(exc.response, code, expected.status, locator)
            return
        raise ProtocolExceptionMismatch(
            f"Request was accepted but {code} was expected",
            expected=(expected.status, str(code)),
            actual="success",
        )
