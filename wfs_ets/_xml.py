# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""ElementTree helpers shared by the builder, dispatcher and reference service.

ElementTree drops namespace declarations after parsing, but WFS carries
qualified names inside attribute values and text (``typeNames="tns:Road"``).
:func:`parse_document` therefore collects prefix bindings while parsing, and
:func:`declare_namespace` writes explicit ``xmlns:`` attributes for prefixes
that only appear in content.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from io import BytesIO

from wfs_ets.protocol import NAMESPACES, SOAP11_NS, SOAP12_NS

for _prefix, _uri in NAMESPACES.items():
    ET.register_namespace(_prefix, _uri)
ET.register_namespace("soap", SOAP12_NS)
ET.register_namespace("soap11", SOAP11_NS)


def qn(prefix: str, local: str) -> str:
    """Return the Clark notation ``{uri}local`` for a standard prefix."""
    return f"{{{NAMESPACES[prefix]}}}{local}"


def local_name(tag: str) -> str:
    """Strip the namespace part from a Clark-notation tag."""
    return tag.rsplit("}", 1)[-1]


def namespace_of(tag: str) -> str:
    """Return the namespace URI of a Clark-notation tag (empty if unqualified)."""
    if tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return ""


def parse_document(body: bytes) -> tuple[ET.Element, dict[str, str]]:
    """Parse *body* and return the document element with its prefix bindings.

    Bindings from every scope are merged into one mapping; when the same
    prefix is bound twice the first declaration wins.

    Raises:
        ET.ParseError: If *body* is not well-formed XML.

    """
    prefixes: dict[str, str] = {}
    root: ET.Element | None = None
    for event, item in ET.iterparse(BytesIO(body), events=("start", "start-ns")):
        if event == "start-ns":
            prefix, uri = item
            prefixes.setdefault(prefix, uri)
        elif root is None:
            root = item
    if root is None:
        raise ET.ParseError("document has no root element")
    return root, prefixes


def declare_namespace(element: ET.Element, prefix: str, uri: str) -> None:
    """Attach an explicit ``xmlns:prefix`` declaration to *element*."""
    element.set(f"xmlns:{prefix}", uri)


def to_bytes(element: ET.Element) -> bytes:
    """Serialize *element* as a UTF-8 document with an XML declaration."""
    return ET.tostring(element, encoding="utf-8", xml_declaration=True)


def resolve_qname(text: str, prefixes: dict[str, str]) -> tuple[str, str, str]:
    """Split ``prefix:local`` into ``(namespace, local, prefix)`` using *prefixes*.

    Unprefixed names resolve against the default namespace, if any. A prefix
    with no binding resolves to an empty namespace.
    """
    text = text.strip()
    if ":" in text:
        prefix, local = text.split(":", 1)
    else:
        prefix, local = "", text
    return prefixes.get(prefix, ""), local, prefix
