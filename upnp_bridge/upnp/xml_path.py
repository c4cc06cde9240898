"""
XML path accessor.

Locates values in parsed UPnP documents by a sequence of path segments:

- ``"serviceList"``: child element, matched against the default namespace in scope
- ``"s:Body"``: child element, prefix resolved from ``xmlns:s`` declarations
- ``"urn:schemas-upnp-org:metadata-1-0/AVT/##InstanceID"``: child element
  in an explicit namespace URI
- ``"@val"``: attribute of the current element, ends the traversal

A segment that does not match yields ``None``; no exception is raised.
"""

import io
import xml.etree.ElementTree as ET
from types import MappingProxyType
from typing import Mapping, Optional, Union

NAMESPACE_SEPARATOR = "##"

_Declarations = dict[ET.Element, dict[str, str]]


class XmlNode:
    """An element together with the namespace prefixes in scope for it."""

    __slots__ = ("element", "namespaces", "_declarations")

    def __init__(
        self,
        element: ET.Element,
        namespaces: Mapping[str, str],
        declarations: _Declarations,
    ):
        self.element = element
        self.namespaces = MappingProxyType(dict(namespaces))
        self._declarations = declarations

    @property
    def local_name(self) -> str:
        return self.element.tag.rsplit("}", 1)[-1]

    @property
    def text(self) -> str:
        return self.element.text or ""

    def attribute(self, name: str) -> Optional[str]:
        """Read an attribute, qualified names resolved against this node's scope."""
        qualified = _qualify(name, self.namespaces, is_attribute=True)
        if qualified is None:
            return None
        return self.element.get(qualified)

    def children(self, segment: Optional[str] = None) -> list["XmlNode"]:
        """Child nodes, optionally restricted to those matching ``segment``."""
        result = []
        for child in self.element:
            if not isinstance(child.tag, str):
                continue  # comments and processing instructions
            node = self._wrap(child)
            if segment is None or node.matches(segment):
                result.append(node)
        return result

    def child(self, segment: str) -> Optional["XmlNode"]:
        for child in self.element:
            if not isinstance(child.tag, str):
                continue
            node = self._wrap(child)
            if node.matches(segment):
                return node
        return None

    def matches(self, segment: str) -> bool:
        # An element's own xmlns declarations apply to its tag.
        expected = _qualify(segment, self.namespaces)
        return expected is not None and self.element.tag == expected

    def _wrap(self, element: ET.Element) -> "XmlNode":
        declared = self._declarations.get(element)
        if declared:
            scope = {**self.namespaces, **declared}
        else:
            scope = dict(self.namespaces)
        return XmlNode(element, scope, self._declarations)

    def __repr__(self) -> str:
        return f"<XmlNode {self.element.tag}>"


def _qualify(
    segment: str,
    namespaces: Mapping[str, str],
    is_attribute: bool = False,
) -> Optional[str]:
    """Turn a path segment into an ElementTree ``{uri}local`` name."""
    if NAMESPACE_SEPARATOR in segment:
        uri, local = segment.split(NAMESPACE_SEPARATOR, 1)
        return f"{{{uri}}}{local}" if uri else local

    if ":" in segment:
        prefix, local = segment.split(":", 1)
        uri = namespaces.get(prefix)
        if uri is None:
            return None
        return f"{{{uri}}}{local}"

    # Unprefixed attributes never take the default namespace.
    if is_attribute:
        return segment
    default = namespaces.get("")
    return f"{{{default}}}{segment}" if default else segment


def parse_xml(source: Union[str, bytes]) -> XmlNode:
    """
    Parse a document and return its root node.

    Raises:
        xml.etree.ElementTree.ParseError: If the document is not well formed
    """
    if isinstance(source, str):
        source = source.encode("utf-8")
    # Some renderers send whitespace before the XML declaration
    source = source.strip()

    declarations: _Declarations = {}
    pending: dict[str, str] = {}
    root: Optional[ET.Element] = None

    for event, item in ET.iterparse(io.BytesIO(source), events=("start-ns", "start")):
        if event == "start-ns":
            prefix, uri = item
            pending[prefix] = uri
            continue
        if pending:
            declarations[item] = pending
            pending = {}
        if root is None:
            root = item

    if root is None:
        raise ET.ParseError("no element found")

    return XmlNode(root, declarations.get(root, {}), declarations)


def resolve_node(node: Optional[XmlNode], *path: str) -> Optional[XmlNode]:
    """Descend through child segments; ``None`` when any segment is missing."""
    for segment in path:
        if node is None:
            return None
        node = node.child(segment)
    return node


def resolve(node: Optional[XmlNode], *path: str) -> Optional[str]:
    """
    Return the scalar value at ``path``.

    The value is the text of the last element, or the attribute value if
    the last segment starts with ``@``. Returns ``None`` when the path does
    not exist.
    """
    if node is None or not path:
        return None

    *elements, last = path
    if last.startswith("@"):
        target = resolve_node(node, *elements)
        if target is None:
            return None
        return target.attribute(last[1:])

    target = resolve_node(node, *path)
    if target is None:
        return None
    return target.text
