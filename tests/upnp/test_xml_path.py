"""Tests for the XML path accessor."""

import xml.etree.ElementTree as ET

import pytest

from upnp_bridge.upnp.xml_path import parse_xml, resolve, resolve_node

SOAP_RESPONSE = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">
  <s:Body>
    <u:GetPositionInfoResponse xmlns:u="urn:schemas-upnp-org:service:AVTransport:1">
      <Track>1</Track>
      <RelTime>0:01:02</RelTime>
    </u:GetPositionInfoResponse>
  </s:Body>
</s:Envelope>
"""

LAST_CHANGE = """
<Event xmlns="urn:schemas-upnp-org:metadata-1-0/AVT/">
  <InstanceID val="0">
    <TransportState val="PLAYING"/>
  </InstanceID>
</Event>
"""


class TestParseXml:
    """Tests for parse_xml."""

    def test_accepts_str_with_leading_whitespace(self) -> None:
        """Test text documents are stripped before parsing."""
        root = parse_xml("\n  " + LAST_CHANGE)
        assert root.local_name == "Event"

    def test_accepts_bytes_with_leading_whitespace(self) -> None:
        """Test byte documents are stripped before the XML declaration."""
        root = parse_xml(b'\n<?xml version="1.0"?><root/>')
        assert root.local_name == "root"

    def test_accepts_bytes(self) -> None:
        """Test byte documents are parsed."""
        root = parse_xml(SOAP_RESPONSE.encode("utf-8"))
        assert root.local_name == "Envelope"

    def test_malformed_raises(self) -> None:
        """Test malformed documents raise ParseError."""
        with pytest.raises(ET.ParseError):
            parse_xml("<a><b></a>")


class TestResolve:
    """Tests for resolve and resolve_node."""

    def test_prefixed_path(self) -> None:
        """Test prefixes declared on descendants are in scope below them."""
        root = parse_xml(SOAP_RESPONSE)
        response = resolve_node(root, "s:Body", "u:GetPositionInfoResponse")
        assert response is not None
        assert resolve(response, "RelTime") == "0:01:02"

    def test_explicit_namespace_segment(self) -> None:
        """Test uri##local segments match regardless of prefix."""
        root = parse_xml(SOAP_RESPONSE)
        value = resolve(
            root,
            "http://schemas.xmlsoap.org/soap/envelope/##Body",
            "urn:schemas-upnp-org:service:AVTransport:1##GetPositionInfoResponse",
            "Track",
        )
        assert value == "1"

    def test_default_namespace_and_attribute(self) -> None:
        """Test unprefixed segments use the default namespace in scope."""
        root = parse_xml(LAST_CHANGE)
        assert resolve(root, "InstanceID", "@val") == "0"
        assert resolve(root, "InstanceID", "TransportState", "@val") == "PLAYING"

    def test_missing_segment_returns_none(self) -> None:
        """Test a missing segment at any depth yields None."""
        root = parse_xml(SOAP_RESPONSE)
        assert resolve(root, "s:Header") is None
        assert resolve(root, "s:Body", "u:Missing", "Track") is None
        assert resolve(root, "s:Body", "u:GetPositionInfoResponse", "Nope") is None
        assert resolve(root, "s:Body", "@missing") is None

    def test_unknown_prefix_returns_none(self) -> None:
        """Test an undeclared prefix does not raise."""
        root = parse_xml(SOAP_RESPONSE)
        assert resolve(root, "x:Body") is None

    def test_none_node(self) -> None:
        """Test resolving from None yields None."""
        assert resolve(None, "a") is None
        assert resolve_node(None, "a") is None

    def test_sibling_declarations_do_not_leak(self) -> None:
        """Test a prefix declared on one sibling is not visible from another."""
        root = parse_xml(
            '<root><a xmlns:p="urn:one"><p:x>1</p:x></a>'
            '<b xmlns:p="urn:two"><p:x>2</p:x></b><c><p:x xmlns:p="urn:three">3</p:x></c></root>'
        )
        assert resolve(root, "a", "p:x") == "1"
        assert resolve(root, "b", "p:x") == "2"
        assert resolve(root, "c", "urn:three##x") == "3"
        # p is undeclared in c's scope
        assert resolve(root, "c", "p:x") is None

    def test_empty_element_text(self) -> None:
        """Test an empty element resolves to an empty string."""
        root = parse_xml("<root><a/></root>")
        assert resolve(root, "a") == ""
