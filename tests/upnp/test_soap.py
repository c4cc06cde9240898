"""Tests for the SOAP action client."""

import pytest

from upnp_bridge.upnp.errors import SoapFault, TransportError
from upnp_bridge.upnp.soap import (
    UPNP_AV_TRANSPORT,
    SoapClient,
    body_element,
    build_envelope,
)
from upnp_bridge.upnp.xml_path import resolve

CONTROL_URL = "http://192.168.1.20:9197/ctl/avt"


class TestBuildEnvelope:
    """Tests for envelope construction."""

    def test_includes_instance_id(self) -> None:
        """Test InstanceID precedes extra arguments."""
        envelope = build_envelope(UPNP_AV_TRANSPORT, "Play", 0, "<Speed>1</Speed>")
        assert f'<u:Play xmlns:u="{UPNP_AV_TRANSPORT}">' in envelope
        assert "<InstanceID>0</InstanceID><Speed>1</Speed>" in envelope

    def test_omits_instance_id(self) -> None:
        """Test instance None leaves InstanceID out."""
        envelope = build_envelope(UPNP_AV_TRANSPORT, "GetCurrentConnectionIDs", None)
        assert "InstanceID" not in envelope

    def test_body_element_escapes(self) -> None:
        """Test argument values are escaped."""
        assert body_element("CurrentURI", "http://x/?a=1&b=<2>") == (
            "<CurrentURI>http://x/?a=1&amp;b=&lt;2&gt;</CurrentURI>"
        )


class TestSoapClient:
    """Tests for SoapClient.invoke."""

    @pytest.mark.asyncio
    async def test_success_returns_response_node(self, fake_session, helpers) -> None:
        """Test a 200 response returns the <Action>Response node."""
        fake_session.add(
            "POST",
            CONTROL_URL,
            helpers.FakeResponse(
                body=helpers.soap_response(
                    UPNP_AV_TRANSPORT, "GetTransportInfo", {"CurrentTransportState": "PLAYING"}
                )
            ),
        )
        client = SoapClient(fake_session)

        response = await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "GetTransportInfo", 0)

        assert resolve(response, "CurrentTransportState") == "PLAYING"
        request = fake_session.requests[0]
        assert request["headers"]["SOAPACTION"] == f'"{UPNP_AV_TRANSPORT}#GetTransportInfo"'
        assert request["headers"]["Content-Type"].startswith("text/xml")

    @pytest.mark.asyncio
    async def test_http_500_raises_soap_fault(self, fake_session, helpers) -> None:
        """Test a 500 response raises SoapFault with the status and UPnP error."""
        fake_session.add(
            "POST",
            CONTROL_URL,
            helpers.FakeResponse(status=500, body=helpers.soap_fault(701, "Transition not available")),
        )
        client = SoapClient(fake_session)

        with pytest.raises(SoapFault) as exc_info:
            await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "Pause", 0)

        assert exc_info.value.status == 500
        assert exc_info.value.upnp_error_code == 701
        assert exc_info.value.upnp_error_description == "Transition not available"
        assert not exc_info.value.is_not_implemented

    @pytest.mark.asyncio
    async def test_fault_carries_request(self, fake_session, helpers) -> None:
        """Test the fault keeps every request parameter."""
        fake_session.add(
            "POST",
            CONTROL_URL,
            helpers.FakeResponse(status=500, body=helpers.soap_fault(402, "Invalid Args")),
        )
        client = SoapClient(fake_session)
        speed = body_element("Speed", 1)

        with pytest.raises(SoapFault) as exc_info:
            await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "Play", 2, speed)

        fault = exc_info.value
        assert fault.action == "Play"
        assert fault.control_url == CONTROL_URL
        assert fault.service_type == UPNP_AV_TRANSPORT
        assert fault.instance_id == 2
        assert fault.extra_body == "<Speed>1</Speed>"

    @pytest.mark.asyncio
    async def test_500_with_garbage_body(self, fake_session, helpers) -> None:
        """Test a fault without a parseable body still raises SoapFault."""
        fake_session.add("POST", CONTROL_URL, helpers.FakeResponse(status=500, body="oops"))
        client = SoapClient(fake_session)

        with pytest.raises(SoapFault) as exc_info:
            await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "Stop", 0)

        assert exc_info.value.status == 500
        assert exc_info.value.upnp_error_code is None

    @pytest.mark.asyncio
    async def test_not_implemented_codes(self, fake_session, helpers) -> None:
        """Test 401 and 602 are reported as not implemented."""
        fake_session.add(
            "POST",
            CONTROL_URL,
            helpers.FakeResponse(status=500, body=helpers.soap_fault(602, "Not implemented")),
        )
        client = SoapClient(fake_session)

        with pytest.raises(SoapFault) as exc_info:
            await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "Pause", 0)

        assert exc_info.value.is_not_implemented

    @pytest.mark.asyncio
    async def test_connection_error_raises_transport_error(self, fake_session) -> None:
        """Test network failures become TransportError."""
        client = SoapClient(fake_session)

        with pytest.raises(TransportError):
            await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "Play", 0)

    @pytest.mark.asyncio
    async def test_unparseable_success_body_returns_none(self, fake_session, helpers) -> None:
        """Test a 200 response with a broken body yields None."""
        fake_session.add("POST", CONTROL_URL, helpers.FakeResponse(body="<broken"))
        client = SoapClient(fake_session)

        assert await client.invoke(CONTROL_URL, UPNP_AV_TRANSPORT, "Play", 0) is None

    @pytest.mark.asyncio
    async def test_query_state_variable(self, fake_session, helpers) -> None:
        """Test QueryStateVariable returns the return value."""
        fake_session.add(
            "POST",
            CONTROL_URL,
            helpers.FakeResponse(
                body=helpers.soap_response(
                    "urn:schemas-upnp-org:control-1-0",
                    "QueryStateVariable",
                    {"return": "STOPPED"},
                )
            ),
        )
        client = SoapClient(fake_session)

        assert await client.query_state_variable(CONTROL_URL, "TransportState") == "STOPPED"
        assert "<u:varName>TransportState</u:varName>" in fake_session.requests[0]["data"]
