"""Tests for the device registry engine."""

import pytest

from upnp_bridge.bridge.device import ConnectionState
from upnp_bridge.bridge.engine import Engine, base_usn
from upnp_bridge.bus.xpl import MSG_COMMAND, XplMessage
from upnp_bridge.config import PollingConfig
from upnp_bridge.upnp.description import AV_TRANSPORT
from upnp_bridge.upnp.errors import UnsupportedServiceError
from upnp_bridge.upnp.soap import UPNP_AV_TRANSPORT
from upnp_bridge.upnp.ssdp import SsdpResponse
from upnp_bridge.upnp.subscription import SubscriptionManager

BASE = "http://192.168.1.20:9197"
LOCATION = f"{BASE}/dmr"
USN = "uuid:ABC::urn:schemas-upnp-org:service:AVTransport:1"


def make_engine(session, publisher, aliases=None) -> Engine:
    return Engine(
        session=session,
        publisher=publisher,
        subscriptions=SubscriptionManager(session),
        callback_url=lambda address: "http://192.168.1.10:8080/",
        aliases=aliases,
        polling=PollingConfig(avtransport_interval_ms=0),
    )


def discovery_response(
    status: int = 200,
    usn: str = USN,
    location: str = LOCATION,
    address: str = "192.168.1.20",
) -> SsdpResponse:
    return SsdpResponse(
        status=status,
        address=(address, 1900),
        headers={"USN": usn, "LOCATION": location},
    )


def route_device(session, helpers) -> None:
    session.add("GET", LOCATION, helpers.FakeResponse(body=helpers.device_description()))
    session.add(
        "SUBSCRIBE",
        f"{BASE}/evt/avt",
        helpers.FakeResponse(headers={"SID": "uuid:sid-avt", "TIMEOUT": "Second-1800"}),
    )


def command(body: dict, schema: str = "upnp.AVTransport") -> XplMessage:
    return XplMessage(MSG_COMMAND, "acme-remote.home", schema, body)


class TestBaseUsn:
    """Tests for base_usn."""

    def test_strips_service_suffix(self) -> None:
        """Test the ::service suffix is removed."""
        assert base_usn(USN) == "uuid:ABC"
        assert base_usn("uuid:ABC") == "uuid:ABC"


class TestDiscovery:
    """Tests for discovery handling."""

    @pytest.mark.asyncio
    async def test_new_device(self, fake_session, helpers, publisher) -> None:
        """Test a 200 response registers and connects a device keyed by base USN."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher)
        try:
            device = await engine.handle_discovery_response(discovery_response())

            assert list(engine.devices) == ["uuid:ABC"]
            assert device is engine.devices["uuid:ABC"]
            assert device.alias == "uuid:ABC"
            assert device.state == ConnectionState.CONNECTED
            assert [c["url"] for c in fake_session.calls("SUBSCRIBE")] == [f"{BASE}/evt/avt"]
            assert device.control_url(AV_TRANSPORT) == f"{BASE}/ctl/avt"
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_alias_from_config(self, fake_session, helpers, publisher) -> None:
        """Test configured aliases are applied."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "tv"})
        try:
            device = await engine.handle_discovery_response(discovery_response())
            assert device.alias == "tv"
            assert engine.device_by_alias("tv") is device
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_known_device_is_pinged(self, fake_session, helpers, publisher) -> None:
        """Test a repeated response pings without reconnecting."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher)
        try:
            device = await engine.handle_discovery_response(discovery_response())
            first_ping = device.last_ping

            again = await engine.handle_discovery_response(
                discovery_response(usn="uuid:ABC::urn:schemas-upnp-org:device:MediaRenderer:1")
            )

            assert again is device
            assert device.last_ping >= first_ping
            assert len(fake_session.calls("GET")) == 1
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_failed_device_is_retried(self, fake_session, helpers, publisher) -> None:
        """Test a device whose connect failed connects on the next response."""
        engine = make_engine(fake_session, publisher)
        try:
            device = await engine.handle_discovery_response(discovery_response())
            assert device.state == ConnectionState.DISCONNECTED

            route_device(fake_session, helpers)
            await engine.handle_discovery_response(discovery_response())

            assert device.state == ConnectionState.CONNECTED
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_retry_uses_new_location(self, fake_session, helpers, publisher) -> None:
        """Test a retried connect fetches the LOCATION of the latest response."""
        moved_base = "http://192.168.1.21:2222"
        callback_addresses = []

        def callback_url(address: str) -> str:
            callback_addresses.append(address)
            return f"http://callback-for-{address}:8080/"

        engine = Engine(
            session=fake_session,
            publisher=publisher,
            subscriptions=SubscriptionManager(fake_session),
            callback_url=callback_url,
            polling=PollingConfig(avtransport_interval_ms=0),
        )
        try:
            device = await engine.handle_discovery_response(discovery_response())
            assert device.state == ConnectionState.DISCONNECTED

            fake_session.add(
                "GET", f"{moved_base}/dmr", helpers.FakeResponse(body=helpers.device_description())
            )
            fake_session.add(
                "SUBSCRIBE",
                f"{moved_base}/evt/avt",
                helpers.FakeResponse(headers={"SID": "uuid:sid-avt", "TIMEOUT": "Second-1800"}),
            )
            await engine.handle_discovery_response(
                discovery_response(location=f"{moved_base}/dmr", address="192.168.1.21")
            )

            assert [c["url"] for c in fake_session.calls("GET")] == [LOCATION, f"{moved_base}/dmr"]
            assert device.state == ConnectionState.CONNECTED
            assert device.location == f"{moved_base}/dmr"
            assert callback_addresses == ["192.168.1.20", "192.168.1.21"]
            assert device.callback_url == "http://callback-for-192.168.1.21:8080/"
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_non_200_ignored(self, fake_session, publisher) -> None:
        """Test error responses do not create devices."""
        engine = make_engine(fake_session, publisher)

        assert await engine.handle_discovery_response(discovery_response(status=404)) is None
        assert engine.devices == {}

    @pytest.mark.asyncio
    async def test_missing_usn_ignored(self, fake_session, publisher) -> None:
        """Test responses without USN are ignored."""
        engine = make_engine(fake_session, publisher)
        response = SsdpResponse(status=200, address=("1.2.3.4", 1900), headers={"LOCATION": LOCATION})

        assert await engine.handle_discovery_response(response) is None


class TestEventRouting:
    """Tests for event routing by SID."""

    @pytest.mark.asyncio
    async def test_routes_by_sid(self, fake_session, helpers, publisher) -> None:
        """Test events reach the subscription with the matching SID."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "tv"})
        try:
            await engine.handle_discovery_response(discovery_response())
            body = helpers.last_change_event(
                '<InstanceID val="0"><TransportState val="PLAYING"/></InstanceID>'
            )

            delivered = await engine.process_event({"NT": "upnp:event", "SID": "uuid:sid-avt"}, body)

            assert delivered
            assert publisher.bodies() == [{"device": "tv/0/transportState", "current": "PLAYING"}]
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_unknown_sid_dropped(self, fake_session, helpers, publisher) -> None:
        """Test events for unknown SIDs are dropped."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher)
        try:
            await engine.handle_discovery_response(discovery_response())

            assert not await engine.process_event({"NT": "upnp:event", "SID": "uuid:other"}, "<x/>")
            assert not await engine.process_event({"SID": "uuid:sid-avt"}, "<x/>")
            assert publisher.messages == []
        finally:
            await engine.close()


class TestBusCommands:
    """Tests for bus command routing."""

    @pytest.mark.asyncio
    async def test_glob_matches_alias(self, fake_session, helpers, publisher) -> None:
        """Test a wildcard pattern routes the command to the matching device."""
        route_device(fake_session, helpers)
        fake_session.add(
            "POST",
            f"{BASE}/ctl/avt",
            helpers.FakeResponse(body=helpers.soap_response(UPNP_AV_TRANSPORT, "Stop")),
        )
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "LivingRoomTV"})
        try:
            await engine.handle_discovery_response(discovery_response())

            results = await engine.process_bus_command(command({"device": "living*", "command": "stop"}))

            assert results == {"LivingRoomTV": None}
            post = fake_session.calls("POST")[0]
            assert post["headers"]["SOAPACTION"] == f'"{UPNP_AV_TRANSPORT}#Stop"'
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_instance_suffix(self, fake_session, helpers, publisher) -> None:
        """Test a trailing digit segment selects the instance id."""
        route_device(fake_session, helpers)
        fake_session.add(
            "POST",
            f"{BASE}/ctl/avt",
            helpers.FakeResponse(body=helpers.soap_response(UPNP_AV_TRANSPORT, "Pause")),
        )
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "tv"})
        try:
            await engine.handle_discovery_response(discovery_response())

            await engine.process_bus_command(command({"device": "tv/3", "command": "pause"}))

            assert "<InstanceID>3</InstanceID>" in fake_session.calls("POST")[0]["data"]
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_failure_is_reported(self, fake_session, helpers, publisher) -> None:
        """Test a failing command is reported per device."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "tv"})
        try:
            await engine.handle_discovery_response(discovery_response())
            before = len(fake_session.requests)

            results = await engine.process_bus_command(
                command(
                    {"device": "tv/Master", "command": "volume", "current": "40"},
                    schema="upnp.RenderingControl",
                )
            )

            assert isinstance(results["tv"], UnsupportedServiceError)
            assert len(fake_session.requests) == before
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_unrecognized_schema(self, fake_session, helpers, publisher) -> None:
        """Test commands in other schemas are ignored."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "tv"})
        try:
            await engine.handle_discovery_response(discovery_response())

            results = await engine.process_bus_command(
                command({"device": "tv", "command": "stop"}, schema="x10.basic")
            )

            assert results == {}
            assert fake_session.calls("POST") == []
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_no_match(self, fake_session, helpers, publisher) -> None:
        """Test a pattern matching nothing issues no request."""
        route_device(fake_session, helpers)
        engine = make_engine(fake_session, publisher, aliases={"uuid:ABC": "tv"})
        try:
            await engine.handle_discovery_response(discovery_response())

            results = await engine.process_bus_command(command({"device": "kitchen", "command": "stop"}))

            assert results == {}
        finally:
            await engine.close()
