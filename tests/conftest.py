"""Shared fixtures: a fake aiohttp session that never touches the network."""

from typing import Optional, Union

import aiohttp
import pytest
from multidict import CIMultiDict


class FakeResponse:
    """Canned HTTP response usable as ``async with`` target."""

    def __init__(
        self,
        status: int = 200,
        body: Union[str, bytes] = b"",
        headers: Optional[dict] = None,
        content_type: str = "text/xml",
        reason: str = "OK",
    ):
        self.status = status
        self.reason = reason
        self.headers = CIMultiDict(headers or {})
        if content_type:
            self.headers.setdefault("Content-Type", content_type)
        # aiohttp lowercases the media type and drops parameters
        self.content_type = content_type.split(";", 1)[0].strip().lower()
        self._body = body.encode("utf-8") if isinstance(body, str) else body

    async def read(self) -> bytes:
        return self._body

    async def text(self) -> str:
        return self._body.decode("utf-8")

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *args) -> None:
        return None


class FakeSession:
    """
    Records requests and answers them from a route table.

    Routes are keyed by (method, url); a route holds a list of responses
    consumed in order, the last one repeating. Unrouted requests raise
    ``aiohttp.ClientConnectionError``.
    """

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self._routes: dict[tuple[str, str], list] = {}

    def add(self, method: str, url: str, *responses) -> None:
        self._routes.setdefault((method.upper(), url), []).extend(responses)

    def calls(self, method: Optional[str] = None, url: Optional[str] = None) -> list[dict]:
        return [
            r
            for r in self.requests
            if (method is None or r["method"] == method.upper())
            and (url is None or r["url"] == url)
        ]

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        data = kwargs.get("data")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        self.requests.append(
            {
                "method": method.upper(),
                "url": url,
                "headers": dict(kwargs.get("headers") or {}),
                "data": data,
            }
        )
        responses = self._routes.get((method.upper(), url))
        if not responses:
            raise aiohttp.ClientConnectionError(f"No route for {method} {url}")
        response = responses[0]
        if len(responses) > 1:
            responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url: str, **kwargs) -> FakeResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> FakeResponse:
        return self.request("POST", url, **kwargs)


def soap_response(service_type: str, action: str, fields: Optional[dict] = None) -> str:
    """Build a SOAP response envelope for ``action``."""
    args = "".join(f"<{k}>{v}</{k}>" for k, v in (fields or {}).items())
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        f'<s:Body><u:{action}Response xmlns:u="{service_type}">{args}'
        f"</u:{action}Response></s:Body></s:Envelope>"
    )


def soap_fault(code: int, description: str) -> str:
    return (
        '<?xml version="1.0"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">'
        "<s:Body><s:Fault><faultcode>s:Client</faultcode><faultstring>UPnPError</faultstring>"
        '<detail><UPnPError xmlns="urn:schemas-upnp-org:control-1-0">'
        f"<errorCode>{code}</errorCode><errorDescription>{description}</errorDescription>"
        "</UPnPError></detail></s:Fault></s:Body></s:Envelope>"
    )


DEVICE_DESCRIPTION = """<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion><major>1</major><minor>0</minor></specVersion>
  <device>
    <deviceType>urn:schemas-upnp-org:device:MediaRenderer:1</deviceType>
    <friendlyName>Living Room TV</friendlyName>
    <manufacturer>Samsung</manufacturer>
    <modelName>UE40</modelName>
    <UDN>uuid:ABC</UDN>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:AVTransport:1</serviceType>
        <serviceId>urn:upnp-org:serviceId:AVTransport</serviceId>
        <controlURL>/ctl/avt</controlURL>
        <eventSubURL>/evt/avt</eventSubURL>
        <SCPDURL>/avt.xml</SCPDURL>
      </service>
      {extra_services}
    </serviceList>
  </device>
</root>
"""

RENDERING_CONTROL_SERVICE = """
      <service>
        <serviceType>urn:schemas-upnp-org:service:RenderingControl:1</serviceType>
        <serviceId>urn:upnp-org:serviceId:RenderingControl</serviceId>
        <controlURL>/ctl/rc</controlURL>
        <eventSubURL>/evt/rc</eventSubURL>
        <SCPDURL>/rc.xml</SCPDURL>
      </service>"""

CONNECTION_MANAGER_SERVICE = """
      <service>
        <serviceType>urn:schemas-upnp-org:service:ConnectionManager:1</serviceType>
        <serviceId>urn:upnp-org:serviceId:ConnectionManager</serviceId>
        <controlURL>/ctl/cm</controlURL>
        <eventSubURL>/evt/cm</eventSubURL>
        <SCPDURL>/cm.xml</SCPDURL>
      </service>"""


def device_description(rendering_control: bool = False, connection_manager: bool = False) -> str:
    extra = ""
    if rendering_control:
        extra += RENDERING_CONTROL_SERVICE
    if connection_manager:
        extra += CONNECTION_MANAGER_SERVICE
    return DEVICE_DESCRIPTION.replace("{extra_services}", extra)


def last_change_event(instance_xml: str, ns: str = "urn:schemas-upnp-org:metadata-1-0/AVT/") -> str:
    """Wrap an ``<InstanceID>`` fragment into an escaped LastChange NOTIFY body."""
    event = f'<Event xmlns="{ns}">{instance_xml}</Event>'
    escaped = event.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
    return (
        '<?xml version="1.0"?>'
        '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
        f"<e:property><LastChange>{escaped}</LastChange></e:property>"
        "</e:propertyset>"
    )


class Helpers:
    FakeResponse = FakeResponse
    soap_response = staticmethod(soap_response)
    soap_fault = staticmethod(soap_fault)
    device_description = staticmethod(device_description)
    last_change_event = staticmethod(last_change_event)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def helpers() -> type:
    return Helpers


class RecordingPublisher:
    """Collects published (schema, body) pairs."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, dict]] = []

    async def __call__(self, schema: str, body: dict) -> None:
        self.messages.append((schema, dict(body)))

    def bodies(self, schema: Optional[str] = None) -> list[dict]:
        return [b for s, b in self.messages if schema is None or s == schema]


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()
