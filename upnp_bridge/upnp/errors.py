"""
UPnP error types.

Raised by the SOAP client, the subscription manager and the device controller.
"""

from typing import Optional


class UPnPError(Exception):
    """Base class for UPnP errors."""

    pass


class TransportError(UPnPError):
    """Network or connection failure while reaching a device."""

    pass


class SoapFault(UPnPError):
    """Non-200 response to a SOAP action."""

    def __init__(
        self,
        status: int,
        action: str,
        control_url: str,
        instance_id: Optional[int] = None,
        upnp_error_code: Optional[int] = None,
        upnp_error_description: str = "",
        service_type: str = "",
        extra_body: str = "",
    ):
        self.status = status
        self.action = action
        self.control_url = control_url
        self.instance_id = instance_id
        self.service_type = service_type
        self.extra_body = extra_body
        self.upnp_error_code = upnp_error_code
        self.upnp_error_description = upnp_error_description

        message = f"SOAP {action} failed ({status}) at {control_url}"
        if upnp_error_code is not None:
            message += f": UPnP error {upnp_error_code}"
            if upnp_error_description:
                message += f" ({upnp_error_description})"
        super().__init__(message)

    @property
    def is_not_implemented(self) -> bool:
        """True if the device reported the action as unknown or not implemented."""
        # 401 Invalid Action, 602 Optional Action Not Implemented
        return self.upnp_error_code in (401, 602)


class SubscriptionError(UPnPError):
    """Non-200 response to SUBSCRIBE or renewal."""

    def __init__(self, status: int, reason: str, event_url: str):
        self.status = status
        self.reason = reason
        self.event_url = event_url
        super().__init__(f"SUBSCRIBE {event_url} failed ({status} {reason})")


class UnsupportedServiceError(UPnPError):
    """Action requested against a service the device did not advertise."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Device does not provide the {service} service")


class MalformedMetadataError(UPnPError):
    """Embedded metadata document could not be parsed."""

    pass
