"""
UPnP event subscriptions.

Issues SUBSCRIBE requests for a service's event URL, keeps the SID the
device hands out and renews the subscription on a timer before it expires.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import aiohttp

from .errors import SubscriptionError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 1800

# Renew this many seconds before the subscription expires
RENEWAL_MARGIN_SECONDS = 5
MIN_RENEWAL_INTERVAL_SECONDS = 10

_TIMEOUT_RE = re.compile(r"Second-(\d+)", re.IGNORECASE)


class SubscriptionState(Enum):
    """Lifecycle of a service subscription."""

    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    RENEWING = "renewing"
    FAILED = "failed"


def renewal_interval(timeout_seconds: int) -> int:
    """Seconds between renewals for a granted subscription timeout."""
    return max(timeout_seconds - RENEWAL_MARGIN_SECONDS, MIN_RENEWAL_INTERVAL_SECONDS)


def parse_timeout(header: Optional[str], default: int = DEFAULT_TIMEOUT_SECONDS) -> int:
    """Parse a ``TIMEOUT: Second-<n>`` header, falling back to ``default``."""
    if header:
        match = _TIMEOUT_RE.search(header)
        if match:
            return int(match.group(1))
    return default


@dataclass
class ServiceSubscription:
    """Event subscription for one service of one device."""

    service: str  # service kind, e.g. "AVTransport"
    event_url: str
    sid: str = ""
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    error_count: int = 0
    state: SubscriptionState = SubscriptionState.UNSUBSCRIBED
    renew_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def renewal_interval(self) -> int:
        return renewal_interval(self.timeout_seconds)

    def cancel(self) -> None:
        """Stop the renewal timer."""
        if self.renew_task and not self.renew_task.done():
            self.renew_task.cancel()
        self.renew_task = None


class SubscriptionManager:
    """
    Subscribes to and renews UPnP event subscriptions.

    Renewals run as one asyncio task per subscription and keep firing on
    schedule after failures; each failure increments ``error_count``.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._session = session
        self._timeout_seconds = timeout_seconds

    async def subscribe(self, subscription: ServiceSubscription, callback_url: str) -> None:
        """
        Subscribe to ``subscription.event_url`` and start the renewal timer.

        Raises:
            TransportError: If the device cannot be reached
            SubscriptionError: If the device refuses the subscription
        """
        headers = {
            "CALLBACK": f"<{callback_url}>",
            "NT": "upnp:event",
            "TIMEOUT": f"Second-{self._timeout_seconds}",
        }
        subscription.state = SubscriptionState.SUBSCRIBING
        logger.debug(f"SUBSCRIBE {subscription.event_url} callback={callback_url}")

        try:
            status, reason, sid, timeout = await self._request(subscription.event_url, headers)
        except TransportError:
            subscription.state = SubscriptionState.FAILED
            raise

        if status != 200:
            subscription.state = SubscriptionState.FAILED
            raise SubscriptionError(status, reason, subscription.event_url)

        subscription.sid = sid or ""
        subscription.timeout_seconds = parse_timeout(timeout, self._timeout_seconds)
        subscription.error_count = 0
        subscription.state = SubscriptionState.SUBSCRIBED
        logger.info(
            f"Subscribed to {subscription.service} events at {subscription.event_url} "
            f"(sid={subscription.sid}, timeout={subscription.timeout_seconds}s)"
        )

        self._schedule_renewal(subscription)

    async def renew(self, subscription: ServiceSubscription) -> None:
        """
        Renew an existing subscription using its SID.

        Raises:
            TransportError: If the device cannot be reached
            SubscriptionError: If the device refuses the renewal
        """
        headers = {
            "SID": subscription.sid,
            "TIMEOUT": f"Second-{subscription.timeout_seconds}",
        }
        subscription.state = SubscriptionState.RENEWING
        logger.debug(f"Renew {subscription.event_url} sid={subscription.sid}")

        try:
            status, reason, sid, _ = await self._request(subscription.event_url, headers)
        except TransportError:
            subscription.error_count += 1
            subscription.state = SubscriptionState.FAILED
            raise

        if status != 200:
            subscription.error_count += 1
            subscription.state = SubscriptionState.FAILED
            raise SubscriptionError(status, reason, subscription.event_url)

        if sid and sid != subscription.sid:
            logger.info(f"Device reissued sid {subscription.sid} -> {sid}")
            subscription.sid = sid
        subscription.error_count = 0
        subscription.state = SubscriptionState.SUBSCRIBED

    def _schedule_renewal(self, subscription: ServiceSubscription) -> None:
        subscription.cancel()
        subscription.renew_task = asyncio.create_task(self._renewal_loop(subscription))

    async def _renewal_loop(self, subscription: ServiceSubscription) -> None:
        """Renew at a fixed interval until cancelled."""
        while True:
            try:
                await asyncio.sleep(subscription.renewal_interval)
                await self.renew(subscription)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(
                    f"Renewal of {subscription.service} subscription failed "
                    f"({subscription.error_count} consecutive): {e}"
                )

    async def _request(
        self, event_url: str, headers: dict[str, str]
    ) -> tuple[int, str, Optional[str], Optional[str]]:
        try:
            async with self._session.request("SUBSCRIBE", event_url, headers=headers) as response:
                return (
                    response.status,
                    response.reason or "",
                    response.headers.get("SID"),
                    response.headers.get("TIMEOUT"),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"SUBSCRIBE {event_url} failed: {e}") from e
