"""
Bridge core: renderer controllers, change tracking and routing.
"""

from .callback_server import CallbackServer
from .commands import BusCommand, CommandHandler, alias_matcher, parse_device_path
from .device import ConnectionState, RendererDevice
from .engine import Engine, base_usn
from .properties import PropertyChange, PropertyChangeTracker, PropertyTable

__all__ = [
    "BusCommand",
    "CallbackServer",
    "CommandHandler",
    "ConnectionState",
    "Engine",
    "PropertyChange",
    "PropertyChangeTracker",
    "PropertyTable",
    "RendererDevice",
    "alias_matcher",
    "base_usn",
    "parse_device_path",
]
