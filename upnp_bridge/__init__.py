"""
UPnP Bridge - UPnP/DLNA media renderers on an xPL home-automation bus.

Discovers renderers over SSDP, publishes their state changes on the bus and
turns bus commands into UPnP actions.
"""

__version__ = "0.1.0"

from .app import UPnPBridge
from .config import Config, ConfigError, load_config

__all__ = [
    "__version__",
    "UPnPBridge",
    "Config",
    "load_config",
    "ConfigError",
]
