"""
Home-automation bus client (xPL).
"""

from .xpl import (
    MSG_COMMAND,
    MSG_STATUS,
    MSG_TRIGGER,
    XplBus,
    XplError,
    XplMessage,
)

__all__ = [
    "MSG_COMMAND",
    "MSG_STATUS",
    "MSG_TRIGGER",
    "XplBus",
    "XplError",
    "XplMessage",
]
