"""Infrastructure adapters: command channels to managed hosts."""
from __future__ import annotations

from .channel import CommandChannel
from .exceptions import ChannelError, ChannelTimeout, CommandFailed
from .factory import ChannelFactory
from .inventory import HostEntry, HostInventory, InventoryError
from .local_channel import LocalChannel
from .ssh_channel import SshChannel

__all__ = [
    "ChannelError",
    "ChannelFactory",
    "ChannelTimeout",
    "CommandChannel",
    "CommandFailed",
    "HostEntry",
    "HostInventory",
    "InventoryError",
    "LocalChannel",
    "SshChannel",
]
