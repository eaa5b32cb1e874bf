"""Factory that builds one command channel per inventory host.

Decision logic:
  host entry has ``local: true``  → LocalChannel
  otherwise                       → SshChannel to ``hostname:port``
"""
from __future__ import annotations

import logging
import threading

from .channel import DEFAULT_TIMEOUT, CommandChannel
from .inventory import HostInventory
from .local_channel import LocalChannel
from .ssh_channel import SshChannel

logger = logging.getLogger(__name__)


class ChannelFactory:
    """Create and cache channels keyed by host id."""

    def __init__(
        self,
        inventory: HostInventory,
        command_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._inventory = inventory
        self._command_timeout = command_timeout
        self._channels: dict[str, CommandChannel] = {}
        self._mu = threading.Lock()

    def __call__(self, host_id: str) -> CommandChannel:
        return self.get(host_id)

    def get(self, host_id: str) -> CommandChannel:
        """Return the channel for *host_id*, creating it on first use."""
        with self._mu:
            channel = self._channels.get(host_id)
            if channel is None:
                channel = self._build(host_id)
                self._channels[host_id] = channel
            return channel

    def close_all(self) -> None:
        with self._mu:
            for channel in self._channels.values():
                channel.close()
            self._channels.clear()

    def _build(self, host_id: str) -> CommandChannel:
        entry = self._inventory.get(host_id)
        if entry.local:
            logger.info("Using local channel for host %s", host_id)
            return LocalChannel(default_timeout=self._command_timeout)
        logger.info(
            "Using SSH channel for host %s (%s@%s:%d)",
            host_id, entry.username, entry.hostname, entry.port,
        )
        return SshChannel(
            entry.hostname,
            port=entry.port,
            username=entry.username,
            key_filename=entry.key_filename,
            default_timeout=self._command_timeout,
        )
