"""Command channel contract shared by every remote host transport.

A channel runs one command at a time on a host and returns its stdout.
There is no session state between calls and no transaction spanning more
than one call, so callers must treat every call as an independent,
independently-failing operation.
"""
from __future__ import annotations

import logging
import posixpath
import shlex
import uuid
from abc import ABC, abstractmethod

from .exceptions import CommandFailed

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


class CommandChannel(ABC):
    """Abstract one-shot command channel to a single host."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT) -> None:
        self.default_timeout = default_timeout

    # -- Transport primitives -------------------------------------------------

    @abstractmethod
    def execute(self, command: str, timeout: float | None = None) -> str:
        """Run *command* on the host and return its stdout.

        Raises:
            CommandFailed: The command exited with a non-zero status.
            ChannelError: The channel failed or the command timed out.
        """

    @abstractmethod
    def execute_with_input(
        self,
        command: str,
        data: bytes,
        timeout: float | None = None,
    ) -> str:
        """Run *command* with *data* fed to its stdin."""

    # -- File helpers ---------------------------------------------------------

    def write_file(self, remote_path: str, content: str, mode: str = "644") -> None:
        """Write *content* to *remote_path* atomically.

        The content lands in a temporary file next to the target first and
        is renamed into place as the last action, so a reader never sees a
        partially written file.
        """
        directory = posixpath.dirname(remote_path) or "/"
        tmp_path = posixpath.join(
            directory, f".{posixpath.basename(remote_path)}.{uuid.uuid4().hex[:8]}.tmp"
        )
        command = " ".join([
            "sudo", "install", "-D", "-m", shlex.quote(mode),
            "/dev/stdin", shlex.quote(tmp_path),
        ])
        self.execute_with_input(command, content.encode("utf-8"))
        try:
            self.execute(
                f"sudo mv -f {shlex.quote(tmp_path)} {shlex.quote(remote_path)}"
            )
        except CommandFailed:
            self.execute(f"sudo rm -f {shlex.quote(tmp_path)}")
            raise
        logger.debug("Wrote %d bytes to %s", len(content), remote_path)

    def read_file(self, remote_path: str) -> str:
        """Return the content of *remote_path*; CommandFailed if unreadable."""
        return self.execute(f"sudo cat {shlex.quote(remote_path)}")

    def file_exists(self, remote_path: str) -> bool:
        try:
            self.execute(f"sudo test -e {shlex.quote(remote_path)}")
        except CommandFailed:
            return False
        return True

    def read_file_if_exists(self, remote_path: str) -> str | None:
        """Return the content of *remote_path*, or ``None`` when it is absent."""
        if not self.file_exists(remote_path):
            return None
        return self.read_file(remote_path)

    def remove_file(self, remote_path: str) -> None:
        self.execute(f"sudo rm -f {shlex.quote(remote_path)}")

    def make_dirs(self, remote_path: str) -> None:
        self.execute(f"sudo mkdir -p {shlex.quote(remote_path)}")

    def close(self) -> None:
        """Release transport resources. Safe to call more than once."""
