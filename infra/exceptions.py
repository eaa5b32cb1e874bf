"""Errors raised by command channels."""
from __future__ import annotations


class ChannelError(Exception):
    """Raised when the remote command channel itself fails.

    Connection refused, authentication failure, dropped session or timeout.
    The outcome of the command on the remote side is unknown.
    """


class ChannelTimeout(ChannelError):
    """Raised when a command does not finish within its timeout."""

    def __init__(self, command: str, timeout: float) -> None:
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout}s: {command}")


class CommandFailed(Exception):
    """Raised when a remote command ran but exited with a non-zero status."""

    def __init__(
        self,
        command: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"Command exited with {exit_code}: {command}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
