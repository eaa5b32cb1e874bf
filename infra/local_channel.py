"""Command channel that runs commands on the orchestrator machine itself."""
from __future__ import annotations

import logging
import subprocess

from .channel import DEFAULT_TIMEOUT, CommandChannel
from .exceptions import ChannelError, ChannelTimeout, CommandFailed

logger = logging.getLogger(__name__)


class LocalChannel(CommandChannel):
    """Run commands through ``bash -c`` on the local machine.

    Used for hosts where the orchestrator and the web stack share a machine.
    """

    def __init__(
        self,
        shell: str = "/bin/bash",
        default_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(default_timeout=default_timeout)
        self._shell = shell

    def __repr__(self) -> str:
        return f"<LocalChannel {self._shell}>"

    def execute(self, command: str, timeout: float | None = None) -> str:
        return self._run(command, None, timeout)

    def execute_with_input(
        self,
        command: str,
        data: bytes,
        timeout: float | None = None,
    ) -> str:
        return self._run(command, data, timeout)

    def _run(self, command: str, data: bytes | None, timeout: float | None) -> str:
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug("[local] exec: %s", command)
        try:
            proc = subprocess.run(
                [self._shell, "-c", command],
                input=data,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ChannelTimeout(command, timeout) from exc
        except OSError as exc:
            raise ChannelError(f"Cannot start {self._shell}: {exc}") from exc

        stdout = proc.stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace")
            raise CommandFailed(command, proc.returncode, stdout, stderr)
        return stdout
