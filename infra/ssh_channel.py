"""SSH command channel backed by paramiko."""
from __future__ import annotations

import logging
import threading
import time

import paramiko

from .channel import DEFAULT_TIMEOUT, CommandChannel
from .exceptions import ChannelError, ChannelTimeout, CommandFailed

logger = logging.getLogger(__name__)

_RECV_CHUNK = 32 * 1024
_POLL_INTERVAL = 0.05  # seconds


class SshChannel(CommandChannel):
    """Run one-shot commands on a host over SSH.

    The connection is opened lazily and re-opened when the transport drops.
    Each command gets its own session; nothing is shared between commands
    except the underlying transport.
    """

    def __init__(
        self,
        hostname: str,
        *,
        port: int = 22,
        username: str = "root",
        key_filename: str | None = None,
        connect_timeout: float = 10.0,
        default_timeout: float = DEFAULT_TIMEOUT,
        client: paramiko.SSHClient | None = None,
    ) -> None:
        super().__init__(default_timeout=default_timeout)
        self._hostname = hostname
        self._port = port
        self._username = username
        self._key_filename = key_filename
        self._connect_timeout = connect_timeout
        self._client = client
        self._mu = threading.Lock()

    def __repr__(self) -> str:
        return f"<SshChannel {self._username}@{self._hostname}:{self._port}>"

    # -- CommandChannel -------------------------------------------------------

    def execute(self, command: str, timeout: float | None = None) -> str:
        return self._run(command, None, timeout)

    def execute_with_input(
        self,
        command: str,
        data: bytes,
        timeout: float | None = None,
    ) -> str:
        return self._run(command, data, timeout)

    def close(self) -> None:
        with self._mu:
            if self._client is not None:
                self._client.close()
                self._client = None

    # -- Internals ------------------------------------------------------------

    def _transport(self) -> paramiko.Transport:
        with self._mu:
            if self._client is None:
                self._client = paramiko.SSHClient()
                self._client.load_system_host_keys()
                self._client.set_missing_host_key_policy(paramiko.RejectPolicy())
            transport = self._client.get_transport()
            if transport is None or not transport.is_active():
                try:
                    self._client.connect(
                        self._hostname,
                        port=self._port,
                        username=self._username,
                        key_filename=self._key_filename,
                        timeout=self._connect_timeout,
                        banner_timeout=self._connect_timeout,
                        auth_timeout=self._connect_timeout,
                    )
                except paramiko.AuthenticationException as exc:
                    raise ChannelError(
                        f"Authentication failed for {self._username}@{self._hostname}: {exc}"
                    ) from exc
                except (paramiko.SSHException, OSError) as exc:
                    raise ChannelError(
                        f"Cannot connect to {self._hostname}:{self._port}: {exc}"
                    ) from exc
                transport = self._client.get_transport()
                logger.info("SSH connected: %s", self)
            if transport is None:
                raise ChannelError(f"No SSH transport for {self._hostname}")
            return transport

    def _run(self, command: str, data: bytes | None, timeout: float | None) -> str:
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug("[%s] exec: %s", self._hostname, command)
        try:
            channel = self._transport().open_session(timeout=self._connect_timeout)
        except (paramiko.SSHException, OSError) as exc:
            raise ChannelError(f"Cannot open session on {self._hostname}: {exc}") from exc

        try:
            channel.exec_command(command)
            if data is not None:
                channel.sendall(data)
                channel.shutdown_write()
            stdout, stderr = self._collect(channel, command, timeout)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise ChannelError(f"SSH session to {self._hostname} failed: {exc}") from exc
        finally:
            channel.close()

        if exit_code != 0:
            raise CommandFailed(command, exit_code, stdout, stderr)
        return stdout

    @staticmethod
    def _collect(
        channel: paramiko.Channel, command: str, timeout: float
    ) -> tuple[str, str]:
        deadline = time.monotonic() + timeout
        out: list[bytes] = []
        err: list[bytes] = []
        while True:
            while channel.recv_ready():
                out.append(channel.recv(_RECV_CHUNK))
            while channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_RECV_CHUNK))
            if (
                channel.exit_status_ready()
                and not channel.recv_ready()
                and not channel.recv_stderr_ready()
            ):
                break
            if time.monotonic() >= deadline:
                raise ChannelTimeout(command, timeout)
            time.sleep(_POLL_INTERVAL)
        return (
            b"".join(out).decode("utf-8", errors="replace"),
            b"".join(err).decode("utf-8", errors="replace"),
        )
