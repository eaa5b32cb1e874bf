"""Unit tests for the file helpers every CommandChannel inherits."""
from __future__ import annotations

import re

import pytest

from infra.channel import CommandChannel
from infra.exceptions import CommandFailed


class RecordingChannel(CommandChannel):
    """Records commands; commands matching ``failing`` exit with 1."""

    def __init__(self, failing: str | None = None, output: str = "") -> None:
        super().__init__(default_timeout=1.0)
        self.commands: list[str] = []
        self.stdin: list[bytes] = []
        self.failing = failing
        self.output = output

    def execute(self, command: str, timeout: float | None = None) -> str:
        self.commands.append(command)
        if self.failing and re.search(self.failing, command):
            raise CommandFailed(command, 1, stderr="nope")
        return self.output

    def execute_with_input(
        self, command: str, data: bytes, timeout: float | None = None
    ) -> str:
        self.stdin.append(data)
        return self.execute(command, timeout)


class TestWriteFile:
    def test_writes_temp_then_renames(self) -> None:
        channel = RecordingChannel()
        channel.write_file("/etc/varnish/default.vcl", "vcl 4.1;\n")

        install, move = channel.commands
        m = re.fullmatch(
            r"sudo install -D -m 644 /dev/stdin (/etc/varnish/\.default\.vcl\.[0-9a-f]{8}\.tmp)",
            install,
        )
        assert m
        assert move == f"sudo mv -f {m.group(1)} /etc/varnish/default.vcl"
        assert channel.stdin == [b"vcl 4.1;\n"]

    def test_failed_rename_cleans_up(self) -> None:
        channel = RecordingChannel(failing=r"^sudo mv ")
        with pytest.raises(CommandFailed):
            channel.write_file("/etc/x.conf", "x")
        assert channel.commands[-1].startswith("sudo rm -f /etc/.x.conf.")

    def test_paths_are_quoted(self) -> None:
        channel = RecordingChannel()
        channel.write_file("/srv/my site/conf", "x", mode="600")
        assert "-m 600" in channel.commands[0]
        assert channel.commands[1].endswith("'/srv/my site/conf'")


class TestReadHelpers:
    def test_file_exists(self) -> None:
        assert RecordingChannel().file_exists("/etc/hosts")
        assert not RecordingChannel(failing=r"test -e").file_exists("/nope")

    def test_read_file_if_exists(self) -> None:
        channel = RecordingChannel(output="content")
        assert channel.read_file_if_exists("/etc/hosts") == "content"
        assert channel.commands == ["sudo test -e /etc/hosts", "sudo cat /etc/hosts"]

    def test_read_file_if_absent(self) -> None:
        channel = RecordingChannel(failing=r"test -e")
        assert channel.read_file_if_exists("/nope") is None
        assert len(channel.commands) == 1

    def test_remove_and_mkdir(self) -> None:
        channel = RecordingChannel()
        channel.remove_file("/etc/varnish/sites/a.vcl")
        channel.make_dirs("/etc/varnish/sites")
        assert channel.commands == [
            "sudo rm -f /etc/varnish/sites/a.vcl",
            "sudo mkdir -p /etc/varnish/sites",
        ]
