"""Unit tests for LocalChannel — runs real shell commands."""
from __future__ import annotations

import pytest

from infra.exceptions import ChannelError, ChannelTimeout, CommandFailed
from infra.local_channel import LocalChannel


class TestExecute:
    def test_returns_stdout(self) -> None:
        assert LocalChannel().execute("echo hello") == "hello\n"

    def test_non_zero_exit(self) -> None:
        with pytest.raises(CommandFailed) as excinfo:
            LocalChannel().execute("echo oops >&2; exit 3")
        assert excinfo.value.exit_code == 3
        assert excinfo.value.stderr == "oops\n"
        assert "oops" in str(excinfo.value)

    def test_timeout(self) -> None:
        with pytest.raises(ChannelTimeout):
            LocalChannel().execute("sleep 5", timeout=0.2)

    def test_timeout_is_channel_error(self) -> None:
        assert issubclass(ChannelTimeout, ChannelError)

    def test_stdin(self) -> None:
        assert LocalChannel().execute_with_input("cat", b"abc") == "abc"

    def test_missing_shell(self) -> None:
        with pytest.raises(ChannelError):
            LocalChannel(shell="/nonexistent/shell").execute("true")


class TestFileHelpers:
    def test_write_read_remove(self, tmp_path) -> None:
        channel = LocalChannel()
        # Plain commands without sudo for the test environment.
        target = tmp_path / "sub" / "file.txt"
        channel.execute_with_input(f"install -D /dev/stdin {target}", b"data\n")
        assert channel.execute(f"cat {target}") == "data\n"
        channel.execute(f"rm -f {target}")
        assert not target.exists()
