"""
Shared pytest fixtures for sshwrap tests.

Nothing here talks to a network. A small shell script stands in for the
ssh client; it understands just enough of the command line to drive the
master connection and command execution paths:

- `-Ocheck`: prints "Master running" and exits 0, or the missing control
  socket message and 255 when FAKE_SSH_CHECK=missing
- `-Oexit`: prints "Exit request sent.", or the missing control socket
  message and 255 when FAKE_SSH_EXIT=gone
- FAKE_SSH_OUTPUT: print it and exit 255 (fatal client message)
- FAKE_SSH_HANG: sleep instead of running anything
- FAKE_SSH_PASSWORD: prompt "password:" and require that answer first
- otherwise runs the last argument with /bin/sh -c, or an interactive
  /bin/sh when the last argument is an option (no remote command)
"""

import os
import stat

import pytest

from sshwrap.config import HostInfo
from sshwrap.session.master import MasterSession


FAKE_SSH = r"""#!/bin/sh
last=""
for arg in "$@"; do
    case "$arg" in
        -Ocheck)
            if [ "$FAKE_SSH_CHECK" = "missing" ]; then
                echo "Control socket connect(/tmp/x): No such file or directory"
                exit 255
            fi
            echo "Master running (pid=4242)"
            exit 0
            ;;
        -Oexit)
            if [ "$FAKE_SSH_EXIT" = "gone" ]; then
                echo "Control socket connect(/tmp/x): No such file or directory"
                exit 255
            fi
            echo "Exit request sent."
            exit 0
            ;;
    esac
    last="$arg"
done

if [ -n "$FAKE_SSH_OUTPUT" ]; then
    printf '%s\n' "$FAKE_SSH_OUTPUT"
    exit 255
fi

if [ -n "$FAKE_SSH_HANG" ]; then
    sleep 30
    exit 0
fi

if [ -n "$FAKE_SSH_PASSWORD" ]; then
    printf 'alice@testhost password: '
    stty -echo 2>/dev/null
    read -r answer
    stty echo 2>/dev/null
    printf '\n'
    if [ "$answer" != "$FAKE_SSH_PASSWORD" ]; then
        echo "Permission denied (publickey,password)."
        exit 255
    fi
fi

case "$last" in
    -*) PS1='$ ' exec /bin/sh -i ;;
esac
exec /bin/sh -c "$last"
"""

FAKE_ENV = (
    "FAKE_SSH_CHECK",
    "FAKE_SSH_EXIT",
    "FAKE_SSH_OUTPUT",
    "FAKE_SSH_HANG",
    "FAKE_SSH_PASSWORD",
)


@pytest.fixture
def fake_ssh(tmp_path, monkeypatch):
    """Path of an executable fake ssh client."""
    for name in FAKE_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SHELL", "/bin/sh")
    monkeypatch.setenv("SSH_CONTROL_PERSIST_DIR", str(tmp_path))

    path = tmp_path / "ssh"
    path.write_text(FAKE_SSH)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def host_info(fake_ssh):
    """HostInfo pointing at the fake ssh client, with instant retries."""
    return HostInfo(
        host="testhost",
        user="alice",
        ssh_command=fake_ssh,
        retry_duration=0,
    )


@pytest.fixture
def session(host_info):
    return MasterSession(host_info)


class FakeTerminal:
    """Records everything written to it."""

    def __init__(self):
        self.written = []

    def write(self, text):
        self.written.append(text)


@pytest.fixture
def terminal():
    return FakeTerminal()


@pytest.fixture
def workdir(tmp_path):
    """A scratch directory with a few files in it."""
    root = tmp_path / "work"
    root.mkdir()
    for name in ("a.txt", "b.txt", "c.log"):
        (root / name).write_text(f"{name}\n")
    os.makedirs(root / "sub")
    return root
