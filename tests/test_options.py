"""Tests for ssh/rsync argument vectors and error formatting."""

import shlex

import pytest

from sshwrap.config import HostInfo
from sshwrap.errors import (
    ErrorKind,
    HostKeyError,
    ProcessError,
    SSHWrapperError,
    WatchdogExpired,
)
from sshwrap.options import (
    build_remote_command,
    build_rsh_option,
    build_rsync_args,
    build_ssh_options,
    control_dir,
)


@pytest.fixture(autouse=True)
def _no_control_dir_env(monkeypatch):
    monkeypatch.delenv("SSH_CONTROL_PERSIST_DIR", raising=False)


class TestSshOptions:
    """Tests for build_ssh_options()."""

    def test_minimal(self):
        args = build_ssh_options(HostInfo("hoge"))
        assert args == [
            "hoge",
            "-oControlMaster=auto",
            "-oControlPath=~/.ssh/ssh-client-wrapper-%r@%h:%p",
            "-oControlPersist=180",
        ]

    def test_full_order(self, tmp_path):
        key = tmp_path / "id_test"
        key.write_text("key")
        info = HostInfo(
            "hoge",
            user="alice",
            port=2222,
            key_file=str(key),
            no_strict_host_key_checking=True,
            control_persist=30,
            control_persist_dir="/run/ctl",
            connect_timeout=5,
            ssh_opt=["-oServerAliveInterval=10", "-v"],
        )
        assert build_ssh_options(info) == [
            "hoge",
            "-l", "alice",
            "-p", "2222",
            "-i", str(key),
            "-oStrictHostKeyChecking=no",
            "-oControlMaster=auto",
            "-oControlPath=/run/ctl/ssh-client-wrapper-%r@%h:%p",
            "-oControlPersist=30",
            "-oConnectTimeout=5",
            "-oServerAliveInterval=10",
            "-v",
        ]

    def test_missing_key_file_skipped(self, tmp_path):
        info = HostInfo("hoge", key_file=str(tmp_path / "absent"))
        assert "-i" not in build_ssh_options(info)

    def test_key_directory_skipped(self, tmp_path):
        info = HostInfo("hoge", key_file=str(tmp_path))
        assert "-i" not in build_ssh_options(info)

    def test_without_destination(self):
        args = build_ssh_options(HostInfo("hoge", user="alice"), without_destination=True)
        assert "hoge" not in args
        assert args[:2] == ["-l", "alice"]

    def test_control_dir_from_env(self, monkeypatch):
        monkeypatch.setenv("SSH_CONTROL_PERSIST_DIR", "/var/tmp/ctl")
        assert control_dir(HostInfo("hoge")) == "/var/tmp/ctl"
        assert control_dir(HostInfo("hoge", control_persist_dir="/mine")) == "/mine"


class TestRemoteCommand:
    """Tests for build_remote_command()."""

    def test_plain(self):
        assert build_remote_command("ls") == "ls"

    def test_rcfile_and_prepend(self):
        assert build_remote_command("ls", rcfile="~/.bashrc", prepend_cmd="cd /tmp") == ". ~/.bashrc; cd /tmp; ls"

    def test_prepend_only(self):
        assert build_remote_command("ls", prepend_cmd="module load x") == "module load x; ls"


class TestRsyncArgs:
    """Tests for rsync argument vectors."""

    def test_rsh_option(self):
        info = HostInfo("hoge", user="alice", port=2222)
        flag, value = build_rsh_option(info)
        assert flag == "-e"
        words = shlex.split(value)
        assert words[0] == "ssh"
        assert "hoge" not in words
        assert words[1:5] == ["-l", "alice", "-p", "2222"]

    def test_args(self):
        info = HostInfo("hoge")
        args = build_rsync_args(info, ["a", "b/"], "hoge:/dst", ["--delete"])
        assert args[:2] == ["-avv", "--copy-unsafe-links"]
        assert args[2] == "-e"
        assert args[4:] == ["--delete", "a", "b/", "hoge:/dst"]


class TestErrors:
    """Tests for error payloads and formatting."""

    def test_retryable_defaults(self):
        assert WatchdogExpired(5).retryable
        assert SSHWrapperError("x", kind=ErrorKind.KEX_CLOSED_BY_REMOTE).retryable
        assert not ProcessError("x", kind=ErrorKind.SIGNAL_RECEIVED, signal=9).retryable
        assert not ProcessError("x", exit_code=1).retryable
        assert ProcessError("x", exit_code=23, retryable=True).retryable
        assert not HostKeyError().retryable

    def test_kinds(self):
        assert WatchdogExpired(5).kind == ErrorKind.TIMEOUT_EXPIRED
        assert HostKeyError().kind == ErrorKind.HOST_KEY_MISMATCH
        assert ProcessError("x", exit_code=1).kind == ErrorKind.NON_ZERO_EXIT

    def test_add_context_keeps_existing(self):
        err = ProcessError("x", exit_code=1, host="first")
        err.add_context(host="second", user="alice", port=22, command="ls")
        assert err.host == "first"
        assert err.user == "alice"
        assert err.command == "ls"

    def test_str_has_kind_host_and_attempts(self):
        err = WatchdogExpired(2.5).add_context(host="hoge", user="alice", port=2222, command="sleep 9")
        err.annotate_attempts(4, 3)
        text = str(err)
        assert "watchdog timer expired after 2.5s" in text
        assert "timeout-expired" in text
        assert "host=alice@hoge:2222" in text
        assert "attempt 4/3" in text

    def test_host_key_error_message(self):
        err = HostKeyError(known_hosts="/home/a/.ssh/known_hosts", line=12, hostname="hoge")
        assert "for hoge" in err.message
        assert "/home/a/.ssh/known_hosts:12" in err.message
