"""Tests for login prompt automation and expectation queues."""

import asyncio
import logging
import re

import pytest

from sshwrap.credentials import FixedSecret, SecretProvider
from sshwrap.errors import HostKeyError
from sshwrap.session.login import (
    Expectation,
    ExpectationQueue,
    ExpectDriver,
    login_listener,
    react,
)

HOST_KEY_BANNER = """\
@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@
@    WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED!     @
@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@@
IT IS POSSIBLE THAT SOMEONE IS DOING SOMETHING NASTY!
Offending ECDSA key in /home/alice/.ssh/known_hosts:12
Host key for lab.example.com has changed and you have requested strict checking.
Host key verification failed.
"""

NEW_HOST = (
    "The authenticity of host 'lab (10.0.0.1)' can't be established.\n"
    "Are you sure you want to continue connecting (yes/no/[fingerprint])? "
)


class TestReact:
    """Tests for react()."""

    @staticmethod
    def _run(coro):
        return asyncio.run(coro)

    def test_password_written_once(self, terminal):
        self._run(react("alice@lab's password: ", terminal, FixedSecret("secret")))
        assert terminal.written == ["secret\n"]

    def test_passphrase(self, terminal):
        self._run(react(
            "Enter passphrase for key '/home/alice/.ssh/id_ed25519': ",
            terminal,
            FixedSecret("pw"),
            FixedSecret("ph"),
        ))
        assert terminal.written == ["ph\n"]

    def test_new_host_confirmed(self, terminal):
        self._run(react(NEW_HOST, terminal))
        assert terminal.written == ["yes\n"]

    def test_one_answer_per_chunk(self, terminal):
        """New host confirmation wins over a password prompt in the same chunk."""
        self._run(react(NEW_HOST + "\npassword: ", terminal, FixedSecret("secret")))
        assert terminal.written == ["yes\n"]

    def test_host_key_changed(self, terminal):
        with pytest.raises(HostKeyError) as exc_info:
            self._run(react(HOST_KEY_BANNER + "password: ", terminal, FixedSecret("secret")))
        err = exc_info.value
        assert err.known_hosts == "/home/alice/.ssh/known_hosts"
        assert err.line == 12
        assert err.hostname == "lab.example.com"
        assert not err.retryable
        assert terminal.written == []

    def test_async_provider(self, terminal):
        async def provider():
            await asyncio.sleep(0)
            return "from-vault"

        self._run(react("password:", terminal, SecretProvider(provider)))
        assert terminal.written == ["from-vault\n"]

    def test_provider_rejection_propagates(self, terminal):
        async def provider():
            raise PermissionError("vault locked")

        with pytest.raises(PermissionError, match="vault locked"):
            self._run(react("password:", terminal, SecretProvider(provider)))
        assert terminal.written == []

    def test_prompt_without_source(self, terminal, caplog):
        with caplog.at_level(logging.WARNING, logger="sshwrap.session.login"):
            self._run(react("password:", terminal))
        assert terminal.written == []
        assert "no password is configured" in caplog.text

    def test_unrelated_output(self, terminal):
        self._run(react("Last login: Mon Jan  1 00:00:00 2024\n", terminal, FixedSecret("secret")))
        assert terminal.written == []

    def test_audit_markers_never_contain_secret(self, terminal, caplog):
        with caplog.at_level(logging.INFO, logger="sshwrap.audit"):
            self._run(react("password:", terminal, FixedSecret("hunter2")))
            self._run(react("password:", terminal, SecretProvider(lambda: "hunter3")))
        audit = [r.getMessage() for r in caplog.records if r.name == "sshwrap.audit"]
        assert audit == ["use given password", "call password provider"]
        assert "hunter" not in caplog.text


class TestLoginListener:
    """Tests for the listener wrapping react()."""

    def test_no_prompt_no_task(self, terminal):
        listener = login_listener(terminal, FixedSecret("secret"), None)
        assert listener("total 0\n") is None

    def test_prompt_returns_awaitable(self, terminal):
        listener = login_listener(terminal, FixedSecret("secret"), None)
        result = listener("password: ")
        asyncio.run(result)
        assert terminal.written == ["secret\n"]


class TestExpectationQueue:
    """Tests for ExpectationQueue and ExpectDriver."""

    def test_from_pairs_appends_newline(self):
        queue = ExpectationQueue.from_pairs([("name\\?", "world"), ("ok", "y\n")])
        first = queue.consume()
        second = queue.consume()
        assert first.response == "world\n"
        assert second.response == "y\n"
        assert len(queue) == 0

    def test_prefix_and_suffix(self):
        prompt = re.compile(r"\$ $")
        queue = ExpectationQueue.from_pairs(
            [("a", "1")],
            prefix=[Expectation(prompt, "cmd\n")],
            suffix=[Expectation(prompt, "exit\n")],
        )
        assert [queue.consume().response for _ in range(3)] == ["cmd\n", "1\n", "exit\n"]

    def test_repeat(self):
        queue = ExpectationQueue.from_pairs([("more\\?", "y", 2), ("done", "bye")])
        assert queue.consume().response == "y\n"
        assert queue.peek().response == "y\n"
        assert queue.consume().response == "y\n"
        assert queue.peek().response == "bye\n"

    def test_bad_entry(self):
        with pytest.raises(ValueError):
            ExpectationQueue.from_pairs([("only-expect",)])

    def test_driver_tests_head_only(self, terminal):
        queue = ExpectationQueue.from_pairs([("first", "1"), ("second", "2")])
        driver = ExpectDriver(queue, terminal)

        driver("second")
        assert terminal.written == []

        driver("first")
        driver("second")
        assert terminal.written == ["1\n", "2\n"]
        assert len(queue) == 0

        driver("first")
        assert terminal.written == ["1\n", "2\n"]

    def test_driver_one_step_per_chunk(self, terminal):
        queue = ExpectationQueue.from_pairs([("x", "1"), ("x", "2")])
        driver = ExpectDriver(queue, terminal)
        driver("x")
        assert terminal.written == ["1\n"]
        assert len(queue) == 1
