"""
Answering the ssh client's interactive prompts.

The client negotiates authentication on its terminal with no side
channel, so login automation is a streaming text classifier: each chunk
of output is checked against the known prompts and at most one answer is
written back.

Also holds the expectation queue used by scripted (expect/send) sessions.
"""

from __future__ import annotations
import logging
import re
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence, Union

from ..credentials import Credential, SecretProvider
from ..errors import HostKeyError
from ..options import (
    RE_HOST_KEY_CHANGED,
    RE_HOST_KEY_FOR,
    RE_NEW_HOST_PROMPT,
    RE_OFFENDING_KEY,
    RE_PASSPHRASE_PROMPT,
    RE_PASSWORD_PROMPT,
)

logger = logging.getLogger(__name__)

# Low volume record of every automated answer. Never receives secrets.
audit_logger = logging.getLogger("sshwrap.audit")


class Terminal(Protocol):
    def write(self, text: str) -> None: ...


def host_key_error(output: str) -> HostKeyError:
    """Build a HostKeyError from the changed-host-key banner text."""
    known_hosts = line = hostname = None
    offending = RE_OFFENDING_KEY.search(output)
    if offending:
        known_hosts = offending.group(1)
        line = int(offending.group(2))
    host_for = RE_HOST_KEY_FOR.search(output)
    if host_for:
        hostname = host_for.group(1)
    return HostKeyError(known_hosts=known_hosts, line=line, hostname=hostname)


async def _answer(terminal: Terminal, source: Optional[Credential], what: str) -> None:
    if source is None:
        logger.warning(f"{what} prompt received but no {what} is configured")
        return
    if isinstance(source, SecretProvider):
        audit_logger.info(f"call {what} provider")
    else:
        audit_logger.info(f"use given {what}")
    value = await source.resolve()
    terminal.write(f"{value}\n")


async def react(
    output: str,
    terminal: Terminal,
    password: Optional[Credential] = None,
    passphrase: Optional[Credential] = None,
) -> None:
    """
    Answer at most one login prompt found in a chunk of terminal output.

    Checked in order: changed host key (fatal), new host confirmation,
    password, passphrase.

    Raises:
        HostKeyError: remote host identification has changed
        Exception: whatever a SecretProvider raised
    """
    if RE_HOST_KEY_CHANGED.search(output):
        raise host_key_error(output)

    if RE_NEW_HOST_PROMPT.search(output):
        audit_logger.info('answer "yes" to new host key confirmation')
        terminal.write("yes\n")
        return

    if RE_PASSWORD_PROMPT.search(output):
        await _answer(terminal, password, "password")
        return

    if RE_PASSPHRASE_PROMPT.search(output):
        await _answer(terminal, passphrase, "passphrase")


def login_listener(
    terminal: Terminal,
    password: Optional[Credential],
    passphrase: Optional[Credential],
):
    """Listener feeding output chunks that contain a prompt to react()."""
    def listener(text: str):
        if any(pattern.search(text) for pattern in _LOGIN_PATTERNS):
            return react(text, terminal, password, passphrase)
        return None
    return listener


_LOGIN_PATTERNS = (
    RE_HOST_KEY_CHANGED,
    RE_NEW_HOST_PROMPT,
    RE_PASSWORD_PROMPT,
    RE_PASSPHRASE_PROMPT,
)


@dataclass
class Expectation:
    """One expect/send step. repeat is how many matches it answers."""
    pattern: re.Pattern
    response: str
    repeat: int = 1


class ExpectationQueue:
    """FIFO of expectations consumed strictly in order."""

    def __init__(self, expectations: Iterable[Expectation] = ()):
        self._items: deque[Expectation] = deque(expectations)

    def __len__(self) -> int:
        return len(self._items)

    def push(self, expectation: Expectation) -> None:
        self._items.append(expectation)

    def peek(self) -> Optional[Expectation]:
        return self._items[0] if self._items else None

    def consume(self) -> Expectation:
        """Use up one repeat of the head; drop it once none are left."""
        head = self._items[0]
        head.repeat -= 1
        if head.repeat <= 0:
            self._items.popleft()
        return head

    @classmethod
    def from_pairs(
        cls,
        pairs: Sequence[Union[tuple[str, str], tuple[str, str, int]]],
        prefix: Iterable[Expectation] = (),
        suffix: Iterable[Expectation] = (),
    ) -> ExpectationQueue:
        """
        Build a queue from (expect, send) or (expect, send, repeat) pairs.

        expect is a regular expression. send has a newline appended if it
        does not end with one.
        """
        queue = cls(prefix)
        for pair in pairs:
            if len(pair) == 3:
                expect, send, repeat = pair
            elif len(pair) == 2:
                expect, send = pair
                repeat = 1
            else:
                raise ValueError(f"expect entry must be (expect, send[, repeat]), got {pair!r}")
            if not send.endswith("\n"):
                send += "\n"
            queue.push(Expectation(re.compile(expect), send, int(repeat)))
        for expectation in suffix:
            queue.push(expectation)
        return queue


class ExpectDriver:
    """
    Listener driving an ExpectationQueue against live output.

    Only the head is tested, once per chunk. A match writes its response
    and consumes one repeat.
    """

    def __init__(self, queue: ExpectationQueue, terminal: Terminal):
        self.queue = queue
        self.terminal = terminal

    def __call__(self, text: str) -> None:
        head = self.queue.peek()
        if head is None or not head.pattern.search(text):
            return
        self.queue.consume()
        logger.debug(f"expect {head.pattern.pattern!r} matched")
        audit_logger.info(f"send response for {head.pattern.pattern!r}")
        self.terminal.write(head.response)
