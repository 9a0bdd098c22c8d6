"""
Master (ControlMaster) connection management.

Every command for a host goes through one persistent, authenticated
control connection. MasterSession owns that connection for one
HostInfo: it probes for it, establishes it inside a local shell running
in a pty (so login prompts can be answered), and tears it down.

Only one probe/connect/disconnect runs at a time per session; two
interleaved handshakes would write conflicting commands into the same pty.
"""

from __future__ import annotations
import asyncio
import logging
import os
import re
import shlex
import uuid
from typing import Optional

from ..config import HostInfo
from ..errors import (
    ConnectError,
    ErrorKind,
    ProcessError,
    SSHWrapperError,
    WatchdogExpired,
)
from ..options import (
    RE_BAD_PORT,
    RE_MUX_LISTENER,
    RE_NO_CONTROL_SOCKET,
    RE_PERMISSION_DENIED,
    RE_TIMED_OUT,
    RE_UNRESOLVABLE,
    build_ssh_options,
)
from .base import MasterState
from .login import login_listener
from .pty_transport import PtyProcess, TailBuffer, Watchdog, spawn

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 60
PROBE_TIMEOUT = 10
RELEASE_GRACE = 1.0

# Client messages that end a handshake for good
FATAL_PATTERNS = (
    (RE_PERMISSION_DENIED, ErrorKind.PERMISSION_DENIED, "permission denied"),
    (RE_UNRESOLVABLE, ErrorKind.HOSTNAME_UNRESOLVABLE, "could not resolve hostname"),
    (RE_BAD_PORT, ErrorKind.BAD_PORT, "bad port"),
    (RE_TIMED_OUT, ErrorKind.CONNECTION_TIMED_OUT, "connection timed out"),
    (RE_MUX_LISTENER, ErrorKind.MUX_LISTENER_FAILED, "could not set up control socket listener"),
)


class MasterSession:
    """
    Master connection state for one host.

    Usage:
        session = MasterSession(HostInfo("example.com", user="alice"))
        await session.connect()
        ...
        await session.disconnect()
    """

    def __init__(self, host_info: HostInfo):
        self.host_info = host_info
        self.rsync_version: Optional[tuple[int, int, int]] = None

        self._state = MasterState.NO_SESSION
        self._lock = asyncio.Lock()
        self._pty: Optional[PtyProcess] = None
        self._pty_exit: Optional[asyncio.Future] = None

    @property
    def state(self) -> MasterState:
        """Current master connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == MasterState.CONNECTED

    def _set_state(self, new_state: MasterState, message: str = "") -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"Session state ({self.host_info.host}): {old_state.name} -> {new_state.name} {message}")

    def _annotate(self, err: SSHWrapperError, command: str = None) -> SSHWrapperError:
        return err.add_context(
            host=self.host_info.host,
            user=self.host_info.user,
            port=self.host_info.port,
            command=command,
        )

    def _ssh_args(self, *extra: str) -> list[str]:
        return [*build_ssh_options(self.host_info), *extra]

    async def exists(self, timeout: float = PROBE_TIMEOUT) -> bool:
        """Check whether a master connection is up for this host."""
        async with self._lock:
            return await self._exists(timeout)

    async def _exists(self, timeout: float) -> bool:
        previous = self._state
        self._set_state(MasterState.PROBING)
        output = TailBuffer()

        try:
            await spawn(self.host_info.ssh_command, self._ssh_args("-Ocheck"), timeout, output)
        except WatchdogExpired:
            logger.debug(f"Master probe for {self.host_info.host} timed out")
            found = False
        except ProcessError as e:
            logger.debug(f"Master probe for {self.host_info.host} failed: {e}")
            found = False
        else:
            found = output.search(RE_NO_CONTROL_SOCKET) is None

        if found:
            self._set_state(MasterState.CONNECTED, "(existing master)")
        elif previous in (MasterState.NO_SESSION, MasterState.PROBING):
            self._set_state(MasterState.NO_SESSION)
        else:
            self._set_state(MasterState.DISCONNECTED, "(master not found)")
        return found

    async def connect(self, timeout: Optional[float] = None) -> None:
        """
        Make sure a master connection exists, creating it if needed.

        Args:
            timeout: Seconds allowed for the handshake (default: the host's
                connect_timeout, else 60)

        Raises:
            ConnectError: ssh reported a fatal condition
            WatchdogExpired: handshake did not finish in time
            HostKeyError: remote host key changed
        """
        if timeout is None:
            timeout = self.host_info.connect_timeout or DEFAULT_CONNECT_TIMEOUT

        async with self._lock:
            if await self._exists(min(timeout, PROBE_TIMEOUT)):
                logger.debug(f"Reusing master connection to {self.host_info.host}")
                return
            await self._handshake(timeout)

    async def _handshake(self, timeout: float) -> None:
        await self._release_pty()
        self._set_state(MasterState.CONNECTING)

        loop = asyncio.get_running_loop()
        outcome = loop.create_future()
        token = uuid.uuid4().hex
        sentinel = re.compile(rf"^{token}\r?$", re.MULTILINE)
        # Printed by the local shell right before ssh runs. Fatal messages
        # only count after it, so the command echo and rc-file output do not.
        start_token = uuid.uuid4().hex
        started = re.compile(rf"^{start_token}\r?$", re.MULTILINE)
        tail = TailBuffer()
        client_output: Optional[TailBuffer] = None

        shell = os.environ.get("SHELL") or "/bin/sh"
        pty = PtyProcess(shell)
        ssh_command = shlex.join([self.host_info.ssh_command, *self._ssh_args(f"echo {token}")])
        command = f"echo {start_token}; {ssh_command}"

        def settle(exc: Optional[BaseException] = None) -> None:
            if outcome.done():
                return
            if exc is None:
                outcome.set_result(None)
            else:
                outcome.set_exception(exc)

        def watch_output(text: str) -> None:
            nonlocal client_output
            tail(text)
            if tail.search(sentinel):
                settle()
                return
            if client_output is None:
                match = tail.search(started)
                if match is None:
                    return
                client_output = TailBuffer()
                client_output(tail.text[match.end():])
            else:
                client_output(text)
            for pattern, kind, message in FATAL_PATTERNS:
                if client_output.search(pattern):
                    settle(ConnectError(message, kind=kind))
                    return

        def on_shell_exit(task: asyncio.Future) -> None:
            if task.cancelled():
                return
            exc = task.exception()
            settle(exc or ConnectError(
                f"{shell} exited before the master connection was established",
                kind=ErrorKind.UNEXPECTED_EXIT,
            ))

        def on_expire() -> None:
            pty.write("\n")
            pty.write("exit\n")
            settle(WatchdogExpired(timeout))

        pty.add_listener(watch_output)
        pty.add_listener(login_listener(pty, self.host_info.password, self.host_info.passphrase))
        pty.start()
        self._pty = pty
        self._pty_exit = asyncio.ensure_future(pty.wait())
        self._pty_exit.add_done_callback(on_shell_exit)

        logger.debug(f"Master handshake: {command}")
        try:
            with Watchdog(timeout, on_expire):
                pty.write(f"{command}\n")
                await outcome
        except SSHWrapperError as e:
            await self._release_pty()
            self._set_state(MasterState.DISCONNECTED, f"({e.kind.value})")
            raise self._annotate(e, command)
        except BaseException:
            await self._release_pty()
            self._set_state(MasterState.DISCONNECTED)
            raise
        finally:
            pty.remove_listener(watch_output)

        self._set_state(MasterState.CONNECTED)

    async def disconnect(self) -> None:
        """
        Close the master connection. Safe to call at any time.

        Raises:
            ProcessError: ssh -O exit failed for a reason other than the
                master being gone already
        """
        async with self._lock:
            try:
                if not await self._exists(PROBE_TIMEOUT):
                    return
                await self._exit_master()
            finally:
                await self._release_pty()
                if self._state != MasterState.NO_SESSION:
                    self._set_state(MasterState.DISCONNECTED)

    async def _exit_master(self) -> None:
        output = TailBuffer()
        args = self._ssh_args("-Oexit")
        try:
            await spawn(self.host_info.ssh_command, args, PROBE_TIMEOUT, output)
        except ProcessError as e:
            if e.exit_code == 255 or output.search(RE_NO_CONTROL_SOCKET):
                logger.debug(f"Master for {self.host_info.host} already gone")
                return
            raise self._annotate(e, shlex.join([self.host_info.ssh_command, *args]))
        logger.info(f"Master connection to {self.host_info.host} closed")

    async def _release_pty(self) -> None:
        """Ask the local shell holding the master to leave, then drop it."""
        pty, self._pty = self._pty, None
        self._pty_exit = None
        if pty is None:
            return
        if pty.is_alive:
            logger.debug(f"Closing master pty for {self.host_info.host}")
            pty.write("exit\n")
            await pty.terminate(grace=RELEASE_GRACE)

    def __repr__(self) -> str:
        return f"MasterSession({self.host_info.destination}, {self._state.name})"
