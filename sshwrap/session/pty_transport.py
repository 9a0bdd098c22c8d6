"""
Pseudo-terminal child processes driven from an asyncio event loop.

The ssh client only prompts for passwords, passphrases and host key
confirmation when it is attached to a terminal, so every ssh/rsync run
happens inside a pty spawned with pexpect. The event loop watches the pty
file descriptor and fans each chunk of output out to listeners; exit is
detected by polling the child and classified into success or a typed error.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
import os
import re
import shlex
import signal
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, Optional, Sequence

import pexpect

from ..errors import ErrorKind, ProcessError, WatchdogExpired
from ..options import RE_KEX_CLOSED
from .base import ExitStatus
from .login import ExpectationQueue, ExpectDriver, login_listener

if TYPE_CHECKING:
    from ..config import HostInfo

logger = logging.getLogger(__name__)
verbose_logger = logging.getLogger("sshwrap.verbose")

# A listener gets each decoded chunk; it may return an awaitable
Listener = Callable[[str], Optional[Awaitable[None]]]

# (rows, cols); wide so long command lines are not wrapped by the terminal
DEFAULT_DIMENSIONS = (24, 512)
READ_SIZE = 8192
POLL_INTERVAL = 0.02


class Watchdog:
    """
    Cancelable deadline around one operation.

    Usage:
        with Watchdog(10, on_expire):
            await operation()

    Entering arms the timer when timeout > 0, leaving cancels it on every
    path. Cancelling a timer that already fired does nothing.
    """

    def __init__(self, timeout: float, on_expire: Callable[[], None]):
        self.timeout = timeout
        self.expired = False
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None

    def __enter__(self) -> Watchdog:
        if self.timeout and self.timeout > 0:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.timeout, self._fire)
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()

    def _fire(self) -> None:
        self._handle = None
        self.expired = True
        logger.debug(f"Watchdog expired after {self.timeout}s")
        self._on_expire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class OutputCollector:
    """Listener that keeps everything it is given. Use only for short output."""

    def __init__(self):
        self._parts: list[str] = []

    def __call__(self, text: str) -> None:
        self._parts.append(text)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def lines(self) -> list[str]:
        """Output split into lines, without the trailing empty one."""
        text = self.text
        if not text:
            return []
        return text.rstrip("\n").split("\n")


class TailBuffer:
    """Listener keeping only the last max_chars of output, for pattern races."""

    def __init__(self, max_chars: int = 4096):
        self.max_chars = max_chars
        self.text = ""

    def __call__(self, text: str) -> None:
        self.text = (self.text + text)[-self.max_chars:]

    def search(self, pattern: re.Pattern) -> Optional[re.Match]:
        return pattern.search(self.text)


class PtyProcess:
    """
    One child process attached to a pseudo-terminal.

    Output is read when the event loop reports the pty readable, CRLF is
    normalised to LF and the chunk is handed to every listener in
    registration order. A listener may return an awaitable; it runs as a
    task and if it raises, the process fails with that exception and the
    child is killed.

    A process is started once and exits once. wait() returns its
    ExitStatus or raises the recorded failure, in both cases only after
    the child has been reaped.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env: dict = None,
        dimensions: tuple[int, int] = DEFAULT_DIMENSIONS,
    ):
        self.command = command
        self.args = list(args)
        self._env = env
        self._dimensions = dimensions

        self._child: Optional[pexpect.spawn] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()
        self._failure: Optional[BaseException] = None
        self._exited: Optional[asyncio.Future] = None
        self._monitor: Optional[asyncio.Task] = None
        self._reading = False

    @property
    def command_line(self) -> str:
        return shlex.join([self.command, *self.args])

    @property
    def pid(self) -> Optional[int]:
        return self._child.pid if self._child is not None else None

    @property
    def exited(self) -> bool:
        return self._exited is not None and self._exited.done()

    @property
    def is_alive(self) -> bool:
        """Check if process is still running."""
        return self._child is not None and not self.exited

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        """Exit status once the child has been reaped."""
        return self._exited.result() if self.exited else None

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self) -> None:
        """
        Spawn the child and start watching its output and exit.

        Raises:
            ProcessError: SPAWN_FAILED if the executable cannot be started
        """
        if self._child is not None:
            raise RuntimeError("process already started")

        self._loop = asyncio.get_running_loop()

        spawn_env = os.environ.copy()
        if self._env:
            spawn_env.update(self._env)
        spawn_env.setdefault('TERM', 'xterm-256color')

        try:
            self._child = pexpect.spawn(
                self.command,
                args=self.args,
                env=spawn_env,
                encoding="utf-8",
                codec_errors="replace",
                dimensions=self._dimensions,
            )
        except (pexpect.ExceptionPexpect, OSError) as e:
            raise ProcessError(
                f"could not spawn {self.command}: {e}",
                kind=ErrorKind.SPAWN_FAILED,
                command=self.command_line,
            ) from e

        logger.debug(f"Spawned PID {self._child.pid}: {self.command_line}")

        self._exited = self._loop.create_future()
        self._loop.add_reader(self._child.child_fd, self._on_readable)
        self._reading = True
        self._monitor = self._loop.create_task(self._watch_exit())

    def write(self, text: str) -> None:
        """Write to the child's terminal. Ignored once the child is gone."""
        if self._child is None or self.exited:
            logger.debug(f"Write to finished process ignored: {self.command}")
            return
        try:
            self._child.send(text)
        except OSError as e:
            logger.debug(f"Write error: {e}")

    def kill(self, sig: int = signal.SIGKILL) -> None:
        if self._child is None or self.exited:
            return
        try:
            self._child.kill(sig)
        except (OSError, pexpect.ExceptionPexpect) as e:
            logger.debug(f"Kill error: {e}")

    def fail(self, exc: BaseException) -> None:
        """Record a failure (the first one wins) and kill the child."""
        if self._failure is None and not self.exited:
            logger.debug(f"PID {self.pid} failed: {exc!r}")
            self._failure = exc
        self.kill()

    async def wait(self) -> ExitStatus:
        """
        Wait for the child to exit.

        Returns:
            ExitStatus of the child

        Raises:
            The failure recorded by fail(), if any
        """
        if self._exited is None:
            raise RuntimeError("process not started")
        status = await asyncio.shield(self._exited)
        if self._failure is not None:
            raise self._failure
        return status

    async def terminate(self, grace: float = 1.0) -> None:
        """Give the child grace seconds to leave on its own, then kill it."""
        if self._exited is None or self._exited.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._exited), grace)
        except asyncio.TimeoutError:
            self.kill()
            await asyncio.shield(self._exited)

    def _on_readable(self) -> None:
        try:
            data = self._child.read_nonblocking(READ_SIZE, timeout=0)
        except pexpect.TIMEOUT:
            return
        except pexpect.EOF:
            self._stop_reading()
            return
        if data:
            self._dispatch(data)

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._child.child_fd)
            self._reading = False

    def _drain(self) -> None:
        """Read whatever the child left in the pty before exiting."""
        while True:
            try:
                data = self._child.read_nonblocking(READ_SIZE, timeout=0)
            except (pexpect.TIMEOUT, pexpect.EOF):
                return
            if data:
                self._dispatch(data)

    def _dispatch(self, data: str) -> None:
        text = data.replace("\r\n", "\n")
        for listener in list(self._listeners):
            try:
                result = listener(text)
            except Exception as e:
                self.fail(e)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.fail(exc)

    async def _watch_exit(self) -> None:
        while self._child.isalive():
            await asyncio.sleep(POLL_INTERVAL)

        self._drain()
        self._stop_reading()
        try:
            await self._loop.run_in_executor(None, self._child.close)
        except (OSError, pexpect.ExceptionPexpect) as e:
            logger.debug(f"Close error: {e}")

        status = ExitStatus(self._child.exitstatus, self._child.signalstatus)
        logger.debug(f"PID {self._child.pid} ended with {status}")

        for task in list(self._tasks):
            task.cancel()
        self._exited.set_result(status)


def check_exit_status(
    status: ExitStatus,
    command: Optional[str] = None,
    retryable_exit_codes: Iterable[int] = (),
) -> int:
    """
    Classify how a child ended.

    Returns:
        0 on a clean exit

    Raises:
        ProcessError: SIGNAL_RECEIVED if a signal ended the child,
            NON_ZERO_EXIT otherwise; retryable if the code is listed
    """
    if status.signaled:
        raise ProcessError(
            f"signal caught ({status.signal})",
            kind=ErrorKind.SIGNAL_RECEIVED,
            signal=status.signal,
            command=command,
        )
    if status.exit_code == 0:
        return 0
    raise ProcessError(
        f"exit with non-zero ({status.exit_code})",
        kind=ErrorKind.NON_ZERO_EXIT,
        exit_code=status.exit_code,
        retryable=status.exit_code in tuple(retryable_exit_codes),
        command=command,
    )


def _log_verbose(text: str) -> None:
    verbose_logger.debug(text.rstrip("\n"))


def _kex_listener(proc: PtyProcess) -> Listener:
    def listener(text: str) -> None:
        if RE_KEX_CLOSED.search(text):
            proc.fail(ProcessError(
                "connection closed by remote host during key exchange",
                kind=ErrorKind.KEX_CLOSED_BY_REMOTE,
                command=proc.command_line,
            ))
    return listener


async def spawn(
    command: str,
    args: Sequence[str] = (),
    timeout: float = 0,
    on_output: Optional[Listener] = None,
    *,
    host_info: Optional[HostInfo] = None,
    retryable_exit_codes: Iterable[int] = (),
    expectations: Optional[ExpectationQueue] = None,
) -> int:
    """
    Run one command in a pty and classify how it ended.

    Args:
        command: Executable
        args: Arguments
        timeout: Seconds before the child is killed (0 disables the watchdog)
        on_output: Listener for decoded output chunks
        host_info: When given, login prompts are answered from its
            credentials and key exchange hang-ups are detected
        retryable_exit_codes: Non-zero exit codes to report as retryable
        expectations: Scripted expect/send steps driven against the output

    Returns:
        0 on success

    Raises:
        WatchdogExpired: timeout elapsed, child killed
        ProcessError: spawn failure, signal, non-zero exit, key exchange closed
        LoginError: host key mismatch
        Exception: whatever a credential provider raised
    """
    proc = PtyProcess(command, args)
    proc.add_listener(_log_verbose)
    if on_output is not None:
        proc.add_listener(on_output)
    if host_info is not None:
        proc.add_listener(login_listener(proc, host_info.password, host_info.passphrase))
        proc.add_listener(_kex_listener(proc))
    if expectations is not None:
        proc.add_listener(ExpectDriver(expectations, proc))

    logger.debug(f"cmd={command}: args={args}")
    proc.start()

    def on_expire() -> None:
        proc.fail(WatchdogExpired(timeout, command=proc.command_line))

    try:
        with Watchdog(timeout, on_expire):
            status = await proc.wait()
    except asyncio.CancelledError:
        proc.kill()
        raise

    return check_exit_status(status, proc.command_line, retryable_exit_codes)
