"""
Remote commands and file transfers over the master connection.

Every operation makes sure the master connection is up, builds the
ssh/rsync argument vector for the host and runs it through with_retry()
so transient failures reconnect and try again.
"""

from __future__ import annotations
import asyncio
import glob
import logging
import os
import posixpath
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence, Union

from .config import HostInfo
from .errors import ErrorKind, ProcessError, SSHWrapperError
from .options import (
    RE_SHELL_PROMPT,
    RSYNC_RETRYABLE_EXIT_CODES,
    TOLERATED_EXIT_CODES,
    build_remote_command,
    build_rsync_args,
    build_ssh_options,
)
from .retry import with_retry
from .session.login import Expectation, ExpectationQueue
from .session.master import MasterSession
from .session.pty_transport import Listener, OutputCollector, spawn

logger = logging.getLogger(__name__)

RSYNC_VERSION_TIMEOUT = 3
RE_RSYNC_VERSION = re.compile(r"^rsync\s+version\s+v?(\d+)\.(\d+)\.(\d+)", re.MULTILINE)
# First rsync release that needs --old-args for space separated remote sources
OLD_ARGS_VERSION = (3, 2, 4)


@dataclass
class ExecResult:
    """Output lines and exit code of a remote command."""
    output: list[str]
    rc: int


@contextmanager
def _error_context(host_info: HostInfo, command: str) -> Iterator[None]:
    try:
        yield
    except SSHWrapperError as e:
        e.add_context(host=host_info.host, user=host_info.user, port=host_info.port, command=command)
        raise


def _is_exit(err: ProcessError, codes: Optional[Sequence[int]] = None) -> bool:
    if err.kind != ErrorKind.NON_ZERO_EXIT:
        return False
    return codes is None or err.exit_code in codes


async def _run_remote(
    session: MasterSession,
    cmd: str,
    timeout: float = 0,
    on_output: Optional[Listener] = None,
    rcfile: Optional[str] = None,
    prepend_cmd: Optional[str] = None,
    output_factory: Optional[Callable[[], Listener]] = None,
) -> int:
    """Run cmd remotely under with_retry(). output_factory, if given, supplies a new listener per attempt."""
    host_info = session.host_info
    await session.connect()

    remote = build_remote_command(cmd, rcfile or host_info.rcfile, prepend_cmd or host_info.prepend_cmd)
    args = [*build_ssh_options(host_info), remote]
    logger.debug(f"exec {remote!r} on {host_info.host}")

    async def attempt() -> int:
        listener = output_factory() if output_factory else on_output
        return await spawn(host_info.ssh_command, args, timeout, listener, host_info=host_info)

    with _error_context(host_info, remote):
        return await with_retry(attempt, session)


async def ssh_exec(
    session: MasterSession,
    cmd: str,
    timeout: float = 0,
    output_callback: Optional[Listener] = None,
    rcfile: Optional[str] = None,
    prepend_cmd: Optional[str] = None,
) -> int:
    """
    Execute a command on the remote host.

    Args:
        session: Master session of the target host
        cmd: Command line run by the remote shell
        timeout: Seconds per attempt (0 for none)
        output_callback: Called with each chunk of output
        rcfile: Remote file sourced first (overrides the host's rcfile)
        prepend_cmd: Remote command run first (overrides the host's prepend_cmd)

    Returns:
        0, or 126/127 when the command is not executable or not found

    Raises:
        ProcessError: any other non-zero exit, or a signal
        SSHWrapperError: connection, login or timeout failure
    """
    try:
        return await _run_remote(session, cmd, timeout, output_callback, rcfile, prepend_cmd)
    except ProcessError as e:
        if _is_exit(e, TOLERATED_EXIT_CODES):
            logger.debug(f"{cmd!r} returned {e.exit_code}")
            return e.exit_code
        raise


async def exec_and_get_output(
    session: MasterSession,
    cmd: str,
    timeout: float = 0,
    rcfile: Optional[str] = None,
    prepend_cmd: Optional[str] = None,
) -> ExecResult:
    """Run a command and collect its output; any exit code is returned, not raised."""
    # Only the last attempt's output is kept
    collector = OutputCollector()

    def fresh_collector() -> OutputCollector:
        nonlocal collector
        collector = OutputCollector()
        return collector

    try:
        rc = await _run_remote(session, cmd, timeout, rcfile=rcfile, prepend_cmd=prepend_cmd,
                               output_factory=fresh_collector)
    except ProcessError as e:
        if not _is_exit(e):
            raise
        rc = e.exit_code
    return ExecResult(collector.lines(), rc)


async def ls(
    session: MasterSession,
    target: str,
    ls_opt: Sequence[str] = (),
    timeout: float = 0,
) -> Union[list[str], int]:
    """
    List a remote path.

    Returns:
        Entries printed by ls, or ls's exit code when it failed
    """
    cmd = " ".join(["ls", *ls_opt, target])
    result = await exec_and_get_output(session, cmd, timeout)
    if result.rc != 0:
        return result.rc
    return [line for line in result.output if line]


async def ssh_expect(
    session: MasterSession,
    cmd: str,
    expects: Sequence[tuple],
    timeout: float = 0,
) -> int:
    """
    Run cmd in an interactive login shell and answer its prompts.

    Args:
        session: Master session of the target host
        cmd: Command typed at the first shell prompt
        expects: (expect, send) or (expect, send, repeat) entries, in order;
            expect is a regular expression
        timeout: Seconds per attempt (0 for none)

    Returns:
        Exit code of the login shell (126/127 passed through)
    """
    host_info = session.host_info
    await session.connect()
    args = build_ssh_options(host_info)

    async def attempt() -> int:
        # fresh queue per attempt; the previous one may be half consumed
        queue = ExpectationQueue.from_pairs(
            expects,
            prefix=[Expectation(RE_SHELL_PROMPT, f"{cmd}\n")],
            suffix=[Expectation(RE_SHELL_PROMPT, "exit\n")],
        )
        return await spawn(host_info.ssh_command, args, timeout, host_info=host_info, expectations=queue)

    try:
        with _error_context(host_info, cmd):
            return await with_retry(attempt, session)
    except ProcessError as e:
        if _is_exit(e, TOLERATED_EXIT_CODES):
            return e.exit_code
        raise


async def watch(
    session: MasterSession,
    cmd: str,
    regexp: Union[str, re.Pattern],
    retry_delay: float = 3,
    max_retry: Optional[int] = None,
) -> int:
    """
    Run cmd repeatedly until its output matches regexp.

    Args:
        retry_delay: Seconds between runs
        max_retry: Give up after this many runs (None: keep going)

    Returns:
        Exit code of the run whose output matched

    Raises:
        SSHWrapperError: CONDITION_NOT_MET once max_retry runs did not match
    """
    pattern = re.compile(regexp) if isinstance(regexp, str) else regexp
    runs = 0
    while True:
        result = await exec_and_get_output(session, cmd)
        runs += 1
        if pattern.search("\n".join(result.output)):
            logger.debug(f"watch {cmd!r} matched after {runs} run(s)")
            return result.rc
        if max_retry is not None and runs >= max_retry:
            host_info = session.host_info
            raise SSHWrapperError(
                f"output never matched {pattern.pattern!r}",
                kind=ErrorKind.CONDITION_NOT_MET,
                host=host_info.host,
                user=host_info.user,
                port=host_info.port,
                command=cmd,
            ).annotate_attempts(runs, max_retry)
        await asyncio.sleep(retry_delay)


def expand_sources(patterns: Sequence[str]) -> list[str]:
    """Expand local glob patterns; a trailing "/" is kept on every match."""
    sources = []
    for pattern in patterns:
        matches = sorted(glob.glob(os.path.expanduser(pattern)))
        if pattern.endswith("/"):
            matches = [m if m.endswith("/") else f"{m}/" for m in matches]
        sources.extend(matches)
    return sources


async def _rsync(session: MasterSession, args: list[str], timeout: float) -> None:
    host_info = session.host_info

    async def attempt() -> int:
        return await spawn(
            host_info.rsync_command,
            args,
            timeout,
            host_info=host_info,
            retryable_exit_codes=RSYNC_RETRYABLE_EXIT_CODES,
        )

    with _error_context(host_info, " ".join([host_info.rsync_command, *args])):
        await with_retry(attempt, session)


async def send(
    session: MasterSession,
    src: Sequence[str],
    dst: str,
    opt: Sequence[str] = (),
    timeout: float = 0,
) -> bool:
    """
    Copy local files or directories to the remote host with rsync.

    Args:
        src: Local paths or glob patterns
        dst: Remote destination; a trailing "/" means a directory
        opt: Extra rsync options

    Returns:
        True once the transfer is done, False if no source matched
    """
    host_info = session.host_info
    await session.connect()

    sources = expand_sources(src)
    if not sources:
        logger.info(f"Nothing to send: no file matches {list(src)}")
        return False

    remote_dir = dst if dst.endswith("/") else posixpath.dirname(dst)
    if remote_dir not in ("", "/"):
        logger.debug(f"mkdir {remote_dir} on {host_info.host}")
        await ssh_exec(session, f"mkdir -p {remote_dir}")

    args = build_rsync_args(host_info, sources, f"{host_info.destination}:{dst}", opt)
    logger.debug(f"send {sources} to {host_info.destination}:{dst}")
    await _rsync(session, args, timeout)
    return True


async def recv(
    session: MasterSession,
    src: Sequence[str],
    dst: str,
    opt: Sequence[str] = (),
    timeout: float = 0,
) -> bool:
    """
    Copy remote files or directories to the local host with rsync.

    Args:
        src: Remote paths (globs are expanded by the remote shell)
        dst: Local destination; a trailing "/" means a directory, created if missing
        opt: Extra rsync options

    Returns:
        True once the transfer is done
    """
    host_info = session.host_info
    await session.connect()

    if dst.endswith("/"):
        os.makedirs(os.path.expanduser(dst), exist_ok=True)

    remote_src = f"{host_info.destination}:{' '.join(src)}"
    args = build_rsync_args(host_info, [remote_src], dst, opt)
    if await is_new_rsync(session):
        args.insert(0, "--old-args")

    logger.debug(f"recv {remote_src} to {dst}")
    await _rsync(session, args, timeout)
    return True


async def check_rsync_version(
    rsync_command: str = "rsync",
    timeout: float = RSYNC_VERSION_TIMEOUT,
) -> Optional[tuple[int, int, int]]:
    """Version of the local rsync as (major, minor, patch), None if unrecognised."""
    collector = OutputCollector()
    await spawn(rsync_command, ["--version"], timeout, collector)
    match = RE_RSYNC_VERSION.search(collector.text)
    if match is None:
        logger.warning(f"Could not parse {rsync_command} --version output")
        return None
    return tuple(int(n) for n in match.groups())


async def is_new_rsync(session: MasterSession) -> bool:
    """Whether the local rsync needs --old-args. Probed once per session."""
    if session.rsync_version is None:
        session.rsync_version = await check_rsync_version(session.host_info.rsync_command)
        logger.debug(f"rsync version: {session.rsync_version}")
    return session.rsync_version is not None and session.rsync_version >= OLD_ARGS_VERSION


async def can_connect(session: MasterSession, timeout: Optional[float] = None) -> bool:
    """
    Check that the host accepts a connection and runs a command.

    Returns:
        True when a random token echoed on the host comes back

    Raises:
        SSHWrapperError: the connection could not be made
    """
    host_info = session.host_info
    await session.connect(timeout)

    token = uuid.uuid4().hex
    collector = OutputCollector()
    args = [*build_ssh_options(host_info), f"echo {token}"]

    with _error_context(host_info, f"echo {token}"):
        await spawn(host_info.ssh_command, args, timeout or 0, collector, host_info=host_info)
    return token in collector.text
