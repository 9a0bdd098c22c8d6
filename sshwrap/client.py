"""
SSHClientWrapper - argument checking front end over one host.

Usage:
    async with SSHClientWrapper(host="lab.example.com", user="alice", password="...") as ssh:
        rc = await ssh.exec("uname -a", output_callback=print)
        await ssh.send(["build/*.tar.gz"], "/tmp/incoming/")
"""

from __future__ import annotations
import logging
import re
from typing import Any, Optional, Sequence, Union

from . import executor
from .config import HostInfo
from .executor import ExecResult
from .session.master import MasterSession
from .session.pty_transport import Listener

logger = logging.getLogger(__name__)


def _is_array_of_string(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(e, str) for e in value)


def _check_transfer_args(src: Any, dst: Any, opt: Any) -> list[str]:
    if not _is_array_of_string(src):
        raise TypeError("src must be array of string")
    if not any(e.strip() for e in src):
        raise ValueError("src must contain non-empty string")
    if not isinstance(dst, str):
        raise TypeError("dst must be string")
    if not dst:
        raise ValueError("dst must be non-empty string")
    if opt is None:
        return []
    if not _is_array_of_string(opt):
        raise TypeError("opt must be array of string")
    return list(opt)


def _check_timeout(timeout: Any) -> float:
    if timeout is None:
        return 0
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
        raise TypeError("timeout must be positive integer")
    return timeout


class SSHClientWrapper:
    """
    Run commands and transfer files on one remote host.

    Args:
        host_info: HostInfo, or a dict of host settings (camelCase keys accepted)
        **kwargs: Host settings, merged over a dict host_info

    Raises:
        ValueError: host is missing or blank
    """

    def __init__(self, host_info: Union[HostInfo, dict, None] = None, **kwargs):
        if not isinstance(host_info, HostInfo):
            data = {**(host_info or {}), **kwargs}
            host = data.get("host")
            if not isinstance(host, str) or not host.strip():
                raise ValueError("host must be non-empty string")
            host_info = HostInfo.from_dict(data)
        elif kwargs:
            raise TypeError("keyword settings cannot be combined with a HostInfo")

        self.host_info = host_info
        self.session = MasterSession(host_info)

    async def __aenter__(self) -> SSHClientWrapper:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def exec(
        self,
        cmd: str,
        timeout: float = 0,
        output_callback: Optional[Listener] = None,
        rcfile: Optional[str] = None,
        prepend_cmd: Optional[str] = None,
    ) -> int:
        """Execute cmd on the host. Returns 0, 126 or 127; other failures raise."""
        logger.debug(f"exec called: {cmd!r}")
        if not isinstance(cmd, str) or not cmd:
            raise TypeError("cmd must be string")
        timeout = _check_timeout(timeout)
        return await executor.ssh_exec(self.session, cmd, timeout, output_callback, rcfile, prepend_cmd)

    async def exec_and_get_output(
        self,
        cmd: str,
        timeout: float = 0,
        rcfile: Optional[str] = None,
        prepend_cmd: Optional[str] = None,
    ) -> ExecResult:
        """Execute cmd and collect its output lines and exit code."""
        if not isinstance(cmd, str) or not cmd:
            raise TypeError("cmd must be string")
        timeout = _check_timeout(timeout)
        return await executor.exec_and_get_output(self.session, cmd, timeout, rcfile, prepend_cmd)

    async def ls(self, target: str, ls_opt: Sequence[str] = None, timeout: float = 0) -> Union[list[str], int]:
        """List target on the host; returns entries, or ls's exit code on failure."""
        if not isinstance(target, str) or not target:
            raise TypeError("target must be string")
        if ls_opt is None:
            ls_opt = []
        elif not _is_array_of_string(ls_opt):
            raise TypeError("ls_opt must be array of string")
        timeout = _check_timeout(timeout)
        return await executor.ls(self.session, target, list(ls_opt), timeout)

    async def expect(self, cmd: str, expects: Sequence[tuple], timeout: float = 0) -> int:
        """
        Run cmd in a login shell and answer prompts in order.

        Args:
            cmd: Command typed at the first shell prompt
            expects: (expect, send) or (expect, send, repeat) entries;
                expect is a regular expression
            timeout: Seconds per attempt (0 for none)
        """
        if not isinstance(cmd, str) or not cmd:
            raise TypeError("cmd must be string")
        if not isinstance(expects, (list, tuple)) or not all(
            isinstance(e, (list, tuple)) and len(e) in (2, 3) and isinstance(e[0], str) and isinstance(e[1], str)
            for e in expects
        ):
            raise TypeError("expects must be array of [expect, send] pairs")
        timeout = _check_timeout(timeout)
        return await executor.ssh_expect(self.session, cmd, [tuple(e) for e in expects], timeout)

    async def watch(
        self,
        cmd: str,
        regexp: Union[str, re.Pattern],
        retry_delay: float = 3,
        max_retry: Optional[int] = None,
    ) -> int:
        """Run cmd every retry_delay seconds until its output matches regexp."""
        if not isinstance(cmd, str) or not cmd:
            raise TypeError("cmd must be string")
        if not isinstance(regexp, (str, re.Pattern)):
            raise TypeError("illegal regexp specified")
        if max_retry is not None and (not isinstance(max_retry, int) or max_retry < 1):
            raise ValueError("max_retry must be positive integer")
        return await executor.watch(self.session, cmd, regexp, retry_delay, max_retry)

    async def send(self, src: Sequence[str], dst: str, opt: Sequence[str] = None, timeout: float = 0) -> bool:
        """Copy local src (glob patterns allowed) to dst on the host."""
        logger.debug(f"send called: {src} -> {dst}")
        opt = _check_transfer_args(src, dst, opt)
        timeout = _check_timeout(timeout)
        return await executor.send(self.session, list(src), dst, opt, timeout)

    async def recv(self, src: Sequence[str], dst: str, opt: Sequence[str] = None, timeout: float = 0) -> bool:
        """Copy src on the host to local dst."""
        logger.debug(f"recv called: {src} -> {dst}")
        opt = _check_transfer_args(src, dst, opt)
        timeout = _check_timeout(timeout)
        return await executor.recv(self.session, list(src), dst, opt, timeout)

    async def can_connect(self, timeout: Optional[int] = None) -> bool:
        """Check that the host can be logged into and runs commands."""
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0):
            raise ValueError("timeout must be positive integer")
        return await executor.can_connect(self.session, timeout)

    async def disconnect(self) -> None:
        """Close the master connection."""
        logger.debug("disconnect called")
        await self.session.disconnect()

    def __repr__(self) -> str:
        return f"SSHClientWrapper({self.host_info.destination})"
