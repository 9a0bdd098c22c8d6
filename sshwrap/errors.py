"""
Exceptions raised by sshwrap.

Every failure carries an ErrorKind so callers (and the retry loop) can
branch on what happened instead of parsing messages. Host context is
attached by the component that knows it, on the way out.
"""

from __future__ import annotations
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Closed set of failure kinds."""
    SIGNAL_RECEIVED = "signal-received"
    NON_ZERO_EXIT = "non-zero-exit"
    KEX_CLOSED_BY_REMOTE = "kex-closed-by-remote"
    TIMEOUT_EXPIRED = "timeout-expired"
    HOST_KEY_MISMATCH = "host-key-mismatch"
    PERMISSION_DENIED = "permission-denied"
    HOSTNAME_UNRESOLVABLE = "hostname-unresolvable"
    BAD_PORT = "bad-port"
    CONNECTION_TIMED_OUT = "connection-timed-out"
    MUX_LISTENER_FAILED = "mux-listener-failed"
    UNEXPECTED_EXIT = "unexpected-exit"
    SPAWN_FAILED = "spawn-failed"
    CONDITION_NOT_MET = "condition-not-met"


# Kinds that are transient unless a caller says otherwise
RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT_EXPIRED,
    ErrorKind.KEX_CLOSED_BY_REMOTE,
})


class SSHWrapperError(Exception):
    """Base exception for sshwrap.

    Attributes:
        kind: What went wrong
        retryable: Whether the retry loop may try again after reconnecting
        host, user, port: Endpoint the operation was talking to
        command: Command line or remote command being run
        attempts: Number of attempts made (set by the retry loop)
        max_retry: Retry limit in force (set by the retry loop)
    """

    default_kind = ErrorKind.NON_ZERO_EXIT

    def __init__(
        self,
        message: str,
        *,
        kind: Optional[ErrorKind] = None,
        retryable: Optional[bool] = None,
        host: Optional[str] = None,
        user: Optional[str] = None,
        port: Optional[int] = None,
        command: Optional[str] = None,
    ):
        self.message = message
        self.kind = kind or self.default_kind
        self.retryable = self.kind in RETRYABLE_KINDS if retryable is None else retryable
        self.host = host
        self.user = user
        self.port = port
        self.command = command
        self.attempts: Optional[int] = None
        self.max_retry: Optional[int] = None
        super().__init__(message)

    def add_context(
        self,
        *,
        host: Optional[str] = None,
        user: Optional[str] = None,
        port: Optional[int] = None,
        command: Optional[str] = None,
    ) -> SSHWrapperError:
        """Fill in endpoint details that are still missing. Returns self."""
        if self.host is None:
            self.host = host
        if self.user is None:
            self.user = user
        if self.port is None:
            self.port = port
        if self.command is None:
            self.command = command
        return self

    def annotate_attempts(self, attempts: int, max_retry: int) -> SSHWrapperError:
        self.attempts = attempts
        self.max_retry = max_retry
        return self

    def __str__(self) -> str:
        details = [self.kind.value]
        if self.host:
            endpoint = f"{self.user}@{self.host}" if self.user else self.host
            if self.port:
                endpoint += f":{self.port}"
            details.append(f"host={endpoint}")
        if self.command:
            details.append(f"command={self.command!r}")
        if self.attempts is not None:
            details.append(f"attempt {self.attempts}/{self.max_retry}")
        return f"{self.message} ({', '.join(details)})"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, kind={self.kind.name}, "
            f"retryable={self.retryable}, host={self.host!r})"
        )


class ProcessError(SSHWrapperError):
    """Child process ended badly: signal, non-zero exit, or could not start.

    Attributes:
        exit_code: Raw exit code (None when killed by a signal)
        signal: Signal number that terminated the child (None otherwise)
    """

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        signal: Optional[int] = None,
        **kwargs,
    ):
        self.exit_code = exit_code
        self.signal = signal
        super().__init__(message, **kwargs)


class WatchdogExpired(SSHWrapperError):
    """The operation's own deadline fired and the child was killed."""

    default_kind = ErrorKind.TIMEOUT_EXPIRED

    def __init__(self, timeout: float, **kwargs):
        self.timeout = timeout
        super().__init__(f"watchdog timer expired after {timeout}s", **kwargs)


class LoginError(SSHWrapperError):
    """Authentication could not be completed."""

    default_kind = ErrorKind.PERMISSION_DENIED


class HostKeyError(LoginError):
    """Remote host key does not match known_hosts. Never retried.

    Attributes:
        known_hosts: known_hosts file holding the offending entry, if reported
        line: Line number of the offending entry, if reported
        hostname: Host whose key changed, if reported
    """

    default_kind = ErrorKind.HOST_KEY_MISMATCH

    def __init__(
        self,
        known_hosts: Optional[str] = None,
        line: Optional[int] = None,
        hostname: Optional[str] = None,
        **kwargs,
    ):
        self.known_hosts = known_hosts
        self.line = line
        self.hostname = hostname
        message = "remote host identification has changed"
        if hostname:
            message += f" for {hostname}"
        if known_hosts and line is not None:
            message += f" (offending entry {known_hosts}:{line})"
        super().__init__(message, **kwargs)


class ConnectError(SSHWrapperError):
    """Master connection could not be established (fatal client message)."""
