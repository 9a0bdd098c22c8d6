"""
sshwrap - drive the ssh and rsync clients from asyncio.

- Runs ssh/rsync in a pseudo-terminal and answers their login prompts
- Shares one ControlMaster connection per host between all commands
- Retries transient failures after reconnecting
- Typed errors carrying host and attempt context

Entry points:
- SSHClientWrapper: argument checking facade for one host
- MasterSession + sshwrap.executor: the same operations, lower level
"""

__version__ = "0.1.0"

from .config import HostInfo, load_hosts
from .credentials import FixedSecret, SecretProvider
from .errors import (
    ErrorKind,
    SSHWrapperError,
    ProcessError,
    WatchdogExpired,
    LoginError,
    HostKeyError,
    ConnectError,
)
from .session.base import MasterState
from .session.master import MasterSession
from .executor import ExecResult
from .client import SSHClientWrapper

__all__ = [
    # Configuration
    "HostInfo",
    "load_hosts",
    "FixedSecret",
    "SecretProvider",
    # Errors
    "ErrorKind",
    "SSHWrapperError",
    "ProcessError",
    "WatchdogExpired",
    "LoginError",
    "HostKeyError",
    "ConnectError",
    # Sessions
    "MasterState",
    "MasterSession",
    "ExecResult",
    "SSHClientWrapper",
]
