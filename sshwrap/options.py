"""
Argument vectors for ssh and rsync, and the terminal output patterns
sshwrap reacts to.
"""

from __future__ import annotations
import os
import re
import shlex
from typing import Optional, Sequence

from .config import HostInfo

# Control socket names are <dir>/<namespace>-%r@%h:%p
CONTROL_NAMESPACE = "ssh-client-wrapper"
DEFAULT_CONTROL_DIR = "~/.ssh"
CONTROL_DIR_ENV = "SSH_CONTROL_PERSIST_DIR"

# Prompts (English locale client output, case-sensitive)
RE_PASSWORD_PROMPT = re.compile(r"password:")
RE_PASSPHRASE_PROMPT = re.compile(r"Enter passphrase for key")
RE_NEW_HOST_PROMPT = re.compile(r"Are you sure you want to continue connecting")
RE_HOST_KEY_CHANGED = re.compile(r"REMOTE HOST IDENTIFICATION HAS CHANGED")
RE_OFFENDING_KEY = re.compile(r"Offending \S+ key in (\S+):(\d+)")
RE_HOST_KEY_FOR = re.compile(r"Host key for (\S+) has changed")

# Failures
RE_KEX_CLOSED = re.compile(r"kex_exchange_identification: Connection closed by remote host")
RE_NO_CONTROL_SOCKET = re.compile(r"Control socket connect.*: No such file or directory")
RE_PERMISSION_DENIED = re.compile(r"Permission denied \(")
RE_UNRESOLVABLE = re.compile(r"Could not resolve hostname")
RE_BAD_PORT = re.compile(r"Bad port")
RE_TIMED_OUT = re.compile(r"(Operation|Connection) timed out")
RE_MUX_LISTENER = re.compile(r"mux_listener_setup|unix_listener: cannot bind")

# Generic shell prompt at the end of a chunk
RE_SHELL_PROMPT = re.compile(r"[$#>%]\s*$")

# Exit codes a command may legitimately return to a caller probing for it
TOLERATED_EXIT_CODES = (126, 127)

# rsync: partial transfer, vanished source, I/O timeouts
RSYNC_RETRYABLE_EXIT_CODES = (23, 24, 30, 35)


def control_dir(host_info: HostInfo) -> str:
    return host_info.control_persist_dir or os.environ.get(CONTROL_DIR_ENV) or DEFAULT_CONTROL_DIR


def build_ssh_options(host_info: HostInfo, without_destination: bool = False) -> list[str]:
    """
    Build the ssh option vector for a host.

    Args:
        host_info: Host descriptor
        without_destination: Leave out the hostname (rsync -e, -O commands
            that get the host elsewhere)

    Returns:
        List of arguments, destination first
    """
    args = []

    if not without_destination:
        args.append(host_info.host)
    if host_info.user:
        args.extend(["-l", host_info.user])
    if host_info.port is not None:
        args.extend(["-p", str(host_info.port)])
    if host_info.key_file and os.path.isfile(os.path.expanduser(host_info.key_file)):
        args.extend(["-i", host_info.key_file])
    if host_info.no_strict_host_key_checking:
        args.append("-oStrictHostKeyChecking=no")

    args.append("-oControlMaster=auto")
    args.append(f"-oControlPath={control_dir(host_info)}/{CONTROL_NAMESPACE}-%r@%h:%p")
    args.append(f"-oControlPersist={host_info.control_persist}")
    if host_info.connect_timeout:
        args.append(f"-oConnectTimeout={host_info.connect_timeout}")

    args.extend(host_info.ssh_opt)
    return args


def build_remote_command(cmd: str, rcfile: Optional[str] = None, prepend_cmd: Optional[str] = None) -> str:
    """Compose the remote command line: source rcfile, run prepend_cmd, then cmd."""
    parts = []
    if rcfile:
        parts.append(f". {rcfile}")
    if prepend_cmd:
        parts.append(prepend_cmd)
    parts.append(cmd)
    return "; ".join(parts)


def build_rsh_option(host_info: HostInfo) -> list[str]:
    """rsync -e argument running ssh with the host's options."""
    return ["-e", shlex.join([host_info.ssh_command, *build_ssh_options(host_info, without_destination=True)])]


def build_rsync_args(
    host_info: HostInfo,
    src: Sequence[str],
    dst: str,
    opt: Sequence[str] = (),
) -> list[str]:
    """rsync argument vector: -avv --copy-unsafe-links -e ... opt src... dst."""
    return ["-avv", "--copy-unsafe-links", *build_rsh_option(host_info), *opt, *src, dst]
