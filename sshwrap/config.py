"""
Host descriptors for sshwrap.

A HostInfo describes one remote endpoint: who to log in as, which
credentials to feed to prompts, and the multiplexing/retry policy.
Profiles can be kept in ~/.sshwrap/hosts.yaml:

    hosts:
      lab:
        host: lab.example.com
        user: alice
        port: 2222
        key_file: ~/.ssh/id_ed25519
        control_persist: 300
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .credentials import Credential, as_credential

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".sshwrap"
DEFAULT_HOSTS_FILE = DEFAULT_CONFIG_DIR / "hosts.yaml"

# camelCase keys accepted alongside the snake_case field names
KEY_ALIASES = {
    "keyFile": "key_file",
    "noStrictHostKeyChecking": "no_strict_host_key_checking",
    "noStrictHostkeyChecking": "no_strict_host_key_checking",
    "ControlPersist": "control_persist",
    "ControlPersistDir": "control_persist_dir",
    "ConnectTimeout": "connect_timeout",
    "maxRetry": "max_retry",
    "retryDuration": "retry_duration",
    "retryMinTimeout": "retry_min_timeout",
    "retryMaxTimeout": "retry_max_timeout",
    "prependCmd": "prepend_cmd",
    "sshOpt": "ssh_opt",
    "sshopt": "ssh_opt",
}

_INT_FIELDS = {"port": 0, "control_persist": 0, "connect_timeout": 1, "max_retry": 1}
_FLOAT_FIELDS = {"retry_duration": 0.0, "retry_min_timeout": 0.0, "retry_max_timeout": 0.0}
_BOOL_FIELDS = {"no_strict_host_key_checking"}
_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


@dataclass
class HostInfo:
    """
    Session descriptor for one remote endpoint.

    Args:
        host: Destination hostname or address (required, non-blank)
        user: Login name (default: ssh's own default)
        port: SSH port (default: ssh's own default)
        key_file: Private key; only passed to ssh if it is a regular file
        password: Password source: string, callable or Credential
        passphrase: Key passphrase source: string, callable or Credential
        no_strict_host_key_checking: Pass -oStrictHostKeyChecking=no
        control_persist: Seconds the master connection outlives its last client
        control_persist_dir: Directory for control sockets
        connect_timeout: -oConnectTimeout value in seconds
        max_retry: Retry limit for retryable failures
        retry_duration: Seconds to wait between attempts
        retry_min_timeout: Lower bound of the exponential backoff window
        retry_max_timeout: Upper bound of the exponential backoff window
        rcfile: Remote file sourced before each command
        prepend_cmd: Remote command run before each command
        ssh_opt: Extra options passed to ssh verbatim
        ssh_command: ssh executable
        rsync_command: rsync executable
    """
    host: str
    user: Optional[str] = None
    port: Optional[int] = None
    key_file: Optional[str] = None
    password: Optional[Credential] = field(default=None, repr=False)
    passphrase: Optional[Credential] = field(default=None, repr=False)
    no_strict_host_key_checking: bool = False
    control_persist: int = 180
    control_persist_dir: Optional[str] = None
    connect_timeout: Optional[int] = None
    max_retry: int = 3
    retry_duration: float = 1.0
    retry_min_timeout: Optional[float] = None
    retry_max_timeout: Optional[float] = None
    rcfile: Optional[str] = None
    prepend_cmd: Optional[str] = None
    ssh_opt: list[str] = field(default_factory=list)
    ssh_command: str = "ssh"
    rsync_command: str = "rsync"

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("host must be non-empty string")
        self.host = self.host.strip()
        self.password = as_credential(self.password)
        self.passphrase = as_credential(self.passphrase)
        if self.max_retry < 1:
            raise ValueError(f"max_retry must be >= 1, got {self.max_retry}")
        if self.retry_duration < 0:
            raise ValueError(f"retry_duration must be >= 0, got {self.retry_duration}")

    @property
    def destination(self) -> str:
        """user@host when a login name is set, otherwise host."""
        return f"{self.user}@{self.host}" if self.user else self.host

    @classmethod
    def from_dict(cls, data: dict) -> HostInfo:
        """
        Build a HostInfo from loosely typed data (YAML, JSON, env).

        Blank strings are dropped, numeric strings converted, out of range
        numbers dropped so defaults apply, boolean-ish values converted and
        unknown keys ignored.

        Raises:
            ValueError: host is missing or blank
        """
        valid_fields = {f.name for f in fields(cls)}
        cleaned: dict[str, Any] = {}

        for raw_key, value in data.items():
            key = KEY_ALIASES.get(raw_key, raw_key)
            if key not in valid_fields:
                continue
            if isinstance(value, str):
                value = value.strip()
                if not value:
                    continue
            if value is None:
                continue

            if key in _INT_FIELDS:
                value = _to_number(key, value, int, _INT_FIELDS[key])
            elif key in _FLOAT_FIELDS:
                value = _to_number(key, value, float, _FLOAT_FIELDS[key])
            elif key in _BOOL_FIELDS:
                value = _to_bool(key, value)
            elif key == "ssh_opt":
                if isinstance(value, str):
                    value = [value]
                value = [str(opt).strip() for opt in value if str(opt).strip()]

            if value is not None:
                cleaned[key] = value

        if "host" not in data:
            raise ValueError("host is required")
        if "host" not in cleaned:
            raise ValueError("empty host is not allowed")

        return cls(**cleaned)


def _to_number(key: str, value: Any, kind: type, minimum):
    if isinstance(value, bool):
        return None
    try:
        number = kind(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric value for {key}: {value!r}")
        return None
    if number < minimum:
        logger.debug(f"Ignoring out of range value for {key}: {number}")
        return None
    return number


def _to_bool(key: str, value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    logger.warning(f"Ignoring non-boolean value for {key}: {value!r}")
    return None


def load_hosts(path: Path = None) -> dict[str, HostInfo]:
    """
    Load host profiles from a YAML file.

    Args:
        path: Hosts file (default ~/.sshwrap/hosts.yaml)

    Returns:
        Mapping of profile name to HostInfo. Empty if the file is missing.
    """
    path = Path(path) if path else DEFAULT_HOSTS_FILE
    if not path.exists():
        logger.debug(f"No hosts file at {path}")
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    hosts = data.get("hosts") or {}
    if not isinstance(hosts, dict):
        raise ValueError(f"{path}: 'hosts' must be a mapping of profile name to host settings")

    profiles = {}
    for name, entry in hosts.items():
        profiles[str(name)] = HostInfo.from_dict(entry or {})
    logger.debug(f"Loaded {len(profiles)} host profile(s) from {path}")
    return profiles
