"""
Shared session types.
"""

from __future__ import annotations
from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional


class MasterState(Enum):
    """Master connection lifecycle states."""
    NO_SESSION = auto()
    PROBING = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    DISCONNECTED = auto()


@dataclass(frozen=True)
class ExitStatus:
    """How a pty child ended."""
    exit_code: Optional[int]
    signal: Optional[int] = None

    @property
    def signaled(self) -> bool:
        return self.signal is not None and self.signal > 0

    @property
    def ok(self) -> bool:
        return not self.signaled and self.exit_code == 0

    def __str__(self) -> str:
        if self.signaled:
            return f"signal {self.signal}"
        return f"exit code {self.exit_code}"
