"""
Session management - terminal processes, login automation and the
per-host master connection.

- PtyProcess / spawn: run ssh or rsync in a pty and classify the exit
- react / ExpectDriver: answer login prompts and scripted expectations
- MasterSession: probe, establish and close the ControlMaster connection
"""

from .base import MasterState, ExitStatus
from .pty_transport import (
    PtyProcess,
    Watchdog,
    OutputCollector,
    TailBuffer,
    check_exit_status,
    spawn,
)
from .login import (
    Expectation,
    ExpectationQueue,
    ExpectDriver,
    react,
)
from .master import MasterSession

__all__ = [
    # Types
    "MasterState",
    "ExitStatus",
    # Terminal processes
    "PtyProcess",
    "Watchdog",
    "OutputCollector",
    "TailBuffer",
    "check_exit_status",
    "spawn",
    # Login automation
    "Expectation",
    "ExpectationQueue",
    "ExpectDriver",
    "react",
    # Master connection
    "MasterSession",
]
