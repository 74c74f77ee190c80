"""Process supervisor — spawns the child, waits for it, reports its exit."""

from outputbuddy.process.supervisor import (
    ChildProcess,
    ExitOutcome,
    ProcessSupervisor,
    RunState,
    signal_name,
)

__all__ = ["ChildProcess", "ExitOutcome", "ProcessSupervisor", "RunState", "signal_name"]
