"""
Child process lifecycle (spawn, stop, collect) and the job supervisor.
"""

from autoinst.processes.managed_process import ManagedProcess, ProcessState, Role, SpawnError, TerminationReason
from autoinst.processes.supervisor import ProcessSupervisor

__all__ = [
    "ManagedProcess",
    "ProcessState",
    "ProcessSupervisor",
    "Role",
    "SpawnError",
    "TerminationReason",
]
