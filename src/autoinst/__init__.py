"""
AutoInst package entrypoint, re-exporting the job runner components.
"""

__version__ = "0.1.0"

from autoinst.configuration import JobContext, JobVars  # noqa: E402
from autoinst.main import CommandHandler, Runner, ShutdownSequencer, run_job  # noqa: E402
from autoinst.messaging import Channel  # noqa: E402
from autoinst.processes import ManagedProcess, ProcessSupervisor, Role  # noqa: E402

__all__ = [
    "Channel",
    "CommandHandler",
    "JobContext",
    "JobVars",
    "ManagedProcess",
    "ProcessSupervisor",
    "Role",
    "Runner",
    "ShutdownSequencer",
    "__version__",
    "run_job",
]
