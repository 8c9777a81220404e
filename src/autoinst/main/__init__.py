"""
Process-level orchestrators: command loop, shutdown and job runner.
"""

from autoinst.main.command_handler import BackendError, CommandHandler
from autoinst.main.shutdown import ShutdownSequencer, guarded_job
from autoinst.main.runner import Runner, run_job

__all__ = [
    "BackendError",
    "CommandHandler",
    "Runner",
    "ShutdownSequencer",
    "guarded_job",
    "run_job",
]
