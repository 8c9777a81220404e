"""
Entry points of the bundled child processes (command server, autotest, null backend).
"""

from autoinst.workers.autotest import TestAPI, parse_schedule, run_autotest
from autoinst.workers.backend import NullBackend, run_null_backend

__all__ = [
    "NullBackend",
    "TestAPI",
    "parse_schedule",
    "run_autotest",
    "run_null_backend",
]
