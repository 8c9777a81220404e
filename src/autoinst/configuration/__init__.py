"""Job configuration (variables, persisted state, exit code)."""

from autoinst.configuration.job_context import JobContext, JobVars  # noqa: F401
