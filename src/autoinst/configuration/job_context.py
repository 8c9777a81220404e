# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Job context: job variables, exit status and failure record of one job."""
from __future__ import annotations

import json, os, secrets
from collections.abc import MutableMapping
from pathlib import Path
from typing import Any, Dict, Iterator

from autoinst.util.logging_util import get_logger

logger = get_logger("job_context")

VARS_FILENAME = "vars.json"
STATE_FILENAME = "base_state.json"
DEFAULT_BASE_PORT = 20012
EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class JobVars(MutableMapping):
    """Mapping of job variables with case-insensitive, upper-cased keys."""

    def __init__(self, data: dict | None = None):
        """Initialize the instance."""
        self._data: Dict[str, Any] = {}
        if data:
            self.update(data)

    @staticmethod
    def _key(key: str) -> str:
        if not isinstance(key, str):
            raise TypeError(f"Job variable names must be strings, got {type(key).__name__}")
        return key.upper()

    def __getitem__(self, key: str) -> Any:
        return self._data[self._key(key)]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[self._key(key)] = value

    def __delitem__(self, key: str) -> None:
        del self._data[self._key(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"JobVars({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


class JobContext:
    """
    Process-wide state of one job.

    Holds the job variables (persisted as ``vars.json`` in the working
    directory), the last fatal error, the final exit code and the last
    persisted failure record (``base_state.json``). The orchestrator thread is
    the only writer; child processes exchange values through their channels or
    by saving ``vars.json`` before they exit.
    """

    def __init__(self, workdir: str | Path = ".", new_vars: dict | None = None):
        """Initialize the instance."""
        self.workdir = Path(workdir).expanduser().resolve()
        self.vars = JobVars(new_vars)
        self.fatal_error: str | None = None
        self.exit_code = EXIT_FAILURE
        self.failure_record: Dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @property
    def vars_path(self) -> Path:
        return self.workdir / VARS_FILENAME

    @property
    def state_path(self) -> Path:
        return self.workdir / STATE_FILENAME

    def load(self) -> JobVars:
        """Load job variables from ``vars.json``, replacing the current ones."""
        with open(self.vars_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Job variables in {self.vars_path} must be a JSON object")
        self.vars = JobVars(data)
        logger.debug("Loaded %d job variables from %s", len(self.vars), self.vars_path)
        return self.vars

    def save(self) -> Path:
        """Write job variables to ``vars.json`` (atomic replace)."""
        _write_json(self.vars_path, self.vars.to_dict())
        logger.debug("Saved %d job variables to %s", len(self.vars), self.vars_path)
        return self.vars_path

    def serialize_state(self, component: str, msg: str, **extra: Any) -> Dict[str, Any]:
        """Persist a structured failure record ``{component, msg, ...}``."""
        record = {"component": component, "msg": msg, **extra}
        self.failure_record = record
        try:
            _write_json(self.state_path, record)
        except OSError as exc:
            logger.error("Unable to write %s: %s", self.state_path, exc)
        logger.info("Recorded %s state: %s", component, msg)
        return record

    # ------------------------------------------------------------------
    # Exit status / fatal error
    # ------------------------------------------------------------------
    def clear_exit_code(self) -> None:
        self.exit_code = EXIT_SUCCESS

    def fail(self) -> None:
        self.exit_code = EXIT_FAILURE

    @property
    def failed(self) -> bool:
        return self.exit_code != EXIT_SUCCESS

    def record_fatal_error(self, error: BaseException | str) -> None:
        """Capture an unrecovered error; forces the failure exit code."""
        self.fatal_error = str(error) or type(error).__name__
        self.fail()

    def clear_fatal_error(self) -> None:
        self.fatal_error = None

    # ------------------------------------------------------------------
    # Derived settings
    # ------------------------------------------------------------------
    @property
    def base_port(self) -> int:
        raw = self.vars.get("QEMUPORT", DEFAULT_BASE_PORT)
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"Job variable 'QEMUPORT' must be an integer, got {raw!r}")

    @property
    def command_server_port(self) -> int:
        return self.base_port + 1

    @property
    def job_token(self) -> str:
        token = self.vars.get("JOBTOKEN")
        if not token:
            token = secrets.token_hex(8)
            self.vars["JOBTOKEN"] = token
        return str(token)

    @property
    def logging_settings(self) -> Dict[str, Any]:
        return {
            "level": str(self.vars.get("LOG_LEVEL", "INFO")),
            "to_console": _as_bool(self.vars.get("LOG_TO_CONSOLE", True)),
            "to_file": _as_bool(self.vars.get("LOG_TO_FILE", False)),
        }

    @property
    def log_root(self) -> Path:
        return self.workdir / "logs"

    def log_specs(self) -> Dict[str, Any]:
        """Logging specs handed to every child process."""
        return {"settings": self.logging_settings, "log_root": str(self.log_root)}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=4, sort_keys=True, default=str)
    os.replace(tmp, path)
