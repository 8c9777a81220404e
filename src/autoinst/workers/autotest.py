# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Autotest process: runs the scheduled test modules in order."""

from __future__ import annotations

import importlib, json, traceback
from pathlib import Path
from typing import Any, Dict, List

from autoinst.configuration.job_context import JobContext, JobVars
from autoinst.messaging.channel import Channel, ChannelClosed
from autoinst.util.logging_util import get_logger

logger = get_logger("autotest")

RESULTS_DIRNAME = "testresults"


class TestAPI:
    """Handle given to every test module's ``run(api)``."""

    __test__ = False  # not a pytest class

    def __init__(self, channel: Channel, job_vars: JobVars):
        """Initialize the instance."""
        self._channel = channel
        self.vars = job_vars

    def query(self, cmd: str, **params: Any) -> Any:
        """Send a command to the orchestrator and return its ``ret``."""
        self._channel.send({"cmd": cmd, **params})
        reply = self._channel.receive()
        if reply is None:
            raise ChannelClosed(f"orchestrator closed the channel while waiting for '{cmd}'")
        if reply.get("error"):
            logger.warning("'%s' failed: %s", cmd, reply["error"])
        return reply.get("ret")

    def backend(self, cmd: str, **arguments: Any) -> Any:
        """Run ``cmd`` on the backend (through the orchestrator)."""
        return self.query(f"backend_{cmd}", arguments=arguments)

    def send_clients(self, **params: Any) -> Any:
        return self.query("send_clients", params=params)

    def get_var(self, name: str, default: Any = None) -> Any:
        return self.vars.get(name, default)

    def set_var(self, name: str, value: Any) -> None:
        self.vars[name] = value


def parse_schedule(job_vars: JobVars) -> List[str]:
    raw = job_vars.get("SCHEDULE") or ""
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _write_result(results_dir: Path, name: str, result: Dict[str, Any]) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    with open(results_dir / f"result-{name}.json", "w", encoding="utf-8") as fh:
        json.dump(result, fh, indent=4)


def run_test_module(api: TestAPI, module_path: str) -> Dict[str, Any]:
    """Import and run one test module; exceptions become a ``fail`` result."""
    flags: Dict[str, Any] = {}
    try:
        module = importlib.import_module(module_path)
        if hasattr(module, "test_flags"):
            flags = module.test_flags() or {}
        module.run(api)
    except ChannelClosed:
        raise
    except Exception as exc:
        logger.error("test module %s failed: %s", module_path, exc)
        return {"result": "fail", "details": traceback.format_exc(), "fatal": bool(flags.get("fatal"))}
    return {"result": "ok", "fatal": bool(flags.get("fatal"))}


def run_autotest(channel: Channel, job_vars: Dict[str, Any], workdir: str) -> None:
    context = JobContext(workdir, job_vars)
    api = TestAPI(channel, context.vars)
    results_dir = context.workdir / RESULTS_DIRNAME
    completed, died = True, False
    try:
        for module_path in parse_schedule(context.vars):
            name = module_path.rsplit(".", 1)[-1]
            api.query("set_current_test", name=name, full_name=module_path)
            logger.info("running test module %s", module_path)
            result = run_test_module(api, module_path)
            _write_result(results_dir, name, {"name": name, **result})
            if result["result"] == "fail" and result["fatal"]:
                logger.warning("fatal test module %s failed; skipping remaining modules", name)
                completed = False
                break
    except ChannelClosed:
        raise
    except Exception:
        logger.exception("test runner died")
        completed, died = False, True
    context.save()
    channel.send({"cmd": "tests_done", "died": died, "completed": completed})
    # keep running until the orchestrator closes our channel
    while channel.receive() is not None:
        pass
