# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Runner: drives one job from spawning its processes to the final exit code."""
from __future__ import annotations

import os, signal
from multiprocessing.context import BaseContext
from typing import Any, Callable, Dict, Iterable, Optional

import httpx

from autoinst.configuration.job_context import JobContext
from autoinst.main.assets import handle_generated_assets
from autoinst.main.command_handler import CommandHandler
from autoinst.main.shutdown import AssetHandler, ShutdownSequencer, guarded_job
from autoinst.processes.managed_process import DEFAULT_STOP_TIMEOUT, Role
from autoinst.processes.supervisor import ProcessSupervisor
from autoinst.util.logging_util import get_logger, shutdown_logging

logger = get_logger("runner")


def default_entry_points() -> Dict[Role, Callable[..., Any]]:
    """Entry points of the bundled command server, autotest and null backend."""
    from autoinst.workers.autotest import run_autotest
    from autoinst.workers.backend import run_null_backend
    from autoinst.workers.command_server import run_command_server

    return {
        Role.COMMAND_SERVER: run_command_server,
        Role.AUTOTEST: run_autotest,
        Role.BACKEND: run_null_backend,
    }


class Runner:
    """Orchestrates the command server, autotest and backend of one job."""

    def __init__(
        self,
        context: JobContext,
        entry_points: Optional[Dict[Role | str, Callable[..., Any]]] = None,
        initializers: Iterable[Callable[[JobContext], Any]] = (),
        asset_handler: AssetHandler = handle_generated_assets,
        ctx: Optional[BaseContext] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
        exit_func: Callable[[int], Any] = os._exit,
    ):
        """
        Initialize the instance.

        :param initializers: job preparation hooks (needle index, test
                             distribution, ...) called with the job context.
        :param exit_func: immediate process exit used after a signal.
        """
        self.context = context
        self.initializers = list(initializers)
        self.supervisor = ProcessSupervisor(
            context,
            entry_points or default_entry_points(),
            ctx=ctx,
            stop_timeout=stop_timeout,
            http_client=http_client,
        )
        self.command_handler: Optional[CommandHandler] = None
        self.shutdown_sequencer = ShutdownSequencer(context, self.supervisor, asset_handler)
        self._exit = exit_func

    def prepare(self) -> None:
        self.context.workdir.mkdir(parents=True, exist_ok=True)
        logger.info("preparing job in %s (token=%s)", self.context.workdir, self.context.job_token)
        for initializer in self.initializers:
            initializer(self.context)
        self.context.save()

    def start_server(self):
        return self.supervisor.start_command_server()

    def start_autotest(self):
        return self.supervisor.start_autotest()

    def create_backend(self):
        proc = self.supervisor.start_backend()
        self.context.save()
        return proc

    def handle_commands(self) -> CommandHandler:
        """Build the command handler, register the job reactions and trap signals."""
        sup = self.supervisor
        handler = CommandHandler(
            self.context,
            sup.command_server.channel if sup.command_server else None,
            sup.autotest.channel if sup.autotest else None,
            sup.backend.channel if sup.backend else None,
        )
        # any child exiting ends the job
        for proc in sup.spawned():
            handler.watch(proc)
        handler.on("tests_done", self._on_tests_done)
        handler.on("signal", self._on_signal)
        handler.setup_signal_handler()
        self.command_handler = handler
        self.shutdown_sequencer.command_handler = handler
        return handler

    def run(self) -> None:
        if self.command_handler is None:
            raise RuntimeError("handle_commands() must be called before run()")
        self.context.clear_exit_code()
        self.command_handler.run()

    def handle_shutdown(self) -> int:
        return self.shutdown_sequencer.shutdown()

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------
    def _on_tests_done(self, message: Dict[str, Any]) -> None:
        handler = self.command_handler
        if handler.test_channel is not None:
            handler.test_channel.close()
        self.supervisor.stop_autotest("tests done")
        handler.stop_loop("tests done")

    def _on_signal(self, signum: int) -> None:
        name = signal.Signals(signum).name
        self.context.serialize_state(component="isotovideo", msg=f"received signal {name}")
        self.context.fail()
        self.command_handler.stop_loop(f"received signal {name}")
        self.supervisor.stop_backend(f"received signal {name}")
        self.supervisor.stop_commands(f"received signal {name}")
        self.supervisor.stop_autotest(f"received signal {name}")
        logger.critical("terminating after signal %s", name)
        shutdown_logging()
        self._exit(1)


def run_job(context: JobContext, **runner_kwargs: Any) -> int:
    """Run a complete job and return its exit code (0 success, 1 failure)."""
    runner = Runner(context, **runner_kwargs)
    with guarded_job(runner.shutdown_sequencer):
        runner.prepare()
        runner.start_server()
        runner.start_autotest()
        runner.create_backend()
        runner.handle_commands()
        runner.run()
        runner.handle_shutdown()
    return context.exit_code
