# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Ordered teardown of a job and the finalizer guarding every exit path."""
from __future__ import annotations

import atexit, os
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from autoinst.configuration.job_context import JobContext
from autoinst.main.command_handler import BackendError, CommandHandler
from autoinst.messaging.channel import ChannelError
from autoinst.processes.supervisor import ProcessSupervisor
from autoinst.util.logging_util import get_logger

logger = get_logger("shutdown")

STOP_VM_TIMEOUT = 60.0
SHUTDOWN_QUERY_TIMEOUT = 10.0

AssetHandler = Callable[[CommandHandler, Optional[bool]], int]


class ShutdownSequencer:
    """
    Strictly ordered, best-effort teardown of one job.

    :meth:`shutdown` runs once after the command loop; :meth:`finalize` runs
    on every exit path and may be called any number of times.
    """

    def __init__(
        self,
        context: JobContext,
        supervisor: ProcessSupervisor,
        asset_handler: AssetHandler,
        command_handler: Optional[CommandHandler] = None,
        stop_vm_timeout: float = STOP_VM_TIMEOUT,
        query_timeout: float = SHUTDOWN_QUERY_TIMEOUT,
    ):
        """Initialize the instance."""
        self.context = context
        self.supervisor = supervisor
        self.asset_handler = asset_handler
        self.command_handler = command_handler
        self.stop_vm_timeout = stop_vm_timeout
        self.query_timeout = query_timeout
        self._shutdown_done = False
        self._reported = False
        self.clean_shutdown: Optional[bool] = None

    # ------------------------------------------------------------------
    # Normal path
    # ------------------------------------------------------------------
    def shutdown(self) -> int:
        """Run the teardown steps after the loop; returns the exit code."""
        if self._shutdown_done:
            return self.context.exit_code
        self._shutdown_done = True
        context = self.context

        self.supervisor.stop_commands("test execution ended")

        test_channel = self._test_channel()
        if test_channel is not None and test_channel.is_open:
            logger.warning("stopping autotest process (unusual shutdown)")
            context.fail()
            test_channel.close()
            self.supervisor.stop_autotest("unusual shutdown")

        if not context.failed:
            self.clean_shutdown = self._query_shutdown_state()
            try:
                self._stop_vm()
            except (ChannelError, BackendError) as exc:
                logger.error("unable to stop VM: %s", exc)
                context.serialize_state(component="backend", msg=f"unable to stop VM: {exc}")
                context.fail()

        try:
            context.load()
        except (OSError, ValueError) as exc:
            logger.warning("unable to reload job variables: %s", exc)

        if not context.failed:
            context.exit_code = int(self.asset_handler(self.command_handler, self.clean_shutdown))

        # the job ran to completion even if earlier steps logged problems
        context.clear_fatal_error()
        try:
            context.save()
        except OSError as exc:
            logger.warning("unable to save job variables: %s", exc)
        return context.exit_code

    def _test_channel(self):
        if self.command_handler is not None:
            return self.command_handler.test_channel
        autotest = self.supervisor.autotest
        return autotest.channel if autotest is not None else None

    def _query_shutdown_state(self) -> Optional[bool]:
        if self.command_handler is None:
            return None
        try:
            state = self.command_handler.backend_request("is_shutdown", timeout=self.query_timeout)
        except (ChannelError, BackendError) as exc:
            logger.warning("unable to query backend shutdown state: %s", exc)
            return None
        logger.info("backend shutdown state: %s", "?" if state is None else state)
        return None if state is None else bool(state)

    def _stop_vm(self) -> None:
        if self.command_handler is None:
            raise ChannelError("no command handler to reach the backend")
        self.command_handler.backend_request("stop_vm", timeout=self.stop_vm_timeout)

    # ------------------------------------------------------------------
    # Finalizer
    # ------------------------------------------------------------------
    def finalize(self) -> int:
        """Tear down every process and report the result; safe to repeat."""
        self.supervisor.stop_backend("finalizing job")
        self.supervisor.stop_commands("test execution ended through exception")
        self.supervisor.stop_autotest("finalizing job")
        if self.command_handler is not None:
            self.command_handler.restore_signal_handlers()
        if not self._reported:
            self._reported = True
            if self.context.fatal_error is not None:
                self.context.serialize_state(component="isotovideo", msg=self.context.fatal_error, error=True)
            logger.info("job finished with exit code %d", self.context.exit_code)
            print(f"{os.getpid()}: EXIT {self.context.exit_code}", flush=True)
        return self.context.exit_code


@contextmanager
def guarded_job(sequencer: ShutdownSequencer) -> Iterator[ShutdownSequencer]:
    """
    Run the main path of a job with the finalizer guaranteed.

    Errors escaping the block are captured as the job's fatal error (exit
    code 1); interpreter-level exits are re-raised after finalizing.
    """
    atexit.register(sequencer.finalize)
    try:
        yield sequencer
    except BaseException as exc:
        logger.exception("job aborted: %s", exc)
        sequencer.context.record_fatal_error(exc)
        if not isinstance(exc, Exception):
            raise
    finally:
        sequencer.finalize()
        atexit.unregister(sequencer.finalize)
