# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""A supervised child process together with its IPC channel."""
from __future__ import annotations

import psutil
import multiprocessing as mp
from enum import Enum
from multiprocessing.context import BaseContext
from typing import Any, Callable, Dict, Iterable, List, Optional

from autoinst.messaging.channel import Channel
from autoinst.processes.process_wrappers import _run_supervised_child
from autoinst.util.logging_util import get_logger

logger = get_logger("process")

COLLECTED = "collected"
DEFAULT_STOP_TIMEOUT = 5.0
KILL_TIMEOUT = 1.0


class Role(str, Enum):
    COMMAND_SERVER = "command_server"
    AUTOTEST = "autotest"
    BACKEND = "backend"


class ProcessState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    COLLECTED = "collected"


class TerminationReason(str, Enum):
    NORMAL = "normal"
    SIGNALED = "signaled"
    FORCED = "forced"


class SpawnError(RuntimeError):
    """The OS process for a role could not be created."""


class ManagedProcess:
    """
    Supervised OS child process plus its channel.

    Lifecycle: ``idle`` -> ``running`` -> ``stopped`` (reaped after
    :meth:`stop`) or ``collected`` (reaped after exiting on its own). The
    ``collected`` callbacks fire exactly once, on whichever transition reaps
    the child first.
    """

    def __init__(
        self,
        role: Role | str,
        entry_point: Callable[..., Any],
        initial_args: Iterable[Any] = (),
        ctx: Optional[BaseContext] = None,
        log_specs: Optional[Dict[str, Any]] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ):
        """Initialize the instance."""
        self.role = Role(role)
        self.entry_point = entry_point
        self.initial_args = tuple(initial_args)
        self.stop_timeout = float(stop_timeout)
        self._ctx = ctx or mp.get_context("fork")
        self._log_specs = log_specs or {}
        self._process: Optional[mp.Process] = None
        self.channel: Optional[Channel] = None
        self.state = ProcessState.IDLE
        self.reason: Optional[TerminationReason] = None
        self._callbacks: Dict[str, List[Callable[["ManagedProcess"], Any]]] = {COLLECTED: []}
        self._forced = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def name(self) -> str:
        return self.role.value

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def sentinel(self) -> Optional[int]:
        if self._process is None or self.state is not ProcessState.RUNNING:
            return None
        return self._process.sentinel

    @property
    def exitcode(self) -> Optional[int]:
        return self._process.exitcode if self._process is not None else None

    @property
    def is_running(self) -> bool:
        return self.state is ProcessState.RUNNING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, inherited: Iterable[Any] = ()) -> "ManagedProcess":
        """Fork the child and open its channel.

        :param inherited: parent-side connections of sibling processes the
                          child must close right after the fork.
        """
        if self.state is not ProcessState.IDLE:
            raise SpawnError(f"{self.name} process was already started")
        channel, child_conn = Channel.pair(self._ctx, label=self.name)
        # the child must not keep our end open or it never sees end-of-stream
        inherited = tuple(inherited) + (channel.connection,)
        process = self._ctx.Process(
            target=_run_supervised_child,
            name=self.name,
            args=(
                self.entry_point,
                child_conn,
                self.name,
                self._log_specs,
                inherited,
                self.initial_args,
            ),
        )
        try:
            process.start()
        except OSError as exc:
            channel.close()
            child_conn.close()
            raise SpawnError(f"unable to start {self.name} process: {exc}") from exc
        child_conn.close()
        self._process = process
        self.channel = channel
        self.state = ProcessState.RUNNING
        logger.info("%s process started (pid=%s)", self.name, process.pid)
        return self

    def once(self, event: str, callback: Callable[["ManagedProcess"], Any]) -> None:
        """Register a one-shot reaction; only ``collected`` is emitted."""
        if event not in self._callbacks:
            raise ValueError(f"Unknown process event '{event}'")
        if self.state is ProcessState.COLLECTED or self.state is ProcessState.STOPPED:
            callback(self)
            return
        self._callbacks[event].append(callback)

    def poll(self) -> bool:
        """Reap the child when it has exited; return True if it is gone."""
        if self._process is None:
            return True
        if self.state is not ProcessState.RUNNING:
            return True
        if self._process.is_alive():
            return False
        self._process.join(0)
        self._collected(ProcessState.COLLECTED)
        return True

    def stop(self, reason: str = "") -> None:
        """
        Terminate the child: SIGTERM, wait, then SIGKILL on timeout.

        Idempotent: a never-started or already reaped process is left alone.
        Descendants of the child are stopped as well.
        """
        if self._process is None or self.state is not ProcessState.RUNNING:
            if self.channel is not None:
                self.channel.close()
            return
        logger.info("stopping %s process (pid=%s)%s", self.name, self.pid, f": {reason}" if reason else "")
        descendants = self._descendants()
        proc = self._process
        if proc.is_alive():
            proc.terminate()
            proc.join(timeout=self.stop_timeout)
        if proc.is_alive():
            logger.warning(
                "%s process did not exit after %.2fs; killing", self.name, self.stop_timeout
            )
            self._forced = True
            proc.kill()
            proc.join(timeout=KILL_TIMEOUT)
            if proc.is_alive():
                logger.warning("%s process still alive after kill attempt", self.name)
        self._stop_descendants(descendants)
        if self.channel is not None:
            self.channel.close()
        self._collected(ProcessState.STOPPED)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _descendants(self) -> List[psutil.Process]:
        try:
            return psutil.Process(self.pid).children(recursive=True)
        except psutil.Error:
            return []

    def _stop_descendants(self, descendants: List[psutil.Process]) -> None:
        if not descendants:
            return
        for child in descendants:
            try:
                child.terminate()
            except psutil.Error:
                pass
        _, alive = psutil.wait_procs(descendants, timeout=KILL_TIMEOUT)
        for child in alive:
            logger.warning("killing leftover %s descendant pid=%s", self.name, child.pid)
            try:
                child.kill()
            except psutil.Error:
                pass

    def _collected(self, state: ProcessState) -> None:
        if self.state is not ProcessState.RUNNING:
            return
        self.state = state
        code = self.exitcode
        if self._forced:
            self.reason = TerminationReason.FORCED
        elif code is not None and code < 0:
            self.reason = TerminationReason.SIGNALED
        else:
            self.reason = TerminationReason.NORMAL
        logger.info(
            "%s process collected (pid=%s exitcode=%s reason=%s)",
            self.name,
            self.pid,
            code,
            self.reason.value,
        )
        callbacks, self._callbacks[COLLECTED] = self._callbacks[COLLECTED], []
        for callback in callbacks:
            callback(self)

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.name} pid={self.pid} state={self.state.value}>"
