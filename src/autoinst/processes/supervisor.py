# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Process supervisor: spawn order and teardown of the three job processes."""
from __future__ import annotations

import httpx
import multiprocessing as mp
from multiprocessing.context import BaseContext
from typing import Any, Callable, Dict, Iterable, Optional

from autoinst.configuration.job_context import JobContext
from autoinst.processes.managed_process import (
    DEFAULT_STOP_TIMEOUT,
    ManagedProcess,
    Role,
    SpawnError,
)
from autoinst.util.logging_util import get_logger

logger = get_logger("supervisor")

BROADCAST_TIMEOUT = 15.0


class ProcessSupervisor:
    """Owns the command server, autotest and backend processes of one job."""

    def __init__(
        self,
        context: JobContext,
        entry_points: Dict[Role | str, Callable[..., Any]],
        ctx: Optional[BaseContext] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the instance.

        :param entry_points: callable per role, invoked in the child as
                             ``entry_point(channel, *initial_args)``.
        :param http_client: client used for the observer broadcast; a
                            short-lived client is created when omitted.
        """
        self.context = context
        self.entry_points = {Role(role): ep for role, ep in entry_points.items()}
        self._ctx = ctx or mp.get_context("fork")
        self.stop_timeout = stop_timeout
        self._http_client = http_client
        self.processes: Dict[Role, Optional[ManagedProcess]] = {role: None for role in Role}

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get(self, role: Role | str) -> Optional[ManagedProcess]:
        return self.processes.get(Role(role))

    @property
    def command_server(self) -> Optional[ManagedProcess]:
        return self.processes[Role.COMMAND_SERVER]

    @property
    def autotest(self) -> Optional[ManagedProcess]:
        return self.processes[Role.AUTOTEST]

    @property
    def backend(self) -> Optional[ManagedProcess]:
        return self.processes[Role.BACKEND]

    def spawned(self) -> Iterable[ManagedProcess]:
        return [proc for proc in self.processes.values() if proc is not None]

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------
    def spawn(self, role: Role | str, entry_point: Callable[..., Any], initial_args: Iterable[Any] = ()) -> ManagedProcess:
        """Create the OS process for ``role`` and return its running handle."""
        role = Role(role)
        if self.processes[role] is not None:
            raise SpawnError(f"{role.value} process was already spawned")
        inherited = [
            proc.channel.connection
            for proc in self.spawned()
            if proc.channel is not None and proc.channel.is_open
        ]
        proc = ManagedProcess(
            role,
            entry_point,
            initial_args,
            ctx=self._ctx,
            log_specs=self.context.log_specs(),
            stop_timeout=self.stop_timeout,
        )
        proc.start(inherited=inherited)
        self.processes[role] = proc
        return proc

    def _entry_point(self, role: Role) -> Callable[..., Any]:
        try:
            return self.entry_points[role]
        except KeyError:
            raise SpawnError(f"No entry point configured for the {role.value} process")

    def start_command_server(self) -> ManagedProcess:
        """Start the command server first; it owns ``base_port + 1``."""
        port = self.context.command_server_port
        token = self.context.job_token
        logger.info("starting command server on port %d", port)
        return self.spawn(Role.COMMAND_SERVER, self._entry_point(Role.COMMAND_SERVER), (port, token))

    def start_autotest(self) -> ManagedProcess:
        self._require_command_server(Role.AUTOTEST)
        return self.spawn(Role.AUTOTEST, self._entry_point(Role.AUTOTEST), (self.context.vars.to_dict(), str(self.context.workdir)))

    def start_backend(self) -> ManagedProcess:
        self._require_command_server(Role.BACKEND)
        return self.spawn(Role.BACKEND, self._entry_point(Role.BACKEND), (self.context.vars.to_dict(), str(self.context.workdir)))

    def _require_command_server(self, role: Role) -> None:
        if self.command_server is None:
            raise SpawnError(f"the command server must be started before the {role.value} process")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    @property
    def broadcast_url(self) -> str:
        return f"http://127.0.0.1:{self.context.command_server_port}/{self.context.job_token}/broadcast"

    def _broadcast_stopping(self, reason: str) -> None:
        """Tell observers of the command server that test execution stops."""
        url = self.broadcast_url
        logger.info("informing command server clients before stopping: %s", url)
        body = {"stopping_test_execution": reason}
        try:
            if self._http_client is not None:
                self._http_client.post(url, json=body, timeout=BROADCAST_TIMEOUT)
            else:
                httpx.post(url, json=body, timeout=BROADCAST_TIMEOUT)
        except httpx.HTTPError as exc:
            # The worker may have stopped the command server already.
            logger.warning("unable to inform command server clients: %s", exc)

    def stop_commands(self, reason: str) -> None:
        proc = self.command_server
        if proc is None or not proc.is_running:
            return
        self._broadcast_stopping(reason)
        proc.stop(reason)
        logger.info("done with command server")

    def stop_autotest(self, reason: str = "") -> None:
        proc = self.autotest
        if proc is not None:
            proc.stop(reason)

    def stop_backend(self, reason: str = "") -> None:
        proc = self.backend
        if proc is not None:
            proc.stop(reason)

    def stop(self, role: Role | str, reason: str = "") -> None:
        """Stop one role; the command server gets the observer broadcast."""
        role = Role(role)
        if role is Role.COMMAND_SERVER:
            self.stop_commands(reason)
        elif role is Role.AUTOTEST:
            self.stop_autotest(reason)
        else:
            self.stop_backend(reason)
