# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Command handler: the single-threaded event loop of a job."""

from __future__ import annotations

import signal, socket
from collections import defaultdict, deque
from enum import Enum
from multiprocessing.connection import wait
from typing import Any, Callable, Dict, List, Optional

from autoinst import __version__
from autoinst.configuration.job_context import JobContext
from autoinst.messaging.channel import Channel, ChannelClosed, ChannelError
from autoinst.processes.managed_process import COLLECTED, ManagedProcess, Role
from autoinst.util.logging_util import get_logger

logger = get_logger("command_handler")

TERMINATION_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)
# Raised internally only; a child cannot inject them through its channel.
INTERNAL_EVENTS = frozenset({"signal", "collected"})
PAUSE_ON_SCREEN_MISMATCH_OPTIONS = ("assert_screen", "check_screen")
BACKEND_REQUEST_TIMEOUT = 30.0


class HandlerState(str, Enum):
    IDLE = "idle"
    LOOPING = "looping"
    STOPPED = "stopped"


class BackendError(RuntimeError):
    """The backend answered a request with an error."""


class CommandHandler:
    """
    Multiplexes the command server, autotest and backend channels.

    Inbound messages are dicts discriminated by ``cmd`` (requests) or
    ``event`` (notifications). Built-in ``_handle_command_<name>`` methods
    run first, then the reactions registered with :meth:`on`, in
    registration order. Unknown names are ignored.

    OS signals and child exits are turned into the internal ``signal`` and
    ``collected`` events and processed by the same loop.
    """

    def __init__(
        self,
        context: JobContext,
        cmd_srv_channel: Optional[Channel],
        test_channel: Optional[Channel],
        backend_channel: Optional[Channel],
        timeout: Optional[float] = None,
    ):
        """
        Initialize the instance.

        :param timeout: upper bound for one wait of the loop; ``None`` waits
                        until a channel, a child or a signal is ready.
        """
        self.context = context
        self.cmd_srv_channel = cmd_srv_channel
        self.test_channel = test_channel
        self.backend_channel = backend_channel
        self.timeout = timeout

        self.loop = True
        self.state = HandlerState.IDLE
        self._reactions: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._watched: List[ManagedProcess] = []

        self._pending_signals: deque[int] = deque()
        self._signal_received = False
        self._previous_handlers: Dict[int, Any] = {}
        self._signal_handler_installed = False
        self._wakeup_r: Optional[socket.socket] = None
        self._wakeup_w: Optional[socket.socket] = None

        # job phase
        self.status = "initial"
        self.tests_done = False
        self.test_completed = False
        self.test_died = False
        self.current_test_name: Optional[str] = None
        self.current_test_full_name: Optional[str] = None
        self.tags: Optional[List[str]] = None
        self.pause_test_name: Optional[str] = None
        self.pause_on_screen_mismatch: Optional[str] = None
        self.pause_on_next_command = False
        self.test_execution_paused: Optional[str] = None
        self._postponed_answer: Optional[Channel] = None
        self._postponed_command: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------
    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Register ``callback`` for ``event``; several reactions may share one event."""
        self._reactions[event].append(callback)

    def emit(self, event: str, *args: Any) -> bool:
        """Invoke the reactions of ``event`` in registration order."""
        reactions = list(self._reactions.get(event, ()))
        for callback in reactions:
            callback(*args)
        return bool(reactions)

    def watch(self, process: ManagedProcess) -> None:
        """Stop the loop as soon as ``process`` is collected."""
        self._watched.append(process)
        process.once(COLLECTED, self._on_collected)

    def stop_loop(self, why: str = "") -> bool:
        """Clear the loop flag; returns True only for the call that cleared it."""
        if not self.loop:
            return False
        self.loop = False
        logger.info("stopping command loop%s", f": {why}" if why else "")
        return True

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------
    def setup_signal_handler(self) -> None:
        """Queue termination signals into the loop as the ``signal`` event."""
        if self._signal_handler_installed:
            raise RuntimeError("signal handler is already installed for this job")
        self._signal_handler_installed = True
        self._wakeup_r, self._wakeup_w = socket.socketpair()
        self._wakeup_r.setblocking(False)
        self._wakeup_w.setblocking(False)
        for signum in TERMINATION_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_os_signal)

    def restore_signal_handlers(self) -> None:
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        for sock in (self._wakeup_r, self._wakeup_w):
            if sock is not None:
                sock.close()
        self._wakeup_r = self._wakeup_w = None

    def _on_os_signal(self, signum, frame) -> None:
        # enqueue only while the loop can pick it up
        self._pending_signals.append(signum)
        if self.state is HandlerState.STOPPED:
            # shutdown steps block on the backend; react now
            self._drain_signals()
            return
        if self._wakeup_w is not None:
            try:
                self._wakeup_w.send(b"\0")
            except OSError:
                pass

    def _drain_signals(self) -> None:
        if self._wakeup_r is not None:
            try:
                while self._wakeup_r.recv(512):
                    pass
            except OSError:
                pass
        while self._pending_signals:
            signum = self._pending_signals.popleft()
            if self._signal_received:
                logger.info("ignoring repeated signal %s", _signal_name(signum))
                continue
            self._signal_received = True
            logger.warning("received signal %s", _signal_name(signum))
            self.emit("signal", signum)

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------
    def _channels(self) -> List[Channel]:
        return [
            ch
            for ch in (self.cmd_srv_channel, self.test_channel, self.backend_channel)
            if ch is not None and ch.is_open and not ch.eof
        ]

    def run(self) -> None:
        """Dispatch messages, signals and child exits until the loop is stopped."""
        if self.state is not HandlerState.IDLE:
            raise RuntimeError(f"command handler cannot run from state '{self.state.value}'")
        self.state = HandlerState.LOOPING
        logger.info("command loop started")
        try:
            while self.loop:
                sources: Dict[Any, Any] = {ch: ch for ch in self._channels()}
                for proc in self._watched:
                    if proc.sentinel is not None:
                        sources[proc.sentinel] = proc
                if self._wakeup_r is not None:
                    sources[self._wakeup_r] = None
                if not sources:
                    self.stop_loop("nothing left to wait for")
                    break
                for ready in wait(list(sources), timeout=self.timeout):
                    target = sources[ready]
                    if target is None:
                        self._drain_signals()
                    elif isinstance(target, ManagedProcess):
                        target.poll()
                    else:
                        self._read_channel(target)
                    if not self.loop:
                        break
                if self._pending_signals and self.loop:
                    self._drain_signals()
        finally:
            self.state = HandlerState.STOPPED
            logger.info("command loop stopped")

    def _read_channel(self, channel: Channel) -> None:
        try:
            message = channel.receive()
        except ChannelClosed:
            message = None
        except ChannelError as exc:
            logger.warning("discarding frame from %s: %s", channel.label, exc)
            return
        if message is None:
            self._channel_eof(channel)
            return
        self.process_message(channel, message)

    def _role_of(self, channel: Channel) -> str:
        if channel is self.cmd_srv_channel:
            return Role.COMMAND_SERVER.value
        if channel is self.test_channel:
            return Role.AUTOTEST.value
        if channel is self.backend_channel:
            return Role.BACKEND.value
        return channel.label

    def _channel_eof(self, channel: Channel) -> None:
        role = self._role_of(channel)
        logger.warning("end of stream on the %s channel", role)
        if channel is self.backend_channel and self.loop:
            backend = self._watched_process(Role.BACKEND)
            if backend is not None:
                # reaping fires _on_collected while the loop still runs
                backend.stop("backend channel closed")
            if self.loop:
                self._backend_died("backend channel closed unexpectedly")
        self.stop_loop(f"{role} channel closed")

    def _watched_process(self, role: Role) -> Optional[ManagedProcess]:
        return next((proc for proc in self._watched if proc.role is role), None)

    def _on_collected(self, process: ManagedProcess) -> None:
        if not self.loop:
            return
        if process.role is Role.BACKEND:
            self._backend_died(f"backend process died (exitcode={process.exitcode})")
        self.emit("collected", process)
        self.stop_loop(f"{process.name} process exited")

    def _backend_died(self, msg: str) -> None:
        logger.error(msg)
        self.context.serialize_state(component="backend", msg=msg)
        self.context.fail()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def process_message(self, channel: Optional[Channel], message: Any) -> None:
        """Route one inbound message by its ``cmd``/``event`` discriminator."""
        if not isinstance(message, dict):
            logger.debug("ignoring non-object message %r", message)
            return
        name = message.get("cmd") or message.get("event")
        if not name:
            if channel is not None and channel is self.backend_channel:
                self._relay_backend_reply(message)
            else:
                logger.debug("ignoring message without discriminator: %s", message)
            return
        name = str(name)
        if name in INTERNAL_EVENTS:
            logger.warning("ignoring internal event '%s' sent over a channel", name)
            return
        if name.startswith("backend_"):
            self._pass_command_to_backend_unless_paused(channel, name[len("backend_"):], message)
            return
        handler = getattr(self, f"_handle_command_{name}", None)
        if handler is not None:
            handler(channel, message)
        if not self.emit(name, message) and handler is None:
            logger.debug("ignoring unknown command '%s'", name)

    def _respond(self, channel: Optional[Channel], response: Dict[str, Any]) -> None:
        if channel is None or not channel.is_open:
            return
        try:
            channel.send(response)
        except ChannelError as exc:
            logger.warning("unable to answer %s: %s", channel.label, exc)

    def _send_to_cmd_srv(self, data: Dict[str, Any]) -> None:
        self._respond(self.cmd_srv_channel, data)

    def status_info(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "tags": self.tags,
            "running": self.current_test_name,
            "current_test_full_name": self.current_test_full_name,
            "pause_test_name": self.pause_test_name,
            "pause_on_screen_mismatch": self.pause_on_screen_mismatch,
            "pause_on_next_command": self.pause_on_next_command,
            "test_execution_paused": self.test_execution_paused,
            "tests_done": self.tests_done,
        }

    # ------------------------------------------------------------------
    # Backend forwarding
    # ------------------------------------------------------------------
    def _pass_command_to_backend_unless_paused(self, channel, name: str, message: Dict[str, Any]) -> None:
        if self.pause_on_next_command and not self.test_execution_paused:
            self._pause(f"paused on next command: {name}")
        if self.test_execution_paused:
            logger.info("postponing backend command '%s' while paused", name)
            self._postponed_command = {"cmd": name, "arguments": message.get("arguments")}
            return
        self._forward_to_backend({"cmd": name, "arguments": message.get("arguments")})

    def _forward_to_backend(self, command: Dict[str, Any]) -> None:
        try:
            if self.backend_channel is None:
                raise ChannelClosed("no backend channel")
            self.backend_channel.send(command)
        except ChannelError as exc:
            logger.warning("unable to pass '%s' to the backend: %s", command.get("cmd"), exc)
            self._respond(self.test_channel, {"ret": None, "error": f"backend unavailable: {exc}"})

    def _relay_backend_reply(self, message: Dict[str, Any]) -> None:
        response: Dict[str, Any] = {"ret": message.get("rsp")}
        if message.get("error"):
            response["error"] = message["error"]
        self._respond(self.test_channel, response)

    def backend_request(self, cmd: str, arguments: Any = None, timeout: float = BACKEND_REQUEST_TIMEOUT) -> Any:
        """
        Synchronous backend query for use outside the loop.

        Stale replies of forwarded commands are discarded first. Raises
        :class:`ChannelError` when the backend is unreachable and
        :class:`BackendError` when it answers with an error.
        """
        channel = self.backend_channel
        if channel is None or not channel.is_open or channel.eof:
            raise ChannelClosed("backend channel is not available")
        while channel.poll(0):
            stale = channel.receive()
            if stale is None:
                raise ChannelClosed("backend channel reached end of stream")
            logger.debug("discarding stale backend message: %s", stale)
        reply = channel.request({"cmd": cmd, "arguments": arguments}, timeout=timeout)
        if reply is None:
            raise ChannelClosed(f"backend exited before answering '{cmd}'")
        if reply.get("error"):
            raise BackendError(str(reply["error"]))
        return reply.get("rsp")

    # ------------------------------------------------------------------
    # Pause handling
    # ------------------------------------------------------------------
    def _pause(self, reason: str) -> None:
        self.test_execution_paused = reason
        self.status = "paused"
        logger.info("pausing test execution: %s", reason)
        self._send_to_cmd_srv({"test_execution_paused": reason})

    def _resume(self, options: Any = None) -> None:
        if not self.test_execution_paused:
            return
        logger.info("resuming test execution")
        self.test_execution_paused = None
        self.status = "finished" if self.tests_done else "running"
        self._send_to_cmd_srv({"resume_test_execution": options})
        if self._postponed_answer is not None:
            answer, self._postponed_answer = self._postponed_answer, None
            self._respond(answer, {"ret": 1})
        if self._postponed_command is not None:
            command, self._postponed_command = self._postponed_command, None
            self._forward_to_backend(command)

    def _is_configured_to_pause_on_timeout(self, check: Any) -> bool:
        if self.pause_on_screen_mismatch == "check_screen":
            return True
        return self.pause_on_screen_mismatch == "assert_screen" and not check

    # ------------------------------------------------------------------
    # Built-in commands
    # ------------------------------------------------------------------
    def _handle_command_tests_done(self, channel, message):
        self.tests_done = True
        self.test_died = bool(message.get("died"))
        self.test_completed = bool(message.get("completed"))
        self.status = "finished"
        self.current_test_name = None
        logger.info("tests done (completed=%s died=%s)", self.test_completed, self.test_died)
        self._send_to_cmd_srv({"tests_done": {"died": self.test_died, "completed": self.test_completed}})

    def _handle_command_set_current_test(self, channel, message):
        self.current_test_name = message.get("name")
        self.current_test_full_name = message.get("full_name")
        self.status = "running"
        self._send_to_cmd_srv({
            "set_current_test": self.current_test_name,
            "current_test_full_name": self.current_test_full_name,
        })
        if self.pause_test_name and self.pause_test_name in (self.current_test_name, self.current_test_full_name):
            self._pause(f"reached module {self.current_test_name}")
            self._postponed_answer = channel
            return
        self._respond(channel, {"ret": 1})

    def _handle_command_status(self, channel, message):
        self._respond(channel, {"ret": self.status_info()})

    def _handle_command_version(self, channel, message):
        vars_ = self.context.vars
        self._respond(channel, {"ret": {
            "version": __version__,
            "test_git_hash": vars_.get("TEST_GIT_HASH"),
            "needles_git_hash": vars_.get("NEEDLES_GIT_HASH"),
        }})

    def _handle_command_set_pause_at_test(self, channel, message):
        self.pause_test_name = message.get("name") or None
        self._send_to_cmd_srv({"set_pause_at_test": self.pause_test_name})
        self._respond(channel, {"ret": 1})

    def _handle_command_set_pause_on_screen_mismatch(self, channel, message):
        pause_on = message.get("pause_on") or None
        if pause_on is not None and pause_on not in PAUSE_ON_SCREEN_MISMATCH_OPTIONS:
            self._respond(channel, {"ret": 0, "error": f"invalid value for pause_on: {pause_on}"})
            return
        self.pause_on_screen_mismatch = pause_on
        self._send_to_cmd_srv({"set_pause_on_screen_mismatch": pause_on})
        self._respond(channel, {"ret": 1})

    def _handle_command_set_pause_on_next_command(self, channel, message):
        self.pause_on_next_command = bool(message.get("flag"))
        self._send_to_cmd_srv({"set_pause_on_next_command": self.pause_on_next_command})
        self._respond(channel, {"ret": 1})

    def _handle_command_pause_test_execution(self, channel, message):
        self._pause(message.get("reason") or "manually paused")
        self._respond(channel, {"ret": 1})

    def _handle_command_resume_test_execution(self, channel, message):
        self._resume(message.get("options"))
        self._respond(channel, {"ret": 1})

    def _handle_command_report_timeout(self, channel, message):
        self.tags = message.get("tags")
        if not self._is_configured_to_pause_on_timeout(message.get("check")):
            self._respond(channel, {"ret": 0})
            return
        self._pause(message.get("msg") or "timeout")
        self._postponed_answer = channel

    def _handle_command_is_configured_to_pause_on_timeout(self, channel, message):
        self._respond(channel, {"ret": int(self._is_configured_to_pause_on_timeout(message.get("check")))})

    def _handle_command_send_clients(self, channel, message):
        params = message.get("params")
        if isinstance(params, dict):
            self._send_to_cmd_srv(params)
        self._respond(channel, {"ret": 1})


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
