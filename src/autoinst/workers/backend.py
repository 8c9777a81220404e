# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Null backend: a backend process without any machine behind it."""

from __future__ import annotations

from typing import Any, Dict, Optional

from autoinst.messaging.channel import Channel, ChannelError
from autoinst.util.logging_util import get_logger

logger = get_logger("backend")


class NullBackend:
    """
    Backend protocol endpoint for jobs that need no VM.

    Requests are ``{"cmd": name, "arguments": ...}``; every request gets one
    reply, ``{"rsp": value}`` or ``{"error": message}``.
    """

    def __init__(self, job_vars: Optional[Dict[str, Any]] = None):
        """Initialize the instance."""
        self.job_vars = dict(job_vars or {})
        self.vm_running = False
        self._running = True

    def stop(self) -> None:
        """Request a graceful shutdown."""
        self._running = False

    def run(self, channel: Channel) -> None:
        """Main backend loop."""
        logger.info("null backend started")
        self.vm_running = True
        while self._running:
            message = channel.receive()
            if message is None:
                break
            reply = self.handle(message)
            try:
                channel.send(reply)
            except ChannelError as exc:
                logger.warning("unable to answer the orchestrator: %s", exc)
                break
        logger.info("null backend shutting down")

    def handle(self, message: Any) -> Dict[str, Any]:
        if not isinstance(message, dict):
            return {"error": "malformed request"}
        cmd = message.get("cmd")
        handler = getattr(self, f"_cmd_{cmd}", None)
        if handler is None:
            logger.debug("null backend ignores '%s'", cmd)
            return {"rsp": None}
        try:
            return {"rsp": handler(message.get("arguments"))}
        except NotImplementedError as exc:
            return {"error": str(exc)}

    def _cmd_is_shutdown(self, arguments):
        # nothing can be left running
        return True

    def _cmd_stop_vm(self, arguments):
        self.vm_running = False
        return True

    def _cmd_start_vm(self, arguments):
        self.vm_running = True
        return True

    def _cmd_extract_asset(self, arguments):
        raise NotImplementedError("the null backend has no disks to extract")


def run_null_backend(channel: Channel, job_vars: Dict[str, Any], workdir: str) -> None:
    NullBackend(job_vars).run(channel)
