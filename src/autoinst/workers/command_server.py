# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Command server: HTTP front door of a running job."""

from __future__ import annotations

import queue, threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request

from autoinst.messaging.channel import Channel, ChannelError
from autoinst.util.logging_util import get_logger

logger = get_logger("command_server")

QUERY_TIMEOUT = 30.0
MAX_BROADCASTS = 1000


class IsotovideoProxy:
    """
    Bridges HTTP requests to the orchestrator channel.

    One reader thread owns ``channel.receive``: ``ret`` replies feed the
    pending query, every other message is kept as a broadcast for clients.
    Queries are serialized so each reply matches its request.
    """

    def __init__(self, channel: Channel, timeout: float = QUERY_TIMEOUT, max_broadcasts: int = MAX_BROADCASTS):
        """Initialize the instance."""
        self.channel = channel
        self.timeout = timeout
        self.broadcasts: Deque[Dict[str, Any]] = deque(maxlen=max_broadcasts)
        self.closed = threading.Event()
        self._replies: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._lock = threading.Lock()

    def read_channel(self, on_eof: Optional[Callable[[], None]] = None) -> None:
        """Reader thread body; returns at end-of-stream."""
        while True:
            try:
                message = self.channel.receive()
            except ChannelError as exc:
                logger.warning("discarding frame from the orchestrator: %s", exc)
                if not self.channel.is_open:
                    message = None
                else:
                    continue
            if message is None:
                logger.info("orchestrator channel closed")
                self.closed.set()
                if on_eof is not None:
                    on_eof()
                return
            if "ret" in message:
                self._replies.put(message)
            else:
                self.record(message)

    def record(self, message: Dict[str, Any]) -> None:
        self.broadcasts.append(message)
        logger.debug("broadcast: %s", message)

    def query(self, cmd: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send ``cmd`` to the orchestrator and wait for its ``ret`` reply."""
        if self.closed.is_set():
            raise ChannelError("orchestrator channel is closed")
        with self._lock:
            while not self._replies.empty():
                self._replies.get_nowait()
            self.channel.send({"cmd": cmd, **(params or {})})
            try:
                return self._replies.get(timeout=self.timeout)
            except queue.Empty:
                raise TimeoutError(f"no answer to '{cmd}' within {self.timeout}s")


def create_app(proxy: IsotovideoProxy, job_token: str) -> FastAPI:
    """Build the command server app; every route is scoped by the job token."""
    app = FastAPI(title="autoinst command server")

    def _check_token(token: str) -> None:
        if token != job_token:
            raise HTTPException(
                status_code=404,
                detail={"error": "unknown_job_token", "message": "invalid job token"},
            )

    @app.post("/{token}/broadcast")
    def broadcast(token: str, body: Dict[str, Any] = Body(...)):
        """Store a message for the connected clients."""
        _check_token(token)
        proxy.record(body)
        return {"status": "ok"}

    @app.get("/{token}/broadcasts")
    def list_broadcasts(token: str):
        _check_token(token)
        return {"messages": list(proxy.broadcasts)}

    @app.get("/{token}/isotovideo/{command}")
    def isotovideo(token: str, command: str, request: Request):
        """Pass a command to the orchestrator and return its answer."""
        _check_token(token)
        try:
            return proxy.query(command, dict(request.query_params))
        except TimeoutError as exc:
            raise HTTPException(status_code=504, detail={"error": "timeout", "message": str(exc)})
        except ChannelError as exc:
            raise HTTPException(status_code=503, detail={"error": "unavailable", "message": str(exc)})

    return app


def run_command_server(channel: Channel, port: int, token: str) -> None:
    proxy = IsotovideoProxy(channel)
    app = create_app(proxy, token)
    # log_config=None keeps the process logging set up by the wrapper
    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=int(port), log_level="warning", log_config=None))

    def _request_exit() -> None:
        server.should_exit = True

    reader = threading.Thread(target=proxy.read_channel, args=(_request_exit,), name="cmdsrv-reader", daemon=True)
    reader.start()
    logger.info("command server listening on 127.0.0.1:%s", port)
    server.run()
