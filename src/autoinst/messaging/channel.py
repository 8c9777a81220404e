# ------------------------------------------------------------------------------
#  AutoInst
#  Copyright (c) 2025 Fabio Oddi
#
#  This file is part of AutoInst, released under the BSD 3-Clause License.
#  You may use, modify, and redistribute this file according to the terms of the
#  license. Attribution is required if this code is used in other works.
# ------------------------------------------------------------------------------

"""Duplex message channel between the orchestrator and one child process."""

from __future__ import annotations

import json
from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from typing import Any, Dict, Optional, Tuple

from autoinst.util.logging_util import get_logger

logger = get_logger("channel")


class ChannelError(Exception):
    """A frame could not be delivered or decoded."""


class ChannelClosed(ChannelError):
    """The channel was closed locally or the peer end is gone."""


class ChannelTimeout(ChannelError):
    """No complete message arrived within the requested timeout."""


class Channel:
    """
    Framed JSON messages over a ``multiprocessing`` connection.

    Each message is one ``send_bytes`` frame (length-prefixed by the
    connection), so handlers only ever see whole messages. End-of-stream is
    reported by :meth:`receive` returning ``None``; it is not an error.
    """

    def __init__(self, conn: Connection, label: str = "channel"):
        """Initialize the instance."""
        self._conn = conn
        self.label = label
        self._closed = False
        self.eof = False

    @classmethod
    def pair(cls, ctx: BaseContext, label: str = "channel") -> Tuple["Channel", Connection]:
        """Return ``(parent_channel, child_connection)`` for a new child process."""
        parent_conn, child_conn = ctx.Pipe(duplex=True)
        return cls(parent_conn, label=label), child_conn

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def connection(self) -> Connection:
        return self._conn

    def fileno(self) -> int:
        return self._conn.fileno()

    def send(self, message: Dict[str, Any]) -> None:
        """Write one framed message."""
        if self._closed:
            raise ChannelClosed(f"{self.label}: channel is closed")
        try:
            payload = json.dumps(message, default=str).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ChannelError(f"{self.label}: message is not serializable: {exc}") from exc
        try:
            self._conn.send_bytes(payload)
        except (BrokenPipeError, ConnectionResetError, EOFError) as exc:
            raise ChannelClosed(f"{self.label}: peer is gone") from exc
        except OSError as exc:
            raise ChannelClosed(f"{self.label}: {exc}") from exc
        logger.debug("[%s] >> %s", self.label, message)

    def poll(self, timeout: Optional[float] = 0.0) -> bool:
        """Return True when a frame (or end-of-stream) is ready to read."""
        if self._closed or self.eof:
            return self.eof
        try:
            return self._conn.poll(timeout)
        except (EOFError, OSError):
            return True

    def receive(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Return the next complete message, or ``None`` at end-of-stream.

        :param timeout: seconds to wait; ``None`` blocks until a message or
                        end-of-stream arrives.
        """
        if self._closed:
            raise ChannelClosed(f"{self.label}: channel is closed")
        if self.eof:
            return None
        if timeout is not None and not self.poll(timeout):
            raise ChannelTimeout(f"{self.label}: no message within {timeout}s")
        try:
            payload = self._conn.recv_bytes()
        except (EOFError, ConnectionResetError):
            self.eof = True
            logger.debug("[%s] end of stream", self.label)
            return None
        except OSError as exc:
            raise ChannelClosed(f"{self.label}: {exc}") from exc
        try:
            message = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ChannelError(f"{self.label}: undecodable frame: {exc}") from exc
        logger.debug("[%s] << %s", self.label, message)
        return message

    def request(self, message: Dict[str, Any], timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Send ``message`` and wait for the reply (``None`` at end-of-stream)."""
        self.send(message)
        return self.receive(timeout=timeout)

    def close(self) -> None:
        """Close the local end; idempotent and never raises."""
        if self._closed:
            return
        self._closed = True
        try:
            self._conn.close()
        except OSError as exc:
            logger.debug("[%s] close failed: %s", self.label, exc)

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("eof" if self.eof else "open")
        return f"<Channel {self.label} {state}>"
