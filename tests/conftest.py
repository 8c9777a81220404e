"""Shared fixtures for the job runner tests."""

import logging
import multiprocessing as mp
import signal

import httpx
import pytest

from autoinst.configuration.job_context import JobContext
from autoinst.messaging.channel import Channel


class FakeHttpClient:
    """Records broadcast POSTs instead of sending them."""

    def __init__(self, fail=False):
        self.posts = []
        self.fail = fail

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        if self.fail:
            raise httpx.ConnectError("connection refused")
        return httpx.Response(200, json={"status": "ok"})


@pytest.fixture
def context(tmp_path):
    """Job context with a fixed port and token, exit code still at its default."""
    return JobContext(tmp_path, {"QEMUPORT": 9000, "JOBTOKEN": "tok123", "LOG_TO_CONSOLE": False})


@pytest.fixture
def fork_ctx():
    return mp.get_context("fork")


@pytest.fixture
def channel_pair(fork_ctx):
    """Two connected channels: (orchestrator side, child side)."""
    left_conn, right_conn = fork_ctx.Pipe(duplex=True)
    left, right = Channel(left_conn, "parent"), Channel(right_conn, "child")
    yield left, right
    left.close()
    right.close()


@pytest.fixture
def http_client():
    return FakeHttpClient()


@pytest.fixture
def failing_http_client():
    return FakeHttpClient(fail=True)


@pytest.fixture(autouse=True)
def restore_process_state():
    """Undo signal handlers and root logging changes made by a test."""
    handlers = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)}
    root = logging.getLogger()
    root_handlers = root.handlers[:]
    root_level = root.level
    yield
    for signum, handler in handlers.items():
        signal.signal(signum, handler)
    for h in root.handlers[:]:
        if h not in root_handlers:
            root.removeHandler(h)
            h.close()
    for h in root_handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(root_level)
