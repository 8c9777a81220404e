"""Tests for the shutdown sequencer and the job finalizer."""

import json

import pytest

from autoinst.main.command_handler import BackendError
from autoinst.main.shutdown import ShutdownSequencer, guarded_job
from autoinst.messaging.channel import ChannelClosed


class FakeSupervisor:
    def __init__(self, calls):
        self.calls = calls
        self.autotest = None

    def stop_commands(self, reason):
        self.calls.append(("stop_commands", reason))

    def stop_autotest(self, reason=""):
        self.calls.append(("stop_autotest", reason))

    def stop_backend(self, reason=""):
        self.calls.append(("stop_backend", reason))


class FakeChannel:
    def __init__(self, is_open=True):
        self.is_open = is_open

    def close(self):
        self.is_open = False


class FakeCommandHandler:
    """Scripted backend answers: a value, or an exception to raise."""

    def __init__(self, context, calls, answers=None, test_channel_open=False):
        self.context = context
        self.calls = calls
        self.answers = answers or {"is_shutdown": True, "stop_vm": True}
        self.test_channel = FakeChannel(test_channel_open)
        self.test_completed = True
        self.restored = 0

    def backend_request(self, cmd, arguments=None, timeout=None):
        self.calls.append(("backend", cmd))
        answer = self.answers.get(cmd)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def restore_signal_handlers(self):
        self.restored += 1


@pytest.fixture
def calls():
    return []


@pytest.fixture
def assets(calls):
    """Asset handler stub returning a configurable exit code."""

    class _Assets:
        result = 0

        def __call__(self, handler, clean_shutdown):
            calls.append(("assets", clean_shutdown))
            return self.result

    return _Assets()


@pytest.fixture
def build(context, calls, assets):
    def _build(**handler_kwargs):
        handler = FakeCommandHandler(context, calls, **handler_kwargs)
        seq = ShutdownSequencer(context, FakeSupervisor(calls), assets, command_handler=handler)
        return seq, handler

    return _build


class TestShutdown:
    def test_clean_run(self, build, calls, context):
        """A completed job stops the VM and lets the asset handler decide."""
        context.clear_exit_code()
        context.vars["FROM_TEST"] = "1"
        context.save()
        context.vars["FROM_TEST"] = "stale"
        seq, _ = build()
        assert seq.shutdown() == 0
        assert calls == [
            ("stop_commands", "test execution ended"),
            ("backend", "is_shutdown"),
            ("backend", "stop_vm"),
            ("assets", True),
        ]
        # vars reloaded from disk before the asset step
        assert context.vars["FROM_TEST"] == "1"
        assert seq.clean_shutdown is True

    def test_asset_handler_sets_exit_code(self, build, assets, context):
        context.clear_exit_code()
        assets.result = 1
        seq, _ = build()
        assert seq.shutdown() == 1

    def test_unusual_shutdown(self, build, calls, context):
        """An autotest channel still open at shutdown fails the job."""
        context.clear_exit_code()
        seq, handler = build(test_channel_open=True)
        assert seq.shutdown() == 1
        assert not handler.test_channel.is_open
        assert ("stop_autotest", "unusual shutdown") in calls
        assert not [c for c in calls if c[0] in ("backend", "assets")]

    def test_stop_vm_failure(self, build, calls, context):
        context.clear_exit_code()
        seq, _ = build(answers={"is_shutdown": True, "stop_vm": BackendError("qemu gone")})
        assert seq.shutdown() == 1
        assert context.failure_record["component"] == "backend"
        assert "qemu gone" in context.failure_record["msg"]
        assert not [c for c in calls if c[0] == "assets"]

    def test_unknown_shutdown_state(self, build, calls, context):
        context.clear_exit_code()
        seq, _ = build(answers={"is_shutdown": ChannelClosed("gone"), "stop_vm": True})
        seq.shutdown()
        assert seq.clean_shutdown is None
        assert ("assets", None) in calls

    def test_first_failure_wins(self, build, calls, context):
        """Once failed, the VM stop and asset steps are skipped."""
        context.clear_exit_code()
        context.serialize_state(component="backend", msg="backend died")
        context.fail()
        seq, _ = build()
        assert seq.shutdown() == 1
        assert calls == [("stop_commands", "test execution ended")]
        assert context.failure_record["msg"] == "backend died"

    def test_shutdown_is_idempotent(self, build, calls, context):
        context.clear_exit_code()
        seq, _ = build()
        seq.shutdown()
        count = len(calls)
        assert seq.shutdown() == 0
        assert len(calls) == count

    def test_clears_fatal_error_and_saves(self, build, context):
        context.clear_exit_code()
        context.fatal_error = "logged earlier"
        seq, _ = build()
        seq.shutdown()
        assert context.fatal_error is None
        assert context.vars_path.exists()


class TestFinalize:
    def test_reports_once(self, build, calls, context, capsys):
        seq, handler = build()
        context.clear_exit_code()
        assert seq.finalize() == 0
        assert seq.finalize() == 0
        out = capsys.readouterr().out
        assert out.count("EXIT 0") == 1
        assert calls.count(("stop_backend", "finalizing job")) == 2
        assert ("stop_commands", "test execution ended through exception") in calls
        assert handler.restored == 2

    def test_persists_fatal_error(self, build, context, capsys):
        seq, _ = build()
        context.record_fatal_error(RuntimeError("disk full"))
        seq.finalize()
        record = json.loads(context.state_path.read_text())
        assert record == {"component": "isotovideo", "msg": "disk full", "error": True}
        assert "EXIT 1" in capsys.readouterr().out


class TestGuardedJob:
    def test_exception_becomes_fatal_error(self, build, context, capsys):
        seq, _ = build()
        context.clear_exit_code()
        with guarded_job(seq):
            raise RuntimeError("boom")
        assert context.fatal_error == "boom"
        assert context.exit_code == 1
        assert context.failure_record["component"] == "isotovideo"
        assert "EXIT 1" in capsys.readouterr().out

    def test_interpreter_exit_is_reraised(self, build, context, capsys):
        seq, _ = build()
        with pytest.raises(KeyboardInterrupt):
            with guarded_job(seq):
                raise KeyboardInterrupt()
        assert context.failed
        assert "EXIT 1" in capsys.readouterr().out

    def test_normal_path_finalizes(self, build, context, capsys):
        seq, _ = build()
        with guarded_job(seq):
            context.clear_exit_code()
            seq.shutdown()
        assert context.exit_code == 0
        assert capsys.readouterr().out.strip().endswith("EXIT 0")
