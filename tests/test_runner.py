"""End-to-end job scenarios with real child processes and a fake HTTP client."""

import json
import os
import signal
from pathlib import Path

import pytest

from autoinst.configuration.job_context import JobContext
from autoinst.main import runner as runner_module
from autoinst.main.runner import Runner, default_entry_points, run_job
from autoinst.processes.managed_process import ProcessState, Role
from autoinst.processes.supervisor import ProcessSupervisor


def _idle_command_server(channel, port, token):
    while channel.receive() is not None:
        pass


def _one_module_autotest(channel, job_vars, workdir):
    channel.send({"cmd": "set_current_test", "name": "boot", "full_name": "tests.boot"})
    channel.receive()
    channel.send({"cmd": "tests_done", "died": False, "completed": True})
    while channel.receive() is not None:
        pass


def _never_finishing_autotest(channel, job_vars, workdir):
    while channel.receive() is not None:
        pass


def _signalling_autotest(channel, job_vars, workdir):
    # the reply proves the orchestrator loop (and its signal handler) is up
    channel.send({"cmd": "status"})
    channel.receive()
    os.kill(os.getppid(), signal.SIGTERM)
    while channel.receive() is not None:
        pass


def _recording_backend(channel, job_vars, workdir):
    log = Path(workdir) / "backend_commands.txt"
    while True:
        message = channel.receive()
        if message is None:
            return
        with open(log, "a", encoding="utf-8") as fh:
            fh.write(message["cmd"] + "\n")
        channel.send({"rsp": True})


def _dying_backend(channel, job_vars, workdir):
    channel.close()


@pytest.fixture
def job(tmp_path, fork_ctx, http_client, monkeypatch):
    """Build a job on port 9000 (command server on 9001) with test entry points."""
    monkeypatch.setattr(runner_module, "shutdown_logging", lambda: None)
    exits = []

    def _job(autotest, backend, **kwargs):
        context = JobContext(tmp_path, {"QEMUPORT": 9000, "JOBTOKEN": "tok123", "LOG_TO_CONSOLE": False})
        entry_points = {
            Role.COMMAND_SERVER: _idle_command_server,
            Role.AUTOTEST: autotest,
            Role.BACKEND: backend,
        }
        kwargs = dict(
            entry_points=entry_points,
            ctx=fork_ctx,
            stop_timeout=2.0,
            http_client=http_client,
            exit_func=exits.append,
            **kwargs,
        )
        return context, kwargs

    _job.exits = exits
    return _job


class TestScenarios:
    def test_tests_done_clean_exit(self, job, http_client, capsys):
        """One module, tests_done, clean shutdown: exit code 0."""
        context, kwargs = job(_one_module_autotest, _recording_backend)
        assert run_job(context, **kwargs) == 0
        assert http_client.posts[0]["url"] == "http://127.0.0.1:9001/tok123/broadcast"
        assert http_client.posts[0]["json"] == {"stopping_test_execution": "test execution ended"}
        assert len(http_client.posts) == 1
        commands = (context.workdir / "backend_commands.txt").read_text().split()
        assert commands[:2] == ["is_shutdown", "stop_vm"]
        assert capsys.readouterr().out.strip().endswith("EXIT 0")
        assert context.vars_path.exists()

    def test_backend_dies_mid_run(self, job):
        """Backend EOF/exit ends the loop and fails the job with a backend record."""
        context, kwargs = job(_never_finishing_autotest, _dying_backend)
        runner = Runner(context, **kwargs)
        runner.prepare()
        runner.start_server()
        runner.start_autotest()
        runner.create_backend()
        runner.handle_commands()
        collected = []
        runner.command_handler.on("collected", collected.append)
        try:
            runner.run()
            assert runner.handle_shutdown() == 1
        finally:
            runner.shutdown_sequencer.finalize()
        assert context.exit_code == 1
        assert context.failure_record["component"] == "backend"
        assert json.loads(context.state_path.read_text())["component"] == "backend"
        assert runner.supervisor.autotest.state is ProcessState.STOPPED
        assert [proc.role for proc in collected] == [Role.BACKEND]

    def test_signal_aborts_job(self, job, http_client, monkeypatch):
        """Backend, command server, autotest are stopped in that order; no assets are handled."""
        stops = []
        for method, label in (
            ("stop_backend", "backend"),
            ("stop_commands", "command_server"),
            ("stop_autotest", "autotest"),
        ):
            original = getattr(ProcessSupervisor, method)

            def recording(self, reason="", _original=original, _label=label):
                stops.append((_label, reason))
                return _original(self, reason)

            monkeypatch.setattr(ProcessSupervisor, method, recording)
        handled_assets = []

        def asset_handler(command_handler, clean_shutdown):
            handled_assets.append(clean_shutdown)
            return 0

        context, kwargs = job(_signalling_autotest, _recording_backend, asset_handler=asset_handler)
        assert run_job(context, **kwargs) == 1
        assert stops[:3] == [
            ("backend", "received signal SIGTERM"),
            ("command_server", "received signal SIGTERM"),
            ("autotest", "received signal SIGTERM"),
        ]
        assert handled_assets == []
        assert job.exits == [1]
        assert context.failure_record == {"component": "isotovideo", "msg": "received signal SIGTERM"}
        assert http_client.posts[0]["json"] == {"stopping_test_execution": "received signal SIGTERM"}

    def test_initializers_run_before_spawn(self, job):
        seen = []
        context, kwargs = job(_one_module_autotest, _recording_backend, initializers=[lambda ctx: seen.append(ctx)])
        run_job(context, **kwargs)
        assert seen == [context]

    def test_error_before_loop_is_fatal(self, job, capsys):
        context, kwargs = job(_one_module_autotest, _recording_backend)
        context.vars["QEMUPORT"] = "not-a-port"
        assert run_job(context, **kwargs) == 1
        assert "QEMUPORT" in context.failure_record["msg"]
        assert "EXIT 1" in capsys.readouterr().out

    def test_run_requires_handler(self, job):
        context, kwargs = job(_one_module_autotest, _recording_backend)
        with pytest.raises(RuntimeError):
            Runner(context, **kwargs).run()


def test_default_entry_points():
    entry_points = default_entry_points()
    assert set(entry_points) == set(Role)
    assert all(callable(ep) for ep in entry_points.values())
