"""Tests for the RunSupervisor state machine, in both run modes."""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from pathlib import Path

import pytest

from devloop.supervisor import (
    AlreadyRunningError,
    BuildRunCommand,
    LaunchError,
    RunMode,
    RunSupervisor,
    SupervisorError,
    SupervisorState,
    TriggerCause,
    WatchTarget,
)
from devloop.supervisor.process_utils import is_alive

MISSING_BINARY = BuildRunCommand("devloop-test-no-such-binary")


@pytest.fixture
def make_supervisor(sink, project):
    """Builds watch-capable supervisors and makes sure they are stopped afterwards."""
    created = []

    def _make(command, grace_period=2.0, interval=0.05, root=None, **kwargs):
        target = WatchTarget.create(root or project, interval, ())
        supervisor = RunSupervisor(command, sink, target, grace_period=grace_period, **kwargs)
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        supervisor.stop()


def markers(text: str):
    """Extracts the (kind, pid) pairs printed by the graceful test child."""
    return [(kind, int(pid)) for kind, pid in re.findall(r"^(BEGIN|END) (\d+)$", text, re.MULTILINE)]


def touch(project: Path, content: str) -> None:
    (project / "a.txt").write_text(content)


class TestRunOnce:
    def test_failing_command_output_and_status(self, sink, log_text, failing):
        supervisor = RunSupervisor(failing, sink)
        cycle = supervisor.start(RunMode.RUN_ONCE)

        assert cycle.exit_status == 3
        assert cycle.describe() == "failed, exit code 3"
        assert supervisor.state is SupervisorState.IDLE
        assert supervisor.last_cycle is cycle
        assert supervisor.cycle_count == 1

        text = log_text()
        assert text.index("building...") < text.index("error: something broke")
        assert "cycle #1 failed, exit code 3" in text

    def test_successful_command(self, sink, log_text, py_command):
        supervisor = RunSupervisor(py_command("print('hello from the child')"), sink)
        cycle = supervisor.start(RunMode.RUN_ONCE)
        assert cycle.succeeded
        assert log_text() == "hello from the child\n"

    def test_launch_failure_is_reported(self, sink, log_text):
        supervisor = RunSupervisor(MISSING_BINARY, sink)
        with pytest.raises(LaunchError):
            supervisor.start(RunMode.RUN_ONCE)
        assert supervisor.state is SupervisorState.IDLE
        assert supervisor.cycle_count == 0
        assert "Failed to launch" in log_text()

    def test_environment_and_cwd_are_passed(self, sink, log_text, py_command, project):
        script = """
        import os
        print(os.environ["DEVLOOP_TEST_VALUE"])
        print(os.path.basename(os.getcwd()))
        """
        command = py_command(script, cwd=project, env={"DEVLOOP_TEST_VALUE": "from-dotenv"})
        RunSupervisor(command, sink).start(RunMode.RUN_ONCE)
        assert log_text() == f"from-dotenv\n{project.name}\n"

    def test_change_requests_are_ignored(self, sink, py_command):
        supervisor = RunSupervisor(py_command("print('once')"), sink)
        supervisor.start(RunMode.RUN_ONCE)
        supervisor.request_cycle()
        assert supervisor.cycle_count == 1
        assert supervisor.state is SupervisorState.IDLE

    def test_stop_from_another_thread(self, sink, log_text, graceful, wait_for):
        supervisor = RunSupervisor(graceful(), sink, grace_period=2.0)
        result = {}
        runner = threading.Thread(target=lambda: result.setdefault("cycle", supervisor.start(RunMode.RUN_ONCE)))
        runner.start()
        assert wait_for(lambda: "BEGIN" in log_text())

        assert supervisor.stop() is False
        runner.join(5)
        assert not runner.is_alive()
        assert supervisor.state is SupervisorState.IDLE
        assert "END" in log_text()
        assert result["cycle"].terminated


class TestStop:
    def test_stop_when_idle_returns_immediately(self, sink, py_command):
        supervisor = RunSupervisor(py_command("pass"), sink)
        started = time.monotonic()
        assert supervisor.stop() is False
        assert time.monotonic() - started < 0.5

    def test_graceful_stop(self, make_supervisor, log_text, graceful, wait_for):
        supervisor = make_supervisor(graceful(delay=0.2))
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: "BEGIN" in log_text())

        started = time.monotonic()
        assert supervisor.stop() is False
        assert time.monotonic() - started < supervisor.grace_period + supervisor.stop_epsilon
        assert supervisor.state is SupervisorState.IDLE
        assert not supervisor.watching
        assert [kind for kind, _ in markers(log_text())] == ["BEGIN", "END"]

    def test_stubborn_child_is_killed(self, make_supervisor, log_text, stubborn, wait_for):
        supervisor = make_supervisor(stubborn, grace_period=0.5)
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: "READY" in log_text())
        pid = supervisor.current_cycle.pid

        assert supervisor.stop() is True
        assert supervisor.state is SupervisorState.IDLE
        assert not is_alive(pid)
        assert "SIGTERM and was killed" in log_text()


class TestWatchMode:
    def test_initial_cycle_runs_without_a_change(self, make_supervisor, log_text, graceful, wait_for):
        supervisor = make_supervisor(graceful())
        assert supervisor.start(RunMode.WATCH_AND_RESTART) is None
        assert wait_for(lambda: "BEGIN" in log_text())
        assert supervisor.cycle_count == 1
        assert supervisor.current_cycle.cause is TriggerCause.INITIAL
        assert supervisor.state is SupervisorState.RUNNING

    def test_change_restarts_the_child(self, make_supervisor, project, log_text, graceful, wait_for):
        supervisor = make_supervisor(graceful(delay=0.2))
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: "BEGIN" in log_text())

        touch(project, "version two, longer")
        assert wait_for(lambda: len(markers(log_text())) == 3)

        (begin1, pid1), (end1, end_pid), (begin2, pid2) = markers(log_text())
        assert (begin1, end1, begin2) == ("BEGIN", "END", "BEGIN")
        assert end_pid == pid1
        assert pid2 != pid1
        assert not is_alive(pid1)
        assert supervisor.current_cycle.cause is TriggerCause.CHANGE

    def test_cycles_never_overlap(self, make_supervisor, project, log_text, graceful, wait_for):
        supervisor = make_supervisor(graceful(delay=0.1))
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: supervisor.cycle_count == 1 and "BEGIN" in log_text())

        for n in range(2, 5):
            touch(project, "x" * (n * 10))
            assert wait_for(lambda: supervisor.cycle_count == n and log_text().count("BEGIN") == n)
        supervisor.stop()

        found = markers(log_text())
        assert [kind for kind, _ in found] == ["BEGIN", "END"] * 4
        for begin, end in zip(found[::2], found[1::2]):
            assert begin[1] == end[1]

    def test_triggers_while_draining_are_coalesced(self, make_supervisor, log_text, graceful, wait_for):
        supervisor = make_supervisor(graceful(delay=0.5))
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: "BEGIN" in log_text())

        supervisor.request_cycle()
        assert wait_for(lambda: supervisor.state is SupervisorState.DRAINING, interval=0.005)
        for _ in range(5):
            supervisor.request_cycle(TriggerCause.CHANGE)

        assert wait_for(lambda: supervisor.cycle_count == 2 and supervisor.state is SupervisorState.RUNNING)
        time.sleep(0.5)
        assert supervisor.cycle_count == 2
        assert supervisor.current_cycle.cause is TriggerCause.MANUAL

    def test_failed_cycle_keeps_watching(self, make_supervisor, project, log_text, failing, wait_for):
        supervisor = make_supervisor(failing)
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: "cycle #1 failed, exit code 3" in log_text())
        assert wait_for(lambda: supervisor.state is SupervisorState.IDLE)
        assert supervisor.watching

        touch(project, "version two, longer")
        assert wait_for(lambda: supervisor.last_cycle is not None and supervisor.last_cycle.index == 2)
        assert "cycle #2 failed, exit code 3" in log_text()
        assert supervisor.last_cycle.cause is TriggerCause.CHANGE

    def test_launch_failure_is_retried_on_change(self, make_supervisor, project, log_text, wait_for):
        supervisor = make_supervisor(MISSING_BINARY)
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: log_text().count("Failed to launch") == 1)
        assert supervisor.watching
        assert supervisor.cycle_count == 0

        touch(project, "version two, longer")
        assert wait_for(lambda: log_text().count("Failed to launch") == 2)
        assert supervisor.state is SupervisorState.IDLE

    def test_missing_root_is_fatal(self, make_supervisor, tmp_path, log_text, graceful):
        supervisor = make_supervisor(graceful(), root=tmp_path / "missing")
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert supervisor.wait(5)
        assert isinstance(supervisor.fatal_error, SupervisorError)
        assert supervisor.cycle_count == 0
        assert "Cannot read watch root" in log_text()

    def test_start_twice_is_rejected(self, make_supervisor, graceful):
        supervisor = make_supervisor(graceful())
        supervisor.start(RunMode.WATCH_AND_RESTART)
        with pytest.raises(AlreadyRunningError):
            supervisor.start(RunMode.WATCH_AND_RESTART)

    def test_watch_requires_a_target(self, sink, graceful):
        with pytest.raises(SupervisorError):
            RunSupervisor(graceful(), sink).start(RunMode.WATCH_AND_RESTART)

    def test_echo_output_to_console_logger(self, make_supervisor, log_text, py_command, wait_for, caplog):
        caplog.set_level(logging.INFO, logger="proc.app")
        supervisor = make_supervisor(py_command("print('echoed line')"), echo_output=True)
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: supervisor.last_cycle is not None)
        assert "echoed line" in log_text()
        assert any(r.name == "proc.app" and r.getMessage() == "echoed line" for r in caplog.records)

    @pytest.mark.skipif(os.name == "nt", reason="process groups are POSIX only")
    def test_orphan_holding_the_pipe_is_killed(self, make_supervisor, py_command, log_text, wait_for):
        script = """
        import subprocess, sys
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        print(f"ORPHAN {child.pid}", flush=True)
        """
        supervisor = make_supervisor(py_command(script), grace_period=0.5)
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: supervisor.last_cycle is not None)
        assert supervisor.last_cycle.succeeded

        orphan_pid = int(re.search(r"ORPHAN (\d+)", log_text()).group(1))
        assert wait_for(lambda: not is_alive(orphan_pid))

    @pytest.mark.skipif(os.name == "nt", reason="POSIX file descriptors only")
    def test_exit_after_closing_output_is_noticed_before_the_next_poll(self, make_supervisor, py_command, wait_for):
        script = """
        import os, time
        print("closing output", flush=True)
        os.close(1)
        os.close(2)
        time.sleep(0.1)
        os._exit(0)
        """
        supervisor = make_supervisor(py_command(script), interval=5.0)
        supervisor.start(RunMode.WATCH_AND_RESTART)
        assert wait_for(lambda: supervisor.last_cycle is not None, timeout=3)
        assert supervisor.last_cycle.succeeded
        assert supervisor.state is SupervisorState.IDLE
