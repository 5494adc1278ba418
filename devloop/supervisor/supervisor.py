import os
import time
import signal
import psutil
import logging
import threading
import subprocess
from typing import Optional

from devloop.supervisor import process_utils, shutdown
from devloop.supervisor.detector import ChangeDetector
from devloop.supervisor.errors import AlreadyRunningError, LaunchError, SupervisorError, WatchRootError
from devloop.supervisor.models import BuildRunCommand, Cycle, RunMode, SupervisorState, TriggerCause, WatchTarget
from devloop.supervisor.sink import LogSink

log = logging.getLogger(__name__)

EXIT_AFTER_EOF_TIMEOUT = 0.5  # seconds to wait for the child to exit once its output closed


class RunSupervisor:
    """
    Turns change signals into build-and-run cycles, keeping at most one child
    process alive and every byte of its output in the log sink.

    A single coordinator thread drives the state machine in watch mode:
    Idle -> Running on a trigger, Running -> Draining when the child exits or a
    new trigger arrives (the child is terminated first), Draining -> Idle once
    the output is flushed, or straight back to Running if a trigger is pending.
    Pending triggers share one slot, so a burst of changes yields one cycle.
    """

    def __init__(
        self,
        command: BuildRunCommand,
        sink: LogSink,
        target: Optional[WatchTarget] = None,
        grace_period: float = 5.0,
        stop_epsilon: float = 1.0,
        process_name: str = "app",
        echo_output: bool = False,
    ) -> None:
        """
        :param command: The build-and-run command executed by every cycle.
        :param sink: An opened LogSink receiving all child output.
        :param target: What to watch. Only required for watch mode.
        :param grace_period: Seconds a child gets between SIGTERM and SIGKILL.
        :param stop_epsilon: Extra seconds `stop()` waits on top of the grace period.
        :param process_name: Logical child name used for echoed output ('proc.<name>').
        :param echo_output: Also echo child output to the console logger.
        """
        self.command = command
        self.sink = sink
        self.target = target
        self.detector = ChangeDetector(target) if target is not None else None
        self.grace_period = grace_period
        self.stop_epsilon = stop_epsilon
        self.process_name = process_name
        self.echo_output = echo_output
        self.fatal_error: Optional[Exception] = None

        self._lock = threading.RLock()
        self._state = SupervisorState.IDLE
        self._mode: Optional[RunMode] = None
        self._current: Optional[Cycle] = None
        self._last: Optional[Cycle] = None
        self._pending: Optional[TriggerCause] = None
        self._cycle_count = 0
        self._thread: Optional[threading.Thread] = None
        self._stop_forced = False

        self._wakeup = threading.Event()
        self._stop_requested = threading.Event()
        self._idle = threading.Event()
        self._idle.set()

    #* --- Introspection ---
    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def cycle_count(self) -> int:
        """Number of cycles whose child process was launched."""
        return self._cycle_count

    @property
    def current_cycle(self) -> Optional[Cycle]:
        return self._current

    @property
    def last_cycle(self) -> Optional[Cycle]:
        """The most recently finished cycle."""
        return self._last

    @property
    def watching(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _set_state(self, new_state: SupervisorState) -> None:
        with self._lock:
            if self._state is not new_state:
                log.debug(f"Supervisor state {self._state.value} -> {new_state.value}")
            self._state = new_state
            if new_state is SupervisorState.IDLE:
                self._idle.set()
            else:
                self._idle.clear()

    #* --- Control surface ---
    def start(self, mode: RunMode) -> Optional[Cycle]:
        """
        Starts the supervisor.

        RUN_ONCE executes a single cycle in the calling thread and returns it once
        finished. WATCH_AND_RESTART launches the coordinator thread and returns
        None immediately; use `wait()` to block and `stop()` to shut it down.

        :raises AlreadyRunningError: If the supervisor is already active.
        :raises LaunchError: In RUN_ONCE mode, if the command cannot be started.
        """
        with self._lock:
            if self.watching or self._current is not None:
                raise AlreadyRunningError("The supervisor is already running.")
            if mode is RunMode.WATCH_AND_RESTART and self.detector is None:
                raise SupervisorError("Watch mode requires a WatchTarget.")
            self._mode = mode
            self._pending = None
            self._stop_forced = False
            self.fatal_error = None
            self._stop_requested.clear()
            self._wakeup.clear()

            if mode is RunMode.WATCH_AND_RESTART:
                self._thread = threading.Thread(
                    target=self._watch_loop, name="RunSupervisorThread", daemon=True
                )
                self._thread.start()
                return None

        return self._run_once()

    def request_cycle(self, cause: TriggerCause = TriggerCause.MANUAL) -> None:
        """
        Asks for a new cycle. Thread-safe; a running child is restarted, and
        requests arriving before the next cycle starts collapse into one.
        """
        with self._lock:
            if self._mode is RunMode.RUN_ONCE:
                log.debug(f"Ignoring {cause.value} trigger in run-once mode.")
                return
            if self._pending is not None:
                log.debug(f"Coalescing {cause.value} trigger into pending {self._pending.value} trigger.")
            else:
                self._pending = cause
        self._wakeup.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Blocks until the watch coordinator has stopped.

        :return: True if the supervisor is no longer watching.
        """
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.watching

    def stop(self) -> bool:
        """
        Requests a graceful shutdown and terminates the active child, if any.

        Returns once the supervisor is Idle, or after the grace period plus a
        small epsilon.

        :return: True if a forced kill was required (degraded stop), else False.
        """
        with self._lock:
            thread = self._thread
            cycle = self._current
            watching = self.watching
            if not watching and cycle is None:
                return False
            self._stop_requested.set()
        self._wakeup.set()

        budget = self.grace_period + self.stop_epsilon
        log.info("Stopping supervisor...")

        if watching:
            if thread is threading.current_thread():
                raise SupervisorError("stop() cannot be called from the supervisor thread.")
            thread.join(budget)
            if thread.is_alive():
                log.error(f"Supervisor did not reach idle within {budget:.1f}s. Killing the active process.")
                self._kill_current()
                return True
            return self._stop_forced

        # A RUN_ONCE cycle running in another thread; that thread drains it.
        cycle.terminated = True
        forced = shutdown.terminate_child(cycle.process, self.grace_period)
        if forced:
            self.sink.write_note(f"cycle #{cycle.index} ignored SIGTERM and was killed")
        if not self._idle.wait(self.stop_epsilon):
            log.error(f"Cycle #{cycle.index} output was not drained within {self.stop_epsilon:.1f}s.")
            return True
        return forced

    #* --- Cycle lifecycle ---
    def _launch_cycle(self, cause: TriggerCause) -> Cycle:
        """Idle/Draining -> Running. Raises LaunchError after noting it in the sink."""
        index = self._cycle_count + 1
        cycle = Cycle(index, cause)
        try:
            process = process_utils.launch_process(
                self.command, new_session=self._mode is RunMode.WATCH_AND_RESTART
            )
        except LaunchError as e:
            self.sink.write_note(f"cycle #{index} ({cause.value}): {e}")
            raise

        with self._lock:
            self._cycle_count = index
            cycle.process = process
            self._current = cycle
            self._set_state(SupervisorState.RUNNING)
        self.sink.begin_cycle(index)
        cycle.reader = process_utils.stream_output(
            process, self.sink, index, self.process_name, self.echo_output,
            on_eof=lambda: self._output_closed(cycle),
        )
        log.info(f"Cycle #{index} started ({cause.value}), PID {process.pid}.")
        return cycle

    def _finish_cycle(self, cycle: Cycle) -> None:
        """
        Running/Draining -> Draining -> Idle: reaps the child and flushes its output.

        Stays in Draining when a trigger is pending so the caller can start the
        next cycle straight away.
        """
        with self._lock:
            if cycle.finished:
                return
            cycle.finished = True
        self._set_state(SupervisorState.DRAINING)

        exit_status = cycle.process.wait()
        if cycle.reader is not None:
            cycle.reader.join(self.grace_period)
            if cycle.reader.is_alive():
                log.warning(f"Cycle #{cycle.index} exited but its output pipe is still open. Killing leftover processes.")
                self._kill_process_group(cycle)
                cycle.reader.join(self.stop_epsilon)
                if cycle.reader.is_alive():
                    self.sink.write_note(f"cycle #{cycle.index}: output after exit was discarded")
        self.sink.end_cycle(cycle.index)

        cycle.exit_status = exit_status
        cycle.end_time = time.time()
        if cycle.succeeded or cycle.terminated:
            log.info(f"Cycle #{cycle.index} {cycle.describe()} after {cycle.duration:.1f}s.")
        else:
            log.warning(f"Cycle #{cycle.index} {cycle.describe()} after {cycle.duration:.1f}s.")
            self.sink.write_note(f"cycle #{cycle.index} {cycle.describe()}")

        with self._lock:
            self._last = cycle
            if self._current is cycle:
                self._current = None
            if self._pending is None or self._stop_requested.is_set():
                self._set_state(SupervisorState.IDLE)

    def _terminate_cycle(self, cycle: Cycle, reason: str) -> bool:
        """Running -> Draining: graceful terminate, then forced kill after the grace period."""
        self._set_state(SupervisorState.DRAINING)
        cycle.terminated = True
        log.info(f"Stopping cycle #{cycle.index} (PID {cycle.pid}): {reason}.")
        forced = shutdown.terminate_child(cycle.process, self.grace_period)
        if forced:
            self.sink.write_note(
                f"cycle #{cycle.index} did not exit within {self.grace_period:g}s of SIGTERM and was killed"
            )
        self._finish_cycle(cycle)
        return forced

    def _kill_current(self) -> None:
        cycle = self._current
        if cycle is None or cycle.process.poll() is not None:
            return
        for proc in process_utils.get_descendants(cycle.pid):
            try:
                proc.kill()
            except psutil.Error as e:
                log.debug(f"Could not kill descendant {proc.pid}: {e}")
        cycle.process.kill()
        self.sink.write_note(f"cycle #{cycle.index} was killed because the supervisor could not stop in time")

    def _kill_process_group(self, cycle: Cycle) -> None:
        # Watch-mode children lead their own session, so orphans share the pgid.
        if os.name == "nt" or self._mode is not RunMode.WATCH_AND_RESTART:
            shutdown.terminate_child(cycle.process, self.grace_period)
            return
        try:
            os.killpg(cycle.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            log.debug(f"Process group {cycle.pid} could not be killed: {e}")

    #* --- RUN_ONCE ---
    def _run_once(self) -> Cycle:
        cycle = self._launch_cycle(TriggerCause.INITIAL)
        try:
            cycle.process.wait()
        finally:
            # Reached early only on interruption (e.g. KeyboardInterrupt).
            if cycle.process.poll() is None:
                self._stop_forced = self._terminate_cycle(cycle, "interrupted")
            self._finish_cycle(cycle)
            with self._lock:
                self._pending = None
                self._set_state(SupervisorState.IDLE)
        return cycle

    #* --- WATCH_AND_RESTART ---
    def _start_cycle_safely(self, cause: TriggerCause) -> None:
        try:
            self._launch_cycle(cause)
        except LaunchError as e:
            log.error(f"{e}. Will retry on the next change.")
            self._set_state(SupervisorState.IDLE)

    def _output_closed(self, cycle: Cycle) -> None:
        cycle.eof_time = time.monotonic()
        self._wakeup.set()

    def _reap(self) -> None:
        """Notices a child that exited on its own."""
        cycle = self._current
        if cycle is None:
            return
        if cycle.process.poll() is None and cycle.eof_time is not None:
            # The pipe usually closes a moment before the child becomes waitable.
            remaining = cycle.eof_time + EXIT_AFTER_EOF_TIMEOUT - time.monotonic()
            if remaining > 0:
                try:
                    cycle.process.wait(remaining)
                except subprocess.TimeoutExpired:
                    log.debug(f"Cycle #{cycle.index} closed its output but is still running.")
        if cycle.process.poll() is not None:
            self._finish_cycle(cycle)

    def _service_pending(self) -> None:
        """Starts the next cycle for a pending trigger, restarting the running one first."""
        with self._lock:
            if self._pending is None:
                return
            cycle = self._current
        if cycle is not None:
            self._terminate_cycle(cycle, "change detected")

        # Triggers that arrived while draining were folded into this one slot.
        with self._lock:
            cause, self._pending = self._pending, None
        if cause is None or self._stop_requested.is_set():
            self._set_state(SupervisorState.IDLE)
            return
        self._start_cycle_safely(cause)

    def _watch_loop(self) -> None:
        """Coordinator thread body for watch mode."""
        target = self.target
        log.info(
            f"Watching {target.root} every {target.interval:g}s "
            f"(grace period {self.grace_period:g}s). Command: {self.command}"
        )
        try:
            self.detector.reset()
            self.detector.poll()
            # The initial cycle is unconditional, not derived from the detector.
            self._start_cycle_safely(TriggerCause.INITIAL)

            while True:
                self._wakeup.clear()
                if self._stop_requested.is_set():
                    break
                self._reap()
                self._service_pending()
                if self._stop_requested.is_set():
                    break
                if self.detector.poll(self._wakeup):
                    log.info(f"Change detected under {target.root}.")
                    self.request_cycle(TriggerCause.CHANGE)
        except WatchRootError as e:
            log.critical(f"{e}. Stopping the watcher.")
            self.sink.write_note(str(e))
            self.fatal_error = e
        except Exception as e:
            log.critical(f"Critical error in supervisor loop: {e}", exc_info=True)
            self.sink.write_note(f"supervisor error: {e}")
            self.fatal_error = e
        finally:
            self._shutdown_current()
            log.info("Supervisor loop stopped.")

    def _shutdown_current(self) -> None:
        cycle = self._current
        if cycle is not None:
            if cycle.process.poll() is None:
                if self._terminate_cycle(cycle, "supervisor stopping"):
                    self._stop_forced = True
            else:
                self._finish_cycle(cycle)
        with self._lock:
            self._pending = None
        self._set_state(SupervisorState.IDLE)
