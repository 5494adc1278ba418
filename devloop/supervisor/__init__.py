"""
The Supervisor package.
Watches the project tree and manages the lifecycle of the build-and-run process.

This package contains the central RunSupervisor class and its helper modules,
which together handle change detection, launching and stopping the child
process, and appending its output to the log sink.
"""
from .errors import AlreadyRunningError, LaunchError, SupervisorError, WatchRootError
from .models import BuildRunCommand, Cycle, RunMode, SupervisorState, TriggerCause, WatchTarget
from .detector import ChangeDetector
from .sink import LogSink
from .supervisor import RunSupervisor
from .background import BackgroundHandle, launch_in_background

__all__ = [
    'RunSupervisor', 'ChangeDetector', 'LogSink', 'BackgroundHandle', 'launch_in_background',
    'BuildRunCommand', 'Cycle', 'RunMode', 'SupervisorState', 'TriggerCause', 'WatchTarget',
    'SupervisorError', 'WatchRootError', 'LaunchError', 'AlreadyRunningError',
]
