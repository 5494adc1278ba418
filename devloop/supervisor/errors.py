"""Exceptions raised by the supervisor package."""


class SupervisorError(Exception):
    """Base class for all supervisor errors."""


class WatchRootError(SupervisorError):
    """The watched root directory cannot be read at all."""

    def __init__(self, root, reason: Exception):
        self.root = root
        self.reason = reason
        super().__init__(f"Cannot read watch root '{root}': {reason}")


class LaunchError(SupervisorError):
    """The build-and-run command could not be started."""

    def __init__(self, command, reason: Exception):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to launch '{command}': {reason}")


class AlreadyRunningError(SupervisorError):
    """A supervisor (or its background process) is already running."""
