class LogMonitorError(Exception):
    """Base class for every error raised by the log monitor core."""


class SourceUnavailable(LogMonitorError):
    """The source does not exist yet or has nothing to read."""


class SourceTruncated(LogMonitorError):
    """The source shrank or was replaced since the last poll."""


class PatternCompileError(LogMonitorError):
    def __init__(self, pattern, reason):
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason


class RemoteConnectError(LogMonitorError):
    """The remote log provider could not be reached or answered with an error."""


class RemoteAuthError(RemoteConnectError):
    """The remote log provider rejected our credentials."""


class InvalidStateTransition(LogMonitorError):
    def __init__(self, current, target):
        super().__init__(f"Cannot move log source from {current.name} to {target.name}")
        self.current = current
        self.target = target
