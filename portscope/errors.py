"""Error taxonomy for port discovery.

Probes convert raw exceptions into these at the narrowest boundary (a single
fallback tier, a single container inspect, a single API call). Facets turn
whatever escapes into an error string on the collection result.
"""


class PortscopeError(Exception):
    """Base class for collector errors."""


class ExternalToolFailure(PortscopeError):
    """An external command exited non-zero, timed out or is missing."""

    def __init__(self, tool: str, reason: str):
        self.tool = tool
        self.reason = reason
        super().__init__(f"{tool} failed: {reason}")


class ConnectionFailure(PortscopeError):
    """The container runtime or management API could not be reached."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot reach {target}: {reason}")


class ParseFailure(PortscopeError):
    """A single row of probe output had an unexpected shape."""

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line[:80]!r}")


class TimeoutFailure(PortscopeError):
    """An optional facet did not finish within its deadline."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timeout after {timeout:g}s")


class InvalidPortRecord(PortscopeError, ValueError):
    """A raw record cannot be normalized (for example, port out of range)."""
