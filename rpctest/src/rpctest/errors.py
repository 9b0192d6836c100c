"""
Harness exceptions.
"""

from __future__ import annotations


class HarnessError(Exception):
    pass


class ExecutableNotFoundError(HarnessError):
    pass


class StartupTimeoutError(HarnessError):
    """The node's RPC endpoint did not become reachable in time."""

    def __init__(self, name: str, timeout: float):
        super().__init__(f"Node {name} RPC not reachable after {timeout:.1f}s")
        self.name = name
        self.timeout = timeout


class NodeCrashedError(HarnessError):
    """The node process exited or stopped answering while it should be running."""

    def __init__(self, name: str, exit_code: int | None, stderr_tail: str = ""):
        message = f"Node {name} crashed (exit code {exit_code})"
        if stderr_tail:
            message += f": {stderr_tail}"
        super().__init__(message)
        self.name = name
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class InvalidNodeStateError(HarnessError):
    pass


class TimedOutError(HarnessError):
    """A sync point was not reached before its timeout."""

    def __init__(self, description: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {description}")
        self.description = description
        self.timeout = timeout
