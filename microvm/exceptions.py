"""Custom exceptions for microvm-runner."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    stage = "config"


class StageError(ManagerError):
    """Base class for failures tied to one pipeline stage."""

    stage = "unknown"

    def __init__(self, reason: str, cause: Optional[object] = None) -> None:
        self.reason = reason
        self.cause = cause
        message = reason if cause is None else f"{reason}: {cause}"
        super().__init__(message)


class HostEnvironmentError(StageError):
    """The host cannot run a hardware-virtualized guest."""

    stage = "prereqs"

    def __init__(self, reason: str, tool: Optional[str] = None, cause: Optional[object] = None) -> None:
        self.tool = tool
        super().__init__(reason, cause)


class BuildError(StageError):
    """Root filesystem assembly failed at ``step``."""

    stage = "build"

    def __init__(self, step: str, cause: Optional[object] = None) -> None:
        self.step = step
        super().__init__(step, cause)


class FetchError(StageError):
    stage = "kernel"


class NetworkError(StageError):
    stage = "network"


class LaunchError(StageError):
    """Guest launch failed; ``which`` names the missing artifact, if any."""

    stage = "run"

    def __init__(self, reason: str, which: Optional[str] = None, cause: Optional[object] = None) -> None:
        self.which = which
        super().__init__(reason, cause if cause is not None else which)


class RunLockedError(ManagerError):
    """Another invocation holds the host-wide run lock."""

    stage = "lock"
