from __future__ import annotations


class RestarterError(RuntimeError):
    """Base class for failures raised while checking or restarting pods."""


class ProtocolError(RestarterError):
    """Raised when an auth challenge or token response is malformed."""


class RegistryError(RestarterError):
    """Raised when a registry answers with a non-200 status or no digest header."""

    def __init__(self, message: str, *, status: int | None = None, url: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.url = url


class TransportError(RestarterError):
    """Raised when a registry or token endpoint cannot be reached."""

    def __init__(self, message: str, *, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class OrchestratorError(RestarterError):
    """Raised when listing, reading, or deleting a cluster resource fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SelectorError(ValueError):
    """Raised when a workload selector cannot be rendered as a label selector."""
