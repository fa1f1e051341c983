"""Fatal errors raised while negotiating port forwarding."""

from typing import Optional


class PortForwardError(Exception):
    """Base class for errors that end a port forwarding run."""

    def __init__(self, message: str, fallback_command: Optional[str] = None):
        super().__init__(message)
        self.fallback_command = fallback_command


class PermissionDenied(PortForwardError):
    """The remote host refused to list its forwardable ports."""


class NoPortsAvailable(PortForwardError):
    """Discovery finished without finding a single port to forward."""


class PortForwardFailed(PortForwardError):
    """Forwarding failed in a way that cannot be retried automatically."""
