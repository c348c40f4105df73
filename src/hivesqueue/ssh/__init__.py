"""Remote command execution over the system ssh client."""

from hivesqueue.ssh.client import (
    CommandFailedError,
    LaunchFailedError,
    SSHClient,
    SSHError,
    TransportUnavailableError,
)

__all__ = [
    "CommandFailedError",
    "LaunchFailedError",
    "SSHClient",
    "SSHError",
    "TransportUnavailableError",
]
