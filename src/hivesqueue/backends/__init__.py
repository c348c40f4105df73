"""Job backend implementations."""

from hivesqueue.backends.base import JobBackend
from hivesqueue.backends.slurm import DecodeError, SlurmBackend

__all__ = ["DecodeError", "JobBackend", "SlurmBackend"]
