"""Abstract base class for job backends."""

from abc import ABC, abstractmethod
from typing import Any


class JobBackend(ABC):
    """Abstract base class for job status backends (Slurm, ...)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the backend name."""
        ...

    @abstractmethod
    async def get_jobs(self) -> list[Any]:
        """
        Fetch the current jobs from the backend.

        Returns:
            List of job objects (type depends on backend), in display order.
        """
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if the backend is available and responding."""
        ...
