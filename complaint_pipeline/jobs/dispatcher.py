"""Job dispatcher interface."""

from abc import ABC, abstractmethod


class JobDispatcher(ABC):
    """Hands persisted jobs over to background execution."""

    @abstractmethod
    async def submit(self, stage: str, job_id: str) -> None:
        """Enqueue a job that is already persisted as pending."""
        ...

    @abstractmethod
    def pending_count(self) -> int:
        """Number of jobs waiting for a worker."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
