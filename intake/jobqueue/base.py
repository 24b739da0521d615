from abc import ABC, abstractmethod
from typing import Any


class BaseJobQueue(ABC):
    """Contract for the remote queue that feeds the artifact processing worker."""

    @abstractmethod
    def enqueue(self, message: dict[str, Any], idempotency_key: str) -> None:
        """Publish ``message``; redeliveries sharing ``idempotency_key`` are one logical message.

        Raises:
            TransientIOError: if the queue cannot be reached or rejects the message.
        """
