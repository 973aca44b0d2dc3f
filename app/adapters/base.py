"""Abstract base class for outbound email transports.

Swap Resend for another provider by implementing this interface.
"""

from abc import ABC, abstractmethod


class EmailDeliveryError(RuntimeError):
    """The transport could not hand the message to the provider."""


class EmailTransport(ABC):
    """Contract that any email provider must satisfy."""

    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> str:
        """Deliver one message and return the provider's message id.

        Raises :class:`EmailDeliveryError` on failure.
        """

    async def aclose(self) -> None:
        """Release any pooled connections."""
