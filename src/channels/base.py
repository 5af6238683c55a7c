from __future__ import annotations

from abc import ABC, abstractmethod

from src.channels.types import OutboundMessage


class BaseChannel(ABC):
    """Abstract interface for outbound message transports."""

    @abstractmethod
    async def send_message(self, message: OutboundMessage) -> bool:
        """Send a message. Returns True if sent successfully.

        Implementations make a single attempt; retries belong to the caller.
        """
        ...
