from src.channels.base import BaseChannel
from src.channels.email import EmailChannel
from src.channels.types import OutboundMessage

__all__ = ["BaseChannel", "OutboundMessage", "EmailChannel"]
