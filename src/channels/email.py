from __future__ import annotations

from src.channels.base import BaseChannel
from src.channels.types import OutboundMessage
from src.config import Settings, get_settings
from src.email.sender import send_email


class EmailChannel(BaseChannel):
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def send_message(self, message: OutboundMessage) -> bool:
        return await send_email(
            to=message.recipient_ref,
            subject=message.subject,
            html=message.html,
            text=message.text,
            resend_api_key=self._settings.resend_api_key,
            email_from=self._settings.email_from,
            http_timeout_seconds=self._settings.email_http_timeout_seconds,
        )
