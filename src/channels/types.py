from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class OutboundMessage(BaseModel):
    """Message to send to a user."""

    recipient_ref: str
    subject: str
    text: str
    html: str | None = None
    platform: Literal["email"] = "email"
