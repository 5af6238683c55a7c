from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


async def send_email(
    *,
    to: str,
    subject: str,
    text: str,
    html: str | None = None,
    resend_api_key: str | None,
    email_from: str,
    http_timeout_seconds: float,
) -> bool:
    """Send one email through Resend.

    Returns True if sent successfully (or logged in dev mode), False on failure.
    """
    if not resend_api_key:
        logger.info(
            "Email to %s: %s (email sending disabled, no RESEND_API_KEY)\n%s",
            to,
            subject,
            text,
        )
        return True

    payload: dict[str, object] = {
        "from": email_from,
        "to": [to],
        "subject": subject,
        "text": text,
    }
    if html is not None:
        payload["html"] = html

    try:
        async with httpx.AsyncClient(timeout=http_timeout_seconds) as client:
            response = await client.post(
                RESEND_API_URL,
                json=payload,
                headers={
                    "Authorization": f"Bearer {resend_api_key}",
                    "Content-Type": "application/json",
                },
            )
        if response.status_code >= 400:
            logger.error("Resend API error %d: %s", response.status_code, response.text)
            return False
        logger.info("Email sent to %s (Resend ID: %s)", to, response.json().get("id", "unknown"))
        return True
    except httpx.HTTPError:
        logger.exception("Failed to send email to %s", to)
        return False
