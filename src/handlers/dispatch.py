from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from src.channels.base import BaseChannel
from src.channels.types import OutboundMessage
from src.db.stores import LedgerAction
from src.email.templates import build_summary_email
from src.handlers.context import VotingContext
from src.handlers.errors import DeliveryError, InvalidInput, ItemNotFound, RenderError
from src.handlers.summary import build_voting_summary
from src.models.item import ItemType
from src.models.user import Recipient

logger = logging.getLogger(__name__)

TriggerSource = Literal["post_ballot", "sweep", "sweep_retry", "webhook", "manual", "fallback"]


class RecipientDelivery(BaseModel):
    user_id: UUID
    full_name: str
    voted: bool
    status: Literal["sent", "failed"]
    attempts: int
    error: str | None = None


class DispatchResult(BaseModel):
    item_id: UUID
    item_type: ItemType
    episode: int
    trigger: TriggerSource
    success: bool
    email_sent: bool = False
    duplicate: bool = False
    forced: bool = False
    skipped_reason: str | None = None
    sent_count: int = 0
    failed_count: int = 0
    deliveries: list[RecipientDelivery] = Field(default_factory=list)
    ledger_entry_id: int | None = None


def unique_recipients(recipients: Sequence[Recipient]) -> list[Recipient]:
    seen: set[UUID] = set()
    unique: list[Recipient] = []
    for recipient in recipients:
        if recipient.user_id in seen:
            continue
        seen.add(recipient.user_id)
        unique.append(recipient)
    return unique


async def deliver_with_retry(
    channel: BaseChannel,
    message: OutboundMessage,
    *,
    max_attempts: int,
    backoff_base_seconds: float,
) -> tuple[bool, int, str | None]:
    """Send one message, retrying with exponential backoff. Returns (ok, attempts, last_error)."""
    last_error: str | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            if await channel.send_message(message):
                return True, attempt, None
            last_error = "transport reported failure"
        except Exception as exc:
            last_error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "Delivery attempt %d/%d raised %s",
                attempt,
                max_attempts,
                type(exc).__name__,
                extra={"event_type": "dispatch.delivery.error"},
            )
        if attempt < max_attempts and backoff_base_seconds > 0:
            await asyncio.sleep(backoff_base_seconds * 2 ** (attempt - 1))
    return False, max_attempts, last_error


async def _append(
    context: VotingContext,
    action: LedgerAction,
    *,
    item_type: ItemType,
    item_id: UUID,
    episode: int,
    payload: dict[str, Any],
) -> int:
    entry = await context.ledger.append(
        action=action,
        item_type=item_type,
        item_id=item_id,
        episode=episode,
        payload=payload,
    )
    return entry.id


async def send_summary(
    context: VotingContext,
    item_type: ItemType,
    item_id: UUID,
    *,
    trigger: TriggerSource,
    force: bool = False,
    actor: str | None = None,
    require_completed: bool = False,
) -> DispatchResult:
    """Send the voting summary for one item to every board member and admin.

    Runs under the ledger's dispatch lock for the item, so the API and the sweep process
    never fan out the same episode concurrently. At most one SENT ledger entry exists per
    completion episode: a prior SENT makes this a no-op unless ``force`` is set. The entry
    is written after the fan-out, so a crash in between leaves no SENT and a later trigger
    sends again.

    Raises RenderError when statistics cannot be computed and DeliveryError when no
    recipient could be reached.
    """
    async with context.ledger.hold_dispatch(item_id):
        item = await context.store.get_item(item_id)
        if item is None or item.item_type != item_type:
            raise ItemNotFound(item_id)
        episode = item.completion_episode

        if require_completed and not item.is_terminal:
            return DispatchResult(
                item_id=item_id,
                item_type=item_type,
                episode=episode,
                trigger=trigger,
                success=False,
                skipped_reason="not_completed",
            )

        if force:
            logger.warning(
                "Forced summary dispatch for %s %s (episode %d) by %s",
                item_type,
                item_id,
                episode,
                actor or "unknown",
                extra={
                    "event_type": "dispatch.summary.forced",
                    "ops_payload": {"item_id": str(item_id), "episode": episode, "trigger": trigger},
                },
            )
        else:
            existing = await context.ledger.find_entry(item_id, "SENT", episode=episode)
            if existing is not None:
                logger.info(
                    "Summary for %s %s already sent (episode %d); skipping",
                    item_type,
                    item_id,
                    episode,
                    extra={
                        "event_type": "dispatch.summary.duplicate",
                        "ops_payload": {"item_id": str(item_id), "episode": episode, "trigger": trigger},
                    },
                )
                return DispatchResult(
                    item_id=item_id,
                    item_type=item_type,
                    episode=episode,
                    trigger=trigger,
                    success=True,
                    duplicate=True,
                    ledger_entry_id=existing.id,
                )

        recipients = unique_recipients(await context.eligibility.get_eligible_voters(item_type))
        ballots = await context.store.get_ballots(item_id)
        base_payload: dict[str, Any] = {"trigger": trigger, "forced": force, "actor": actor}

        try:
            summary = build_voting_summary(item, ballots, recipients)
            messages = []
            for recipient in recipients:
                rendered = build_summary_email(
                    summary,
                    recipient,
                    app_public_base_url=context.settings.app_public_base_url,
                )
                messages.append(
                    (
                        recipient,
                        OutboundMessage(
                            recipient_ref=str(recipient.email),
                            subject=rendered.subject,
                            text=rendered.text,
                            html=rendered.html,
                        ),
                    )
                )
        except InvalidInput as exc:
            logger.error(
                "Cannot render summary for %s %s: %s",
                item_type,
                item_id,
                exc,
                extra={"event_type": "dispatch.summary.render_failed", "ops_payload": {"item_id": str(item_id)}},
            )
            await _append(
                context,
                "FAILED",
                item_type=item_type,
                item_id=item_id,
                episode=episode,
                payload={**base_payload, "error": "render", "detail": str(exc)},
            )
            raise RenderError(str(exc)) from exc

        semaphore = asyncio.Semaphore(max(1, context.settings.delivery_max_concurrency))
        voter_ids = summary.voter_ids

        async def _deliver(recipient: Recipient, message: OutboundMessage) -> RecipientDelivery:
            async with semaphore:
                ok, attempts, error = await deliver_with_retry(
                    context.channel,
                    message,
                    max_attempts=context.settings.delivery_max_attempts,
                    backoff_base_seconds=context.settings.delivery_backoff_base_seconds,
                )
            return RecipientDelivery(
                user_id=recipient.user_id,
                full_name=recipient.full_name,
                voted=recipient.user_id in voter_ids,
                status="sent" if ok else "failed",
                attempts=attempts,
                error=error,
            )

        deliveries = list(await asyncio.gather(*(_deliver(r, m) for r, m in messages)))
        sent_count = sum(1 for d in deliveries if d.status == "sent")
        failed_count = len(deliveries) - sent_count
        action: LedgerAction = "SENT" if sent_count else "FAILED"

        entry_id = await _append(
            context,
            action,
            item_type=item_type,
            item_id=item_id,
            episode=episode,
            payload={
                **base_payload,
                "passed": summary.outcome.passed,
                "sent_count": sent_count,
                "failed_count": failed_count,
                "recipients": [d.model_dump(mode="json", exclude={"full_name"}) for d in deliveries],
            },
        )
        result = DispatchResult(
            item_id=item_id,
            item_type=item_type,
            episode=episode,
            trigger=trigger,
            success=sent_count > 0,
            email_sent=sent_count > 0,
            forced=force,
            sent_count=sent_count,
            failed_count=failed_count,
            deliveries=deliveries,
            ledger_entry_id=entry_id,
        )
        logger.info(
            "Summary for %s %s: %d sent, %d failed (episode %d, %s)",
            item_type,
            item_id,
            sent_count,
            failed_count,
            episode,
            trigger,
            extra={
                "event_type": f"dispatch.summary.{action.lower()}",
                "ops_payload": {
                    "item_id": str(item_id),
                    "episode": episode,
                    "trigger": trigger,
                    "sent_count": sent_count,
                    "failed_count": failed_count,
                },
            },
        )
        if not sent_count:
            raise DeliveryError(
                "no recipients configured" if not deliveries else "delivery failed for every recipient",
                result,
            )
        return result
