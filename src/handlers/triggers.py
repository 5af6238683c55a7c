"""Entry points that funnel every completion trigger through one path.

The post-ballot hook, the deadline sweep, the webhook and the admin routes all call
``process_completion`` (or ``send_summary`` directly for the manual override). They
coordinate through the conditional terminal write and through the ledger, whose
per-item dispatch lock guards the SENT check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

from pydantic import BaseModel

from src.handlers.completion import CompletionStatus, check_completion
from src.handlers.context import VotingContext
from src.handlers.dispatch import DispatchResult, TriggerSource, send_summary
from src.handlers.errors import DeliveryError, InvalidTransition, ItemNotFound, RenderError
from src.models.item import TERMINAL_STATUSES, ItemType

logger = logging.getLogger(__name__)

MANUAL_TRIGGER_STATUSES = TERMINAL_STATUSES | {"voting"}


class TriggerResult(BaseModel):
    item_id: UUID
    item_type: ItemType
    source: TriggerSource
    completion: CompletionStatus
    dispatch: DispatchResult | None = None
    error: str | None = None

    @property
    def email_sent(self) -> bool:
        return self.dispatch is not None and self.dispatch.email_sent


@dataclass(slots=True)
class SweepReport:
    examined: int = 0
    newly_completed: int = 0
    notified: int = 0
    retried: int = 0
    errors: list[str] = field(default_factory=list)


async def _discard_failed_transaction(context: VotingContext) -> None:
    """Roll back the shared session after a failed call."""
    try:
        await context.store.reset()
    except Exception:
        logger.exception(
            "Could not reset the voting session",
            extra={"event_type": "triggers.session.reset_failed"},
        )


async def process_completion(
    context: VotingContext,
    item_type: ItemType,
    item_id: UUID,
    *,
    source: TriggerSource,
    now: datetime | None = None,
    close_early: bool = False,
) -> TriggerResult:
    """Detect completion and, once complete, dispatch the summary.

    Delivery and render failures are recorded on the result; store errors propagate.
    """
    status = await check_completion(context.store, item_id, now=now, close_early=close_early)
    if status.item_type != item_type:
        raise ItemNotFound(item_id)
    result = TriggerResult(item_id=item_id, item_type=item_type, source=source, completion=status)
    if not status.is_complete:
        return result

    if status.applied:
        await context.ledger.append(
            action="TRIGGERED",
            item_type=item_type,
            item_id=item_id,
            episode=status.episode,
            payload={
                "source": source,
                "reason": status.reason,
                "status": status.status,
                "passed": status.outcome.passed if status.outcome else None,
            },
        )

    try:
        result.dispatch = await send_summary(context, item_type, item_id, trigger=source)
    except DeliveryError as exc:
        result.dispatch = exc.result
        result.error = str(exc)
        logger.error(
            "Summary delivery failed for %s %s: %s",
            item_type,
            item_id,
            exc,
            extra={"event_type": "triggers.dispatch.failed", "ops_payload": {"item_id": str(item_id), "source": source}},
        )
    except RenderError as exc:
        result.error = f"render failed: {exc}"
    return result


async def post_ballot_hook(
    context: VotingContext,
    item_type: ItemType,
    item_id: UUID,
) -> TriggerResult | None:
    """Best-effort completion check after a ballot commits. Never raises."""
    try:
        return await process_completion(context, item_type, item_id, source="post_ballot")
    except Exception:
        logger.exception(
            "Completion check failed after ballot on %s %s; trying direct dispatch",
            item_type,
            item_id,
            extra={"event_type": "triggers.post_ballot.failed", "ops_payload": {"item_id": str(item_id)}},
        )
        await _discard_failed_transaction(context)

    try:
        await send_summary(context, item_type, item_id, trigger="fallback", require_completed=True)
    except Exception:
        logger.exception(
            "Fallback dispatch failed for %s %s; the deadline sweep will retry",
            item_type,
            item_id,
            extra={"event_type": "triggers.fallback.failed", "ops_payload": {"item_id": str(item_id)}},
        )
    return None


async def _retry_unsent(
    context: VotingContext,
    report: SweepReport,
    *,
    now: datetime,
    skip: set[UUID],
) -> None:
    settings = context.settings
    since = now - timedelta(hours=settings.notification_retry_window_hours)
    for item in await context.store.list_completed_since(since):
        if item.id in skip or not item.is_terminal:
            continue
        try:
            if await context.ledger.find_entry(item.id, "SENT", episode=item.completion_episode):
                continue
            failures = await context.ledger.count_entries(item.id, "FAILED", episode=item.completion_episode)
            if failures >= settings.max_dispatch_attempts_per_episode:
                logger.warning(
                    "Giving up on summary for %s after %d failed dispatches",
                    item.id,
                    failures,
                    extra={"event_type": "triggers.sweep.retry_exhausted", "ops_payload": {"item_id": str(item.id)}},
                )
                continue
            report.retried += 1
            dispatch = await send_summary(context, item.item_type, item.id, trigger="sweep_retry")
            if dispatch.email_sent:
                report.notified += 1
        except Exception as exc:
            report.errors.append(f"{item.id}: {exc}")
            await _discard_failed_transaction(context)


async def run_deadline_sweep(context: VotingContext, *, now: datetime | None = None) -> SweepReport:
    """One pass over every item that may have concluded without being noticed.

    Each item is isolated: a failure is collected in the report and the sweep moves on.
    Overlapping sweeps are safe.
    """
    current = now or datetime.now(UTC)
    report = SweepReport()
    try:
        candidates = await context.store.list_completion_candidates(current)
    except Exception as exc:
        report.errors.append(f"candidate listing: {exc}")
        await _discard_failed_transaction(context)
        return report

    report.examined = len(candidates)
    handled: set[UUID] = set()
    for item in candidates:
        handled.add(item.id)
        try:
            result = await process_completion(context, item.item_type, item.id, source="sweep", now=current)
        except Exception as exc:
            logger.warning(
                "Sweep could not process %s %s: %s",
                item.item_type,
                item.id,
                exc,
                extra={"event_type": "triggers.sweep.item_failed", "ops_payload": {"item_id": str(item.id)}},
            )
            report.errors.append(f"{item.id}: {exc}")
            await _discard_failed_transaction(context)
            continue
        if result.completion.applied:
            report.newly_completed += 1
        if result.email_sent:
            report.notified += 1
        if result.error:
            report.errors.append(f"{item.id}: {result.error}")

    try:
        await _retry_unsent(context, report, now=current, skip=handled)
    except Exception as exc:
        report.errors.append(f"retry listing: {exc}")
        await _discard_failed_transaction(context)

    logger.info(
        "Deadline sweep examined %d items: %d completed, %d notified, %d retried, %d errors",
        report.examined,
        report.newly_completed,
        report.notified,
        report.retried,
        len(report.errors),
        extra={
            "event_type": "triggers.sweep.completed",
            "ops_payload": {
                "examined": report.examined,
                "newly_completed": report.newly_completed,
                "notified": report.notified,
                "retried": report.retried,
                "errors": len(report.errors),
            },
        },
    )
    return report


async def manual_trigger(
    context: VotingContext,
    item_type: ItemType,
    item_id: UUID,
    *,
    actor: str,
    force: bool = False,
) -> DispatchResult:
    """Admin override: dispatch without running detection.

    Still deduplicated through the ledger unless ``force`` is set. Delivery and render
    errors propagate so the admin sees them.
    """
    item = await context.store.get_item(item_id)
    if item is None or item.item_type != item_type:
        raise ItemNotFound(item_id)
    if item.status not in MANUAL_TRIGGER_STATUSES and not force:
        raise InvalidTransition(
            f"{item_type} must be voting or completed to send a summary (status: {item.status})"
        )

    await context.ledger.append(
        action="TRIGGERED",
        item_type=item_type,
        item_id=item_id,
        episode=item.completion_episode,
        payload={"source": "manual", "actor": actor, "force": force, "status": item.status},
    )
    return await send_summary(context, item_type, item_id, trigger="manual", force=force, actor=actor)


async def close_voting(
    context: VotingContext,
    item_type: ItemType,
    item_id: UUID,
    *,
    now: datetime | None = None,
) -> TriggerResult:
    """End voting early with reason ``manual_completion`` and notify."""
    result = await process_completion(
        context, item_type, item_id, source="manual", now=now, close_early=True
    )
    if not result.completion.is_complete:
        raise InvalidTransition(
            f"{item_type} is not open for voting (status: {result.completion.status})"
        )
    return result
