from __future__ import annotations

import logging
from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel, ValidationError

from src.db.stores import VoteStore
from src.handlers.errors import ItemNotFound, TransientStoreError
from src.handlers.outcome import VotingOutcome, calculate_outcome, terminal_status_for
from src.models.item import CompletionReason, ItemStatus, ItemType, VotableItemRead

logger = logging.getLogger(__name__)

COMPLETION_ATTEMPTS = 3


class CompletionStatus(BaseModel):
    item_id: UUID
    item_type: ItemType
    is_complete: bool
    reason: CompletionReason | None = None
    outcome: VotingOutcome | None = None
    status: ItemStatus
    episode: int = 0
    applied: bool = False
    already_completed: bool = False
    total_votes: int = 0
    total_eligible_voters: int = 0


def determine_completion(
    *,
    ballot_count: int,
    total_eligible_voters: int,
    voting_deadline: datetime | None,
    now: datetime,
) -> CompletionReason | None:
    """Decide whether a voting item has concluded. All-voted wins over an expired deadline."""
    if total_eligible_voters > 0 and ballot_count >= total_eligible_voters:
        return "all_voted"
    if voting_deadline is not None and now >= voting_deadline:
        return "deadline_expired"
    return None


def persisted_outcome(item: VotableItemRead) -> VotingOutcome | None:
    if not item.outcome:
        return None
    try:
        return VotingOutcome.model_validate(item.outcome)
    except ValidationError:
        logger.warning(
            "Stored outcome for %s is unreadable; recomputing",
            item.id,
            extra={"event_type": "completion.outcome.unreadable"},
        )
        return None


async def compute_item_outcome(store: VoteStore, item: VotableItemRead) -> VotingOutcome:
    ballots = await store.get_ballots(item.id)
    return calculate_outcome(
        ballots,
        total_eligible_voters=item.total_eligible_voters,
        minimum_quorum=item.minimum_quorum,
        approval_threshold=item.approval_threshold,
        requires_majority=item.requires_majority,
    )


async def _terminal_snapshot(store: VoteStore, item: VotableItemRead, *, applied: bool) -> CompletionStatus:
    outcome = persisted_outcome(item) or await compute_item_outcome(store, item)
    return CompletionStatus(
        item_id=item.id,
        item_type=item.item_type,
        is_complete=True,
        reason=item.completion_reason,
        outcome=outcome,
        status=item.status,
        episode=item.completion_episode,
        applied=applied,
        already_completed=not applied,
        total_votes=outcome.total_votes,
        total_eligible_voters=item.total_eligible_voters,
    )


def _still_open(item: VotableItemRead, total_votes: int) -> CompletionStatus:
    return CompletionStatus(
        item_id=item.id,
        item_type=item.item_type,
        is_complete=False,
        status=item.status,
        episode=item.completion_episode,
        total_votes=total_votes,
        total_eligible_voters=item.total_eligible_voters,
    )


async def check_completion(
    store: VoteStore,
    item_id: UUID,
    *,
    now: datetime | None = None,
    close_early: bool = False,
) -> CompletionStatus:
    """Evaluate an item and, if voting has concluded, apply the terminal transition once.

    Safe to call any number of times from any trigger. The status write is conditional on
    the item still being in ``voting`` at the ballot revision the outcome was computed
    from. A caller that loses the race to another trigger gets the winner's persisted
    result back with ``already_completed`` set; one that loses it to a ballot change
    re-reads and evaluates again. ``close_early`` ends voting with reason
    ``manual_completion`` even when neither condition holds.
    """
    current = now or datetime.now(UTC)
    item = await store.get_item(item_id)
    if item is None:
        raise ItemNotFound(item_id)

    for _ in range(COMPLETION_ATTEMPTS):
        if item.is_terminal:
            return await _terminal_snapshot(store, item, applied=False)
        if item.status != "voting":
            return _still_open(item, item.ballot_count)

        ballots = await store.get_ballots(item.id)
        reason = determine_completion(
            ballot_count=len(ballots),
            total_eligible_voters=item.total_eligible_voters,
            voting_deadline=item.voting_deadline,
            now=current,
        )
        if reason is None and close_early:
            reason = "manual_completion"
        if reason is None:
            return _still_open(item, len(ballots))

        outcome = calculate_outcome(
            ballots,
            total_eligible_voters=item.total_eligible_voters,
            minimum_quorum=item.minimum_quorum,
            approval_threshold=item.approval_threshold,
            requires_majority=item.requires_majority,
        )
        new_status = terminal_status_for(item.item_type, outcome.passed)
        applied = await store.set_terminal_status(
            item.id,
            "voting",
            new_status,
            reason=reason,
            completed_at=current,
            outcome=outcome.model_dump(mode="json"),
            expected_revision=item.ballot_revision,
        )

        refreshed = await store.get_item(item.id)
        if refreshed is None:
            raise ItemNotFound(item.id)

        if applied:
            logger.info(
                "%s %s completed (%s): %s",
                item.item_type.capitalize(),
                item.id,
                reason,
                new_status,
                extra={
                    "event_type": "completion.item.completed",
                    "ops_payload": {
                        "item_id": str(item.id),
                        "item_type": item.item_type,
                        "reason": reason,
                        "status": new_status,
                        "episode": refreshed.completion_episode,
                        "participation_rate": outcome.participation_rate,
                    },
                },
            )
            return CompletionStatus(
                item_id=item.id,
                item_type=item.item_type,
                is_complete=True,
                reason=reason,
                outcome=outcome,
                status=refreshed.status,
                episode=refreshed.completion_episode,
                applied=True,
                total_votes=outcome.total_votes,
                total_eligible_voters=item.total_eligible_voters,
            )

        if refreshed.status == "voting" and refreshed.ballot_revision != item.ballot_revision:
            logger.info(
                "Ballots on %s changed during completion; re-evaluating",
                item.id,
                extra={"event_type": "completion.item.ballots_changed", "ops_payload": {"item_id": str(item.id)}},
            )
            item = refreshed
            continue

        logger.info(
            "Terminal transition for %s already applied by another caller",
            item.id,
            extra={"event_type": "completion.item.race_lost", "ops_payload": {"item_id": str(item.id)}},
        )
        if refreshed.is_terminal:
            return await _terminal_snapshot(store, refreshed, applied=False)
        # Left voting by some other route (e.g. withdrawn) between our read and write.
        return _still_open(refreshed, refreshed.ballot_count)

    raise TransientStoreError(f"ballots on {item_id} kept changing; completion left to the next trigger")
