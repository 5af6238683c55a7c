from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from uuid import UUID

from src.config import Settings
from src.db.stores import EligibilitySource, VoteStore
from src.handlers.abuse import VoteRateLimiter
from src.handlers.errors import (
    BallotValidationError,
    InvalidInput,
    InvalidTransition,
    ItemNotFound,
    VoteRateLimited,
)
from src.models.ballot import BallotRead, VoteChoice
from src.models.item import ItemType, VotableItemRead

logger = logging.getLogger(__name__)

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)
_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_comment(raw: str | None, *, max_length: int = 1000) -> str | None:
    """Strip markup and control characters from a ballot comment. Blank comments become None."""
    if raw is None:
        return None
    text = raw.strip()
    if not text:
        return None
    if len(text) > max_length:
        raise BallotValidationError(
            f"Comment too long. Maximum {max_length} characters allowed.", code="comment_too_long"
        )
    text = _SCRIPT_BLOCK.sub("", text)
    text = _TAG.sub("", text)
    text = _JS_SCHEME.sub("", text)
    text = _EVENT_HANDLER.sub("", text)
    text = _CONTROL.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return text or None


def parse_choice(raw: str) -> VoteChoice:
    try:
        return VoteChoice.parse(raw)
    except ValueError as exc:
        raise BallotValidationError(
            "Invalid vote. Must be approve, reject or abstain.", code="invalid_choice"
        ) from exc


async def _require_item(store: VoteStore, item_type: ItemType, item_id: UUID) -> VotableItemRead:
    item = await store.get_item(item_id)
    if item is None or item.item_type != item_type or item.archived_at is not None:
        raise ItemNotFound(item_id)
    return item


async def cast_ballot(
    store: VoteStore,
    *,
    item_type: ItemType,
    item_id: UUID,
    voter_id: UUID,
    choice: str,
    comment: str | None,
    settings: Settings,
    rate_limiter: VoteRateLimiter | None = None,
    now: datetime | None = None,
) -> BallotRead:
    """Validate and record one voter's ballot. Notification is the caller's business."""
    if rate_limiter is not None:
        verdict = rate_limiter.hit((voter_id, item_id))
        if not verdict.allowed:
            raise VoteRateLimited(verdict.retry_after_seconds)

    parsed = parse_choice(choice)
    clean_comment = sanitize_comment(comment, max_length=settings.max_comment_length)
    await _require_item(store, item_type, item_id)

    ballot = await store.upsert_ballot(
        item_id,
        voter_id,
        parsed,
        clean_comment,
        now=now or datetime.now(UTC),
        allow_change=settings.allow_ballot_changes,
    )
    logger.info(
        "Ballot recorded on %s %s",
        item_type,
        item_id,
        extra={
            "event_type": "voting.ballot.recorded",
            "ops_payload": {
                "item_id": str(item_id),
                "choice": parsed.value,
                "has_comment": clean_comment is not None,
            },
        },
    )
    return ballot


async def open_voting(
    store: VoteStore,
    eligibility: EligibilitySource,
    *,
    item_type: ItemType,
    item_id: UUID,
    settings: Settings,
    voting_deadline: datetime | None = None,
    now: datetime | None = None,
) -> VotableItemRead:
    """Publish a draft for voting, freezing the voter roll at this moment.

    Members who gain a voting role later cannot vote on the item.
    """
    current = now or datetime.now(UTC)
    item = await _require_item(store, item_type, item_id)

    deadline = voting_deadline or current + timedelta(hours=settings.default_voting_period_hours)
    if deadline <= current:
        raise InvalidInput("voting deadline must be in the future")

    roster = await eligibility.get_eligible_voters(item_type)
    voter_ids = sorted({recipient.user_id for recipient in roster})
    eligible = len(voter_ids)
    applied = await store.open_voting(
        item_id,
        voter_ids=voter_ids,
        voting_deadline=deadline,
        now=current,
    )
    if not applied:
        raise InvalidTransition(f"{item_type} cannot be opened for voting from status {item.status}")

    opened = await store.get_item(item_id)
    if opened is None:
        raise ItemNotFound(item_id)
    logger.info(
        "Voting opened on %s %s for %d eligible voters",
        item_type,
        item_id,
        eligible,
        extra={
            "event_type": "voting.item.opened",
            "ops_payload": {
                "item_id": str(item_id),
                "total_eligible_voters": eligible,
                "voting_deadline": deadline.isoformat(),
            },
        },
    )
    return opened
