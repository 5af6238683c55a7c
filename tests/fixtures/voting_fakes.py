"""In-memory stand-ins for the vote store, ledger, roster and transport.

They honour the same contracts as the SQL implementations: the terminal write is
conditional on the expected status and ballot revision, ballots are limited to the
item's voter roll, and ledger entries are append-only. Items seeded with ``add_item``
and no ``voter_ids`` carry no roll and accept any voter.

With ``abort_on_failure`` an injected failure leaves the store refusing every call
until ``reset``, the way a Postgres transaction does after an error.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from src.channels.base import BaseChannel
from src.channels.types import OutboundMessage
from src.config import Settings
from src.db.stores import (
    EligibilitySource,
    KeyedLock,
    Ledger,
    LedgerAction,
    LedgerEntryRead,
    VoteStore,
)
from src.handlers.context import VotingContext
from src.handlers.errors import (
    AlreadyVoted,
    DeadlinePassed,
    NotEligible,
    TransientStoreError,
    VotingClosed,
)
from src.models.ballot import BallotRead, VoteChoice
from src.models.item import PUBLISHABLE_STATUSES, ItemType, VotableItemRead
from src.models.user import Recipient, UserRole

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "postgresql+asyncpg://board:pw@localhost:5432/board_voting",
        "app_public_base_url": "https://board.boardco.org",
        "delivery_backoff_base_seconds": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_recipient(name: str, *, role: UserRole = "board_member", position: str | None = None) -> Recipient:
    slug = name.lower().replace(" ", ".")
    return Recipient(user_id=uuid4(), email=f"{slug}@boardco.org", full_name=name, position=position, role=role)


def make_item(**overrides: Any) -> VotableItemRead:
    values: dict[str, Any] = {
        "id": uuid4(),
        "item_type": "resolution",
        "title": "Approve the 2026 operating budget",
        "status": "voting",
        "voting_opened_at": NOW - timedelta(days=6),
        "voting_deadline": NOW + timedelta(days=1),
        "total_eligible_voters": 5,
        "requires_majority": True,
        "minimum_quorum": 50.0,
        "approval_threshold": 75.0,
        "created_at": NOW - timedelta(days=7),
        "updated_at": NOW - timedelta(days=6),
    }
    values.update(overrides)
    return VotableItemRead(**values)


def make_ballot(
    item_id: UUID,
    voter: Recipient | None = None,
    choice: VoteChoice = VoteChoice.APPROVE,
    *,
    comment: str | None = None,
    cast_at: datetime | None = None,
) -> BallotRead:
    voter = voter or make_recipient(f"Member {uuid4().hex[:6]}")
    return BallotRead(
        id=uuid4(),
        item_id=item_id,
        voter_id=voter.user_id,
        voter_name=voter.full_name,
        voter_email=str(voter.email),
        voter_position=voter.position,
        choice=choice,
        comment=comment,
        cast_at=cast_at or NOW - timedelta(hours=1),
        updated_at=cast_at or NOW - timedelta(hours=1),
    )


class InMemoryVoteStore(VoteStore):
    def __init__(self, *, yield_on_read: bool = False, abort_on_failure: bool = False) -> None:
        self.items: dict[UUID, VotableItemRead] = {}
        self.ballots: dict[UUID, list[BallotRead]] = {}
        self.voters: dict[UUID, Recipient] = {}
        self.rolls: dict[UUID, set[UUID]] = {}
        self.terminal_writes = 0
        self.fail_operations: set[str] = set()
        self.fail_once: set[str] = set()
        self.aborted = False
        self.resets = 0
        self.on_ballots_read: Callable[[UUID], Awaitable[None]] | None = None
        self._yield_on_read = yield_on_read
        self._abort_on_failure = abort_on_failure

    def _maybe_fail(self, operation: str) -> None:
        if self.aborted:
            raise TransientStoreError(f"{operation} failed: current transaction is aborted")
        if operation in self.fail_operations or operation in self.fail_once:
            self.fail_once.discard(operation)
            self.aborted = self._abort_on_failure
            raise TransientStoreError(f"{operation} failed: connection refused")

    def add_item(
        self,
        item: VotableItemRead | None = None,
        *,
        voter_ids: Sequence[UUID] | None = None,
        **overrides: Any,
    ) -> VotableItemRead:
        item = item or make_item(**overrides)
        self.items[item.id] = item
        self.ballots.setdefault(item.id, [])
        if voter_ids is not None:
            self.rolls[item.id] = set(voter_ids)
        return item

    def add_ballot(self, ballot: BallotRead) -> BallotRead:
        self.ballots.setdefault(ballot.item_id, []).append(ballot)
        self._refresh_counters(ballot.item_id)
        return ballot

    def _refresh_counters(self, item_id: UUID) -> None:
        counts = Counter(b.choice for b in self.ballots.get(item_id, []))
        self.items[item_id] = self.items[item_id].model_copy(
            update={
                "approve_count": counts[VoteChoice.APPROVE],
                "reject_count": counts[VoteChoice.REJECT],
                "abstain_count": counts[VoteChoice.ABSTAIN],
                "ballot_revision": self.items[item_id].ballot_revision + 1,
            }
        )

    async def get_item(self, item_id: UUID) -> VotableItemRead | None:
        self._maybe_fail("get_item")
        return self.items.get(item_id)

    async def get_ballots(self, item_id: UUID) -> list[BallotRead]:
        self._maybe_fail("get_ballots")
        if self._yield_on_read:
            await asyncio.sleep(0)
        snapshot = sorted(self.ballots.get(item_id, []), key=lambda b: b.cast_at)
        if self.on_ballots_read is not None:
            await self.on_ballots_read(item_id)
        return snapshot

    async def get_ballot(self, item_id: UUID, voter_id: UUID) -> BallotRead | None:
        for ballot in self.ballots.get(item_id, []):
            if ballot.voter_id == voter_id:
                return ballot
        return None

    async def upsert_ballot(
        self,
        item_id: UUID,
        voter_id: UUID,
        choice: VoteChoice,
        comment: str | None,
        *,
        now: datetime,
        allow_change: bool = True,
    ) -> BallotRead:
        self._maybe_fail("upsert_ballot")
        item = self.items[item_id]
        if item.status != "voting":
            raise VotingClosed(f"{item.item_type} is not open for voting (status: {item.status})")
        if item.voting_deadline is not None and now >= item.voting_deadline:
            raise DeadlinePassed("voting deadline has passed")
        roll = self.rolls.get(item_id)
        if roll is not None and voter_id not in roll:
            raise NotEligible("you were not an eligible voter when voting opened on this item")
        ballots = self.ballots.setdefault(item_id, [])
        for index, existing in enumerate(ballots):
            if existing.voter_id == voter_id:
                if not allow_change:
                    raise AlreadyVoted("you have already voted on this item")
                updated = existing.model_copy(update={"choice": choice, "comment": comment, "updated_at": now})
                ballots[index] = updated
                self._refresh_counters(item_id)
                return updated
        voter = self.voters.get(voter_id)
        ballot = BallotRead(
            id=uuid4(),
            item_id=item_id,
            voter_id=voter_id,
            voter_name=voter.full_name if voter else "Unknown member",
            voter_email=str(voter.email) if voter else None,
            choice=choice,
            comment=comment,
            cast_at=now,
            updated_at=now,
        )
        ballots.append(ballot)
        self._refresh_counters(item_id)
        return ballot

    async def set_terminal_status(
        self,
        item_id: UUID,
        expected_status: str,
        new_status: str,
        *,
        reason: str,
        completed_at: datetime,
        outcome: dict[str, Any],
        expected_revision: int | None = None,
    ) -> int:
        self._maybe_fail("set_terminal_status")
        item = self.items.get(item_id)
        if item is None or item.status != expected_status:
            return 0
        if expected_revision is not None and item.ballot_revision != expected_revision:
            return 0
        self.items[item_id] = item.model_copy(
            update={
                "status": new_status,
                "completion_reason": reason,
                "completed_at": completed_at,
                "completion_episode": item.completion_episode + 1,
                "outcome": outcome,
            }
        )
        self.terminal_writes += 1
        return 1

    async def open_voting(
        self,
        item_id: UUID,
        *,
        voter_ids: Sequence[UUID],
        voting_deadline: datetime | None,
        now: datetime,
    ) -> int:
        item = self.items.get(item_id)
        if item is None or item.status not in PUBLISHABLE_STATUSES or item.archived_at is not None:
            return 0
        self.rolls[item_id] = set(voter_ids)
        self.items[item_id] = item.model_copy(
            update={
                "status": "voting",
                "voting_opened_at": now,
                "voting_deadline": voting_deadline,
                "total_eligible_voters": len(self.rolls[item_id]),
            }
        )
        return 1

    async def list_completion_candidates(self, now: datetime) -> list[VotableItemRead]:
        self._maybe_fail("list_completion_candidates")
        return [
            item
            for item in self.items.values()
            if item.status == "voting"
            and item.archived_at is None
            and (
                (item.voting_deadline is not None and item.voting_deadline <= now)
                or (item.total_eligible_voters > 0 and item.ballot_count >= item.total_eligible_voters)
            )
        ]

    async def list_completed_since(self, since: datetime) -> list[VotableItemRead]:
        self._maybe_fail("list_completed_since")
        return [
            item
            for item in self.items.values()
            if item.completed_at is not None and item.completed_at >= since
        ]

    async def reset(self) -> None:
        self.resets += 1
        self.aborted = False


class InMemoryLedger(Ledger):
    """Shared by several contexts, it stands in for one database seen by many processes."""

    def __init__(self) -> None:
        self.entries: list[LedgerEntryRead] = []
        self.dispatch_locks = KeyedLock()
        self.dispatch_holds = 0

    def actions(self, item_id: UUID | None = None) -> list[str]:
        return [e.action for e in self.entries if item_id is None or e.item_id == item_id]

    async def find_entry(
        self, item_id: UUID, action: LedgerAction, *, episode: int | None = None
    ) -> LedgerEntryRead | None:
        for entry in reversed(self.entries):
            if entry.item_id == item_id and entry.action == action and (episode is None or entry.episode == episode):
                return entry
        return None

    async def count_entries(
        self, item_id: UUID, action: LedgerAction, *, episode: int | None = None
    ) -> int:
        return sum(
            1
            for entry in self.entries
            if entry.item_id == item_id and entry.action == action and (episode is None or entry.episode == episode)
        )

    async def append(
        self,
        *,
        action: LedgerAction,
        item_type: ItemType,
        item_id: UUID,
        episode: int,
        payload: dict[str, Any],
    ) -> LedgerEntryRead:
        entry = LedgerEntryRead(
            id=len(self.entries) + 1,
            timestamp=datetime.now(UTC),
            action=action,
            item_type=item_type,
            item_id=item_id,
            episode=episode,
            payload=payload,
        )
        self.entries.append(entry)
        return entry

    async def recent(self, *, limit: int = 50, item_id: UUID | None = None) -> list[LedgerEntryRead]:
        matching = [e for e in self.entries if item_id is None or e.item_id == item_id]
        return list(reversed(matching))[:limit]

    @asynccontextmanager
    async def hold_dispatch(self, item_id: UUID) -> AsyncIterator[None]:
        async with self.dispatch_locks.hold(item_id):
            self.dispatch_holds += 1
            yield


class StaticEligibility(EligibilitySource):
    def __init__(self, recipients: list[Recipient]) -> None:
        self.recipients = recipients

    async def get_eligible_voters(self, item_type: ItemType) -> list[Recipient]:
        return list(self.recipients)


class FakeChannel(BaseChannel):
    """Records every attempt. ``failures`` maps an address to how many attempts fail first."""

    def __init__(
        self,
        *,
        failures: dict[str, int] | None = None,
        always_fail: set[str] | None = None,
        raise_for: set[str] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.sent: list[OutboundMessage] = []
        self.attempts: Counter[str] = Counter()
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail or ())
        self.raise_for = set(raise_for or ())
        self.delay = delay

    async def send_message(self, message: OutboundMessage) -> bool:
        address = message.recipient_ref
        self.attempts[address] += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if address in self.raise_for:
            raise ConnectionError("smtp relay unreachable")
        if address in self.always_fail:
            return False
        if self.failures.get(address, 0) > 0:
            self.failures[address] -= 1
            return False
        self.sent.append(message)
        return True

    @property
    def total_attempts(self) -> int:
        return sum(self.attempts.values())


def make_context(
    *,
    store: InMemoryVoteStore | None = None,
    ledger: InMemoryLedger | None = None,
    recipients: list[Recipient] | None = None,
    channel: FakeChannel | None = None,
    settings: Settings | None = None,
) -> VotingContext:
    return VotingContext(
        store=store or InMemoryVoteStore(),
        ledger=ledger or InMemoryLedger(),
        eligibility=StaticEligibility(recipients or []),
        channel=channel or FakeChannel(),
        settings=settings or make_settings(),
    )


def board(count: int, *, admins: int = 0) -> list[Recipient]:
    members = [make_recipient(f"Member {i}") for i in range(1, count + 1)]
    members += [make_recipient(f"Admin {i}", role="admin") for i in range(1, admins + 1)]
    return members
