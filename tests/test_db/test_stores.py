from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.queries import SqlEligibilitySource, SqlVoteStore, create_user, create_votable_item
from src.handlers.errors import AlreadyVoted, DeadlinePassed, NotEligible, TransientStoreError, VotingClosed
from src.models.ballot import VoteChoice
from src.models.item import ItemVoter, VotableItemCreate
from src.models.user import User, UserCreate
from tests.fixtures.voting_fakes import make_settings


async def _seed(session: AsyncSession, *, voters: int = 3) -> tuple[list[User], SqlVoteStore]:
    users = [
        await create_user(
            session, UserCreate(email=f"member{idx}@boardco.org", full_name=f"Member {idx}")
        )
        for idx in range(voters)
    ]
    await create_user(session, UserCreate(email="observer@boardco.org", full_name="Observer", role="viewer"))
    await session.commit()
    return users, SqlVoteStore(session)


async def _open_item(
    session: AsyncSession, store: SqlVoteStore, users: list[User], *, deadline: datetime | None = None
):
    item = await create_votable_item(
        session, VotableItemCreate(item_type="resolution", title="Approve the annual budget")
    )
    await session.commit()
    now = datetime.now(UTC)
    assert await store.open_voting(
        item.id, voter_ids=[u.id for u in users], voting_deadline=deadline or now + timedelta(days=7), now=now
    ) == 1
    return item


@pytest.mark.asyncio
async def test_create_votable_item_applies_configured_policy_defaults() -> None:
    session = AsyncMock(spec=AsyncSession)
    session.add = MagicMock()
    settings = make_settings(
        default_minimum_quorum=60.0, default_approval_threshold=66.0, default_requires_majority=False
    )

    item = await create_votable_item(
        session, VotableItemCreate(item_type="minutes", title="Minutes of the March meeting"), settings
    )
    explicit = await create_votable_item(
        session,
        VotableItemCreate(
            item_type="resolution", title="Adopt the travel policy", minimum_quorum=80.0, requires_majority=True
        ),
        settings,
    )

    assert (item.minimum_quorum, item.approval_threshold, item.requires_majority) == (60.0, 66.0, False)
    assert (explicit.minimum_quorum, explicit.approval_threshold, explicit.requires_majority) == (80.0, 66.0, True)
    assert session.add.call_count == 2


@pytest.mark.asyncio
async def test_roster_excludes_viewers(db_session: AsyncSession) -> None:
    await _seed(db_session)
    recipients = await SqlEligibilitySource(db_session).get_eligible_voters("minutes")
    assert [r.full_name for r in recipients] == ["Member 0", "Member 1", "Member 2"]


@pytest.mark.asyncio
async def test_voter_roll_is_frozen_when_voting_opens(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)
    latecomer = await create_user(db_session, UserCreate(email="latecomer@boardco.org", full_name="Latecomer"))
    await db_session.commit()

    with pytest.raises(NotEligible):
        await store.upsert_ballot(item.id, latecomer.id, VoteChoice.APPROVE, None, now=datetime.now(UTC))

    stored = await store.get_item(item.id)
    assert stored is not None
    assert stored.total_eligible_voters == 3
    assert stored.ballot_count == 0
    roll = await db_session.execute(select(ItemVoter.user_id).where(ItemVoter.item_id == item.id))
    assert set(roll.scalars().all()) == {u.id for u in users}


@pytest.mark.asyncio
async def test_upsert_ballot_maintains_counters(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)
    now = datetime.now(UTC)

    first = await store.upsert_ballot(item.id, users[0].id, VoteChoice.APPROVE, "Agreed", now=now)
    assert first.voter_name == "Member 0"
    await store.upsert_ballot(item.id, users[1].id, VoteChoice.REJECT, None, now=now)
    await store.upsert_ballot(item.id, users[1].id, VoteChoice.ABSTAIN, None, now=now)

    stored = await store.get_item(item.id)
    assert stored is not None
    assert (stored.approve_count, stored.reject_count, stored.abstain_count) == (1, 0, 1)
    assert len(await store.get_ballots(item.id)) == 2
    mine = await store.get_ballot(item.id, users[1].id)
    assert mine is not None and mine.choice == VoteChoice.ABSTAIN


@pytest.mark.asyncio
async def test_upsert_ballot_rejects_change_when_disabled(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)
    now = datetime.now(UTC)
    await store.upsert_ballot(item.id, users[0].id, VoteChoice.APPROVE, None, now=now)

    with pytest.raises(AlreadyVoted):
        await store.upsert_ballot(item.id, users[0].id, VoteChoice.REJECT, None, now=now, allow_change=False)


@pytest.mark.asyncio
async def test_upsert_ballot_after_deadline(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)

    with pytest.raises(DeadlinePassed):
        await store.upsert_ballot(
            item.id, users[0].id, VoteChoice.APPROVE, None, now=datetime.now(UTC) + timedelta(days=8)
        )


@pytest.mark.asyncio
async def test_terminal_transition_applies_once(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)
    completed_at = datetime.now(UTC)

    first = await store.set_terminal_status(
        item.id, "voting", "approved", reason="all_voted", completed_at=completed_at, outcome={"passed": True}
    )
    second = await store.set_terminal_status(
        item.id, "voting", "rejected", reason="deadline_expired", completed_at=completed_at, outcome={}
    )

    assert (first, second) == (1, 0)
    stored = await store.get_item(item.id)
    assert stored is not None
    assert stored.status == "approved"
    assert stored.completion_reason == "all_voted"
    assert stored.completion_episode == 1
    assert stored.outcome == {"passed": True}

    with pytest.raises(VotingClosed):
        await store.upsert_ballot(item.id, users[0].id, VoteChoice.APPROVE, None, now=completed_at)


@pytest.mark.asyncio
async def test_open_voting_only_from_draft(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)
    now = datetime.now(UTC)
    assert await store.open_voting(item.id, voter_ids=[u.id for u in users], voting_deadline=None, now=now) == 0


@pytest.mark.asyncio
async def test_completion_candidates(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    now = datetime.now(UTC)
    expired = await _open_item(db_session, store, users, deadline=now + timedelta(hours=1))
    fully_voted = await _open_item(db_session, store, users)
    pending = await _open_item(db_session, store, users)
    for user in users:
        await store.upsert_ballot(fully_voted.id, user.id, VoteChoice.APPROVE, None, now=now)
    await store.upsert_ballot(pending.id, users[0].id, VoteChoice.APPROVE, None, now=now)

    later = now + timedelta(hours=2)
    candidates = await store.list_completion_candidates(later)
    assert {c.id for c in candidates} == {expired.id, fully_voted.id}
    assert candidates[0].id == expired.id

    await store.set_terminal_status(
        expired.id, "voting", "failed", reason="deadline_expired", completed_at=later, outcome={}
    )
    completed = await store.list_completed_since(now)
    assert [c.id for c in completed] == [expired.id]


@pytest.mark.asyncio
async def test_terminal_write_refuses_a_stale_ballot_revision(db_session: AsyncSession) -> None:
    users, store = await _seed(db_session)
    item = await _open_item(db_session, store, users)
    now = datetime.now(UTC)
    await store.upsert_ballot(item.id, users[0].id, VoteChoice.APPROVE, None, now=now)
    seen = await store.get_item(item.id)
    assert seen is not None and seen.ballot_revision == 1
    await store.upsert_ballot(item.id, users[0].id, VoteChoice.REJECT, None, now=now)

    stale = await store.set_terminal_status(
        item.id,
        "voting",
        "approved",
        reason="manual_completion",
        completed_at=now,
        outcome={"passed": True},
        expected_revision=seen.ballot_revision,
    )
    current = await store.get_item(item.id)
    assert current is not None and current.ballot_revision == 2
    fresh = await store.set_terminal_status(
        item.id,
        "voting",
        "rejected",
        reason="manual_completion",
        completed_at=now,
        outcome={"passed": False},
        expected_revision=current.ballot_revision,
    )

    assert (stale, fresh) == (0, 1)
    stored = await store.get_item(item.id)
    assert stored is not None and stored.status == "rejected"


@pytest.mark.asyncio
async def test_reset_recovers_from_an_aborted_transaction(db_session: AsyncSession) -> None:
    _, store = await _seed(db_session)
    with pytest.raises(SQLAlchemyError):
        await db_session.execute(text("SELECT 1 / 0"))
    with pytest.raises((SQLAlchemyError, TransientStoreError)):
        await store.get_item(uuid4())

    await store.reset()

    assert await store.get_item(uuid4()) is None
