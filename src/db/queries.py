from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config import Settings, get_settings
from src.db.stores import EligibilitySource, VoteStore, transient_errors
from src.handlers.errors import AlreadyVoted, DeadlinePassed, ItemNotFound, NotEligible, VotingClosed
from src.models.ballot import Ballot, BallotRead, VoteChoice
from src.models.item import (
    PUBLISHABLE_STATUSES,
    ItemType,
    ItemVoter,
    VotableItem,
    VotableItemCreate,
    VotableItemRead,
)
from src.models.user import VOTING_ROLES, Recipient, User, UserCreate


async def create_user(session: AsyncSession, data: UserCreate) -> User:
    user = User(
        email=data.email,
        full_name=data.full_name,
        position=data.position,
        role=data.role,
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


async def create_votable_item(
    session: AsyncSession, data: VotableItemCreate, settings: Settings | None = None
) -> VotableItem:
    policy = settings or get_settings()
    item = VotableItem(
        item_type=data.item_type,
        title=data.title,
        description=data.description,
        requires_majority=(
            data.requires_majority
            if data.requires_majority is not None
            else policy.default_requires_majority
        ),
        minimum_quorum=(
            data.minimum_quorum if data.minimum_quorum is not None else policy.default_minimum_quorum
        ),
        approval_threshold=(
            data.approval_threshold
            if data.approval_threshold is not None
            else policy.default_approval_threshold
        ),
    )
    session.add(item)
    await session.flush()
    await session.refresh(item)
    return item


class SqlVoteStore(VoteStore):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_item(self, item_id: UUID) -> VotableItemRead | None:
        with transient_errors("item lookup"):
            db_item = await self._session.get(VotableItem, item_id, populate_existing=True)
        return db_item.to_schema() if db_item is not None else None

    async def get_ballots(self, item_id: UUID) -> list[BallotRead]:
        with transient_errors("ballot listing"):
            result = await self._session.execute(
                select(Ballot)
                .where(Ballot.item_id == item_id)
                .options(selectinload(Ballot.voter))
                .order_by(Ballot.cast_at.asc(), Ballot.id.asc())
            )
        return [ballot.to_schema() for ballot in result.scalars().all()]

    async def get_ballot(self, item_id: UUID, voter_id: UUID) -> BallotRead | None:
        with transient_errors("ballot lookup"):
            result = await self._session.execute(
                select(Ballot)
                .where(Ballot.item_id == item_id, Ballot.voter_id == voter_id)
                .options(selectinload(Ballot.voter))
            )
        ballot = result.scalar_one_or_none()
        return ballot.to_schema() if ballot is not None else None

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
        with transient_errors("ballot write"):
            # Row lock keeps the counter refresh and the status check consistent.
            item_result = await self._session.execute(
                select(VotableItem)
                .where(VotableItem.id == item_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            item = item_result.scalar_one_or_none()
            if item is None:
                await self._session.rollback()
                raise ItemNotFound(item_id)
            if item.status != "voting":
                await self._session.rollback()
                raise VotingClosed(f"{item.item_type} is not open for voting (status: {item.status})")
            if item.voting_deadline is not None and now >= item.voting_deadline:
                await self._session.rollback()
                raise DeadlinePassed("voting deadline has passed")

            on_roll = await self._session.execute(
                select(ItemVoter.user_id).where(ItemVoter.item_id == item_id, ItemVoter.user_id == voter_id)
            )
            if on_roll.scalar_one_or_none() is None:
                await self._session.rollback()
                raise NotEligible("you were not an eligible voter when voting opened on this item")

            existing_result = await self._session.execute(
                select(Ballot).where(Ballot.item_id == item_id, Ballot.voter_id == voter_id)
            )
            ballot = existing_result.scalar_one_or_none()
            if ballot is not None:
                if not allow_change:
                    await self._session.rollback()
                    raise AlreadyVoted("you have already voted on this item")
                ballot.choice = choice.value
                ballot.comment = comment
                ballot.updated_at = now
            else:
                ballot = Ballot(
                    item_id=item_id,
                    voter_id=voter_id,
                    choice=choice.value,
                    comment=comment,
                    cast_at=now,
                    updated_at=now,
                )
                self._session.add(ballot)
            try:
                await self._session.flush()
            except IntegrityError as exc:
                await self._session.rollback()
                raise AlreadyVoted("a ballot for this voter was written concurrently") from exc

            await self._refresh_counters(item)
            item.ballot_revision = item.ballot_revision + 1
            await self._session.commit()
            await self._session.refresh(ballot, attribute_names=["voter"])
        return ballot.to_schema()

    async def _refresh_counters(self, item: VotableItem) -> None:
        result = await self._session.execute(
            select(Ballot.choice, func.count(Ballot.id))
            .where(Ballot.item_id == item.id)
            .group_by(Ballot.choice)
        )
        counts = {choice: int(count) for choice, count in result.all()}
        item.approve_count = counts.get(VoteChoice.APPROVE.value, 0)
        item.reject_count = counts.get(VoteChoice.REJECT.value, 0)
        item.abstain_count = counts.get(VoteChoice.ABSTAIN.value, 0)

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
        conditions = [VotableItem.id == item_id, VotableItem.status == expected_status]
        if expected_revision is not None:
            conditions.append(VotableItem.ballot_revision == expected_revision)
        with transient_errors("terminal status write"):
            result = await self._session.execute(
                update(VotableItem)
                .where(*conditions)
                .values(
                    status=new_status,
                    completion_reason=reason,
                    completed_at=completed_at,
                    completion_episode=VotableItem.completion_episode + 1,
                    outcome=outcome,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            await self._session.commit()
        return int(result.rowcount or 0)

    async def open_voting(
        self,
        item_id: UUID,
        *,
        voter_ids: Sequence[UUID],
        voting_deadline: datetime | None,
        now: datetime,
    ) -> int:
        roll = sorted(set(voter_ids))
        with transient_errors("publish"):
            result = await self._session.execute(
                update(VotableItem)
                .where(
                    VotableItem.id == item_id,
                    VotableItem.status.in_(PUBLISHABLE_STATUSES),
                    VotableItem.archived_at.is_(None),
                )
                .values(
                    status="voting",
                    voting_opened_at=now,
                    voting_deadline=voting_deadline,
                    total_eligible_voters=len(roll),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            applied = int(result.rowcount or 0)
            if applied and roll:
                await self._session.execute(
                    insert(ItemVoter),
                    [{"item_id": item_id, "user_id": user_id, "added_at": now} for user_id in roll],
                )
            await self._session.commit()
        return applied

    async def list_completion_candidates(self, now: datetime) -> list[VotableItemRead]:
        ballot_total = VotableItem.approve_count + VotableItem.reject_count + VotableItem.abstain_count
        with transient_errors("completion candidate listing"):
            result = await self._session.execute(
                select(VotableItem)
                .where(VotableItem.status == "voting", VotableItem.archived_at.is_(None))
                .where(
                    or_(
                        and_(
                            VotableItem.voting_deadline.is_not(None),
                            VotableItem.voting_deadline <= now,
                        ),
                        and_(
                            VotableItem.total_eligible_voters > 0,
                            ballot_total >= VotableItem.total_eligible_voters,
                        ),
                    )
                )
                .order_by(VotableItem.voting_deadline.asc().nulls_last())
            )
        return [item.to_schema() for item in result.scalars().all()]

    async def list_completed_since(self, since: datetime) -> list[VotableItemRead]:
        with transient_errors("completed item listing"):
            result = await self._session.execute(
                select(VotableItem)
                .where(VotableItem.completed_at.is_not(None), VotableItem.completed_at >= since)
                .order_by(VotableItem.completed_at.asc())
            )
        return [item.to_schema() for item in result.scalars().all()]

    async def reset(self) -> None:
        with transient_errors("session reset"):
            await self._session.rollback()


class SqlEligibilitySource(EligibilitySource):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_eligible_voters(self, item_type: ItemType) -> list[Recipient]:
        # Both item types share one roster today; item_type keeps the seam open.
        with transient_errors("eligible voter listing"):
            result = await self._session.execute(
                select(User)
                .where(User.is_active.is_(True), User.role.in_(VOTING_ROLES))
                .order_by(User.full_name.asc())
            )
        return [Recipient.from_orm_model(user) for user in result.scalars().all()]
