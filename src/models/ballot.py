from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.connection import Base

if TYPE_CHECKING:
    from src.models.item import VotableItem
    from src.models.user import User


class VoteChoice(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    ABSTAIN = "abstain"

    @classmethod
    def parse(cls, value: str) -> VoteChoice:
        """Map an external spelling onto the canonical choice.

        Older clients send "for"/"against"; only this boundary knows about them.
        """
        normalized = value.strip().lower()
        normalized = _LEGACY_SPELLINGS.get(normalized, normalized)
        return cls(normalized)


_LEGACY_SPELLINGS = {"for": "approve", "against": "reject"}


class Ballot(Base):
    __tablename__ = "ballots"
    __table_args__ = (UniqueConstraint("item_id", "voter_id", name="uq_ballots_item_voter"),)

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    item_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("votable_items.id"), nullable=False, index=True
    )
    voter_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )
    choice: Mapped[str] = mapped_column(String(16), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    cast_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    item: Mapped[VotableItem] = relationship(back_populates="ballots")
    voter: Mapped[User] = relationship(back_populates="ballots")

    def to_schema(self) -> BallotRead:
        return BallotRead.from_orm_model(self)


class BallotRead(BaseModel):
    id: UUID
    item_id: UUID
    voter_id: UUID
    voter_name: str = "Unknown member"
    voter_email: str | None = None
    voter_position: str | None = None
    choice: VoteChoice
    comment: str | None = None
    cast_at: datetime
    updated_at: datetime | None = None

    @property
    def has_comment(self) -> bool:
        return bool(self.comment and self.comment.strip())

    @classmethod
    def from_orm_model(cls, db_ballot: Ballot) -> BallotRead:
        voter = db_ballot.voter
        return cls(
            id=db_ballot.id,
            item_id=db_ballot.item_id,
            voter_id=db_ballot.voter_id,
            voter_name=voter.full_name if voter is not None else "Unknown member",
            voter_email=voter.email if voter is not None else None,
            voter_position=voter.position if voter is not None else None,
            choice=VoteChoice(db_ballot.choice),
            comment=db_ballot.comment,
            cast_at=db_ballot.cast_at,
            updated_at=db_ballot.updated_at,
        )
