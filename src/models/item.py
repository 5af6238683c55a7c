from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.connection import Base

if TYPE_CHECKING:
    from src.models.ballot import Ballot

ItemType = Literal["resolution", "minutes"]
ItemStatus = Literal[
    "draft",
    "under_review",
    "voting",
    "approved",
    "rejected",
    "passed",
    "failed",
    "withdrawn",
]
CompletionReason = Literal["all_voted", "deadline_expired", "manual_completion"]

ITEM_TYPES: tuple[str, ...] = ("resolution", "minutes")
PUBLISHABLE_STATUSES = frozenset({"draft", "under_review"})
TERMINAL_STATUSES = frozenset({"approved", "rejected", "passed", "failed"})


class VotableItem(Base):
    """A resolution or a set of minutes that board members vote on."""

    __tablename__ = "votable_items"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    item_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft", nullable=False, index=True)
    voting_opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    voting_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    total_eligible_voters: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    requires_majority: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    minimum_quorum: Mapped[float] = mapped_column(Float, default=50.0, nullable=False)
    approval_threshold: Mapped[float] = mapped_column(Float, default=75.0, nullable=False)
    approve_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reject_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    abstain_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ballot_revision: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completion_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_episode: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    outcome: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    ballots: Mapped[list[Ballot]] = relationship(back_populates="item")
    voter_roll: Mapped[list[ItemVoter]] = relationship(back_populates="item")

    def to_schema(self) -> VotableItemRead:
        return VotableItemRead.from_orm_model(self)


class ItemVoter(Base):
    """One member of an item's voter roll, frozen when voting opened."""

    __tablename__ = "item_eligible_voters"

    item_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), ForeignKey("votable_items.id"), primary_key=True
    )
    user_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), ForeignKey("users.id"), primary_key=True)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    item: Mapped[VotableItem] = relationship(back_populates="voter_roll")


class VotableItemCreate(BaseModel):
    """Policy fields left unset take the configured board defaults."""

    item_type: ItemType
    title: str = Field(min_length=1, max_length=300)
    description: str | None = None
    requires_majority: bool | None = None
    minimum_quorum: float | None = Field(default=None, ge=0, le=100)
    approval_threshold: float | None = Field(default=None, ge=0, le=100)


class VotableItemRead(BaseModel):
    id: UUID
    item_type: ItemType
    title: str
    description: str | None = None
    status: ItemStatus
    voting_opened_at: datetime | None = None
    voting_deadline: datetime | None = None
    total_eligible_voters: int
    requires_majority: bool
    minimum_quorum: float
    approval_threshold: float
    approve_count: int = 0
    reject_count: int = 0
    abstain_count: int = 0
    ballot_revision: int = 0
    completion_reason: CompletionReason | None = None
    completed_at: datetime | None = None
    completion_episode: int = 0
    outcome: dict[str, Any] | None = None
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def ballot_count(self) -> int:
        return self.approve_count + self.reject_count + self.abstain_count

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_orm_model(cls, db_item: VotableItem) -> VotableItemRead:
        return cls(
            id=db_item.id,
            item_type=db_item.item_type,  # type: ignore[arg-type]
            title=db_item.title,
            description=db_item.description,
            status=db_item.status,  # type: ignore[arg-type]
            voting_opened_at=db_item.voting_opened_at,
            voting_deadline=db_item.voting_deadline,
            total_eligible_voters=db_item.total_eligible_voters,
            requires_majority=db_item.requires_majority,
            minimum_quorum=db_item.minimum_quorum,
            approval_threshold=db_item.approval_threshold,
            approve_count=db_item.approve_count,
            reject_count=db_item.reject_count,
            abstain_count=db_item.abstain_count,
            ballot_revision=db_item.ballot_revision,
            completion_reason=db_item.completion_reason,  # type: ignore[arg-type]
            completed_at=db_item.completed_at,
            completion_episode=db_item.completion_episode,
            outcome=db_item.outcome,
            archived_at=db_item.archived_at,
            created_at=db_item.created_at,
            updated_at=db_item.updated_at,
        )
