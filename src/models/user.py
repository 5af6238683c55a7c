from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.connection import Base

if TYPE_CHECKING:
    from src.models.ballot import Ballot

UserRole = Literal["admin", "board_member", "viewer"]
VOTING_ROLES: tuple[str, ...] = ("admin", "board_member")


class User(Base):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[str | None] = mapped_column(String(120), nullable=True)
    role: Mapped[str] = mapped_column(String(32), default="board_member", nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    ballots: Mapped[list[Ballot]] = relationship(back_populates="voter")

    @property
    def can_vote(self) -> bool:
        return self.is_active and self.role in VOTING_ROLES

    @property
    def is_admin(self) -> bool:
        return self.is_active and self.role == "admin"

    def to_schema(self) -> UserRead:
        return UserRead.from_orm_model(self)


class UserCreate(BaseModel):
    email: EmailStr
    full_name: str = Field(min_length=1, max_length=200)
    position: str | None = None
    role: UserRole = "board_member"


class UserRead(BaseModel):
    id: UUID
    email: EmailStr
    full_name: str
    position: str | None
    role: UserRole
    is_active: bool
    created_at: datetime

    @classmethod
    def from_orm_model(cls, db_user: User) -> UserRead:
        return cls(
            id=db_user.id,
            email=db_user.email,
            full_name=db_user.full_name,
            position=db_user.position,
            role=db_user.role,  # type: ignore[arg-type]
            is_active=db_user.is_active,
            created_at=db_user.created_at,
        )


class Recipient(BaseModel):
    """A summary-email recipient: every active board member and admin."""

    user_id: UUID
    email: EmailStr
    full_name: str
    position: str | None = None
    role: UserRole = "board_member"

    @classmethod
    def from_orm_model(cls, db_user: User) -> Recipient:
        return cls(
            user_id=db_user.id,
            email=db_user.email,
            full_name=db_user.full_name,
            position=db_user.position,
            role=db_user.role,  # type: ignore[arg-type]
        )
