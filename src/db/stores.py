from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Hashable, Iterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import InterfaceError, OperationalError

from src.handlers.errors import TransientStoreError
from src.models.ballot import BallotRead, VoteChoice
from src.models.item import ItemType, VotableItemRead
from src.models.user import Recipient

LedgerAction = Literal["TRIGGERED", "SENT", "FAILED"]


class LedgerEntryRead(BaseModel):
    id: int
    timestamp: datetime
    action: LedgerAction
    item_type: ItemType
    item_id: UUID
    episode: int
    payload: dict[str, Any]


@contextmanager
def transient_errors(operation: str) -> Iterator[None]:
    """Surface connection-level database failures as TransientStoreError."""
    try:
        yield
    except (OperationalError, InterfaceError, OSError) as exc:
        raise TransientStoreError(f"{operation} failed: {exc}") from exc


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class VoteStore(ABC):
    """Ballots and the votable items they belong to."""

    @abstractmethod
    async def get_item(self, item_id: UUID) -> VotableItemRead | None: ...

    @abstractmethod
    async def get_ballots(self, item_id: UUID) -> list[BallotRead]:
        """All ballots for an item, oldest first."""
        ...

    @abstractmethod
    async def get_ballot(self, item_id: UUID, voter_id: UUID) -> BallotRead | None: ...

    @abstractmethod
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
        """Insert or update the voter's ballot and bump the item's ballot revision.

        Raises VotingClosed, DeadlinePassed, NotEligible or AlreadyVoted.
        """
        ...

    @abstractmethod
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
        """Conditionally move an item to a terminal status. Returns rows affected (0 or 1).

        With ``expected_revision`` the write also requires that no ballot changed since
        the caller read the item, so the stored outcome always matches the ballots.
        """
        ...

    @abstractmethod
    async def open_voting(
        self,
        item_id: UUID,
        *,
        voter_ids: Sequence[UUID],
        voting_deadline: datetime | None,
        now: datetime,
    ) -> int:
        """Publish a draft and freeze its voter roll to ``voter_ids``. Returns rows affected."""
        ...

    @abstractmethod
    async def list_completion_candidates(self, now: datetime) -> list[VotableItemRead]:
        """Voting items whose deadline passed or whose ballot counter reached the eligible count."""
        ...

    @abstractmethod
    async def list_completed_since(self, since: datetime) -> list[VotableItemRead]: ...

    @abstractmethod
    async def reset(self) -> None:
        """Discard a transaction left unusable by a failed call."""
        ...


class EligibilitySource(ABC):
    @abstractmethod
    async def get_eligible_voters(self, item_type: ItemType) -> list[Recipient]:
        """Active users holding the board_member or admin role."""
        ...


class Ledger(ABC):
    """Append-only record of completion triggers and summary sends."""

    @abstractmethod
    async def find_entry(
        self, item_id: UUID, action: LedgerAction, *, episode: int | None = None
    ) -> LedgerEntryRead | None: ...

    @abstractmethod
    async def count_entries(
        self, item_id: UUID, action: LedgerAction, *, episode: int | None = None
    ) -> int: ...

    @abstractmethod
    async def append(
        self,
        *,
        action: LedgerAction,
        item_type: ItemType,
        item_id: UUID,
        episode: int,
        payload: dict[str, Any],
    ) -> LedgerEntryRead: ...

    @abstractmethod
    async def recent(self, *, limit: int = 50, item_id: UUID | None = None) -> list[LedgerEntryRead]: ...

    @abstractmethod
    def hold_dispatch(self, item_id: UUID) -> AbstractAsyncContextManager[None]:
        """Exclusive right to dispatch one item's summary, held across every process."""
        ...
