from __future__ import annotations

import hashlib
import inspect
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import DateTime, Index, Integer, String, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.db.connection import Base
from src.db.stores import KeyedLock, Ledger, LedgerAction, LedgerEntryRead, transient_errors
from src.models.item import ItemType

logger = logging.getLogger(__name__)

GENESIS_PREV_HASH = "genesis"
LEDGER_CHAIN_LOCK_KEY = 918273645
DISPATCH_LOCK_NAMESPACE = 918273646
VALID_ACTIONS: set[str] = {"TRIGGERED", "SENT", "FAILED"}

# Waiters in this process queue here instead of each holding a pooled connection.
_LOCAL_DISPATCH_LOCKS = KeyedLock()


class LedgerEntry(Base):
    __tablename__ = "completion_ledger"
    __table_args__ = (Index("ix_completion_ledger_item_action", "item_id", "action", "episode"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    item_type: Mapped[str] = mapped_column(String(16), nullable=False)
    item_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False, index=True)
    episode: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def to_schema(self) -> LedgerEntryRead:
        return LedgerEntryRead(
            id=self.id,
            timestamp=self.timestamp,
            action=self.action,  # type: ignore[arg-type]
            item_type=self.item_type,  # type: ignore[arg-type]
            item_id=self.item_id,
            episode=self.episode,
            payload=self.payload,
        )


def dispatch_lock_key(item_id: UUID) -> int:
    """Signed 32-bit advisory lock key for an item. Collisions only serialize unrelated items."""
    return int.from_bytes(item_id.bytes[:4], "big", signed=True)


def canonical_json(obj: dict[str, Any]) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def isoformat_z(ts: datetime) -> str:
    dt = ts.astimezone(UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def compute_entry_hash(
    *,
    timestamp_iso: str,
    action: str,
    item_type: str,
    item_id: str,
    episode: int,
    payload: dict[str, Any],
    prev_hash: str,
) -> str:
    material = {
        "timestamp": timestamp_iso,
        "action": action,
        "item_type": item_type,
        "item_id": item_id.lower(),
        "episode": episode,
        "payload": payload,
        "prev_hash": prev_hash,
    }
    serialized = canonical_json(material)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


async def append_ledger_entry(
    session: AsyncSession,
    *,
    action: str,
    item_type: str,
    item_id: UUID,
    episode: int,
    payload: dict[str, Any],
) -> LedgerEntry:
    if action not in VALID_ACTIONS:
        raise ValueError(f"Invalid ledger action: {action}")
    # JSONB cannot hold datetimes or UUIDs; store what the hash was computed over.
    payload = json.loads(canonical_json(payload))

    async with session.begin_nested():
        # Serialize appends so concurrent writers cannot reuse the same prev_hash.
        bind = session.get_bind()
        if inspect.isawaitable(bind):
            bind = await bind
        dialect_name = getattr(getattr(bind, "dialect", None), "name", None)
        if dialect_name == "postgresql":
            await session.execute(select(func.pg_advisory_xact_lock(LEDGER_CHAIN_LOCK_KEY)))

        last_result = await session.execute(
            select(LedgerEntry).order_by(LedgerEntry.id.desc()).limit(1).with_for_update()
        )
        last_entry = last_result.scalar_one_or_none()
        prev_hash = last_entry.hash if last_entry else GENESIS_PREV_HASH
        timestamp = datetime.now(UTC)
        entry_hash = compute_entry_hash(
            timestamp_iso=isoformat_z(timestamp),
            action=action,
            item_type=item_type,
            item_id=str(item_id),
            episode=episode,
            payload=payload,
            prev_hash=prev_hash,
        )
        entry = LedgerEntry(
            timestamp=timestamp,
            action=action,
            item_type=item_type,
            item_id=item_id,
            episode=episode,
            payload=payload,
            hash=entry_hash,
            prev_hash=prev_hash,
        )
        session.add(entry)
        await session.flush()
        await session.refresh(entry)
        return entry


async def verify_chain(session: AsyncSession) -> tuple[bool, int]:
    result = await session.execute(select(LedgerEntry).order_by(LedgerEntry.id.asc()))
    entries = list(result.scalars().all())
    prev_hash = GENESIS_PREV_HASH

    for index, entry in enumerate(entries):
        expected = compute_entry_hash(
            timestamp_iso=isoformat_z(entry.timestamp),
            action=entry.action,
            item_type=entry.item_type,
            item_id=str(entry.item_id),
            episode=entry.episode,
            payload=entry.payload,
            prev_hash=entry.prev_hash,
        )
        if entry.hash != expected:
            return (False, index + 1)
        if entry.prev_hash != prev_hash:
            return (False, index + 1)
        prev_hash = entry.hash

    return (True, len(entries))


class SqlLedger(Ledger):
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_entry(
        self, item_id: UUID, action: LedgerAction, *, episode: int | None = None
    ) -> LedgerEntryRead | None:
        query = select(LedgerEntry).where(LedgerEntry.item_id == item_id, LedgerEntry.action == action)
        if episode is not None:
            query = query.where(LedgerEntry.episode == episode)
        with transient_errors("ledger lookup"):
            result = await self._session.execute(query.order_by(LedgerEntry.id.desc()).limit(1))
        entry = result.scalar_one_or_none()
        return entry.to_schema() if entry is not None else None

    async def count_entries(
        self, item_id: UUID, action: LedgerAction, *, episode: int | None = None
    ) -> int:
        query = select(func.count(LedgerEntry.id)).where(
            LedgerEntry.item_id == item_id, LedgerEntry.action == action
        )
        if episode is not None:
            query = query.where(LedgerEntry.episode == episode)
        with transient_errors("ledger count"):
            result = await self._session.execute(query)
        return int(result.scalar_one())

    async def append(
        self,
        *,
        action: LedgerAction,
        item_type: ItemType,
        item_id: UUID,
        episode: int,
        payload: dict[str, Any],
    ) -> LedgerEntryRead:
        with transient_errors("ledger append"):
            entry = await append_ledger_entry(
                self._session,
                action=action,
                item_type=item_type,
                item_id=item_id,
                episode=episode,
                payload=payload,
            )
            await self._session.commit()
        logger.info(
            "Ledger %s recorded for %s %s (episode %d)",
            action,
            item_type,
            item_id,
            episode,
            extra={
                "event_type": f"ledger.{action.lower()}",
                "ops_payload": {"item_id": str(item_id), "episode": episode},
            },
        )
        return entry.to_schema()

    async def recent(self, *, limit: int = 50, item_id: UUID | None = None) -> list[LedgerEntryRead]:
        query = select(LedgerEntry)
        if item_id is not None:
            query = query.where(LedgerEntry.item_id == item_id)
        with transient_errors("ledger listing"):
            result = await self._session.execute(query.order_by(LedgerEntry.id.desc()).limit(limit))
        return [entry.to_schema() for entry in result.scalars().all()]

    @asynccontextmanager
    async def hold_dispatch(self, item_id: UUID) -> AsyncIterator[None]:
        """Session-level advisory lock on a dedicated connection.

        A transaction-scoped lock would not survive the ledger commits made during dispatch.
        """
        async with _LOCAL_DISPATCH_LOCKS.hold(item_id):
            engine = self._session.bind
            if not isinstance(engine, AsyncEngine) or engine.dialect.name != "postgresql":
                yield
                return

            key = dispatch_lock_key(item_id)
            with transient_errors("dispatch lock"):
                connection = await engine.connect()
            try:
                with transient_errors("dispatch lock"):
                    await connection.execute(select(func.pg_advisory_lock(DISPATCH_LOCK_NAMESPACE, key)))
                    await connection.commit()
                yield
            finally:
                try:
                    await connection.execute(select(func.pg_advisory_unlock(DISPATCH_LOCK_NAMESPACE, key)))
                    await connection.commit()
                except SQLAlchemyError:
                    logger.warning(
                        "Could not release dispatch lock for %s; dropping the connection",
                        item_id,
                        exc_info=True,
                        extra={"event_type": "ledger.dispatch_lock.release_failed"},
                    )
                    await connection.invalidate()
                await connection.close()
