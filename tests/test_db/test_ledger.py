from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.db.ledger import (
    DISPATCH_LOCK_NAMESPACE,
    GENESIS_PREV_HASH,
    LedgerEntry,
    SqlLedger,
    append_ledger_entry,
    canonical_json,
    compute_entry_hash,
    dispatch_lock_key,
    isoformat_z,
    verify_chain,
)


def _hash(**overrides: object) -> str:
    values: dict[str, object] = {
        "timestamp_iso": "2026-03-02T12:00:00.000Z",
        "action": "SENT",
        "item_type": "resolution",
        "item_id": "6F1C2E0A-0000-4000-8000-000000000001",
        "episode": 1,
        "payload": {"sent_count": 5, "failed_count": 0},
        "prev_hash": GENESIS_PREV_HASH,
    }
    values.update(overrides)
    return compute_entry_hash(**values)  # type: ignore[arg-type]


def test_compute_entry_hash_is_deterministic() -> None:
    assert _hash() == _hash()
    assert len(_hash()) == 64


def test_item_id_case_does_not_change_hash() -> None:
    assert _hash(item_id="6f1c2e0a-0000-4000-8000-000000000001") == _hash()


@pytest.mark.parametrize(
    "override",
    [{"episode": 2}, {"action": "FAILED"}, {"prev_hash": "f" * 64}, {"payload": {"sent_count": 4}}],
)
def test_any_field_change_alters_hash(override: dict[str, object]) -> None:
    assert _hash(**override) != _hash()


def test_canonical_json_sorted_key_invariance() -> None:
    assert canonical_json({"z": 1, "a": 2}) == canonical_json({"a": 2, "z": 1})


def test_isoformat_z_uses_milliseconds() -> None:
    from datetime import UTC, datetime

    stamp = datetime(2026, 3, 2, 12, 0, 0, 123456, tzinfo=UTC)
    assert isoformat_z(stamp) == "2026-03-02T12:00:00.123Z"


@pytest.mark.asyncio
async def test_invalid_action_rejected() -> None:
    mock_session = AsyncMock(spec=AsyncSession)
    with pytest.raises(ValueError, match="Invalid ledger action"):
        await append_ledger_entry(
            mock_session, action="PENDING", item_type="minutes", item_id=uuid4(), episode=1, payload={}
        )


@pytest.mark.asyncio
async def test_chain_linking_and_verification(db_session: AsyncSession) -> None:
    item_id = uuid4()
    for action in ("TRIGGERED", "FAILED", "SENT"):
        await append_ledger_entry(
            db_session, action=action, item_type="resolution", item_id=item_id, episode=1, payload={"a": action}
        )
    await db_session.commit()

    result = await db_session.execute(select(LedgerEntry).order_by(LedgerEntry.id))
    entries = list(result.scalars().all())
    assert entries[0].prev_hash == GENESIS_PREV_HASH
    for idx in range(1, len(entries)):
        assert entries[idx].prev_hash == entries[idx - 1].hash

    assert await verify_chain(db_session) == (True, 3)


@pytest.mark.asyncio
async def test_verify_chain_detects_payload_tamper(db_session: AsyncSession) -> None:
    first = await append_ledger_entry(
        db_session, action="TRIGGERED", item_type="minutes", item_id=uuid4(), episode=1, payload={"a": 1}
    )
    await append_ledger_entry(
        db_session, action="SENT", item_type="minutes", item_id=uuid4(), episode=1, payload={"b": 2}
    )
    await db_session.commit()

    await db_session.execute(
        text("UPDATE completion_ledger SET payload = CAST(:payload AS JSONB) WHERE id = :id"),
        {"payload": '{"a":999}', "id": first.id},
    )
    await db_session.commit()
    valid, _ = await verify_chain(db_session)
    assert valid is False


@pytest.mark.asyncio
async def test_payload_with_uuid_is_stored_as_hashed(db_session: AsyncSession) -> None:
    recipient = uuid4()
    await append_ledger_entry(
        db_session,
        action="SENT",
        item_type="resolution",
        item_id=uuid4(),
        episode=1,
        payload={"recipient_ids": [recipient]},
    )
    await db_session.commit()
    assert await verify_chain(db_session) == (True, 1)


@pytest.mark.asyncio
async def test_concurrent_appends_keep_integrity(db_session: AsyncSession) -> None:
    maker = async_sessionmaker(bind=db_session.bind, expire_on_commit=False)

    async def _append(idx: int) -> None:
        async with maker() as session:
            await append_ledger_entry(
                session, action="TRIGGERED", item_type="resolution", item_id=uuid4(), episode=1, payload={"i": idx}
            )
            await session.commit()

    await asyncio.gather(_append(1), _append(2))

    assert await verify_chain(db_session) == (True, 2)


@pytest.mark.asyncio
async def test_sql_ledger_lookups_are_episode_scoped(db_session: AsyncSession) -> None:
    ledger = SqlLedger(db_session)
    item_id = uuid4()
    await ledger.append(action="SENT", item_type="resolution", item_id=item_id, episode=1, payload={})
    await ledger.append(action="FAILED", item_type="resolution", item_id=item_id, episode=2, payload={})
    await ledger.append(action="FAILED", item_type="resolution", item_id=item_id, episode=2, payload={})

    assert await ledger.find_entry(item_id, "SENT", episode=1) is not None
    assert await ledger.find_entry(item_id, "SENT", episode=2) is None
    assert await ledger.find_entry(item_id, "SENT") is not None
    assert await ledger.count_entries(item_id, "FAILED", episode=2) == 2
    assert await ledger.count_entries(item_id, "FAILED", episode=1) == 0

    recent = await ledger.recent(limit=2, item_id=item_id)
    assert [entry.action for entry in recent] == ["FAILED", "FAILED"]
    assert await ledger.recent(item_id=uuid4()) == []


def test_dispatch_lock_key_fits_a_signed_int4() -> None:
    for _ in range(50):
        key = dispatch_lock_key(uuid4())
        assert -(2**31) <= key < 2**31


@pytest.mark.asyncio
async def test_dispatch_lock_is_held_against_other_connections(
    db_session: AsyncSession, test_database_url: str
) -> None:
    item_id = uuid4()
    key = dispatch_lock_key(item_id)
    other_process = create_async_engine(test_database_url)
    try:
        async with SqlLedger(db_session).hold_dispatch(item_id):
            async with other_process.connect() as conn:
                acquired_while_held = await conn.scalar(
                    select(func.pg_try_advisory_lock(DISPATCH_LOCK_NAMESPACE, key))
                )
        async with other_process.connect() as conn:
            acquired_after = await conn.scalar(select(func.pg_try_advisory_lock(DISPATCH_LOCK_NAMESPACE, key)))
            await conn.scalar(select(func.pg_advisory_unlock(DISPATCH_LOCK_NAMESPACE, key)))
    finally:
        await other_process.dispose()

    assert acquired_while_held is False
    assert acquired_after is True
