from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.db.connection import Base

DEADLINE_SWEEP_JOB = "deadline_sweep"


class SchedulerHeartbeat(Base):
    __tablename__ = "scheduler_heartbeat"

    job_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ok")
    detail: Mapped[str | None] = mapped_column(String(512), nullable=True)


async def upsert_heartbeat(
    session: AsyncSession,
    *,
    job_name: str = DEADLINE_SWEEP_JOB,
    status: str = "ok",
    detail: str | None = None,
) -> None:
    now = datetime.now(UTC)
    if detail is not None:
        detail = detail[:512]
    row = await session.get(SchedulerHeartbeat, job_name)
    if row is None:
        session.add(SchedulerHeartbeat(job_name=job_name, last_run_at=now, status=status, detail=detail))
    else:
        row.last_run_at = now
        row.status = status
        row.detail = detail
    await session.commit()


async def get_heartbeat(
    session: AsyncSession, job_name: str = DEADLINE_SWEEP_JOB
) -> SchedulerHeartbeat | None:
    result = await session.execute(
        select(SchedulerHeartbeat).where(SchedulerHeartbeat.job_name == job_name)
    )
    return result.scalar_one_or_none()
