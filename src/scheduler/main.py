from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.channels.base import BaseChannel
from src.config import Settings, get_settings
from src.db.heartbeat import DEADLINE_SWEEP_JOB, upsert_heartbeat
from src.handlers.context import build_context
from src.handlers.triggers import SweepReport, run_deadline_sweep

logger = logging.getLogger(__name__)

SWEEP_LOCK = asyncio.Lock()


async def run_sweep_once(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    channel: BaseChannel | None = None,
) -> SweepReport:
    """One sweep tick. A tick that finds the previous one still running is skipped."""
    if SWEEP_LOCK.locked():
        logger.info(
            "Previous deadline sweep still running; skipping tick",
            extra={"event_type": "scheduler.sweep.skipped"},
        )
        return SweepReport(errors=["sweep already running"])

    active_settings = settings or get_settings()
    async with SWEEP_LOCK:
        async with session_factory() as session:
            try:
                report = await run_deadline_sweep(build_context(session, active_settings, channel=channel))
            except Exception as exc:  # pragma: no cover
                await session.rollback()
                logger.exception(
                    "Deadline sweep failed: %s",
                    exc,
                    extra={
                        "event_type": "scheduler.sweep.error",
                        "ops_payload": {"exception_type": type(exc).__name__},
                    },
                )
                report = SweepReport(errors=[str(exc)])

        async with session_factory() as session:
            detail = (
                f"examined={report.examined} completed={report.newly_completed} "
                f"notified={report.notified} retried={report.retried}"
            )
            if report.errors:
                detail += f" errors={report.errors}"
            await upsert_heartbeat(
                session,
                job_name=DEADLINE_SWEEP_JOB,
                status="error" if report.errors else "ok",
                detail=detail,
            )
    return report


async def scheduler_loop(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    interval_seconds: float,
    settings: Settings | None = None,
) -> None:
    while True:
        await run_sweep_once(session_factory=session_factory, settings=settings)
        await asyncio.sleep(interval_seconds)
