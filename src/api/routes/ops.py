from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.authn import require_user_from_bearer, resolve_claims_from_bearer
from src.config import Settings, get_settings
from src.db.connection import check_db_health, get_db
from src.db.heartbeat import DEADLINE_SWEEP_JOB, get_heartbeat
from src.db.ledger import SqlLedger, isoformat_z
from src.db.stores import LedgerEntryRead
from src.ops import events as ops_events
from src.ops.events import EventLevel, OpsEvent

router = APIRouter()

HealthState = Literal["ok", "degraded", "error", "unknown"]


class ServiceStatus(BaseModel):
    name: str
    status: HealthState
    detail: str | None = None


class OpsStatusResponse(BaseModel):
    generated_at: str
    require_admin: bool
    services: list[ServiceStatus]
    event_counts: dict[str, int] = Field(default_factory=dict)


class OpsEventResponse(BaseModel):
    timestamp: str
    level: EventLevel
    component: str
    event_type: str
    message: str
    correlation_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class JobStatus(BaseModel):
    name: str
    status: HealthState
    last_run: str | None = None
    detail: str | None = None


async def _require_ops_access(
    settings: Annotated[Settings, Depends(get_settings)],
    session: Annotated[AsyncSession, Depends(get_db)],
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    if not settings.ops_console_enabled:
        raise HTTPException(status_code=404, detail="ops_console_disabled")
    claims = resolve_claims_from_bearer(authorization=authorization)
    if not settings.ops_console_require_admin:
        return claims.email
    user = await require_user_from_bearer(session=session, claims=claims)
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return claims.email


def _ledger_to_event(entry: LedgerEntryRead) -> OpsEvent:
    return {
        "timestamp": isoformat_z(entry.timestamp),
        "level": "warning" if entry.action == "FAILED" else "info",
        "component": "ledger",
        "event_type": f"ledger.{entry.action.lower()}",
        "message": f"{entry.action} {entry.item_type} {entry.item_id} (episode {entry.episode})",
        "correlation_id": None,
        "payload": ops_events.sanitize_value({**entry.payload, "item_id": str(entry.item_id)}),
    }


async def _sweep_status(session: AsyncSession, settings: Settings) -> tuple[HealthState, str | None, str | None]:
    heartbeat = await get_heartbeat(session, DEADLINE_SWEEP_JOB)
    if heartbeat is None:
        return "unknown", "no heartbeat recorded yet", None
    last_run = isoformat_z(heartbeat.last_run_at)
    age = datetime.now(UTC) - heartbeat.last_run_at
    stale_threshold = timedelta(seconds=settings.deadline_sweep_interval_seconds * 3)
    if heartbeat.status == "error":
        return "error", heartbeat.detail or "last run had errors", last_run
    if age > stale_threshold:
        return (
            "degraded",
            f"last heartbeat {age.total_seconds():.0f}s ago "
            f"(expected every {settings.deadline_sweep_interval_seconds:.0f}s)",
            last_run,
        )
    return "ok", heartbeat.detail, last_run


@router.get("/status", response_model=OpsStatusResponse)
async def status(
    settings: Annotated[Settings, Depends(get_settings)],
    _: Annotated[str, Depends(_require_ops_access)],
    session: AsyncSession = Depends(get_db),
) -> OpsStatusResponse:
    db_ok = await check_db_health()
    email_ready = bool(settings.resend_api_key)
    sweep_status, sweep_detail, _last = await _sweep_status(session, settings)

    services = [
        ServiceStatus(name="api", status="ok"),
        ServiceStatus(name="database", status="ok" if db_ok else "error"),
        ServiceStatus(
            name="email_transport",
            status="ok" if email_ready else "degraded",
            detail="resend enabled" if email_ready else "console fallback mode",
        ),
        ServiceStatus(name="deadline_sweep", status=sweep_status, detail=sweep_detail),
    ]
    return OpsStatusResponse(
        generated_at=ops_events.iso_now(),
        require_admin=settings.ops_console_require_admin,
        services=services,
        event_counts=dict(ops_events.ops_event_buffer.counts_by_level()),
    )


@router.get("/events", response_model=list[OpsEventResponse])
async def events(
    _: Annotated[str, Depends(_require_ops_access)],
    session: AsyncSession = Depends(get_db),
    limit: int = Query(100, ge=1, le=500),
    level: EventLevel | None = Query(default=None),
    event_type: str | None = Query(default=None, alias="type"),
    correlation_id: str | None = Query(default=None),
    item_id: str | None = Query(default=None),
) -> list[OpsEventResponse]:
    memory_events = ops_events.ops_event_buffer.recent(
        limit=limit, level=level, event_type=event_type, item_id=item_id
    )
    ledger_events: list[OpsEvent] = []
    if correlation_id is None:
        entries = await SqlLedger(session).recent(limit=min(limit, 200))
        for entry in entries:
            event = _ledger_to_event(entry)
            if level is not None and event["level"] != level:
                continue
            if event_type and event_type not in event["event_type"]:
                continue
            if item_id and str(entry.item_id) != item_id:
                continue
            ledger_events.append(event)

    merged = sorted([*memory_events, *ledger_events], key=lambda item: item["timestamp"], reverse=True)
    if correlation_id:
        merged = [
            item
            for item in merged
            if item["correlation_id"] and correlation_id in item["correlation_id"]
        ]
    cleaned = []
    for item in merged[:limit]:
        cleaned.append(
            {
                **item,
                "message": ops_events.redact_text(item["message"]),
                "payload": ops_events.sanitize_value(item["payload"]),
            }
        )
    return [OpsEventResponse(**item) for item in cleaned]


@router.get("/jobs", response_model=list[JobStatus])
async def jobs(
    settings: Annotated[Settings, Depends(get_settings)],
    _: Annotated[str, Depends(_require_ops_access)],
    session: AsyncSession = Depends(get_db),
) -> list[JobStatus]:
    sweep_status, sweep_detail, sweep_last = await _sweep_status(session, settings)
    entries = await SqlLedger(session).recent(limit=300)

    def latest_for(action: str) -> str | None:
        for entry in entries:
            if entry.action == action:
                return isoformat_z(entry.timestamp)
        return None

    sent_last = latest_for("SENT")
    failed_last = latest_for("FAILED")
    summary_status: HealthState = "unknown"
    if sent_last and (failed_last is None or sent_last >= failed_last):
        summary_status = "ok"
    elif failed_last:
        summary_status = "degraded"

    return [
        JobStatus(name=DEADLINE_SWEEP_JOB, status=sweep_status, last_run=sweep_last, detail=sweep_detail),
        JobStatus(
            name="summary_dispatch",
            status=summary_status,
            last_run=sent_last,
            detail=f"last failure {failed_last}" if failed_last else "derived from ledger entries",
        ),
        JobStatus(
            name="email_delivery",
            status="ok" if settings.resend_api_key else "degraded",
            detail="resend enabled" if settings.resend_api_key else "console fallback mode",
        ),
    ]
