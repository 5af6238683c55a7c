from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.api.dependencies import get_voting_context, http_error_for
from src.config import Settings, get_settings
from src.db.stores import LedgerAction
from src.handlers.context import VotingContext
from src.handlers.errors import ItemNotFound, VotingError
from src.handlers.triggers import process_completion
from src.models.item import ItemType

logger = logging.getLogger(__name__)
router = APIRouter()


class VotingCompletionWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_type: ItemType = Field(alias="itemType")
    item_id: UUID = Field(alias="itemId")


class LedgerActivity(BaseModel):
    id: int
    timestamp: datetime
    action: LedgerAction
    item_type: ItemType
    item_id: UUID
    episode: int
    payload: dict[str, Any]


def _require_webhook_secret(
    settings: Annotated[Settings, Depends(get_settings)],
    x_webhook_secret: Annotated[str | None, Header()] = None,
) -> None:
    if not settings.voting_webhook_secret:
        raise HTTPException(status_code=404)
    if x_webhook_secret is None or not hmac.compare_digest(
        x_webhook_secret.encode("utf-8"), settings.voting_webhook_secret.encode("utf-8")
    ):
        raise HTTPException(status_code=401, detail="invalid webhook secret")


@router.post("/voting-completion")
async def voting_completion_webhook(
    request: Request,
    _: Annotated[None, Depends(_require_webhook_secret)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
) -> dict[str, Any]:
    try:
        payload: dict[str, Any] = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail="malformed json") from exc
    try:
        event = VotingCompletionWebhook.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail="expected itemType and itemId") from exc

    try:
        result = await process_completion(context, event.item_type, event.item_id, source="webhook")
    except ItemNotFound as exc:
        raise http_error_for(exc) from exc
    except VotingError as exc:
        logger.warning(
            "Voting completion webhook failed for %s %s: %s",
            event.item_type,
            event.item_id,
            exc,
            extra={"event_type": "webhooks.voting_completion.failed", "ops_payload": {"item_id": str(event.item_id)}},
        )
        return {"success": False, "emailSent": False, "error": str(exc)}

    return {
        "success": result.error is None,
        "emailSent": result.email_sent,
        "isComplete": result.completion.is_complete,
        "reason": result.completion.reason,
    }


@router.get("/voting-completion", response_model=list[LedgerActivity])
async def voting_completion_activity(
    _: Annotated[None, Depends(_require_webhook_secret)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
    limit: int = Query(20, ge=1, le=200),
    item_id: UUID | None = Query(default=None, alias="itemId"),
) -> list[LedgerActivity]:
    try:
        entries = await context.ledger.recent(limit=limit, item_id=item_id)
    except VotingError as exc:
        raise http_error_for(exc) from exc
    return [LedgerActivity(**entry.model_dump()) for entry in entries]
