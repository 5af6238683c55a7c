from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from src.api.authn import require_admin
from src.api.dependencies import get_voting_context, http_error_for
from src.handlers.context import VotingContext
from src.handlers.dispatch import DispatchResult, RecipientDelivery
from src.handlers.errors import DeliveryError, VotingError
from src.handlers.outcome import format_summary_report
from src.handlers.triggers import close_voting, manual_trigger
from src.handlers.voting import open_voting
from src.models.item import CompletionReason, ItemStatus, ItemType, VotableItemRead
from src.models.user import User

logger = logging.getLogger(__name__)
router = APIRouter()


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    voting_deadline: datetime | None = Field(default=None, alias="votingDeadline")


class CloseVotingResponse(BaseModel):
    item_id: UUID
    status: ItemStatus
    reason: CompletionReason | None = None
    email_sent: bool
    report: str | None = None
    error: str | None = None


class ManualSummaryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_id: UUID = Field(alias="itemId")
    item_type: ItemType = Field(alias="itemType")
    force: bool = False


class ManualSummaryResponse(BaseModel):
    success: bool
    email_sent: bool
    duplicate: bool
    forced: bool
    episode: int
    sent_count: int
    failed_count: int
    recipients: list[RecipientDelivery]
    message: str

    @classmethod
    def from_result(cls, result: DispatchResult, message: str) -> ManualSummaryResponse:
        return cls(
            success=result.success,
            email_sent=result.email_sent,
            duplicate=result.duplicate,
            forced=result.forced,
            episode=result.episode,
            sent_count=result.sent_count,
            failed_count=result.failed_count,
            recipients=result.deliveries,
            message=message,
        )


@router.post("/items/{item_type}/{item_id}/publish", response_model=VotableItemRead)
async def publish(
    item_type: ItemType,
    item_id: UUID,
    admin: Annotated[User, Depends(require_admin)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
    body: PublishRequest | None = None,
) -> VotableItemRead:
    try:
        return await open_voting(
            context.store,
            context.eligibility,
            item_type=item_type,
            item_id=item_id,
            settings=context.settings,
            voting_deadline=body.voting_deadline if body else None,
        )
    except VotingError as exc:
        raise http_error_for(exc) from exc


@router.post("/items/{item_type}/{item_id}/close", response_model=CloseVotingResponse)
async def close(
    item_type: ItemType,
    item_id: UUID,
    admin: Annotated[User, Depends(require_admin)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
) -> CloseVotingResponse:
    try:
        result = await close_voting(context, item_type, item_id)
    except VotingError as exc:
        raise http_error_for(exc) from exc
    logger.info(
        "Voting on %s %s closed by admin %s",
        item_type,
        item_id,
        admin.id,
        extra={"event_type": "admin.voting.closed", "ops_payload": {"item_id": str(item_id)}},
    )
    outcome = result.completion.outcome
    return CloseVotingResponse(
        item_id=item_id,
        status=result.completion.status,
        reason=result.completion.reason,
        email_sent=result.email_sent,
        report=format_summary_report(outcome) if outcome else None,
        error=result.error,
    )


@router.post("/voting-summary", response_model=ManualSummaryResponse)
async def send_voting_summary(
    body: ManualSummaryRequest,
    admin: Annotated[User, Depends(require_admin)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
) -> ManualSummaryResponse:
    try:
        result = await manual_trigger(
            context,
            body.item_type,
            body.item_id,
            actor=str(admin.id),
            force=body.force,
        )
    except DeliveryError as exc:
        return ManualSummaryResponse.from_result(exc.result, f"Summary delivery failed: {exc}")
    except VotingError as exc:
        raise http_error_for(exc) from exc

    if result.duplicate:
        message = "Summary already sent for this completion; pass force to resend"
    else:
        message = f"Summary sent to {result.sent_count} of {result.sent_count + result.failed_count} recipients"
    return ManualSummaryResponse.from_result(result, message)
