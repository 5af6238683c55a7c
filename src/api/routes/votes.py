from __future__ import annotations

from datetime import datetime
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from src.api.authn import require_voter
from src.api.dependencies import get_rate_limiter, get_voting_context, http_error_for
from src.handlers.abuse import VoteRateLimiter
from src.handlers.context import VotingContext
from src.handlers.errors import VotingError
from src.handlers.triggers import post_ballot_hook
from src.handlers.voting import cast_ballot
from src.models.ballot import BallotRead, VoteChoice
from src.models.item import ItemType
from src.models.user import User

router = APIRouter()


class CastBallotRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vote: str = Field(min_length=1, max_length=16)
    comment: str | None = Field(default=None, alias="comments")


class OwnBallotResponse(BaseModel):
    item_id: UUID
    choice: VoteChoice
    comment: str | None = None
    cast_at: datetime
    updated_at: datetime | None = None

    @classmethod
    def from_ballot(cls, ballot: BallotRead) -> OwnBallotResponse:
        return cls(
            item_id=ballot.item_id,
            choice=ballot.choice,
            comment=ballot.comment,
            cast_at=ballot.cast_at,
            updated_at=ballot.updated_at,
        )


class CastBallotResponse(BaseModel):
    ballot: OwnBallotResponse
    voting_complete: bool = False


@router.post("/{item_type}/{item_id}", response_model=CastBallotResponse)
async def cast(
    item_type: ItemType,
    item_id: UUID,
    body: CastBallotRequest,
    user: Annotated[User, Depends(require_voter)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
    rate_limiter: Annotated[VoteRateLimiter, Depends(get_rate_limiter)],
) -> CastBallotResponse:
    try:
        ballot = await cast_ballot(
            context.store,
            item_type=item_type,
            item_id=item_id,
            voter_id=user.id,
            choice=body.vote,
            comment=body.comment,
            settings=context.settings,
            rate_limiter=rate_limiter,
        )
    except VotingError as exc:
        raise http_error_for(exc) from exc

    hook_result = await post_ballot_hook(context, item_type, item_id)
    complete = hook_result is not None and hook_result.completion.is_complete
    return CastBallotResponse(ballot=OwnBallotResponse.from_ballot(ballot), voting_complete=complete)


@router.get("/{item_type}/{item_id}/me", response_model=OwnBallotResponse)
async def my_ballot(
    item_type: ItemType,
    item_id: UUID,
    user: Annotated[User, Depends(require_voter)],
    context: Annotated[VotingContext, Depends(get_voting_context)],
) -> OwnBallotResponse:
    try:
        item = await context.store.get_item(item_id)
        if item is None or item.item_type != item_type:
            raise HTTPException(status_code=404, detail="item not found")
        ballot = await context.store.get_ballot(item_id, user.id)
    except VotingError as exc:
        raise http_error_for(exc) from exc
    if ballot is None:
        raise HTTPException(status_code=404, detail="no ballot cast")
    return OwnBallotResponse.from_ballot(ballot)
