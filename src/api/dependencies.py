from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import Settings, get_settings
from src.db.connection import get_db
from src.handlers.abuse import VoteRateLimiter, get_vote_rate_limiter
from src.handlers.context import VotingContext, build_context
from src.handlers.errors import (
    AlreadyVoted,
    BallotValidationError,
    InvalidInput,
    InvalidTransition,
    ItemNotFound,
    NotEligible,
    RenderError,
    TransientStoreError,
    VoteRateLimited,
    VotingError,
)


def get_voting_context(
    session: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> VotingContext:
    return build_context(session, settings)


def get_rate_limiter() -> VoteRateLimiter:
    return get_vote_rate_limiter()


def http_error_for(exc: VotingError) -> HTTPException:
    if isinstance(exc, ItemNotFound):
        return HTTPException(status_code=404, detail="item not found")
    if isinstance(exc, VoteRateLimited):
        headers = None
        if exc.retry_after_seconds is not None:
            headers = {"Retry-After": str(max(1, int(exc.retry_after_seconds)))}
        return HTTPException(status_code=429, detail=str(exc), headers=headers)
    if isinstance(exc, AlreadyVoted):
        return HTTPException(status_code=409, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, NotEligible):
        return HTTPException(status_code=403, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, BallotValidationError):
        return HTTPException(status_code=400, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidInput, RenderError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        return HTTPException(status_code=503, detail="voting store unavailable")
    return HTTPException(status_code=500, detail="voting error")
