from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.connection import get_db
from src.models.user import User
from src.security.web_auth import WebAccessClaims, verify_web_access_token


def resolve_claims_from_bearer(*, authorization: str | None) -> WebAccessClaims:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    token = authorization.removeprefix("Bearer ").strip()
    claims = verify_web_access_token(token=token)
    if claims is None:
        raise HTTPException(status_code=401, detail="invalid bearer token")
    return claims


def require_claims_from_bearer(
    authorization: Annotated[str | None, Header()] = None,
) -> WebAccessClaims:
    return resolve_claims_from_bearer(authorization=authorization)


async def require_user_from_bearer(
    session: Annotated[AsyncSession, Depends(get_db)],
    claims: Annotated[WebAccessClaims, Depends(require_claims_from_bearer)],
) -> User:
    user = await session.get(User, claims.user_id)
    if user is None or not user.is_active or user.email.lower() != claims.email.lower():
        raise HTTPException(status_code=401, detail="unknown user")
    return user


async def require_voter(user: Annotated[User, Depends(require_user_from_bearer)]) -> User:
    if not user.can_vote:
        raise HTTPException(status_code=403, detail="board member access required")
    return user


async def require_admin(user: Annotated[User, Depends(require_user_from_bearer)]) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="admin access required")
    return user
