from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from src.channels.base import BaseChannel
from src.channels.email import EmailChannel
from src.config import Settings, get_settings
from src.db.ledger import SqlLedger
from src.db.queries import SqlEligibilitySource, SqlVoteStore
from src.db.stores import EligibilitySource, Ledger, VoteStore


@dataclass(slots=True)
class VotingContext:
    """Collaborators shared by every completion trigger."""

    store: VoteStore
    ledger: Ledger
    eligibility: EligibilitySource
    channel: BaseChannel
    settings: Settings


def build_context(
    session: AsyncSession,
    settings: Settings | None = None,
    *,
    channel: BaseChannel | None = None,
) -> VotingContext:
    active_settings = settings or get_settings()
    return VotingContext(
        store=SqlVoteStore(session),
        ledger=SqlLedger(session),
        eligibility=SqlEligibilitySource(session),
        channel=channel or EmailChannel(active_settings),
        settings=active_settings,
    )
