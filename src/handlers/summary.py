from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID

from pydantic import BaseModel

from src.handlers.completion import persisted_outcome
from src.handlers.outcome import VotingOutcome, calculate_outcome
from src.models.ballot import BallotRead
from src.models.item import VotableItemRead
from src.models.user import Recipient


class VotingSummary(BaseModel):
    """Everything a summary email needs, resolved once per dispatch."""

    item: VotableItemRead
    outcome: VotingOutcome
    ballots: list[BallotRead]
    non_voters: list[Recipient]

    @property
    def voter_ids(self) -> set[UUID]:
        return {ballot.voter_id for ballot in self.ballots}

    def has_voted(self, user_id: UUID) -> bool:
        return user_id in self.voter_ids

    def ballot_for(self, user_id: UUID) -> BallotRead | None:
        for ballot in self.ballots:
            if ballot.voter_id == user_id:
                return ballot
        return None


def build_voting_summary(
    item: VotableItemRead,
    ballots: Sequence[BallotRead],
    recipients: Sequence[Recipient],
) -> VotingSummary:
    """Assemble the summary. Raises InvalidInput when the outcome cannot be computed."""
    outcome = persisted_outcome(item)
    if outcome is None:
        outcome = calculate_outcome(
            ballots,
            total_eligible_voters=item.total_eligible_voters,
            minimum_quorum=item.minimum_quorum,
            approval_threshold=item.approval_threshold,
            requires_majority=item.requires_majority,
        )
    ordered = sorted(ballots, key=lambda b: (b.cast_at, str(b.id)))
    voted = {ballot.voter_id for ballot in ordered}
    non_voters = [r for r in recipients if r.user_id not in voted]
    return VotingSummary(item=item, outcome=outcome, ballots=ordered, non_voters=non_voters)
