"""Voting outcome statistics.

Everything here is pure: the same ballots and configuration always produce the same
``VotingOutcome``. Policy:

* every ballot, abstentions included, counts toward participation and quorum;
* approval is measured over decisive ballots only (approve + reject);
* ``requires_majority`` needs a strict majority of decisive ballots, so a tie fails;
* an item with no decisive ballots never passes.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, ConfigDict

from src.handlers.errors import InvalidInput
from src.models.ballot import BallotRead, VoteChoice
from src.models.item import ItemType

MarginType = Literal["victory", "defeat", "tie"]
ConsensusLevel = Literal["high", "moderate", "low", "polarized"]


class VotingOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_votes: int
    total_eligible_voters: int
    approve_votes: int
    reject_votes: int
    abstain_votes: int
    participation_rate: float
    approval_percentage: float
    rejection_percentage: float
    abstention_percentage: float
    is_unanimous: bool
    unanimous_choice: VoteChoice | None = None
    minimum_quorum: float
    approval_threshold: float
    requires_majority: bool
    quorum_met: bool
    quorum_required_votes: int
    quorum_shortfall: int
    margin_of_victory: float
    margin_type: MarginType
    margin_description: str
    consensus_level: ConsensusLevel
    comment_count: int
    comment_rate: float
    passed: bool
    passed_reason: str


def _pct(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part / whole * 100, 2)


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def _check_threshold(name: str, value: float) -> None:
    if math.isnan(value) or not 0 <= value <= 100:
        raise InvalidInput(f"{name} must be within [0, 100], got {value}")


def calculate_outcome(
    ballots: Sequence[BallotRead],
    *,
    total_eligible_voters: int,
    minimum_quorum: float,
    approval_threshold: float,
    requires_majority: bool = False,
) -> VotingOutcome:
    _check_threshold("minimum_quorum", minimum_quorum)
    _check_threshold("approval_threshold", approval_threshold)
    total_votes = len(ballots)
    if total_eligible_voters < 0:
        raise InvalidInput(f"total_eligible_voters cannot be negative, got {total_eligible_voters}")
    if total_votes > total_eligible_voters:
        raise InvalidInput(
            f"{total_votes} ballots recorded but only {total_eligible_voters} eligible voters"
        )

    approve = sum(1 for b in ballots if b.choice is VoteChoice.APPROVE)
    reject = sum(1 for b in ballots if b.choice is VoteChoice.REJECT)
    abstain = total_votes - approve - reject
    decisive = approve + reject

    participation_rate = _pct(total_votes, total_eligible_voters)
    approval_percentage = _pct(approve, decisive)
    rejection_percentage = _pct(reject, decisive)
    abstention_percentage = _pct(abstain, total_votes)

    is_unanimous = decisive >= 1 and (approve == 0 or reject == 0)
    unanimous_choice: VoteChoice | None = None
    if is_unanimous:
        unanimous_choice = VoteChoice.APPROVE if approve else VoteChoice.REJECT

    quorum_met = participation_rate >= minimum_quorum
    quorum_required = math.ceil(minimum_quorum / 100 * total_eligible_voters)
    quorum_shortfall = 0 if quorum_met else max(quorum_required - total_votes, 0)

    absolute_margin = abs(approve - reject)
    margin = _pct(absolute_margin, decisive)
    margin_type: MarginType
    if approve > reject:
        margin_type = "victory"
        margin_description = f"Carried by {absolute_margin} vote{_plural(absolute_margin)} ({margin}% margin)"
    elif reject > approve:
        margin_type = "defeat"
        margin_description = f"Defeated by {absolute_margin} vote{_plural(absolute_margin)} ({margin}% margin)"
    else:
        margin_type = "tie"
        margin_description = "Tied vote, no margin"

    consensus: ConsensusLevel
    if is_unanimous or margin >= 60:
        consensus = "high"
    elif margin >= 30:
        consensus = "moderate"
    elif margin >= 10:
        consensus = "low"
    else:
        consensus = "polarized"

    comment_count = sum(1 for b in ballots if b.has_comment)

    approval_met = decisive > 0 and approval_percentage >= approval_threshold
    majority_met = not requires_majority or approval_percentage > 50
    passed = quorum_met and approval_met and majority_met

    if not quorum_met:
        reason = (
            f"Quorum not met ({participation_rate}% participation, {minimum_quorum:g}% required)"
        )
    elif decisive == 0:
        reason = "No approve or reject votes were cast"
    elif not approval_met:
        reason = (
            f"Insufficient approval ({approval_percentage}% approval, "
            f"{approval_threshold:g}% required)"
        )
    elif not majority_met:
        reason = f"Majority not reached ({approval_percentage}% approval, more than 50% required)"
    elif unanimous_choice is VoteChoice.APPROVE:
        reason = "Unanimous approval"
    else:
        reason = f"Approved by {approval_percentage}% of decisive votes"

    return VotingOutcome(
        total_votes=total_votes,
        total_eligible_voters=total_eligible_voters,
        approve_votes=approve,
        reject_votes=reject,
        abstain_votes=abstain,
        participation_rate=participation_rate,
        approval_percentage=approval_percentage,
        rejection_percentage=rejection_percentage,
        abstention_percentage=abstention_percentage,
        is_unanimous=is_unanimous,
        unanimous_choice=unanimous_choice,
        minimum_quorum=minimum_quorum,
        approval_threshold=approval_threshold,
        requires_majority=requires_majority,
        quorum_met=quorum_met,
        quorum_required_votes=quorum_required,
        quorum_shortfall=quorum_shortfall,
        margin_of_victory=margin,
        margin_type=margin_type,
        margin_description=margin_description,
        consensus_level=consensus,
        comment_count=comment_count,
        comment_rate=_pct(comment_count, total_votes),
        passed=passed,
        passed_reason=reason,
    )


def terminal_status_for(item_type: ItemType, passed: bool) -> str:
    if item_type == "resolution":
        return "approved" if passed else "rejected"
    return "passed" if passed else "failed"


def format_summary_report(outcome: VotingOutcome) -> str:
    lines = [
        f"Participation: {outcome.total_votes}/{outcome.total_eligible_voters} eligible voters "
        f"({outcome.participation_rate}%)",
        f"Quorum: {'MET' if outcome.quorum_met else 'NOT MET'} "
        f"({outcome.minimum_quorum:g}% required)",
        f"Result: {'PASSED' if outcome.passed else 'FAILED'} - {outcome.passed_reason}",
        f"Approve: {outcome.approve_votes} ({outcome.approval_percentage}%)",
        f"Reject: {outcome.reject_votes} ({outcome.rejection_percentage}%)",
        f"Abstain: {outcome.abstain_votes} ({outcome.abstention_percentage}%)",
    ]
    if outcome.is_unanimous and outcome.unanimous_choice is not None:
        lines.append(f"Unanimous {outcome.unanimous_choice.value} vote")
    else:
        lines.append(f"Margin: {outcome.margin_description}")
    lines.append(f"Consensus: {outcome.consensus_level}")
    return "\n".join(lines)
