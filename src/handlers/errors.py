"""Exceptions raised by the voting completion and notification path."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from src.handlers.dispatch import DispatchResult


class VotingError(Exception):
    pass


class ItemNotFound(VotingError, LookupError):
    def __init__(self, item_id: UUID) -> None:
        super().__init__(f"votable item {item_id} not found")
        self.item_id = item_id


class BallotValidationError(VotingError, ValueError):
    """A ballot was rejected at the store boundary. Never retried."""

    code = "invalid_ballot"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class VotingClosed(BallotValidationError):
    code = "voting_closed"


class DeadlinePassed(BallotValidationError):
    code = "deadline_passed"


class AlreadyVoted(BallotValidationError):
    code = "already_voted"


class NotEligible(BallotValidationError):
    """The voter was not on the item's voter roll when voting opened."""

    code = "not_eligible"


class InvalidInput(VotingError, ValueError):
    """Outcome inputs are inconsistent, e.g. more ballots than eligible voters."""


class RenderError(VotingError):
    pass


class DeliveryError(VotingError):
    def __init__(self, message: str, result: DispatchResult) -> None:
        super().__init__(message)
        self.result = result


class TransientStoreError(VotingError):
    """The vote store or ledger could not be reached."""


class VoteRateLimited(VotingError):
    def __init__(self, retry_after_seconds: float | None = None) -> None:
        super().__init__("too many vote attempts, try again shortly")
        self.retry_after_seconds = retry_after_seconds


class InvalidTransition(VotingError):
    """The item is not in a status that allows the requested lifecycle change."""
