from src.models.ballot import Ballot, BallotRead, VoteChoice
from src.models.item import (
    ITEM_TYPES,
    TERMINAL_STATUSES,
    ItemVoter,
    VotableItem,
    VotableItemCreate,
    VotableItemRead,
)
from src.models.user import Recipient, User, UserCreate, UserRead

__all__ = [
    "User",
    "UserCreate",
    "UserRead",
    "Recipient",
    "VotableItem",
    "ItemVoter",
    "VotableItemCreate",
    "VotableItemRead",
    "ITEM_TYPES",
    "TERMINAL_STATUSES",
    "Ballot",
    "BallotRead",
    "VoteChoice",
]
