"""Reputation vote calculation for settled tasks."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal

from task_settlement_service.services.fee_calculator import parse_amount

MIN_VOTES = 1
MAX_VOTES = 50

# Currency units per vote
_POSTER_VOTE_UNIT = Decimal(10)
_TASKER_VOTE_UNIT = Decimal(100)


@dataclass(frozen=True)
class Votes:
    """Votes credited to each party of a settled task."""

    poster_votes: int
    tasker_votes: int

    def to_dict(self) -> dict[str, int]:
        return {"poster_votes": self.poster_votes, "tasker_votes": self.tasker_votes}


def _clamp(value: int) -> int:
    return max(MIN_VOTES, min(MAX_VOTES, value))


def calculate_votes(task_budget: object, offer_amount: object) -> Votes:
    """
    Compute poster and tasker votes from the budget and the accepted offer.

    The poster earns a vote per 10 units saved against the budget, the
    tasker a vote per 100 units of the offer. Both are clamped to [1, 50].
    """
    budget = parse_amount(task_budget, "task_budget")
    offer = parse_amount(offer_amount, "offer_amount")

    saved_amount = budget - offer
    poster_votes = math.floor(saved_amount / _POSTER_VOTE_UNIT)
    tasker_votes = math.floor(offer / _TASKER_VOTE_UNIT)

    return Votes(poster_votes=_clamp(poster_votes), tasker_votes=_clamp(tasker_votes))
