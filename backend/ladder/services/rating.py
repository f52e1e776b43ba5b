import math
from dataclasses import dataclass, replace
from typing import Sequence

from ..config import DEFAULT_RATING, K_FACTOR_FLOOR, K_FACTOR_TIERS

WIN = 1.0
DRAW = 0.5
LOSS = 0.0


@dataclass(frozen=True)
class RatingState:
    """Rating plus result counters of a player in one mode family."""

    rating: float = DEFAULT_RATING
    matches_played: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    sets_won: int = 0
    sets_lost: int = 0

    def apply(self, delta: float, outcome: float) -> "RatingState":
        """Return the state after one match with ``delta`` and ``outcome``."""

        return replace(
            self,
            rating=self.rating + delta,
            matches_played=self.matches_played + 1,
            wins=self.wins + (1 if outcome == WIN else 0),
            losses=self.losses + (1 if outcome == LOSS else 0),
            draws=self.draws + (1 if outcome == DRAW else 0),
            sets_won=self.sets_won + (1 if outcome == WIN else 0),
            sets_lost=self.sets_lost + (1 if outcome == LOSS else 0),
        )

    def as_dict(self) -> dict[str, float | int]:
        return {
            "rating": self.rating,
            "matches_played": self.matches_played,
            "wins": self.wins,
            "losses": self.losses,
            "draws": self.draws,
            "sets_won": self.sets_won,
            "sets_lost": self.sets_lost,
        }

    @classmethod
    def from_row(cls, row) -> "RatingState":
        return cls(
            rating=float(row.rating),
            matches_played=row.matches_played or 0,
            wins=row.wins or 0,
            losses=row.losses or 0,
            draws=row.draws or 0,
            sets_won=row.sets_won or 0,
            sets_lost=row.sets_lost or 0,
        )


def default_state() -> RatingState:
    """State of a player with no history: starting rating, zero counters."""

    return RatingState()


def k_factor(matches_played: int) -> float:
    """Return the volatility factor for a player with ``matches_played`` results.

    Tiers come from :data:`ladder.config.K_FACTOR_TIERS`; newer players move
    faster than seasoned ones.
    """

    for upper_bound, k in K_FACTOR_TIERS:
        if matches_played < upper_bound:
            return k
    return K_FACTOR_FLOOR


def expected_score(rating_self: float, rating_opponent: float) -> float:
    return 1 / (1 + 10 ** ((rating_opponent - rating_self) / 400))


def round_delta(value: float) -> float:
    """Round half away from zero so that ``round_delta(-x) == -round_delta(x)``."""

    rounded = math.floor(abs(value) + 0.5)
    if rounded == 0:
        return 0.0
    return math.copysign(float(rounded), value)


def outcome_from_scores(score_self: int, score_opponent: int) -> float:
    if score_self > score_opponent:
        return WIN
    if score_self < score_opponent:
        return LOSS
    return DRAW


def delta(
    rating_self: float,
    rating_opponent: float,
    outcome: float,
    matches_played_self: int,
) -> float:
    """Return the rounded rating change for one side of a match.

    ``delta = K * (outcome - expected)`` where ``K`` depends on the player's
    experience and ``expected`` is the logistic expectation against the
    opponent rating.
    """

    if outcome not in (WIN, DRAW, LOSS):
        raise ValueError(f"outcome must be one of 1, 0.5, 0; got {outcome!r}")
    k = k_factor(matches_played_self)
    return round_delta(k * (outcome - expected_score(rating_self, rating_opponent)))


def match_deltas(
    rating_self: float,
    rating_opponent: float,
    outcome: float,
    matches_played_self: int,
) -> tuple[float, float]:
    """Return ``(delta_self, delta_opponent)``; the pair always sums to zero."""

    d = delta(rating_self, rating_opponent, outcome, matches_played_self)
    return d, (-d if d else 0.0)


def team_rating(ratings: Sequence[float]) -> float:
    if not ratings:
        raise ValueError("a team needs at least one member")
    return sum(ratings) / len(ratings)


def team_experience(matches_played: Sequence[int]) -> int:
    if not matches_played:
        raise ValueError("a team needs at least one member")
    return sum(matches_played) // len(matches_played)
