"""Deterministic in-memory replay of an ordered match range.

The working map built here is the only source of "current" rating state
while a range is replayed; nothing in this module touches the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from ..config import DOUBLES, DOUBLES_TEAM, RATING_FAMILIES
from ..exceptions import MalformedParticipants, ReplayConsistencyError
from .rating import (
    RatingState,
    default_state,
    k_factor,
    match_deltas,
    outcome_from_scores,
    team_experience,
    team_rating,
)
from .teams import team_keys
from .validation import ValidationError, validate_participants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayMatch:
    """A completed match as the replay engine sees it."""

    id: str
    mode: str
    player_ids: tuple[str, ...]
    team1_score: int
    team2_score: int

    @classmethod
    def from_row(cls, match, *, score: tuple[int, int] | None = None) -> "ReplayMatch":
        """Build from a ``SessionMatch`` row, optionally overriding its score."""

        team1, team2 = score if score is not None else (match.team1_score, match.team2_score)
        if team1 is None or team2 is None:
            raise ReplayConsistencyError(f"match '{match.id}' has no recorded score")
        return cls(
            id=match.id,
            mode=match.mode,
            player_ids=tuple(match.player_ids or ()),
            team1_score=int(team1),
            team2_score=int(team2),
        )

    @classmethod
    def for_teams(cls, match, *, score: tuple[int, int] | None = None) -> "ReplayMatch":
        """Build the pair-versus-pair view of a doubles ``SessionMatch`` row."""

        players = cls.from_row(match, score=score)
        if len(players.player_ids) != 4:
            raise MalformedParticipants(match.id, "a doubles match needs four players")
        return cls(
            id=players.id,
            mode=DOUBLES_TEAM,
            player_ids=team_keys(players.player_ids),
            team1_score=players.team1_score,
            team2_score=players.team2_score,
        )

    @property
    def sides(self) -> tuple[tuple[str, ...], tuple[str, ...]]:
        half = len(self.player_ids) // 2
        return self.player_ids[:half], self.player_ids[half:]


@dataclass(frozen=True)
class ReplayStep:
    """Before/after states of every participant of one replayed match."""

    match_id: str
    mode: str
    # K that produced the deltas of both sides
    k_factor: float
    before: dict[str, RatingState]
    after: dict[str, RatingState]

    def delta(self, player_id: str) -> float:
        return self.after[player_id].rating - self.before[player_id].rating


@dataclass
class ReplayResult:
    states: dict[str, RatingState]
    steps: list[ReplayStep] = field(default_factory=list)

    @property
    def touched_player_ids(self) -> set[str]:
        return {pid for step in self.steps for pid in step.after}


def _check_participants(match: ReplayMatch) -> None:
    if match.mode == DOUBLES_TEAM:
        if len(match.player_ids) != 2 or match.player_ids[0] == match.player_ids[1]:
            raise MalformedParticipants(match.id, "a team match needs two distinct teams")
        return
    try:
        validate_participants(match.mode, list(match.player_ids))
    except ValidationError as exc:
        raise MalformedParticipants(match.id, exc.detail) from exc


def _replay_one(working: dict[str, RatingState], match: ReplayMatch) -> ReplayStep:
    side1, side2 = match.sides
    before = {
        pid: working.get(pid) or default_state() for pid in match.player_ids
    }
    outcome1 = outcome_from_scores(match.team1_score, match.team2_score)
    outcome2 = outcome_from_scores(match.team2_score, match.team1_score)

    if match.mode == DOUBLES:
        rating1 = team_rating([before[pid].rating for pid in side1])
        rating2 = team_rating([before[pid].rating for pid in side2])
        experience1 = team_experience([before[pid].matches_played for pid in side1])
    else:
        # singles, and a pair rated against another pair
        rating1 = before[side1[0]].rating
        rating2 = before[side2[0]].rating
        experience1 = before[side1[0]].matches_played

    delta1, delta2 = match_deltas(rating1, rating2, outcome1, experience1)

    after: dict[str, RatingState] = {}
    for pid in side1:
        after[pid] = before[pid].apply(delta1, outcome1)
    for pid in side2:
        after[pid] = before[pid].apply(delta2, outcome2)
    working.update(after)

    return ReplayStep(
        match_id=match.id,
        mode=match.mode,
        k_factor=k_factor(experience1),
        before=before,
        after=after,
    )


def replay(
    baseline: Mapping[str, RatingState],
    matches: Iterable[ReplayMatch],
) -> ReplayResult:
    """Replay ``matches`` in the given order starting from ``baseline``.

    ``baseline`` is copied, never mutated. Participants missing from it start
    from :func:`default_state`. All matches must belong to one mode family, and
    a match id occurring twice aborts the replay with
    :class:`ReplayConsistencyError` instead of applying it again.
    """

    working: dict[str, RatingState] = dict(baseline)
    result = ReplayResult(states=working)
    seen: set[str] = set()
    family: str | None = None

    for match in matches:
        if match.id in seen:
            logger.error("match %s replayed more than once; aborting replay", match.id)
            raise ReplayConsistencyError(
                f"match '{match.id}' occurs more than once in one replay"
            )
        seen.add(match.id)

        if match.mode not in RATING_FAMILIES:
            raise ReplayConsistencyError(
                f"match '{match.id}' has unknown mode '{match.mode}'"
            )
        if family is None:
            family = match.mode
        elif match.mode != family:
            raise ReplayConsistencyError(
                f"match '{match.id}' is {match.mode} but the replay is {family}"
            )
        _check_participants(match)

        step = _replay_one(working, match)
        result.steps.append(step)
        logger.debug(
            "match replayed id=%s mode=%s score=%s-%s deltas=%s",
            match.id,
            match.mode,
            match.team1_score,
            match.team2_score,
            {pid: step.delta(pid) for pid in step.after},
        )

    return result
