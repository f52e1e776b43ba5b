from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DOUBLES_TEAM, SINGLES
from ..models import LadderSession, Player
from .rating import RatingState
from .recalculation import replay_session
from .snapshots import snapshot_before_session
from .teams import team_names

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerDelta:
    player_id: str
    name: str | None
    rating_before: float
    rating_after: float

    @property
    def delta(self) -> float:
        return self.rating_after - self.rating_before


@dataclass
class SessionSummary:
    session_id: str
    mode: str
    players: list[PlayerDelta] = field(default_factory=list)

    @property
    def best(self) -> PlayerDelta | None:
        return self.players[0] if self.players else None

    @property
    def worst(self) -> PlayerDelta | None:
        return self.players[-1] if self.players else None


async def _display_names(
    db: AsyncSession, entity_ids: Sequence[str], mode: str
) -> dict[str, str]:
    if mode == DOUBLES_TEAM:
        return await team_names(db, entity_ids)
    if not entity_ids:
        return {}
    rows = (
        await db.execute(select(Player.id, Player.name).where(Player.id.in_(entity_ids)))
    ).all()
    return {pid: name for pid, name in rows}


async def session_summary(
    db: AsyncSession, session_id: str, mode: str = SINGLES
) -> SessionSummary:
    """Rating change of every player over one session's completed matches.

    Players are sorted by delta descending with ties broken by player id, so
    the first entry is the best player and the last the worst. For the
    doubles pair family the entries are pairs. Computed by replaying the
    session from its baseline; nothing is written.
    """

    result = await replay_session(db, session_id, mode)
    touched = sorted(result.touched_player_ids)
    names = await _display_names(db, touched, mode)

    entries: list[PlayerDelta] = []
    for pid in touched:
        first_step = next(step for step in result.steps if pid in step.before)
        entries.append(
            PlayerDelta(
                player_id=pid,
                name=names.get(pid),
                rating_before=first_step.before[pid].rating,
                rating_after=result.states[pid].rating,
            )
        )
    entries.sort(key=lambda e: (-e.delta, e.player_id))
    return SessionSummary(session_id=session_id, mode=mode, players=entries)


async def latest_completed_session(db: AsyncSession) -> LadderSession | None:
    return (
        await db.execute(
            select(LadderSession)
            .where(LadderSession.status == "completed")
            .order_by(LadderSession.created_at.desc(), LadderSession.id.desc())
            .limit(1)
        )
    ).scalars().first()


def _ranks(states: dict[str, RatingState]) -> dict[str, int]:
    ordered = sorted(states.items(), key=lambda item: (-item[1].rating, item[0]))
    return {pid: index for index, (pid, _) in enumerate(ordered, start=1)}


async def rank_movements(
    db: AsyncSession, player_ids: Sequence[str], mode: str = SINGLES
) -> dict[str, int]:
    """Return how many places each player moved since the last completed session.

    ``player_ids`` is the current standing, best first. With ``mode`` set to
    the doubles pair family they are team ids. The previous standing
    is the players' state at the start of the most recent completed session.
    Positive values mean the player climbed; players without earlier history
    get ``0``.
    """

    movements = {pid: 0 for pid in player_ids}
    latest = await latest_completed_session(db)
    if latest is None:
        return movements

    previous: dict[str, RatingState] = {}
    for pid in player_ids:
        state = await snapshot_before_session(db, pid, latest.id, mode)
        if state is not None:
            previous[pid] = state
    previous_ranks = _ranks(previous)

    for current_rank, pid in enumerate(player_ids, start=1):
        previous_rank = previous_ranks.get(pid)
        if previous_rank is not None:
            movements[pid] = previous_rank - current_rank
    logger.debug(
        "rank movements session=%s mode=%s moved=%s",
        latest.id,
        mode,
        {pid: m for pid, m in movements.items() if m},
    )
    return movements
