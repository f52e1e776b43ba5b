"""Snapshot store and baseline resolution.

A snapshot is the rating state of one player immediately after one match.
Matches are ordered globally by ``(session.created_at, session.id,
round_number, match_order)``; baselines are looked up against that order
within one mode family. Doubles pairs keep their snapshots in a table of
their own, keyed by team id instead of player id.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Sequence

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DOUBLES_TEAM
from ..exceptions import MatchNotFound, SessionNotFound
from ..models import (
    DoubleTeamSnapshot,
    LadderSession,
    MatchRatingHistory,
    RatingSnapshot,
    SessionMatch,
)
from .rating import RatingState, default_state
from .replay import ReplayStep

logger = logging.getLogger(__name__)


def _snapshot_table(mode: str):
    """Return the snapshot model and its entity column for ``mode``."""

    if mode == DOUBLES_TEAM:
        return DoubleTeamSnapshot, DoubleTeamSnapshot.team_id
    return RatingSnapshot, RatingSnapshot.player_id


def _before_position(session: LadderSession, match: SessionMatch | None):
    """SQL condition selecting matches ordered strictly before a position.

    With ``match`` set the position is that match; without it the position is
    the start of ``session``.
    """

    earlier_sessions = or_(
        LadderSession.created_at < session.created_at,
        and_(
            LadderSession.created_at == session.created_at,
            LadderSession.id < session.id,
        ),
    )
    if match is None:
        return earlier_sessions
    return or_(
        earlier_sessions,
        and_(
            LadderSession.id == session.id,
            or_(
                SessionMatch.round_number < match.round_number,
                and_(
                    SessionMatch.round_number == match.round_number,
                    SessionMatch.match_order < match.match_order,
                ),
            ),
        ),
    )


def _chronological():
    return (
        LadderSession.created_at,
        LadderSession.id,
        SessionMatch.round_number,
        SessionMatch.match_order,
    )


async def _latest_snapshot(
    db: AsyncSession,
    entity_id: str,
    mode: str,
    session: LadderSession,
    match: SessionMatch | None,
):
    model, entity = _snapshot_table(mode)
    conditions = [entity == entity_id, _before_position(session, match)]
    if model is RatingSnapshot:
        conditions.append(RatingSnapshot.mode == mode)
    stmt = (
        select(model)
        .join(SessionMatch, SessionMatch.id == model.match_id)
        .join(LadderSession, LadderSession.id == SessionMatch.session_id)
        .where(*conditions)
        .order_by(*(col.desc() for col in _chronological()))
        .limit(1)
    )
    return (await db.execute(stmt)).scalars().first()


async def _load_match(db: AsyncSession, match_id: str) -> tuple[SessionMatch, LadderSession]:
    match = await db.get(SessionMatch, match_id)
    if match is None:
        raise MatchNotFound(match_id)
    session = await db.get(LadderSession, match.session_id)
    if session is None:
        raise SessionNotFound(match.session_id)
    return match, session


async def snapshot_before(
    db: AsyncSession, player_id: str, match_id: str, *, mode: str | None = None
) -> RatingState | None:
    """Return the player's state after their latest match before ``match_id``.

    Only snapshots of the mode family of ``match_id`` are considered, unless
    ``mode`` names another family fed by the same matches (a doubles pair).
    Returns ``None`` when no such snapshot exists.
    """

    match, session = await _load_match(db, match_id)
    row = await _latest_snapshot(db, player_id, mode or match.mode, session, match)
    if row is None:
        return None
    logger.debug(
        "baseline for %s before match %s taken from snapshot of match %s",
        player_id,
        match_id,
        row.match_id,
    )
    return RatingState.from_row(row)


async def snapshot_before_session(
    db: AsyncSession, player_id: str, session_id: str, mode: str
) -> RatingState | None:
    session = await db.get(LadderSession, session_id)
    if session is None:
        raise SessionNotFound(session_id)
    row = await _latest_snapshot(db, player_id, mode, session, None)
    return RatingState.from_row(row) if row is not None else None


async def session_baseline(
    db: AsyncSession, player_id: str, session_id: str, mode: str
) -> RatingState:
    """Return the player's state at the start of ``session_id``.

    Falls back to :func:`default_state` for a player without prior history.
    """

    state = await snapshot_before_session(db, player_id, session_id, mode)
    return state if state is not None else default_state()


async def write_snapshot(
    db: AsyncSession,
    match_id: str,
    entity_id: str,
    mode: str,
    state: RatingState,
):
    """Store ``state`` as the snapshot for ``(match_id, entity_id)``.

    ``entity_id`` is a player id, or a team id for the doubles pair family.
    Any previous snapshot for the same pair is deleted first, so writing the
    same pair twice leaves exactly one record.
    """

    model, entity = _snapshot_table(mode)
    await db.execute(
        delete(model).where(model.match_id == match_id, entity == entity_id)
    )
    if model is RatingSnapshot:
        row = RatingSnapshot(player_id=entity_id, mode=mode)
    else:
        row = DoubleTeamSnapshot(team_id=entity_id)
    row.id = uuid.uuid4().hex
    row.match_id = match_id
    for key, value in state.as_dict().items():
        setattr(row, key, value)
    db.add(row)
    return row


async def write_step(db: AsyncSession, step: ReplayStep) -> None:
    """Write snapshots and audit-history rows for one replayed match.

    Pair steps only write snapshots; the audit history is kept per player.
    """

    if step.mode == DOUBLES_TEAM:
        for team_id, after in step.after.items():
            await write_snapshot(db, step.match_id, team_id, step.mode, after)
        return

    await db.execute(
        delete(MatchRatingHistory).where(MatchRatingHistory.match_id == step.match_id)
    )
    for player_id, after in step.after.items():
        await write_snapshot(db, step.match_id, player_id, step.mode, after)
        db.add(
            MatchRatingHistory(
                id=uuid.uuid4().hex,
                match_id=step.match_id,
                player_id=player_id,
                mode=step.mode,
                rating_before=step.before[player_id].rating,
                rating_after=after.rating,
                delta=step.delta(player_id),
                k_factor=step.k_factor,
            )
        )


async def count_snapshots(db: AsyncSession, match_ids: Sequence[str]) -> int:
    """Count player and pair snapshots of ``match_ids``."""

    if not match_ids:
        return 0
    total = 0
    for model in (RatingSnapshot, DoubleTeamSnapshot):
        total += (
            await db.execute(
                select(func.count())
                .select_from(model)
                .where(model.match_id.in_(match_ids))
            )
        ).scalar_one()
    return total


async def has_snapshots(db: AsyncSession, match_id: str) -> bool:
    snapshots = await count_snapshots(db, [match_id])
    history = (
        await db.execute(
            select(func.count())
            .select_from(MatchRatingHistory)
            .where(MatchRatingHistory.match_id == match_id)
        )
    ).scalar_one()
    return bool(snapshots or history)


async def invalidate_matches(
    db: AsyncSession, match_ids: Iterable[str]
) -> tuple[int, int]:
    """Delete snapshots and audit history of ``match_ids``.

    Returns the snapshot count before and after the delete.
    """

    ids = list(match_ids)
    before = await count_snapshots(db, ids)
    if ids:
        for model in (RatingSnapshot, DoubleTeamSnapshot):
            await db.execute(delete(model).where(model.match_id.in_(ids)))
        await db.execute(
            delete(MatchRatingHistory).where(MatchRatingHistory.match_id.in_(ids))
        )
    after = await count_snapshots(db, ids)
    return before, after


async def rating_history(
    db: AsyncSession, player_id: str, mode: str
) -> list[tuple[MatchRatingHistory, SessionMatch]]:
    """Return the player's audit-history rows with their matches, oldest first."""

    stmt = (
        select(MatchRatingHistory, SessionMatch)
        .join(SessionMatch, SessionMatch.id == MatchRatingHistory.match_id)
        .join(LadderSession, LadderSession.id == SessionMatch.session_id)
        .where(
            MatchRatingHistory.player_id == player_id,
            MatchRatingHistory.mode == mode,
        )
        .order_by(*_chronological())
    )
    return [(history, match) for history, match in (await db.execute(stmt)).all()]
