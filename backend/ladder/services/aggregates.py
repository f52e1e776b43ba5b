from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..config import DOUBLES_TEAM
from ..models import DoubleTeam, DoubleTeamRating, Player, PlayerRating
from ..time_utils import utcnow
from .rating import RatingState


@dataclass(frozen=True)
class Standing:
    entity_id: str
    name: str
    state: RatingState
    player_ids: tuple[str, ...]


def _aggregate_table(mode: str):
    """Return the aggregate model and the name of its entity column."""

    if mode == DOUBLES_TEAM:
        return DoubleTeamRating, "team_id"
    return PlayerRating, "player_id"


def _aggregate_query(mode: str, ids: set[str]):
    model, key = _aggregate_table(mode)
    stmt = select(model).where(getattr(model, key).in_(ids))
    if model is PlayerRating:
        stmt = stmt.where(PlayerRating.mode == mode)
    return stmt


async def load_aggregates(
    db: AsyncSession, entity_ids: Iterable[str], mode: str
) -> dict[str, RatingState]:
    """Return current aggregate states; entities without a row are omitted."""

    ids = set(entity_ids)
    if not ids:
        return {}
    _, key = _aggregate_table(mode)
    rows = (await db.execute(_aggregate_query(mode, ids))).scalars().all()
    return {getattr(r, key): RatingState.from_row(r) for r in rows}


async def write_aggregates(
    db: AsyncSession, states: Mapping[str, RatingState], mode: str
) -> None:
    """Upsert one aggregate row per player (or doubles pair) in ``states``."""

    if not states:
        return
    model, key = _aggregate_table(mode)
    existing = (await db.execute(_aggregate_query(mode, set(states)))).scalars().all()
    rating_map = {getattr(r, key): r for r in existing}
    now = utcnow()

    for entity_id, state in states.items():
        row = rating_map.get(entity_id)
        if row is None:
            row = model(**{key: entity_id})
            if model is PlayerRating:
                row.mode = mode
            db.add(row)
        for field_name, value in state.as_dict().items():
            setattr(row, field_name, value)
        row.updated_at = now


async def _team_standings(db: AsyncSession) -> list[Standing]:
    first = aliased(Player)
    second = aliased(Player)
    stmt = (
        select(DoubleTeamRating, first, second)
        .join(DoubleTeam, DoubleTeam.id == DoubleTeamRating.team_id)
        .join(first, first.id == DoubleTeam.player_1_id)
        .join(second, second.id == DoubleTeam.player_2_id)
        .where(first.deleted_at.is_(None), second.deleted_at.is_(None))
        .order_by(DoubleTeamRating.rating.desc(), DoubleTeamRating.team_id)
    )
    return [
        Standing(
            entity_id=rating.team_id,
            name=f"{p1.name} & {p2.name}",
            state=RatingState.from_row(rating),
            player_ids=(p1.id, p2.id),
        )
        for rating, p1, p2 in (await db.execute(stmt)).all()
    ]


async def standings(db: AsyncSession, mode: str) -> list[Standing]:
    """Current ranking: rating descending, entity id ascending on ties."""

    if mode == DOUBLES_TEAM:
        return await _team_standings(db)
    stmt = (
        select(PlayerRating, Player)
        .join(Player, Player.id == PlayerRating.player_id)
        .where(PlayerRating.mode == mode, Player.deleted_at.is_(None))
        .order_by(PlayerRating.rating.desc(), PlayerRating.player_id)
    )
    return [
        Standing(
            entity_id=rating.player_id,
            name=player.name,
            state=RatingState.from_row(rating),
            player_ids=(player.id,),
        )
        for rating, player in (await db.execute(stmt)).all()
    ]
