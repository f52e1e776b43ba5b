"""Doubles pairs rated as their own entity.

A pair is keyed by its two player ids with the smaller id first, so A+B and
B+A share one rating. Team ratings are fed by the same completed doubles
matches as the per-player doubles family.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import DoubleTeam, Player

logger = logging.getLogger(__name__)

TEAM_KEY_SEPARATOR = ":"


def normalize_pair(player1_id: str, player2_id: str) -> tuple[str, str]:
    return (
        (player1_id, player2_id)
        if player1_id < player2_id
        else (player2_id, player1_id)
    )


def team_key(player1_id: str, player2_id: str) -> str:
    return TEAM_KEY_SEPARATOR.join(normalize_pair(player1_id, player2_id))


def team_keys(player_ids: Sequence[str]) -> tuple[str, str]:
    """Return the keys of both sides of a doubles participant list."""

    if len(player_ids) != 4:
        raise ValueError("a doubles match has exactly four participants")
    return team_key(player_ids[0], player_ids[1]), team_key(player_ids[2], player_ids[3])


async def ensure_double_teams(db: AsyncSession, player_ids: Sequence[str]) -> tuple[str, str]:
    """Create missing ``double_team`` rows for both sides; nothing is committed."""

    keys = team_keys(player_ids)
    for key, pair in zip(keys, (player_ids[:2], player_ids[2:])):
        if await db.get(DoubleTeam, key) is not None:
            continue
        first, second = normalize_pair(*pair)
        db.add(DoubleTeam(id=key, player_1_id=first, player_2_id=second))
        logger.info("double team created team=%s", key)
    return keys


async def team_names(db: AsyncSession, team_ids: Iterable[str]) -> dict[str, str]:
    """Display names such as ``"Alice & Bob"``, keyed by team id."""

    ids = set(team_ids)
    if not ids:
        return {}
    teams = (
        await db.execute(select(DoubleTeam).where(DoubleTeam.id.in_(ids)))
    ).scalars().all()
    player_ids = {pid for t in teams for pid in (t.player_1_id, t.player_2_id)}
    players = dict(
        (
            await db.execute(select(Player.id, Player.name).where(Player.id.in_(player_ids)))
        ).all()
    )
    return {
        t.id: f"{players.get(t.player_1_id, t.player_1_id)} & "
        f"{players.get(t.player_2_id, t.player_2_id)}"
        for t in teams
    }
