from fastapi import APIRouter, Query, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import FAMILY_PATTERN, SINGLES
from ..db import get_session
from ..schemas import LeaderboardEntryOut, LeaderboardOut
from ..services.aggregates import standings
from ..services.reports import rank_movements

# Resource-only prefix; no /api or /api/v0 here
router = APIRouter(prefix="/leaderboards", tags=["leaderboards"])


# GET /api/v0/leaderboards?mode=singles
@router.get("", response_model=LeaderboardOut)
async def leaderboard(
    mode: str = Query(
        SINGLES,
        pattern=FAMILY_PATTERN,
        description="Rating family; doubles_team ranks doubles pairs",
    ),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
):
    # Fetch all rows so we can compute ranks and movements over the full table.
    all_rows = await standings(session, mode)
    ordered_ids = [row.entity_id for row in all_rows]
    movements = await rank_movements(session, ordered_ids, mode)

    leaders = [
        LeaderboardEntryOut(
            rank=offset + i + 1,
            player_id=row.entity_id,
            player_name=row.name,
            player_ids=list(row.player_ids),
            rating=row.state.rating,
            matches_played=row.state.matches_played,
            wins=row.state.wins,
            losses=row.state.losses,
            draws=row.state.draws,
            rank_movement=movements.get(row.entity_id, 0),
        )
        for i, row in enumerate(all_rows[offset : offset + limit])
    ]
    return LeaderboardOut(mode=mode, leaders=leaders, total=len(all_rows))
