from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import SINGLES
from ..db import get_session
from ..exceptions import http_problem
from ..models import Player
from ..schemas import RatingHistoryEntryOut
from ..services.snapshots import rating_history

# Resource-only prefix; versioning is added in main.py
router = APIRouter(prefix="/players", tags=["players"])


@router.get("/{pid}/rating-history", response_model=list[RatingHistoryEntryOut])
async def player_rating_history(
    pid: str,
    mode: str = Query(SINGLES, pattern="^(singles|doubles)$"),
    session: AsyncSession = Depends(get_session),
):
    player = await session.get(Player, pid)
    if player is None or player.deleted_at is not None:
        raise http_problem(404, "player not found", "player_not_found")

    rows = await rating_history(session, pid, mode)
    return [
        RatingHistoryEntryOut(
            match_id=history.match_id,
            session_id=match.session_id,
            round_number=match.round_number,
            match_order=match.match_order,
            rating_before=history.rating_before,
            rating_after=history.rating_after,
            delta=history.delta,
            k_factor=history.k_factor,
        )
        for history, match in rows
    ]
