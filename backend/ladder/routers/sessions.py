# backend/ladder/routers/sessions.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import session_summary_cache
from ..config import FAMILY_PATTERN, SINGLES
from ..db import get_session
from ..exceptions import SessionNotFound, http_problem
from ..models import LadderSession
from ..schemas import PlayerDeltaOut, SessionLockOut, SessionSummaryOut
from ..services.locks import RECALC_RUNNING, force_unlock, is_stale
from ..services.reports import PlayerDelta, session_summary
from ..time_utils import coerce_utc, utcnow

# Resource-only prefix; versioning is added in main.py
router = APIRouter(prefix="/sessions", tags=["sessions"])

def _delta_out(entry: PlayerDelta | None) -> PlayerDeltaOut | None:
    if entry is None:
        return None
    return PlayerDeltaOut(
        player_id=entry.player_id,
        name=entry.name,
        rating_before=entry.rating_before,
        rating_after=entry.rating_after,
        delta=entry.delta,
    )


async def _get_ladder_session(db: AsyncSession, sid: str) -> LadderSession:
    # The lock columns are written with bulk UPDATEs; skip the identity map.
    ls = await db.get(LadderSession, sid, populate_existing=True)
    if ls is None:
        raise SessionNotFound(sid)
    return ls


@router.get("/{sid}/summary", response_model=SessionSummaryOut)
async def get_session_summary(
    sid: str,
    mode: str = Query(SINGLES, pattern=FAMILY_PATTERN),
    session: AsyncSession = Depends(get_session),
):
    async def build() -> SessionSummaryOut:
        summary = await session_summary(session, sid, mode)
        return SessionSummaryOut(
            session_id=summary.session_id,
            mode=summary.mode,
            best_player=_delta_out(summary.best),
            worst_player=_delta_out(summary.worst),
            players=[_delta_out(p) for p in summary.players],
        )

    return await session_summary_cache.get_or_set((sid, mode), build)


@router.post("/{sid}/unlock", response_model=SessionLockOut)
async def unlock_session(
    sid: str,
    force: bool = False,
    session: AsyncSession = Depends(get_session),
):
    ls = await _get_ladder_session(session, sid)
    if (
        ls.recalc_status == RECALC_RUNNING
        and not force
        and not is_stale(ls.recalc_started_at)
    ):
        raise http_problem(
            409,
            "recalculation is still running; retry later or pass force=true",
            "recalculation_in_progress",
        )
    ls = await force_unlock(session, sid)
    return SessionLockOut(
        session_id=ls.id,
        recalc_status=ls.recalc_status,
        recalc_finished_at=coerce_utc(ls.recalc_finished_at),
    )


@router.post("/{sid}/complete", status_code=204)
async def complete_session(sid: str, session: AsyncSession = Depends(get_session)):
    ls = await _get_ladder_session(session, sid)
    if ls.status != "completed":
        ls.status = "completed"
        ls.completed_at = utcnow()
        await session.commit()
    return None
