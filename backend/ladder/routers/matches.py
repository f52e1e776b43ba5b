# backend/ladder/routers/matches.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import session_summary_cache
from ..db import get_session
from ..exceptions import http_problem
from ..schemas import (
    MatchEditIn,
    RatingStateOut,
    RecalculationOut,
    ScoreIn,
    TeamRatingStateOut,
)
from ..services.recalculation import (
    RecalculationResult,
    apply_match,
    edit_match,
    record_result,
)
from ..services.validation import ValidationError

# Resource-only prefix; versioning is added in main.py
router = APIRouter(prefix="/matches", tags=["matches"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        parts = [ip.strip() for ip in forwarded.split(",") if ip.strip()]
        if parts:
            return parts[-1]
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


limiter = Limiter(key_func=_client_ip)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    detail = exc.detail if isinstance(exc.detail, str) else ""
    if detail:
        message = f"rate limit exceeded: {detail}"
    else:
        message = "rate limit exceeded: please wait before submitting another request."
    return JSONResponse(
        status_code=429,
        content={
            "detail": message,
            "code": "rate_limit_exceeded",
        },
    )


def _to_out(result: RecalculationResult) -> RecalculationOut:
    return RecalculationOut(
        session_id=result.session_id,
        match_id=result.match_id,
        mode=result.mode,
        replayed_match_ids=result.replayed_match_ids,
        players=[
            RatingStateOut(player_id=pid, **state.as_dict())
            for pid, state in result.states.items()
        ],
        teams=[
            TeamRatingStateOut(team_id=tid, **state.as_dict())
            for tid, state in result.team_states.items()
        ],
    )


@router.post("/{mid}/result", response_model=RecalculationOut)
@limiter.limit("60/minute")
async def record_result_route(
    request: Request,
    mid: str,
    body: ScoreIn,
    session: AsyncSession = Depends(get_session),
):
    try:
        result = await record_result(session, mid, body.team1_score, body.team2_score)
    except ValidationError as exc:
        raise http_problem(422, exc.detail, "match_validation_error")
    await session_summary_cache.invalidate_sessions([result.session_id])
    return _to_out(result)


@router.post("/{mid}/apply", response_model=RecalculationOut)
async def apply_match_route(
    mid: str,
    session: AsyncSession = Depends(get_session),
):
    result = await apply_match(session, mid)
    await session_summary_cache.invalidate_sessions([result.session_id])
    return _to_out(result)


@router.post("/{mid}/edit", response_model=RecalculationOut)
@limiter.limit("30/minute")
async def edit_match_route(
    request: Request,
    mid: str,
    body: MatchEditIn,
    session: AsyncSession = Depends(get_session),
):
    try:
        result = await edit_match(
            session, mid, body.team1_score, body.team2_score, reason=body.reason
        )
    except ValidationError as exc:
        raise http_problem(422, exc.detail, "match_validation_error")
    await session_summary_cache.invalidate_sessions([result.session_id])
    return _to_out(result)
