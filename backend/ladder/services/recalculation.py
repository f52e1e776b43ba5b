"""Apply new match results and recalculate edited ones.

Both paths take the session's advisory lock, seed an in-memory working map,
run :func:`ladder.services.replay.replay` and persist snapshots, audit
history and aggregate rows in one commit.

Editing moves through ``idle -> locked -> invalidated -> replaying ->
persisted``; any error ends in ``failed``. Once the forward range has been
invalidated, failures surface as :class:`PartialRecalculationError` so the
caller knows to re-run the same edit.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import DOUBLES, DOUBLES_TEAM, EDITABLE_MODES, MATCH_MODES
from ..exceptions import (
    DomainException,
    EditSuperseded,
    MalformedParticipants,
    MatchAlreadyApplied,
    MatchNotCompleted,
    MatchNotFound,
    PartialRecalculationError,
    ResultSuperseded,
    SessionNotFound,
    UnsupportedMatchMode,
)
from ..models import LadderSession, SessionMatch
from ..time_utils import utcnow
from ..utils.sentry import report_recalculation_failure
from .aggregates import load_aggregates, write_aggregates
from .locks import acquire_recalc_lock, release_recalc_lock
from .rating import RatingState
from .replay import ReplayMatch, ReplayResult, replay
from .snapshots import (
    has_snapshots,
    invalidate_matches,
    session_baseline,
    snapshot_before,
    write_step,
)
from .teams import ensure_double_teams
from .validation import ValidationError, validate_participants, validate_score_pair

logger = logging.getLogger(__name__)

COMPLETED = "completed"


class EditPhase(str, enum.Enum):
    IDLE = "idle"
    LOCKED = "locked"
    INVALIDATED = "invalidated"
    REPLAYING = "replaying"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class RecalculationResult:
    session_id: str
    match_id: str
    mode: str
    states: dict[str, RatingState]
    team_states: dict[str, RatingState] = field(default_factory=dict)
    replayed_match_ids: list[str] = field(default_factory=list)
    snapshots_cleared: int = 0
    phase: EditPhase = EditPhase.PERSISTED


async def _get_match(db: AsyncSession, match_id: str) -> tuple[SessionMatch, LadderSession]:
    match = await db.get(SessionMatch, match_id)
    if match is None:
        raise MatchNotFound(match_id)
    session = await db.get(LadderSession, match.session_id)
    if session is None:
        raise SessionNotFound(match.session_id)
    return match, session


def _check_participants(match: SessionMatch) -> None:
    if match.mode not in MATCH_MODES:
        raise UnsupportedMatchMode(match.id, match.mode)
    try:
        validate_participants(match.mode, match.player_ids)
    except ValidationError as exc:
        raise MalformedParticipants(match.id, exc.detail) from exc


async def _session_matches(
    db: AsyncSession, session_id: str, mode: str
) -> list[SessionMatch]:
    return (
        await db.execute(
            select(SessionMatch)
            .where(SessionMatch.session_id == session_id, SessionMatch.mode == mode)
            .order_by(SessionMatch.round_number, SessionMatch.match_order)
        )
    ).scalars().all()


async def _later_completed_session(
    db: AsyncSession, session: LadderSession, mode: str
) -> str | None:
    """Return a later session holding completed ``mode`` matches, if any."""

    stmt = (
        select(LadderSession.id)
        .join(SessionMatch, SessionMatch.session_id == LadderSession.id)
        .where(
            SessionMatch.mode == mode,
            SessionMatch.status == COMPLETED,
            (LadderSession.created_at > session.created_at)
            | (
                (LadderSession.created_at == session.created_at)
                & (LadderSession.id > session.id)
            ),
        )
        .order_by(LadderSession.created_at, LadderSession.id)
        .limit(1)
    )
    return (await db.execute(stmt)).scalars().first()


async def _persist(db: AsyncSession, result: ReplayResult, mode: str) -> dict[str, RatingState]:
    for step in result.steps:
        await write_step(db, step)
    final = {pid: result.states[pid] for pid in sorted(result.touched_player_ids)}
    await write_aggregates(db, final, mode)
    await db.flush()
    return final


async def _verify(
    db: AsyncSession, session_id: str, final: dict[str, RatingState], mode: str
) -> list[str]:
    """Compare persisted aggregates with ``final``; log and return drifted ids."""

    persisted = await load_aggregates(db, final.keys(), mode)
    drifted = []
    for pid, computed in final.items():
        stored = persisted.get(pid)
        if stored != computed:
            drifted.append(pid)
            logger.warning(
                "integrity drift session=%s player=%s computed=%s persisted=%s",
                session_id,
                pid,
                computed,
                stored,
            )
    return drifted


async def _release(db: AsyncSession, session_id: str, token: str, *, failed: bool) -> None:
    try:
        await release_recalc_lock(db, session_id, token, failed=failed)
    except Exception:
        logger.exception("failed to release recalc lock session=%s", session_id)


async def _apply(
    db: AsyncSession, match_id: str, score: tuple[int, int] | None = None
) -> RecalculationResult:
    """Apply one match on top of the current aggregate rows.

    With ``score`` set the score is recorded in the same transaction, after
    the lock is taken, so a rejected request leaves the match untouched.
    """

    match, session = await _get_match(db, match_id)
    _check_participants(match)
    if score is None and (
        match.status != COMPLETED or match.team1_score is None or match.team2_score is None
    ):
        raise MatchNotCompleted(match_id)
    if await has_snapshots(db, match_id):
        raise MatchAlreadyApplied(match_id)
    # The aggregates already hold later sessions; applying here would put
    # their effects into this session's snapshots.
    later = await _later_completed_session(db, session, match.mode)
    if later is not None:
        raise ResultSuperseded(match_id, later)

    session_id = session.id
    mode = match.mode
    replay_match = ReplayMatch.from_row(match, score=score)
    team_match = ReplayMatch.for_teams(match, score=score) if mode == DOUBLES else None

    token = await acquire_recalc_lock(db, session_id)
    try:
        if await has_snapshots(db, match_id):
            raise MatchAlreadyApplied(match_id)
        if score is not None:
            match.team1_score, match.team2_score = score
            match.status = COMPLETED
            match.completed_at = utcnow()

        baseline = await load_aggregates(db, replay_match.player_ids, mode)
        final = await _persist(db, replay(baseline, [replay_match]), mode)
        team_final: dict[str, RatingState] = {}
        if team_match is not None:
            await ensure_double_teams(db, replay_match.player_ids)
            team_baseline = await load_aggregates(db, team_match.player_ids, DOUBLES_TEAM)
            team_final = await _persist(
                db, replay(team_baseline, [team_match]), DOUBLES_TEAM
            )
        await db.commit()
    except DomainException as exc:
        await db.rollback()
        await _release(db, session_id, token, failed=exc.status_code >= 500)
        raise
    except Exception:
        await db.rollback()
        logger.exception("applying match %s failed", match_id)
        await _release(db, session_id, token, failed=True)
        raise

    await _verify(db, session_id, final, mode)
    if team_final:
        await _verify(db, session_id, team_final, DOUBLES_TEAM)
    await _release(db, session_id, token, failed=False)
    logger.info(
        "match applied session=%s match=%s ratings=%s teams=%s",
        session_id,
        match_id,
        {pid: state.rating for pid, state in final.items()},
        {tid: state.rating for tid, state in team_final.items()},
    )
    return RecalculationResult(
        session_id=session_id,
        match_id=match_id,
        mode=mode,
        states=final,
        team_states=team_final,
        replayed_match_ids=[match_id],
    )


async def apply_match(db: AsyncSession, match_id: str) -> RecalculationResult:
    """Apply the recorded result of ``match_id`` to the ratings.

    The working map is seeded from the current aggregate rows of the
    participants; the match must not have been applied before, and no later
    session may hold completed matches of the same mode.
    """

    return await _apply(db, match_id)


async def record_result(
    db: AsyncSession, match_id: str, team1_score, team2_score
) -> RecalculationResult:
    """Record the score of an unapplied match and apply it in one commit."""

    score = validate_score_pair(team1_score, team2_score)
    return await _apply(db, match_id, score)


async def _resolve_baselines(
    db: AsyncSession,
    session_id: str,
    edited_id: str,
    mode: str,
    is_first: bool,
    player_ids: set[str],
) -> dict[str, RatingState]:
    baseline: dict[str, RatingState] = {}
    for pid in sorted(player_ids):
        state = None
        source = "session_baseline"
        if not is_first:
            state = await snapshot_before(db, pid, edited_id)
            source = "snapshot"
        if state is None:
            state = await session_baseline(db, pid, session_id, mode)
            if source == "snapshot":
                source = "session_baseline_fallback"
        baseline[pid] = state
        logger.info(
            "baseline loaded session=%s player=%s source=%s rating=%s matches=%s",
            session_id,
            pid,
            source,
            state.rating,
            state.matches_played,
        )
    return baseline


async def edit_match(
    db: AsyncSession,
    match_id: str,
    team1_score,
    team2_score,
    *,
    reason: str | None = None,
) -> RecalculationResult:
    """Change the score of a completed match and replay its session from it.

    Snapshots of every match at or after ``match_id`` in its session are
    deleted and recomputed from the state just before the edited match;
    earlier matches are never touched. Returns the recomputed final state
    of every affected player.
    """

    score = validate_score_pair(team1_score, team2_score)
    match, session = await _get_match(db, match_id)
    if match.mode not in EDITABLE_MODES:
        raise UnsupportedMatchMode(match_id, match.mode)
    _check_participants(match)
    if match.status != COMPLETED:
        raise MatchNotCompleted(match_id)
    later = await _later_completed_session(db, session, match.mode)
    if later is not None:
        raise EditSuperseded(match_id, later)

    session_id = session.id
    mode = match.mode
    phase = EditPhase.IDLE
    token = await acquire_recalc_lock(db, session_id)
    phase = EditPhase.LOCKED

    try:
        matches = await _session_matches(db, session_id, mode)
        index = next(i for i, m in enumerate(matches) if m.id == match_id)
        to_replay = [m for m in matches[index:] if m.status == COMPLETED]
        replay_ids = [m.id for m in to_replay]
        logger.info(
            "recalc start session=%s match=%s new_score=%s-%s replaying=%s",
            session_id,
            match_id,
            score[0],
            score[1],
            replay_ids,
        )

        for m in to_replay:
            _check_participants(m)
        replay_matches = [
            ReplayMatch.from_row(m, score=score if m.id == match_id else None)
            for m in to_replay
        ]

        cleared, remaining = await invalidate_matches(db, replay_ids)
        phase = EditPhase.INVALIDATED
        logger.info(
            "invalidated session=%s snapshots_before=%s snapshots_after=%s",
            session_id,
            cleared,
            remaining,
        )

        participants = {pid for rm in replay_matches for pid in rm.player_ids}
        baseline = await _resolve_baselines(
            db, session_id, match_id, mode, index == 0, participants
        )

        phase = EditPhase.REPLAYING
        result = replay(baseline, replay_matches)

        match.team1_score, match.team2_score = score
        match.is_edited = True
        match.edited_at = utcnow()
        match.edit_reason = reason
        final = await _persist(db, result, mode)
        await db.commit()
        phase = EditPhase.PERSISTED
    except Exception as exc:
        failed_phase = phase
        rejected = (
            failed_phase is EditPhase.LOCKED
            and isinstance(exc, DomainException)
            and exc.status_code < 500
        )
        await db.rollback()
        await _release(db, session_id, token, failed=not rejected)
        if failed_phase is EditPhase.LOCKED:
            logger.exception(
                "recalc failed before invalidation session=%s match=%s",
                session_id,
                match_id,
            )
            raise
        logger.exception(
            "recalc failed session=%s match=%s phase=%s; session needs a re-run",
            session_id,
            match_id,
            failed_phase.value,
        )
        report_recalculation_failure(
            exc, session_id=session_id, match_id=match_id, phase=failed_phase.value
        )
        raise PartialRecalculationError(session_id, match_id) from exc

    await _verify(db, session_id, final, mode)
    await _release(db, session_id, token, failed=False)
    logger.info(
        "recalc persisted session=%s match=%s ratings=%s",
        session_id,
        match_id,
        {pid: state.rating for pid, state in final.items()},
    )
    return RecalculationResult(
        session_id=session_id,
        match_id=match_id,
        mode=mode,
        states=final,
        replayed_match_ids=replay_ids,
        snapshots_cleared=cleared,
        phase=phase,
    )


async def replay_session(
    db: AsyncSession, session_id: str, mode: str
) -> ReplayResult:
    """Replay every completed ``mode`` match of a session from its baseline.

    ``mode`` may be the doubles pair family, which replays the session's
    doubles matches pair against pair. Read-only: nothing is written.
    """

    if await db.get(LadderSession, session_id) is None:
        raise SessionNotFound(session_id)
    source_mode = DOUBLES if mode == DOUBLES_TEAM else mode
    matches = [
        m
        for m in await _session_matches(db, session_id, source_mode)
        if m.status == COMPLETED
    ]
    build = ReplayMatch.for_teams if mode == DOUBLES_TEAM else ReplayMatch.from_row
    replay_matches = [build(m) for m in matches]
    participants = sorted({pid for rm in replay_matches for pid in rm.player_ids})
    baseline = {
        pid: await session_baseline(db, pid, session_id, mode) for pid in participants
    }
    return replay(baseline, replay_matches)
