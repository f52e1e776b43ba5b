"""Per-session advisory recalculation lock.

The lock lives on the ``ladder_session`` row so it holds across server
instances. It is taken with a conditional UPDATE and released only by the
holder of the matching token.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import RECALC_LOCK_TTL_SECONDS
from ..exceptions import RecalculationInProgress, SessionNotFound
from ..models import LadderSession
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

RECALC_IDLE = "idle"
RECALC_RUNNING = "running"
RECALC_DONE = "done"
RECALC_FAILED = "failed"


def is_stale(
    started_at: datetime | None,
    *,
    now: datetime | None = None,
    ttl_seconds: float = RECALC_LOCK_TTL_SECONDS,
) -> bool:
    if started_at is None:
        return True
    now = now or utcnow()
    return started_at <= now - timedelta(seconds=ttl_seconds)


async def acquire_recalc_lock(
    db: AsyncSession,
    session_id: str,
    *,
    ttl_seconds: float = RECALC_LOCK_TTL_SECONDS,
) -> str:
    """Take the lock for ``session_id`` and return its token.

    A lock held longer than ``ttl_seconds`` is considered stuck and is taken
    over. Raises :class:`RecalculationInProgress` while another holder is
    active, :class:`SessionNotFound` for an unknown session.
    """

    now = utcnow()
    token = uuid.uuid4().hex
    result = await db.execute(
        update(LadderSession)
        .where(
            LadderSession.id == session_id,
            or_(
                LadderSession.recalc_status.in_(
                    (RECALC_IDLE, RECALC_DONE, RECALC_FAILED)
                ),
                and_(
                    LadderSession.recalc_status == RECALC_RUNNING,
                    or_(
                        LadderSession.recalc_started_at.is_(None),
                        LadderSession.recalc_started_at
                        <= now - timedelta(seconds=ttl_seconds),
                    ),
                ),
            ),
        )
        .values(
            recalc_status=RECALC_RUNNING,
            recalc_token=token,
            recalc_started_at=now,
            recalc_finished_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        if await db.get(LadderSession, session_id) is None:
            raise SessionNotFound(session_id)
        logger.info("recalc lock busy session=%s", session_id)
        raise RecalculationInProgress(session_id)

    await db.commit()
    logger.info("recalc lock acquired session=%s token=%s", session_id, token)
    return token


async def release_recalc_lock(
    db: AsyncSession, session_id: str, token: str, *, failed: bool = False
) -> bool:
    """Release the lock if ``token`` still holds it; return whether it did."""

    status = RECALC_FAILED if failed else RECALC_DONE
    result = await db.execute(
        update(LadderSession)
        .where(LadderSession.id == session_id, LadderSession.recalc_token == token)
        .values(
            recalc_status=status,
            recalc_token=None,
            recalc_finished_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    released = result.rowcount == 1
    if released:
        logger.info("recalc lock released session=%s status=%s", session_id, status)
    else:
        logger.warning(
            "recalc lock for session=%s was no longer held by token=%s",
            session_id,
            token,
        )
    return released


async def force_unlock(db: AsyncSession, session_id: str) -> LadderSession:
    """Clear any lock on ``session_id`` regardless of holder.

    Recovery path for a lock left behind by a crashed request.
    """

    session = await db.get(LadderSession, session_id)
    if session is None:
        raise SessionNotFound(session_id)
    previous = session.recalc_status
    session.recalc_status = RECALC_IDLE
    session.recalc_token = None
    session.recalc_finished_at = utcnow()
    await db.commit()
    logger.warning(
        "recalc lock force-cleared session=%s previous_status=%s",
        session_id,
        previous,
    )
    return session
