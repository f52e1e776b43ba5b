import asyncio
import logging
from datetime import datetime

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ladder.db import Base
from ladder.exceptions import (
    EditSuperseded,
    MatchAlreadyApplied,
    MatchNotCompleted,
    MatchNotFound,
    PartialRecalculationError,
    RecalculationInProgress,
    ResultSuperseded,
    UnsupportedMatchMode,
)
from ladder.models import (
    DoubleTeam,
    DoubleTeamSnapshot,
    LadderSession,
    MatchRatingHistory,
    Player,
    RatingSnapshot,
    SessionMatch,
)
from ladder.services import recalculation
from ladder.services.aggregates import load_aggregates, write_aggregates
from ladder.services.locks import acquire_recalc_lock, force_unlock
from ladder.services.rating import RatingState
from ladder.services.recalculation import (
    apply_match,
    edit_match,
    record_result,
)
from ladder.services.replay import ReplayMatch, replay
from ladder.services.validation import ValidationError


async def _setup():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def _match(mid, sid, round_number, order, player_ids, mode="singles"):
    return SessionMatch(
        id=mid,
        session_id=sid,
        round_number=round_number,
        match_order=order,
        mode=mode,
        player_ids=list(player_ids),
    )


async def _seed_scenario(maker, *, record=True):
    """Session s1: M1 A beats B 2-1, M2 A beats C 2-1, M3 B beats A 2-1."""

    async with maker() as session:
        session.add_all(
            [
                Player(id="A", name="Alice"),
                Player(id="B", name="Bob"),
                Player(id="C", name="Cleo"),
                Player(id="D", name="Dan"),
                LadderSession(id="s1", name="Week 1", created_at=datetime(2024, 1, 1)),
            ]
        )
        session.add_all(
            [
                _match("m1", "s1", 1, 1, ["A", "B"]),
                _match("m2", "s1", 1, 2, ["A", "C"]),
                _match("m3", "s1", 2, 1, ["B", "A"]),
            ]
        )
        await session.commit()
        if record:
            await record_result(session, "m1", 2, 1)
            await record_result(session, "m2", 2, 1)
            await record_result(session, "m3", 2, 1)


async def _snapshot_rows(session, match_id):
    rows = (
        await session.execute(
            select(RatingSnapshot)
            .where(RatingSnapshot.match_id == match_id)
            .order_by(RatingSnapshot.player_id)
        )
    ).scalars().all()
    return [
        (r.id, r.player_id, r.rating, r.matches_played, r.wins, r.losses, r.sets_won)
        for r in rows
    ]


async def _lock_status(maker, sid="s1"):
    async with maker() as session:
        ls = await session.get(LadderSession, sid)
        return ls.recalc_status, ls.recalc_token


def test_record_results_apply_in_order():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                states = await load_aggregates(session, ["A", "B", "C"], "singles")
                m3 = await _snapshot_rows(session, "m3")
            return states, m3, await _lock_status(maker)
        finally:
            await engine.dispose()

    states, m3, lock = asyncio.run(run_test())
    assert states["A"].rating == 1516
    assert states["B"].rating == 1503
    assert states["C"].rating == 1481
    assert (states["A"].matches_played, states["A"].wins, states["A"].losses) == (3, 2, 1)
    assert (states["A"].sets_won, states["A"].sets_lost) == (2, 1)
    assert [(pid, rating) for _, pid, rating, *_ in m3] == [("A", 1516), ("B", 1503)]
    assert lock == ("done", None)


def test_edit_middle_match_keeps_prefix_and_matches_full_replay():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                m1_before = await _snapshot_rows(session, "m1")

            async with maker() as session:
                result = await edit_match(session, "m2", 1, 2, reason="score typo")

            async with maker() as session:
                m1_after = await _snapshot_rows(session, "m1")
                m2_after = await _snapshot_rows(session, "m2")
                states = await load_aggregates(session, ["A", "B", "C"], "singles")
                m2 = await session.get(SessionMatch, "m2")
                history = (
                    await session.execute(
                        select(MatchRatingHistory)
                        .where(MatchRatingHistory.player_id == "A")
                        .order_by(MatchRatingHistory.match_id)
                    )
                ).scalars().all()
                matches = (
                    await session.execute(
                        select(SessionMatch).order_by(
                            SessionMatch.round_number, SessionMatch.match_order
                        )
                    )
                ).scalars().all()
                scratch = replay({}, [ReplayMatch.from_row(m) for m in matches])
            return (
                result,
                m1_before,
                m1_after,
                m2_after,
                states,
                m2,
                [(h.match_id, h.delta) for h in history],
                scratch.states,
                await _lock_status(maker),
            )
        finally:
            await engine.dispose()

    (
        result,
        m1_before,
        m1_after,
        m2_after,
        states,
        m2,
        history,
        scratch,
        lock,
    ) = asyncio.run(run_test())

    assert m1_after == m1_before
    assert result.replayed_match_ids == ["m2", "m3"]
    assert result.snapshots_cleared == 4
    assert result.phase is recalculation.EditPhase.PERSISTED

    assert states["A"].rating == 1478
    assert states["B"].rating == 1501
    assert states["C"].rating == 1521
    assert (states["A"].wins, states["A"].losses) == (1, 2)
    assert (states["A"].sets_won, states["A"].sets_lost) == (1, 2)
    assert result.states == states
    for pid in ("A", "B", "C"):
        assert states[pid] == scratch[pid]

    assert [(pid, rating) for _, pid, rating, *_ in m2_after] == [("A", 1499), ("C", 1521)]
    assert history == [("m1", 20), ("m2", -21), ("m3", -21)]
    assert (m2.team1_score, m2.team2_score) == (1, 2)
    assert m2.is_edited is True
    assert m2.edit_reason == "score typo"
    assert m2.edited_at is not None
    assert lock == ("done", None)


def test_edit_first_match_uses_default_baseline():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                result = await edit_match(session, "m1", 1, 2)
            async with maker() as session:
                m1 = await _snapshot_rows(session, "m1")
                history = (
                    await session.execute(
                        select(MatchRatingHistory).where(MatchRatingHistory.match_id == "m1")
                    )
                ).scalars().all()
            return result, m1, {h.player_id: h.rating_before for h in history}
        finally:
            await engine.dispose()

    result, m1, before = asyncio.run(run_test())
    assert result.replayed_match_ids == ["m1", "m2", "m3"]
    assert before == {"A": 1500, "B": 1500}
    assert [(pid, rating) for _, pid, rating, *_ in m1] == [("A", 1480), ("B", 1520)]
    assert result.states["A"].rating == 1482
    assert result.states["B"].rating == 1539
    assert result.states["C"].rating == 1479


def test_edit_first_match_of_later_session_starts_from_prior_history():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                session.add(LadderSession(id="s2", created_at=datetime(2024, 1, 8)))
                session.add(_match("n1", "s2", 1, 1, ["C", "A"]))
                await session.commit()
                await record_result(session, "n1", 3, 0)
            async with maker() as session:
                result = await edit_match(session, "n1", 0, 3)
                history = (
                    await session.execute(
                        select(MatchRatingHistory).where(MatchRatingHistory.match_id == "n1")
                    )
                ).scalars().all()
            return result, {h.player_id: h.rating_before for h in history}
        finally:
            await engine.dispose()

    result, before = asyncio.run(run_test())
    assert before == {"A": 1516, "C": 1481}
    assert result.states["C"].matches_played == 2
    assert result.states["A"].matches_played == 4


def test_re_edit_is_idempotent():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            finals = []
            snapshots = []
            for _ in range(2):
                async with maker() as session:
                    result = await edit_match(session, "m2", 1, 2)
                async with maker() as session:
                    rows = await _snapshot_rows(session, "m3")
                finals.append(result.states)
                snapshots.append([row[1:] for row in rows])
            return finals, snapshots
        finally:
            await engine.dispose()

    finals, snapshots = asyncio.run(run_test())
    assert finals[0] == finals[1]
    assert snapshots[0] == snapshots[1]


def test_edit_rejected_while_session_is_locked():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                token = await acquire_recalc_lock(session, "s1")
            async with maker() as session:
                with pytest.raises(RecalculationInProgress):
                    await edit_match(session, "m2", 1, 2)
            busy = await _lock_status(maker)

            # a lock older than the TTL is taken over
            async with maker() as session:
                await session.execute(
                    update(LadderSession)
                    .where(LadderSession.id == "s1")
                    .values(recalc_started_at=datetime(2000, 1, 1))
                )
                await session.commit()
            async with maker() as session:
                result = await edit_match(session, "m2", 1, 2)
            return token, busy, result, await _lock_status(maker)
        finally:
            await engine.dispose()

    token, busy, result, lock = asyncio.run(run_test())
    assert busy == ("running", token)
    assert result.states["A"].rating == 1478
    assert lock == ("done", None)


def test_doubles_edit_is_rejected_before_locking():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                session.add(_match("d1", "s1", 3, 1, ["A", "B", "C", "D"], mode="doubles"))
                await session.commit()
                result = await record_result(session, "d1", 2, 1)
            async with maker() as session:
                with pytest.raises(UnsupportedMatchMode):
                    await edit_match(session, "d1", 0, 2)
                doubles = await load_aggregates(session, ["A", "C"], "doubles")
                singles = await load_aggregates(session, ["A", "C"], "singles")
            return result, doubles, singles, await _lock_status(maker)
        finally:
            await engine.dispose()

    result, doubles, singles, lock = asyncio.run(run_test())
    assert result.mode == "doubles"
    assert doubles["A"].rating == 1520
    assert doubles["C"].rating == 1480
    # singles ratings are a separate family
    assert singles["A"].rating == 1516
    assert singles["C"].rating == 1481
    assert lock == ("done", None)


def test_edit_superseded_by_later_session():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                session.add(LadderSession(id="s2", created_at=datetime(2024, 1, 8)))
                session.add(_match("n1", "s2", 1, 1, ["A", "B"]))
                await session.commit()
                await record_result(session, "n1", 1, 0)
            async with maker() as session:
                with pytest.raises(EditSuperseded) as exc:
                    await edit_match(session, "m2", 1, 2)
            return exc.value
        finally:
            await engine.dispose()

    err = asyncio.run(run_test())
    assert err.status_code == 409
    assert "s2" in err.detail


def test_apply_and_record_reject_duplicates():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                with pytest.raises(MatchAlreadyApplied):
                    await apply_match(session, "m1")
                with pytest.raises(MatchAlreadyApplied):
                    await record_result(session, "m1", 0, 2)
                states = await load_aggregates(session, ["A"], "singles")
            return states, await _lock_status(maker)
        finally:
            await engine.dispose()

    states, lock = asyncio.run(run_test())
    assert states["A"].matches_played == 3
    assert lock == ("done", None)


def test_invalid_requests_are_rejected():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker, record=False)
            async with maker() as session:
                with pytest.raises(MatchNotCompleted):
                    await edit_match(session, "m1", 1, 0)
                with pytest.raises(MatchNotCompleted):
                    await apply_match(session, "m1")
                with pytest.raises(MatchNotFound):
                    await edit_match(session, "missing", 1, 0)
                with pytest.raises(ValidationError):
                    await record_result(session, "m1", -1, 0)
                with pytest.raises(ValidationError):
                    await edit_match(session, "m1", True, 0)
            return await _lock_status(maker)
        finally:
            await engine.dispose()

    lock = asyncio.run(run_test())
    assert lock == ("idle", None)


def test_failure_after_invalidation_needs_rerun(monkeypatch):
    reported = []

    def broken_replay(baseline, matches):
        raise RuntimeError("boom")

    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker)
            async with maker() as session:
                with monkeypatch.context() as m:
                    m.setattr(recalculation, "replay", broken_replay)
                    m.setattr(
                        recalculation,
                        "report_recalculation_failure",
                        lambda exc, **tags: reported.append(tags),
                    )
                    with pytest.raises(PartialRecalculationError) as exc:
                        await edit_match(session, "m2", 1, 2)
            failed = await _lock_status(maker)
            async with maker() as session:
                unchanged = await load_aggregates(session, ["A"], "singles")
                m3 = await _snapshot_rows(session, "m3")
            async with maker() as session:
                rerun = await edit_match(session, "m2", 1, 2)
            return exc.value, failed, unchanged, m3, rerun
        finally:
            await engine.dispose()

    err, failed, unchanged, m3, rerun = asyncio.run(run_test())
    assert err.code == "recalculation_needs_rerun"
    assert isinstance(err.__cause__, RuntimeError)
    assert failed == ("failed", None)
    assert reported == [{"session_id": "s1", "match_id": "m2", "phase": "replaying"}]
    # the single transaction was rolled back
    assert unchanged["A"].rating == 1516
    assert len(m3) == 2
    assert rerun.states["A"].rating == 1478


def test_verify_logs_drift(caplog):
    async def run_test():
        engine, maker = await _setup()
        try:
            async with maker() as session:
                session.add(Player(id="A", name="Alice"))
                await write_aggregates(session, {"A": RatingState(rating=1510)}, "singles")
                await session.commit()
                with caplog.at_level(logging.WARNING, logger="ladder.services.recalculation"):
                    drifted = await recalculation._verify(
                        session, "s1", {"A": RatingState(rating=1490)}, "singles"
                    )
            return drifted
        finally:
            await engine.dispose()

    drifted = asyncio.run(run_test())
    assert drifted == ["A"]
    assert "integrity drift" in caplog.text


def test_out_of_order_completion_is_applied_in_completion_order():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker, record=False)
            async with maker() as session:
                await record_result(session, "m2", 2, 1)
                await record_result(session, "m1", 2, 1)
                applied = await load_aggregates(session, ["A"], "singles")
            async with maker() as session:
                # an edit re-normalises the session into ordinal order
                result = await edit_match(session, "m1", 2, 1)
            return applied, result
        finally:
            await engine.dispose()

    applied, result = asyncio.run(run_test())
    # m2 first: A 1500 -> 1520; then m1 at 1520 vs 1500 -> +19
    assert applied["A"].rating == 1539
    assert result.replayed_match_ids == ["m1", "m2"]
    assert result.states["A"].rating == 1539
    assert result.states["B"].rating == 1480
    assert result.states["C"].rating == 1481


def test_late_result_before_a_later_session_is_rejected():
    async def run_test():
        engine, maker = await _setup()
        try:
            async with maker() as session:
                session.add_all(
                    [
                        Player(id="A", name="Alice"),
                        Player(id="B", name="Bob"),
                        LadderSession(id="s1", created_at=datetime(2024, 1, 1)),
                        LadderSession(id="s2", created_at=datetime(2024, 1, 8)),
                        _match("m1", "s1", 1, 1, ["A", "B"]),
                        _match("m2", "s1", 1, 2, ["A", "B"]),
                        _match("n1", "s2", 1, 1, ["A", "B"]),
                    ]
                )
                await session.commit()
                await record_result(session, "m1", 2, 1)
                await record_result(session, "n1", 2, 1)
                before = await load_aggregates(session, ["A", "B"], "singles")
                with pytest.raises(ResultSuperseded) as exc:
                    await record_result(session, "m2", 2, 1)
            async with maker() as session:
                m2 = await session.get(SessionMatch, "m2")
                m2_rows = await _snapshot_rows(session, "m2")
                after = await load_aggregates(session, ["A", "B"], "singles")
            async with maker() as session:
                # an unchanged re-entry of the later match changes nothing
                rerun = await edit_match(session, "n1", 2, 1)
            return exc.value, m2, m2_rows, before, after, rerun
        finally:
            await engine.dispose()

    err, m2, m2_rows, before, after, rerun = asyncio.run(run_test())
    assert err.status_code == 409
    assert err.code == "match_result_superseded"
    assert "s2" in err.detail
    assert (m2.status, m2.team1_score, m2.team2_score) == ("pending", None, None)
    assert m2_rows == []
    assert after == before
    assert before["A"].rating == 1538
    assert (before["A"].matches_played, before["A"].wins) == (2, 2)
    assert rerun.states == before


def test_result_rejected_by_busy_lock_is_not_stored():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker, record=False)
            async with maker() as session:
                await acquire_recalc_lock(session, "s1")
            async with maker() as session:
                with pytest.raises(RecalculationInProgress):
                    await record_result(session, "m1", 2, 1)
            async with maker() as session:
                m1 = await session.get(SessionMatch, "m1")
                pending = (m1.status, m1.team1_score, m1.completed_at)
                await force_unlock(session, "s1")
            async with maker() as session:
                retry = await record_result(session, "m1", 2, 1)
            async with maker() as session:
                states = await load_aggregates(session, ["A", "B"], "singles")
                m1 = await session.get(SessionMatch, "m1")
            return pending, retry, states, m1.status
        finally:
            await engine.dispose()

    pending, retry, states, status = asyncio.run(run_test())
    assert pending == ("pending", None, None)
    assert retry.replayed_match_ids == ["m1"]
    assert states["A"].rating == 1520
    assert states["B"].rating == 1480
    assert status == "completed"


def test_recorded_completion_without_ratings_can_be_recorded_again():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker, record=False)
            async with maker() as session:
                m1 = await session.get(SessionMatch, "m1")
                m1.team1_score, m1.team2_score = 0, 2
                m1.status = "completed"
                await session.commit()
            async with maker() as session:
                result = await record_result(session, "m1", 2, 1)
            async with maker() as session:
                m1 = await session.get(SessionMatch, "m1")
            return result, (m1.team1_score, m1.team2_score)
        finally:
            await engine.dispose()

    result, score = asyncio.run(run_test())
    assert score == (2, 1)
    assert result.states["A"].rating == 1520


def test_history_records_the_k_that_produced_the_delta():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker, record=False)
            async with maker() as session:
                await write_aggregates(
                    session, {"B": RatingState(matches_played=50)}, "singles"
                )
                await session.commit()
                await record_result(session, "m1", 2, 0)
                history = (
                    await session.execute(
                        select(MatchRatingHistory).where(MatchRatingHistory.match_id == "m1")
                    )
                ).scalars().all()
            return {h.player_id: (h.delta, h.k_factor) for h in history}
        finally:
            await engine.dispose()

    assert asyncio.run(run_test()) == {"A": (20, 40), "B": (-20, 40)}


def test_doubles_results_rate_each_pair():
    async def run_test():
        engine, maker = await _setup()
        try:
            await _seed_scenario(maker, record=False)
            async with maker() as session:
                session.add_all(
                    [
                        _match("d1", "s1", 3, 1, ["A", "B", "C", "D"], mode="doubles"),
                        _match("d2", "s1", 3, 2, ["D", "C", "B", "A"], mode="doubles"),
                    ]
                )
                await session.commit()
                first = await record_result(session, "d1", 2, 1)
                second = await record_result(session, "d2", 2, 0)
            async with maker() as session:
                teams = (
                    await session.execute(select(DoubleTeam).order_by(DoubleTeam.id))
                ).scalars().all()
                pairs = await load_aggregates(session, ["A:B", "C:D"], "doubles_team")
                players = await load_aggregates(session, ["A", "D"], "doubles")
                snapshots = (
                    await session.execute(
                        select(DoubleTeamSnapshot.match_id, DoubleTeamSnapshot.team_id)
                        .order_by(DoubleTeamSnapshot.match_id, DoubleTeamSnapshot.team_id)
                    )
                ).all()
            return first, second, teams, pairs, players, snapshots
        finally:
            await engine.dispose()

    first, second, teams, pairs, players, snapshots = asyncio.run(run_test())
    assert {tid: s.rating for tid, s in first.team_states.items()} == {
        "A:B": 1520,
        "C:D": 1480,
    }
    # D+C is the same pair as C+D
    assert [(t.id, t.player_1_id, t.player_2_id) for t in teams] == [
        ("A:B", "A", "B"),
        ("C:D", "C", "D"),
    ]
    assert pairs["C:D"].rating == 1502
    assert pairs["A:B"].rating == 1498
    assert (pairs["A:B"].matches_played, pairs["A:B"].wins, pairs["A:B"].losses) == (2, 1, 1)
    assert second.team_states == pairs
    assert players["A"].rating == 1498
    assert players["D"].rating == 1502
    assert snapshots == [
        ("d1", "A:B"),
        ("d1", "C:D"),
        ("d2", "A:B"),
        ("d2", "C:D"),
    ]
