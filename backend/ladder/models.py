from sqlalchemy import (
    Column,
    String,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Float,
    Boolean,
    Text,
    Index,
    PrimaryKeyConstraint,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from .db import Base


class Player(Base):
    __tablename__ = "player"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    deleted_at = Column(DateTime, nullable=True)


class LadderSession(Base):
    """A club evening: an ordered container of matches.

    The ``recalc_*`` columns are the advisory lock serializing rating
    mutations for the session across server instances.
    """

    __tablename__ = "ladder_session"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")  # "active" | "completed"
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)
    recalc_status = Column(String, nullable=False, default="idle")
    recalc_token = Column(String, nullable=True)
    recalc_started_at = Column(DateTime, nullable=True)
    recalc_finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_ladder_session_recalc_status", "recalc_status"),
    )


class SessionMatch(Base):
    __tablename__ = "session_match"
    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("ladder_session.id"), nullable=False)
    round_number = Column(Integer, nullable=False)
    match_order = Column(Integer, nullable=False)
    mode = Column(String, nullable=False)  # "singles" | "doubles"
    # singles: [p1, p2]; doubles: [team1_a, team1_b, team2_a, team2_b]
    player_ids = Column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False
    )
    team1_score = Column(Integer, nullable=True)
    team2_score = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="pending")  # "pending" | "completed"
    completed_at = Column(DateTime, nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)
    edit_reason = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "round_number",
            "match_order",
            name="uq_session_match_position",
        ),
    )


class RatingSnapshot(Base):
    """Rating state of one player immediately after one match."""

    __tablename__ = "rating_snapshot"
    id = Column(String, primary_key=True)
    match_id = Column(
        String, ForeignKey("session_match.id", ondelete="CASCADE"), nullable=False
    )
    player_id = Column(String, ForeignKey("player.id"), nullable=False)
    mode = Column(String, nullable=False)
    rating = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "match_id", "player_id", name="uq_rating_snapshot_match_id_player_id"
        ),
        Index("ix_rating_snapshot_player_mode", "player_id", "mode"),
        Index("ix_rating_snapshot_match_id", "match_id"),
    )


class PlayerRating(Base):
    """Current rating state of a player in one mode family."""

    __tablename__ = "player_rating"
    player_id = Column(String, ForeignKey("player.id"), nullable=False)
    mode = Column(String, nullable=False)
    rating = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint("player_id", "mode", name="pk_player_rating"),
    )


class MatchRatingHistory(Base):
    """Per-player audit record of one applied match.

    ``k_factor`` is the K that produced the match's delta (side 1's tier),
    so both sides of a match carry the same value.
    """

    __tablename__ = "match_rating_history"
    id = Column(String, primary_key=True)
    match_id = Column(
        String, ForeignKey("session_match.id", ondelete="CASCADE"), nullable=False
    )
    player_id = Column(String, ForeignKey("player.id"), nullable=False)
    mode = Column(String, nullable=False)
    rating_before = Column(Float, nullable=False)
    rating_after = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)
    k_factor = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "match_id", "player_id", name="uq_match_rating_history_match_id_player_id"
        ),
        Index("ix_match_rating_history_player_id", "player_id"),
    )


class DoubleTeam(Base):
    """A doubles pair rated as its own entity.

    ``id`` is the pair key built by :func:`ladder.services.teams.team_key`;
    ``player_1_id`` is always the smaller of the two player ids.
    """

    __tablename__ = "double_team"
    id = Column(String, primary_key=True)
    player_1_id = Column(String, ForeignKey("player.id"), nullable=False)
    player_2_id = Column(String, ForeignKey("player.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("player_1_id", "player_2_id", name="uq_double_team_players"),
    )


class DoubleTeamRating(Base):
    __tablename__ = "double_team_rating"
    team_id = Column(String, ForeignKey("double_team.id"), primary_key=True)
    rating = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True)


class DoubleTeamSnapshot(Base):
    __tablename__ = "double_team_snapshot"
    id = Column(String, primary_key=True)
    match_id = Column(
        String, ForeignKey("session_match.id", ondelete="CASCADE"), nullable=False
    )
    team_id = Column(String, ForeignKey("double_team.id"), nullable=False)
    rating = Column(Float, nullable=False)
    matches_played = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    draws = Column(Integer, nullable=False, default=0)
    sets_won = Column(Integer, nullable=False, default=0)
    sets_lost = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "match_id", "team_id", name="uq_double_team_snapshot_match_id_team_id"
        ),
        Index("ix_double_team_snapshot_team_id", "team_id"),
        Index("ix_double_team_snapshot_match_id", "match_id"),
    )
