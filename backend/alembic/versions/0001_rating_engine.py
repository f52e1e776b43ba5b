"""rating engine tables

Revision ID: 0001_rating_engine
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_rating_engine"
down_revision = None
branch_labels = None
depends_on = None


def _counter(name):
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def upgrade():
    op.create_table(
        "player",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "ladder_session",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("recalc_status", sa.String(), nullable=False, server_default="idle"),
        sa.Column("recalc_token", sa.String(), nullable=True),
        sa.Column("recalc_started_at", sa.DateTime(), nullable=True),
        sa.Column("recalc_finished_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ladder_session_recalc_status", "ladder_session", ["recalc_status"]
    )
    op.create_table(
        "session_match",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), sa.ForeignKey("ladder_session.id"), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("match_order", sa.Integer(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column(
            "player_ids",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column("team1_score", sa.Integer(), nullable=True),
        sa.Column("team2_score", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("is_edited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(), nullable=True),
        sa.Column("edit_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "session_id", "round_number", "match_order", name="uq_session_match_position"
        ),
    )
    op.create_table(
        "rating_snapshot",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column(
            "match_id",
            sa.String(),
            sa.ForeignKey("session_match.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        _counter("matches_played"),
        _counter("wins"),
        _counter("losses"),
        _counter("draws"),
        _counter("sets_won"),
        _counter("sets_lost"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "match_id", "player_id", name="uq_rating_snapshot_match_id_player_id"
        ),
    )
    op.create_index(
        "ix_rating_snapshot_player_mode", "rating_snapshot", ["player_id", "mode"]
    )
    op.create_index("ix_rating_snapshot_match_id", "rating_snapshot", ["match_id"])
    op.create_table(
        "player_rating",
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        _counter("matches_played"),
        _counter("wins"),
        _counter("losses"),
        _counter("draws"),
        _counter("sets_won"),
        _counter("sets_lost"),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("player_id", "mode", name="pk_player_rating"),
    )
    op.create_table(
        "match_rating_history",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column(
            "match_id",
            sa.String(),
            sa.ForeignKey("session_match.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("player_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("rating_before", sa.Float(), nullable=False),
        sa.Column("rating_after", sa.Float(), nullable=False),
        sa.Column("delta", sa.Float(), nullable=False),
        sa.Column("k_factor", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "match_id", "player_id", name="uq_match_rating_history_match_id_player_id"
        ),
    )
    op.create_index(
        "ix_match_rating_history_player_id", "match_rating_history", ["player_id"]
    )


def downgrade():
    op.drop_index("ix_match_rating_history_player_id", table_name="match_rating_history")
    op.drop_table("match_rating_history")
    op.drop_table("player_rating")
    op.drop_index("ix_rating_snapshot_match_id", table_name="rating_snapshot")
    op.drop_index("ix_rating_snapshot_player_mode", table_name="rating_snapshot")
    op.drop_table("rating_snapshot")
    op.drop_table("session_match")
    op.drop_index("ix_ladder_session_recalc_status", table_name="ladder_session")
    op.drop_table("ladder_session")
    op.drop_table("player")
