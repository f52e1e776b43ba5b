"""doubles pairs as rated entities

Revision ID: 0002_double_teams
Revises: 0001_rating_engine
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_double_teams"
down_revision = "0001_rating_engine"
branch_labels = None
depends_on = None


def _counter(name):
    return sa.Column(name, sa.Integer(), nullable=False, server_default="0")


def _counters():
    return [
        sa.Column("rating", sa.Float(), nullable=False),
        _counter("matches_played"),
        _counter("wins"),
        _counter("losses"),
        _counter("draws"),
        _counter("sets_won"),
        _counter("sets_lost"),
    ]


def upgrade():
    op.create_table(
        "double_team",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("player_1_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("player_2_id", sa.String(), sa.ForeignKey("player.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("player_1_id", "player_2_id", name="uq_double_team_players"),
    )
    op.create_table(
        "double_team_rating",
        sa.Column("team_id", sa.String(), sa.ForeignKey("double_team.id"), nullable=False),
        *_counters(),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("team_id"),
    )
    op.create_table(
        "double_team_snapshot",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column(
            "match_id",
            sa.String(),
            sa.ForeignKey("session_match.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("team_id", sa.String(), sa.ForeignKey("double_team.id"), nullable=False),
        *_counters(),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "match_id", "team_id", name="uq_double_team_snapshot_match_id_team_id"
        ),
    )
    op.create_index(
        "ix_double_team_snapshot_team_id", "double_team_snapshot", ["team_id"]
    )
    op.create_index(
        "ix_double_team_snapshot_match_id", "double_team_snapshot", ["match_id"]
    )


def downgrade():
    op.drop_index("ix_double_team_snapshot_match_id", table_name="double_team_snapshot")
    op.drop_index("ix_double_team_snapshot_team_id", table_name="double_team_snapshot")
    op.drop_table("double_team_snapshot")
    op.drop_table("double_team_rating")
    op.drop_table("double_team")
