"""Simulation runs table

Revision ID: 001
Revises:
Create Date: 2026-10-18

- simulation_runs: one row per run, status moves running -> completed|stopped|failed
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "simulation_runs",
        sa.Column("run_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("telemetry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('running','completed','stopped','failed')",
            name="chk_simulation_runs_status",
        ),
        sa.CheckConstraint("duration > 0", name="chk_simulation_runs_duration"),
        sa.CheckConstraint("telemetry_count >= 0", name="chk_simulation_runs_telemetry_count"),
        sa.CheckConstraint("events_count >= 0", name="chk_simulation_runs_events_count"),
    )

    # Hot-path indexes: history listing sorts by start_time and filters by status/creator.
    op.create_index("ix_simulation_runs_start_time", "simulation_runs", ["start_time"], unique=False)
    op.create_index("ix_simulation_runs_status", "simulation_runs", ["status"], unique=False)
    op.create_index("ix_simulation_runs_created_by", "simulation_runs", ["created_by"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_simulation_runs_created_by", table_name="simulation_runs")
    op.drop_index("ix_simulation_runs_status", table_name="simulation_runs")
    op.drop_index("ix_simulation_runs_start_time", table_name="simulation_runs")
    op.drop_table("simulation_runs")
