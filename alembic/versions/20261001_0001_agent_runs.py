"""Create agent definition, run, output line, and settings tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("icon", sa.String(), server_default="", nullable=False),
        sa.Column("system_prompt", sa.Text(), server_default="", nullable=False),
        sa.Column("default_task", sa.Text(), nullable=True),
        sa.Column("model", sa.String(), server_default="sonnet", nullable=False),
        sa.Column("sandbox_enabled", sa.Boolean(), server_default=sa.text("0"), nullable=False),
        sa.Column("enable_file_read", sa.Boolean(), server_default=sa.text("1"), nullable=False),
        sa.Column("enable_file_write", sa.Boolean(), server_default=sa.text("1"), nullable=False),
        sa.Column("enable_network", sa.Boolean(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )
    op.create_index("ix_agents_name", "agents", ["name"], unique=False)

    op.create_table(
        "agent_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("agent_name", sa.String(), nullable=False),
        sa.Column("agent_icon", sa.String(), server_default="", nullable=False),
        sa.Column("task", sa.Text(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("project_path", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), server_default="", nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("process_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_limit_reset_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "auto_resume_enabled",
            sa.Boolean(),
            server_default=sa.text("0"),
            nullable=False,
        ),
        sa.Column("resume_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("parent_run_id", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["parent_run_id"],
            ["agent_runs.run_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("run_id"),
        sa.CheckConstraint(
            "(pid IS NULL AND process_started_at IS NULL) "
            "OR (pid IS NOT NULL AND process_started_at IS NOT NULL)",
            name="ck_agent_runs_pid_started_pair",
        ),
    )
    op.create_index("ix_agent_runs_agent_id", "agent_runs", ["agent_id"], unique=False)
    op.create_index("ix_agent_runs_session_id", "agent_runs", ["session_id"], unique=False)
    op.create_index("ix_agent_runs_parent_run_id", "agent_runs", ["parent_run_id"], unique=False)
    op.create_index(
        "idx_agent_runs_status_schedule",
        "agent_runs",
        ["status", "scheduled_start_time"],
        unique=False,
    )
    op.create_index(
        "idx_agent_runs_created",
        "agent_runs",
        ["created_at"],
        unique=False,
    )

    op.create_table(
        "agent_run_output_lines",
        sa.Column("line_id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["agent_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("line_id"),
        sa.UniqueConstraint(
            "run_id",
            "line_number",
            name="uq_agent_run_output_lines_run_line",
        ),
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("app_settings")
    op.drop_table("agent_run_output_lines")
    op.drop_index("idx_agent_runs_created", table_name="agent_runs")
    op.drop_index("idx_agent_runs_status_schedule", table_name="agent_runs")
    op.drop_index("ix_agent_runs_parent_run_id", table_name="agent_runs")
    op.drop_index("ix_agent_runs_session_id", table_name="agent_runs")
    op.drop_index("ix_agent_runs_agent_id", table_name="agent_runs")
    op.drop_table("agent_runs")
    op.drop_index("ix_agents_name", table_name="agents")
    op.drop_table("agents")
