"""SQLModel ORM tables for run supervision storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class AgentRecord(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    agent_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    icon: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    system_prompt: str = Field(
        default="",
        sa_column=Column(Text, nullable=False, server_default=""),
    )
    default_task: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    model: str = Field(default="sonnet")
    sandbox_enabled: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    enable_file_read: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1")),
    )
    enable_file_write: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1")),
    )
    enable_network: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentRunRecord(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_runs_status_schedule", "status", "scheduled_start_time"),
        Index("idx_agent_runs_created", "created_at"),
        CheckConstraint(
            "(pid IS NULL AND process_started_at IS NULL) "
            "OR (pid IS NOT NULL AND process_started_at IS NOT NULL)",
            name="ck_agent_runs_pid_started_pair",
        ),
    )

    run_id: str = Field(primary_key=True)
    agent_id: str = Field(index=True)
    agent_name: str
    agent_icon: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    task: str = Field(sa_column=Column(Text, nullable=False))
    model: str
    project_path: str
    session_id: str = Field(default="", index=True)
    status: str
    pid: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    process_started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    scheduled_start_time: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    usage_limit_reset_time: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    auto_resume_enabled: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    resume_count: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
    parent_run_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentRunOutputLine(SQLModel, table=True):
    __tablename__ = "agent_run_output_lines"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "run_id",
            "line_number",
            name="uq_agent_run_output_lines_run_line",
        ),
    )

    line_id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    line_number: int
    content: str = Field(sa_column=Column(Text, nullable=False))
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AppSetting(SQLModel, table=True):
    __tablename__ = "app_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
