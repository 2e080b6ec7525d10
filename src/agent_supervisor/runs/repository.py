"""Run Store: durable runs, agent definitions, transcript lines, and settings."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_supervisor.runs.errors import PersistenceError, RunNotFound
from agent_supervisor.runs.models import (
    AgentDefinition,
    AgentDefinitionCreate,
    AgentPermissions,
    AgentRunCreate,
    AgentRunView,
    OutputLineView,
    RunStatus,
)
from agent_supervisor.storage.alembic_runner import upgrade_head
from agent_supervisor.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_supervisor.storage.sqlmodel_models import (
    AgentRecord,
    AgentRunOutputLine,
    AgentRunRecord,
    AppSetting,
)


class RunRepository:
    """Run persistence facade backed by SQLModel + SQLite.

    Status columns are only changed through conditional updates that name the
    expected source status; a ``False`` return means another writer got there
    first.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path, engine=self.engine)

    # Agent definitions

    def add_agent(self, payload: AgentDefinitionCreate) -> AgentDefinition:
        """Register an agent definition."""

        now = utc_now()
        with Session(self.engine) as session:
            row = AgentRecord(
                agent_id=payload.agent_id or str(uuid4()),
                name=payload.name,
                icon=payload.icon,
                system_prompt=payload.system_prompt,
                default_task=payload.default_task,
                model=payload.model,
                sandbox_enabled=payload.permissions.sandbox_enabled,
                enable_file_read=payload.permissions.file_read,
                enable_file_write=payload.permissions.file_write,
                enable_network=payload.permissions.network,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_definition(row)

    def find_agent_by_id(self, agent_id: str) -> AgentDefinition | None:
        with Session(self.engine) as session:
            row = session.get(AgentRecord, agent_id)
            return _to_agent_definition(row) if row is not None else None

    def list_agents(self) -> list[AgentDefinition]:
        with Session(self.engine) as session:
            rows = session.exec(select(AgentRecord).order_by(col(AgentRecord.name).asc())).all()
            return [_to_agent_definition(row) for row in rows]

    # Runs

    def create_run(self, payload: AgentRunCreate) -> AgentRunView:
        """Insert a run row in ``pending`` or ``scheduled`` state."""

        if payload.status not in {RunStatus.PENDING, RunStatus.SCHEDULED}:
            raise ValueError(f"Runs are created pending or scheduled, not {payload.status.value}.")
        with Session(self.engine) as session:
            row = _new_run_row(payload)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def create_continuation(self, payload: AgentRunCreate) -> AgentRunView | None:
        """Insert a continuation run only while its parent is still paused.

        Returns ``None`` when the parent is missing or no longer
        ``paused_usage_limit``.
        """

        if payload.parent_run_id is None:
            raise ValueError("Continuation runs require parent_run_id.")
        with Session(self.engine) as session:
            parent = session.exec(
                select(AgentRunRecord).where(
                    AgentRunRecord.run_id == payload.parent_run_id,
                    AgentRunRecord.status == RunStatus.PAUSED_USAGE_LIMIT.value,
                ),
            ).one_or_none()
            if parent is None:
                return None
            row = _new_run_row(payload)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def find_run_by_id(self, run_id: str) -> AgentRunView | None:
        with Session(self.engine) as session:
            row = session.get(AgentRunRecord, run_id)
            return _to_run_view(row) if row is not None else None

    def get_run(self, run_id: str) -> AgentRunView:
        """Like ``find_run_by_id`` but raises ``RunNotFound``."""

        run = self.find_run_by_id(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def find_run_by_session(self, session_id: str) -> AgentRunView | None:
        """Most recent run that reported the given session handle."""

        if not session_id:
            return None
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentRunRecord)
                .where(AgentRunRecord.session_id == session_id)
                .order_by(col(AgentRunRecord.created_at).desc())
                .limit(1),
            ).one_or_none()
            return _to_run_view(row) if row is not None else None

    def list_running(self) -> list[AgentRunView]:
        return self._list_by_status(RunStatus.RUNNING)

    def list_scheduled(self) -> list[AgentRunView]:
        return self._list_by_status(RunStatus.SCHEDULED)

    def list_due_scheduled(self, *, now: datetime, limit: int | None = None) -> list[AgentRunView]:
        """Scheduled runs whose start time has passed, oldest first."""

        with Session(self.engine) as session:
            query = (
                select(AgentRunRecord)
                .where(
                    AgentRunRecord.status == RunStatus.SCHEDULED.value,
                    col(AgentRunRecord.scheduled_start_time).is_not(None),
                    col(AgentRunRecord.scheduled_start_time) <= to_db_datetime(now),
                )
                .order_by(
                    col(AgentRunRecord.scheduled_start_time).asc(),
                    col(AgentRunRecord.created_at).asc(),
                )
            )
            if limit is not None:
                query = query.limit(limit)
            return [_to_run_view(row) for row in session.exec(query).all()]

    def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        agent_id: str | None = None,
        limit: int = 50,
    ) -> list[AgentRunView]:
        with Session(self.engine) as session:
            query = select(AgentRunRecord)
            if status is not None:
                query = query.where(AgentRunRecord.status == status.value)
            if agent_id is not None:
                query = query.where(AgentRunRecord.agent_id == agent_id)
            query = query.order_by(col(AgentRunRecord.created_at).desc()).limit(limit)
            return [_to_run_view(row) for row in session.exec(query).all()]

    def list_children(self, parent_run_id: str) -> list[AgentRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRunRecord)
                .where(AgentRunRecord.parent_run_id == parent_run_id)
                .order_by(col(AgentRunRecord.created_at).asc()),
            ).all()
            return [_to_run_view(row) for row in rows]

    def update_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        expected_status: RunStatus,
        pid: int | None = None,
        process_started_at: datetime | None = None,
    ) -> bool:
        """Move a run from ``expected_status`` to ``status``; ``False`` on lost race."""

        now = utc_now()
        values: dict[str, object] = {
            "status": status.value,
            "updated_at": to_db_datetime(now),
        }
        if pid is not None:
            values["pid"] = pid
            values["process_started_at"] = to_db_datetime(process_started_at or now)
        return self._conditional_update(run_id=run_id, expected_status=expected_status, **values)

    def update_completion(
        self,
        run_id: str,
        status: RunStatus,
        *,
        expected_status: RunStatus,
    ) -> bool:
        """Move a run out of ``expected_status`` and stamp ``completed_at``."""

        now = utc_now()
        return self._conditional_update(
            run_id=run_id,
            expected_status=expected_status,
            status=status.value,
            completed_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )

    def update_usage_limit(
        self,
        run_id: str,
        reset_time: datetime | None,
        auto_resume: bool,
    ) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRecord)
                .where(col(AgentRunRecord.run_id) == run_id)
                .values(
                    usage_limit_reset_time=(
                        to_db_datetime(reset_time) if reset_time is not None else None
                    ),
                    auto_resume_enabled=auto_resume,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RunNotFound(run_id)
            session.commit()

    def update_session_id(self, run_id: str, session_id: str) -> bool:
        """Record the reported session handle; later reports are ignored."""

        if not session_id:
            return False
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRecord)
                .where(
                    col(AgentRunRecord.run_id) == run_id,
                    col(AgentRunRecord.session_id) == "",
                )
                .values(session_id=session_id, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Transcript

    def append_output_line(
        self,
        run_id: str,
        line_number: int,
        content: str,
        *,
        received_at: datetime | None = None,
    ) -> None:
        """Persist one transcript line; raises ``PersistenceError`` on any storage failure."""

        try:
            with Session(self.engine) as session:
                session.add(
                    AgentRunOutputLine(
                        run_id=run_id,
                        line_number=line_number,
                        content=content,
                        received_at=to_db_datetime(received_at or utc_now()),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise PersistenceError(
                f"Failed to persist line {line_number} of run {run_id}: {error}",
            ) from error

    def get_output(self, run_id: str, *, after_line: int = 0) -> list[OutputLineView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRunOutputLine)
                .where(
                    AgentRunOutputLine.run_id == run_id,
                    AgentRunOutputLine.line_number > after_line,
                )
                .order_by(col(AgentRunOutputLine.line_number).asc()),
            ).all()
            return [
                OutputLineView(
                    run_id=row.run_id,
                    line_number=row.line_number,
                    content=row.content,
                    received_at=to_utc_aware_datetime(row.received_at),
                )
                for row in rows
            ]

    def get_last_line_number(self, run_id: str) -> int:
        """Highest persisted line number for the run, ``0`` if none."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.max(AgentRunOutputLine.line_number)).where(
                    AgentRunOutputLine.run_id == run_id,
                ),
            ).one()
            return int(value or 0)

    # Settings

    def get_setting(self, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.get(AppSetting, key)
            return row.value if row is not None else None

    def set_setting(self, key: str, value: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(AppSetting, key)
            if row is None:
                row = AppSetting(key=key, value=value, created_at=now, updated_at=now)
            else:
                row.value = value
                row.updated_at = now
            session.add(row)
            session.commit()

    def _list_by_status(self, status: RunStatus) -> list[AgentRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentRunRecord)
                .where(AgentRunRecord.status == status.value)
                .order_by(col(AgentRunRecord.created_at).asc()),
            ).all()
            return [_to_run_view(row) for row in rows]

    def _conditional_update(
        self,
        *,
        run_id: str,
        expected_status: RunStatus,
        **values: object,
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentRunRecord)
                .where(
                    col(AgentRunRecord.run_id) == run_id,
                    col(AgentRunRecord.status) == expected_status.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _new_run_row(payload: AgentRunCreate) -> AgentRunRecord:
    now = utc_now()
    return AgentRunRecord(
        run_id=payload.run_id or str(uuid4()),
        agent_id=payload.agent_id,
        agent_name=payload.agent_name,
        agent_icon=payload.agent_icon,
        task=payload.task,
        model=payload.model,
        project_path=payload.project_path,
        session_id=payload.session_id,
        status=payload.status.value,
        scheduled_start_time=(
            to_db_datetime(payload.scheduled_start_time)
            if payload.scheduled_start_time is not None
            else None
        ),
        created_at=now,
        auto_resume_enabled=payload.auto_resume_enabled,
        resume_count=payload.resume_count,
        parent_run_id=payload.parent_run_id,
        updated_at=now,
    )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_agent_definition(row: AgentRecord) -> AgentDefinition:
    return AgentDefinition(
        agent_id=row.agent_id,
        name=row.name,
        icon=row.icon,
        system_prompt=row.system_prompt,
        default_task=row.default_task,
        model=row.model,
        permissions=AgentPermissions(
            sandbox_enabled=row.sandbox_enabled,
            file_read=row.enable_file_read,
            file_write=row.enable_file_write,
            network=row.enable_network,
        ),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_run_view(row: AgentRunRecord) -> AgentRunView:
    return AgentRunView(
        run_id=row.run_id,
        agent_id=row.agent_id,
        agent_name=row.agent_name,
        agent_icon=row.agent_icon,
        task=row.task,
        model=row.model,
        project_path=row.project_path,
        session_id=row.session_id,
        status=RunStatus.from_wire(row.status),
        pid=row.pid,
        process_started_at=_optional_aware(row.process_started_at),
        scheduled_start_time=_optional_aware(row.scheduled_start_time),
        created_at=to_utc_aware_datetime(row.created_at),
        completed_at=_optional_aware(row.completed_at),
        usage_limit_reset_time=_optional_aware(row.usage_limit_reset_time),
        auto_resume_enabled=bool(row.auto_resume_enabled),
        resume_count=row.resume_count,
        parent_run_id=row.parent_run_id,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
