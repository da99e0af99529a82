"""SQL implementation of the workflow repository (SQLite or PostgreSQL)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from ..contracts import (
    CLAIMABLE_STATUSES,
    ApprovalStatus,
    RunStatus,
    StepKind,
    StepSpec,
    StepStatus,
    WorkflowDefinition,
)
from ..db.models import (
    StepExecutionRow,
    WorkflowApprovalRow,
    WorkflowDefinitionRow,
    WorkflowRunRow,
)
from ..db.workflow_db import WorkflowDB
from ..exceptions import DuplicateRun, TenantAccessDenied, TransientStoreError
from .models import StepExecution, WorkflowApproval, WorkflowRun, new_id, utcnow
from .repository import WorkflowRepository

_TERMINAL_RUN = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
_TERMINAL_STEP = {StepStatus.COMPLETED, StepStatus.FAILED}
_STEP_COLUMNS = {
    "output",
    "error_message",
    "next_position",
    "ends_run",
    "external_ref",
    "resume_at",
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything flowgate stores is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_tenant(row: Any, record_type: str, tenant_id: str) -> None:
    if row.tenant_id != tenant_id:
        raise TenantAccessDenied(record_type, row.id, tenant_id)


def _to_definition(row: WorkflowDefinitionRow) -> WorkflowDefinition:
    return WorkflowDefinition(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        version=row.version,
        trigger_type=row.trigger_type,
        trigger_condition=row.trigger_condition,
        trigger_config=row.trigger_config,
        steps=[StepSpec.model_validate(step) for step in row.steps or []],
        is_active=row.is_active,
    )


def _to_run(row: WorkflowRunRow) -> WorkflowRun:
    return WorkflowRun(
        id=row.id,
        workflow_id=row.workflow_id,
        workflow_version=row.workflow_version,
        tenant_id=row.tenant_id,
        triggered_by=row.triggered_by,
        trigger_data=row.trigger_data or {},
        trigger_event_id=row.trigger_event_id,
        status=RunStatus(row.status),
        created_at=_aware(row.created_at),
        completed_at=_aware(row.completed_at),
    )


def _to_step(row: StepExecutionRow) -> StepExecution:
    return StepExecution(
        id=row.id,
        run_id=row.run_id,
        tenant_id=row.tenant_id,
        position=row.position,
        step_kind=StepKind(row.step_kind),
        status=StepStatus(row.status),
        output=row.output,
        error_message=row.error_message,
        next_position=row.next_position,
        ends_run=row.ends_run,
        external_ref=row.external_ref,
        resume_at=_aware(row.resume_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


def _to_approval(row: WorkflowApprovalRow) -> WorkflowApproval:
    return WorkflowApproval(
        id=row.id,
        tenant_id=row.tenant_id,
        run_id=row.run_id,
        step_execution_id=row.step_execution_id,
        requested_from=row.requested_from,
        instructions=row.instructions,
        status=ApprovalStatus(row.status),
        comment=row.comment,
        decided_by=row.decided_by,
        created_at=_aware(row.created_at),
        decided_at=_aware(row.decided_at),
    )


class SQLWorkflowRepository(WorkflowRepository):
    """Persist workflow state through SQLModel/SQLAlchemy async sessions.

    Status transitions are single ``UPDATE ... WHERE status IN (...)``
    statements so concurrent resumes cannot both win. Connection-level
    failures surface as :class:`~flowgate.exceptions.TransientStoreError`.
    """

    def __init__(self, database_url: str | WorkflowDB) -> None:
        self._db = (
            database_url
            if isinstance(database_url, WorkflowDB)
            else WorkflowDB(database_url)
        )
        self._initialized = False

    async def init_db(self) -> None:
        await self._db.init_db()
        self._initialized = True

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        try:
            async with self._db.session() as session:
                yield session
        except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as e:
            raise TransientStoreError(f"Workflow store unavailable: {e}") from e
        except sa_exc.DBAPIError as e:
            if e.connection_invalidated:
                raise TransientStoreError(f"Workflow store unavailable: {e}") from e
            raise

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._session() as session:
            existing = (
                await session.execute(
                    select(WorkflowDefinitionRow)
                    .where(WorkflowDefinitionRow.id == definition.id)
                    .limit(1)
                )
            ).scalars().first()
            if existing is not None:
                _check_tenant(existing, "Workflow", definition.tenant_id)
            row = WorkflowDefinitionRow(
                id=definition.id,
                version=definition.version,
                tenant_id=definition.tenant_id,
                name=definition.name,
                trigger_type=definition.trigger_type,
                trigger_condition=definition.trigger_condition,
                trigger_config=definition.trigger_config,
                steps=[step.model_dump(mode="json") for step in definition.steps],
                is_active=definition.is_active,
            )
            await session.merge(row)
            await session.commit()

    async def get_definition(
        self, workflow_id: str, tenant_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        query = select(WorkflowDefinitionRow).where(
            WorkflowDefinitionRow.id == workflow_id
        )
        if version is None:
            query = query.order_by(col(WorkflowDefinitionRow.version).desc())
        else:
            query = query.where(WorkflowDefinitionRow.version == version)
        async with self._session() as session:
            row = (await session.execute(query.limit(1))).scalars().first()
        if row is None:
            return None
        _check_tenant(row, "Workflow", tenant_id)
        return _to_definition(row)

    async def list_definitions(
        self,
        tenant_id: str,
        trigger_type: Optional[str] = None,
        active_only: bool = False,
    ) -> list[WorkflowDefinition]:
        latest = (
            select(
                WorkflowDefinitionRow.id,
                func.max(WorkflowDefinitionRow.version).label("version"),
            )
            .where(WorkflowDefinitionRow.tenant_id == tenant_id)
            .group_by(WorkflowDefinitionRow.id)
            .subquery()
        )
        query = select(WorkflowDefinitionRow).join(
            latest,
            (WorkflowDefinitionRow.id == latest.c.id)
            & (WorkflowDefinitionRow.version == latest.c.version),
        )
        if trigger_type is not None:
            query = query.where(WorkflowDefinitionRow.trigger_type == trigger_type)
        if active_only:
            query = query.where(col(WorkflowDefinitionRow.is_active).is_(True))
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_definition(row) for row in rows]

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        row = WorkflowRunRow(
            id=run.id,
            workflow_id=run.workflow_id,
            workflow_version=run.workflow_version,
            tenant_id=run.tenant_id,
            triggered_by=run.triggered_by,
            trigger_data=run.trigger_data,
            trigger_event_id=run.trigger_event_id,
            status=run.status.value,
            created_at=run.created_at,
            completed_at=run.completed_at,
        )
        async with self._session() as session:
            session.add(row)
            try:
                await session.commit()
            except sa_exc.IntegrityError as e:
                await session.rollback()
                existing = None
                if run.trigger_event_id is not None:
                    existing = await self.find_run_by_event(
                        run.tenant_id, run.workflow_id, run.trigger_event_id
                    )
                if existing is None:
                    raise
                raise DuplicateRun(
                    f"Run already exists for event {run.trigger_event_id}",
                    existing_run_id=existing.id,
                ) from e
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str, tenant_id: str) -> WorkflowRun | None:
        async with self._session() as session:
            row = await session.get(WorkflowRunRow, run_id)
        if row is None:
            return None
        _check_tenant(row, "Run", tenant_id)
        return _to_run(row)

    async def find_run_by_event(
        self, tenant_id: str, workflow_id: str, event_id: str
    ) -> WorkflowRun | None:
        query = select(WorkflowRunRow).where(
            WorkflowRunRow.tenant_id == tenant_id,
            WorkflowRunRow.workflow_id == workflow_id,
            WorkflowRunRow.trigger_event_id == event_id,
        )
        async with self._session() as session:
            row = (await session.execute(query)).scalars().first()
        return _to_run(row) if row is not None else None

    async def list_runs(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> list[WorkflowRun]:
        query = select(WorkflowRunRow).where(WorkflowRunRow.tenant_id == tenant_id)
        if workflow_id is not None:
            query = query.where(WorkflowRunRow.workflow_id == workflow_id)
        if status is not None:
            query = query.where(WorkflowRunRow.status == status.value)
        query = query.order_by(col(WorkflowRunRow.created_at).desc())
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_run(row) for row in rows]

    async def update_run_status(
        self,
        run_id: str,
        tenant_id: str,
        status: RunStatus,
        expected: Iterable[RunStatus] = (RunStatus.RUNNING,),
    ) -> bool:
        values: dict[str, Any] = {"status": status.value}
        if status in _TERMINAL_RUN:
            values["completed_at"] = utcnow()
        async with self._session() as session:
            row = await session.get(WorkflowRunRow, run_id)
            if row is None:
                return False
            _check_tenant(row, "Run", tenant_id)
            result = await session.execute(
                update(WorkflowRunRow)
                .where(
                    col(WorkflowRunRow.id) == run_id,
                    col(WorkflowRunRow.tenant_id) == tenant_id,
                    col(WorkflowRunRow.status).in_([s.value for s in expected]),
                )
                .values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    async def list_step_executions(
        self, run_id: str, tenant_id: str
    ) -> list[StepExecution]:
        async with self._session() as session:
            run = await session.get(WorkflowRunRow, run_id)
            if run is not None:
                _check_tenant(run, "Run", tenant_id)
            rows = (
                await session.execute(
                    select(StepExecutionRow)
                    .where(
                        StepExecutionRow.run_id == run_id,
                        StepExecutionRow.tenant_id == tenant_id,
                    )
                    .order_by(col(StepExecutionRow.position))
                )
            ).scalars().all()
        return [_to_step(row) for row in rows]

    async def get_step_execution(
        self, execution_id: str, tenant_id: str
    ) -> StepExecution | None:
        async with self._session() as session:
            row = await session.get(StepExecutionRow, execution_id)
        if row is None:
            return None
        _check_tenant(row, "Step execution", tenant_id)
        return _to_step(row)

    async def claim_step(
        self, run_id: str, tenant_id: str, position: int, step_kind: StepKind
    ) -> StepExecution | None:
        now = utcnow()
        async with self._session() as session:
            run = await session.get(WorkflowRunRow, run_id)
            if run is not None:
                _check_tenant(run, "Run", tenant_id)
            row = (
                await session.execute(
                    select(StepExecutionRow).where(
                        StepExecutionRow.run_id == run_id,
                        StepExecutionRow.position == position,
                    )
                )
            ).scalars().first()

            if row is None:
                row = StepExecutionRow(
                    id=new_id(),
                    run_id=run_id,
                    tenant_id=tenant_id,
                    position=position,
                    step_kind=step_kind.value,
                    status=StepStatus.RUNNING.value,
                    started_at=now,
                )
                session.add(row)
                try:
                    await session.commit()
                except sa_exc.IntegrityError:
                    # Lost the insert race on (run_id, position).
                    await session.rollback()
                    return None
                return _to_step(row)

            _check_tenant(row, "Step execution", tenant_id)
            claimable = [s.value for s in CLAIMABLE_STATUSES]
            result = await session.execute(
                update(StepExecutionRow)
                .where(
                    col(StepExecutionRow.id) == row.id,
                    col(StepExecutionRow.status).in_(claimable),
                )
                .values(status=StepStatus.RUNNING.value, started_at=now)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
            await session.refresh(row)
            return _to_step(row)

    async def transition_step(
        self,
        execution_id: str,
        tenant_id: str,
        expected: Iterable[StepStatus],
        status: StepStatus,
        **changes: Any,
    ) -> bool:
        unknown = set(changes) - _STEP_COLUMNS
        if unknown:
            raise ValueError(f"Unknown step execution fields: {sorted(unknown)}")
        values: dict[str, Any] = {"status": status.value, **changes}
        if status in _TERMINAL_STEP:
            values["completed_at"] = utcnow()
        async with self._session() as session:
            row = await session.get(StepExecutionRow, execution_id)
            if row is None:
                return False
            _check_tenant(row, "Step execution", tenant_id)
            result = await session.execute(
                update(StepExecutionRow)
                .where(
                    col(StepExecutionRow.id) == execution_id,
                    col(StepExecutionRow.tenant_id) == tenant_id,
                    col(StepExecutionRow.status).in_([s.value for s in expected]),
                )
                .values(**values)
            )
            await session.commit()
        return result.rowcount == 1

    async def list_due_delays(self, now: datetime) -> list[StepExecution]:
        query = (
            select(StepExecutionRow)
            .where(
                StepExecutionRow.status == StepStatus.WAITING_DELAY.value,
                col(StepExecutionRow.resume_at).is_not(None),
                col(StepExecutionRow.resume_at) <= now,
            )
            .order_by(col(StepExecutionRow.resume_at))
        )
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_step(row) for row in rows]

    # ------------------------------------------------------------------
    async def create_approval(self, approval: WorkflowApproval) -> WorkflowApproval:
        row = WorkflowApprovalRow(
            id=approval.id,
            tenant_id=approval.tenant_id,
            run_id=approval.run_id,
            step_execution_id=approval.step_execution_id,
            requested_from=approval.requested_from,
            instructions=approval.instructions,
            status=approval.status.value,
            comment=approval.comment,
            decided_by=approval.decided_by,
            created_at=approval.created_at,
            decided_at=approval.decided_at,
        )
        async with self._session() as session:
            session.add(row)
            await session.commit()
        return approval.model_copy(deep=True)

    async def get_approval(
        self, approval_id: str, tenant_id: str
    ) -> WorkflowApproval | None:
        async with self._session() as session:
            row = await session.get(WorkflowApprovalRow, approval_id)
        if row is None:
            return None
        _check_tenant(row, "Approval", tenant_id)
        return _to_approval(row)

    async def get_approval_for_step(
        self, step_execution_id: str, tenant_id: str
    ) -> WorkflowApproval | None:
        query = select(WorkflowApprovalRow).where(
            WorkflowApprovalRow.step_execution_id == step_execution_id
        )
        async with self._session() as session:
            row = (await session.execute(query)).scalars().first()
        if row is None:
            return None
        _check_tenant(row, "Approval", tenant_id)
        return _to_approval(row)

    async def list_approvals(
        self,
        tenant_id: str,
        requested_from: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
    ) -> list[WorkflowApproval]:
        query = select(WorkflowApprovalRow).where(
            WorkflowApprovalRow.tenant_id == tenant_id
        )
        if requested_from is not None:
            query = query.where(WorkflowApprovalRow.requested_from == requested_from)
        if status is not None:
            query = query.where(WorkflowApprovalRow.status == status.value)
        query = query.order_by(col(WorkflowApprovalRow.created_at))
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [_to_approval(row) for row in rows]

    async def decide_approval(
        self,
        approval_id: str,
        tenant_id: str,
        status: ApprovalStatus,
        comment: Optional[str],
        decided_by: str,
    ) -> bool:
        async with self._session() as session:
            row = await session.get(WorkflowApprovalRow, approval_id)
            if row is None:
                return False
            _check_tenant(row, "Approval", tenant_id)
            result = await session.execute(
                update(WorkflowApprovalRow)
                .where(
                    col(WorkflowApprovalRow.id) == approval_id,
                    col(WorkflowApprovalRow.status) == ApprovalStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    comment=comment,
                    decided_by=decided_by,
                    decided_at=utcnow(),
                )
            )
            await session.commit()
        return result.rowcount == 1

    async def close(self) -> None:
        await self._db.dispose()
        self._initialized = False
