"""PostgreSQL implementation of the engine repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from ..enums import InterruptResolution, RiskLevel, TrackingStatus
from .models import (
    AuditEvent,
    InterruptCase,
    Notification,
    SlaTracking,
    StepExecutionRecord,
    WorkflowInstance,
)
from .repository import EngineRepository

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workflows (
        workflow_id TEXT PRIMARY KEY,
        workflow_kind TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        metadata JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_ledger (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        step_type TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        ended_at TIMESTAMPTZ,
        output JSONB,
        error TEXT,
        source_event_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        executor_kind TEXT NOT NULL,
        executor_id TEXT,
        recorded_at TIMESTAMPTZ NOT NULL,
        UNIQUE (workflow_id, step_type, source_event_id),
        UNIQUE (workflow_id, step_type, attempt_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sla_tracking (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        step_type TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        due_at TIMESTAMPTZ NOT NULL,
        sla_hours DOUBLE PRECISION NOT NULL,
        risk_level TEXT NOT NULL,
        breached_minutes INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        cycle INTEGER NOT NULL DEFAULT 1,
        last_evaluated_at TIMESTAMPTZ,
        retired_at TIMESTAMPTZ,
        UNIQUE (workflow_id, step_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interrupt_cases (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        step_type TEXT NOT NULL,
        reason TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        assigned_to TEXT,
        escalated_to TEXT,
        opened_at TIMESTAMPTZ NOT NULL,
        escalated_at TIMESTAMPTZ,
        resolved_at TIMESTAMPTZ,
        resolution TEXT,
        resolved_by TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_open_interrupt_case
    ON interrupt_cases (workflow_id, step_type) WHERE resolved_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        recipient_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        priority TEXT NOT NULL,
        dedup_key TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        workflow_id TEXT,
        payload JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        read_at TIMESTAMPTZ,
        UNIQUE (recipient_id, dedup_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL,
        actor_kind TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_kind TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        workflow_id TEXT,
        payload JSONB,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
]

# retries when two different events race for the same attempt number
_ATTEMPT_RACE_RETRIES = 5


def _json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _unjson(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1" / "INSERT 0 1"
    return int(status.rsplit(" ", 1)[-1])


class PostgresEngineRepository(EngineRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None

    async def _connect(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn)
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in SCHEMA:
            await conn.execute(statement)

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._connect()
        async with pool.acquire() as conn:
            yield conn

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _workflow(row: asyncpg.Record) -> WorkflowInstance:
        return WorkflowInstance(
            workflow_id=row["workflow_id"],
            workflow_kind=row["workflow_kind"],
            created_at=row["created_at"],
            metadata=_unjson(row["metadata"]) or {},
        )

    @staticmethod
    def _execution(row: asyncpg.Record) -> StepExecutionRecord:
        data = dict(row)
        data["output"] = _unjson(data["output"])
        return StepExecutionRecord(**data)

    @staticmethod
    def _tracking(row: asyncpg.Record) -> SlaTracking:
        return SlaTracking(**dict(row))

    @staticmethod
    def _case(row: asyncpg.Record) -> InterruptCase:
        return InterruptCase(**dict(row))

    @staticmethod
    def _notification(row: asyncpg.Record) -> Notification:
        data = dict(row)
        data["payload"] = _unjson(data["payload"]) or {}
        return Notification(**data)

    @staticmethod
    def _audit(row: asyncpg.Record) -> AuditEvent:
        data = dict(row)
        data.pop("seq", None)
        data["payload"] = _unjson(data["payload"]) or {}
        return AuditEvent(**data)

    # ------------------------------------------------------------------
    # Workflows
    async def register_workflow(
        self, workflow: WorkflowInstance
    ) -> tuple[WorkflowInstance, bool]:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO workflows (workflow_id, workflow_kind, created_at, metadata)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (workflow_id) DO NOTHING
                """,
                workflow.workflow_id,
                workflow.workflow_kind,
                workflow.created_at,
                _json(workflow.metadata),
            )
            row = await conn.fetchrow(
                "SELECT * FROM workflows WHERE workflow_id = $1", workflow.workflow_id
            )
        return self._workflow(row), _affected(status) == 1

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflows WHERE workflow_id = $1", workflow_id
            )
        return self._workflow(row) if row else None

    async def list_workflows(self) -> list[WorkflowInstance]:
        async with self._acquire() as conn:
            rows = await conn.fetch("SELECT * FROM workflows ORDER BY created_at")
        return [self._workflow(r) for r in rows]

    # ------------------------------------------------------------------
    # Execution ledger
    async def append_execution(
        self, record: StepExecutionRecord
    ) -> tuple[StepExecutionRecord, bool]:
        async with self._acquire() as conn:
            for _ in range(_ATTEMPT_RACE_RETRIES):
                try:
                    status = await conn.execute(
                        """
                        INSERT INTO execution_ledger (
                            id, workflow_id, step_type, attempt_number, status, started_at,
                            ended_at, output, error, source_event_id, event_type,
                            executor_kind, executor_id, recorded_at
                        )
                        SELECT $1, $2, $3, COALESCE(MAX(attempt_number), 0) + 1, $4, $5,
                               $6, $7, $8, $9, $10, $11, $12, $13
                        FROM execution_ledger WHERE workflow_id = $2 AND step_type = $3
                        ON CONFLICT (workflow_id, step_type, source_event_id) DO NOTHING
                        """,
                        record.id,
                        record.workflow_id,
                        record.step_type,
                        record.status.value,
                        record.started_at,
                        record.ended_at,
                        _json(record.output),
                        record.error,
                        record.source_event_id,
                        record.event_type,
                        record.executor_kind.value,
                        record.executor_id,
                        record.recorded_at,
                    )
                except asyncpg.UniqueViolationError:
                    continue
                break
            else:
                raise RuntimeError(
                    f"Could not allocate attempt number for {record.workflow_id}/{record.step_type}"
                )
            row = await conn.fetchrow(
                """
                SELECT * FROM execution_ledger
                WHERE workflow_id = $1 AND step_type = $2 AND source_event_id = $3
                """,
                record.workflow_id,
                record.step_type,
                record.source_event_id,
            )
        return self._execution(row), _affected(status) == 1

    async def list_executions(self, workflow_id: str) -> list[StepExecutionRecord]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM execution_ledger WHERE workflow_id = $1 ORDER BY step_type, attempt_number",
                workflow_id,
            )
        return [self._execution(r) for r in rows]

    # ------------------------------------------------------------------
    # SLA tracking
    async def insert_sla_tracking(
        self, tracking: SlaTracking
    ) -> tuple[SlaTracking, bool]:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO sla_tracking (
                    id, workflow_id, step_type, started_at, due_at, sla_hours,
                    risk_level, breached_minutes, status, cycle, last_evaluated_at, retired_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (workflow_id, step_type) DO NOTHING
                """,
                tracking.id,
                tracking.workflow_id,
                tracking.step_type,
                tracking.started_at,
                tracking.due_at,
                tracking.sla_hours,
                tracking.risk_level.value,
                tracking.breached_minutes,
                tracking.status.value,
                tracking.cycle,
                tracking.last_evaluated_at,
                tracking.retired_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM sla_tracking WHERE workflow_id = $1 AND step_type = $2",
                tracking.workflow_id,
                tracking.step_type,
            )
        return self._tracking(row), _affected(status) == 1

    async def get_sla_tracking(
        self, workflow_id: str, step_type: str
    ) -> SlaTracking | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM sla_tracking WHERE workflow_id = $1 AND step_type = $2",
                workflow_id,
                step_type,
            )
        return self._tracking(row) if row else None

    async def list_sla_tracking(
        self, workflow_id: str | None = None, active_only: bool = True
    ) -> list[SlaTracking]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM sla_tracking
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND (NOT $2 OR status = $3)
                ORDER BY due_at
                """,
                workflow_id,
                active_only,
                TrackingStatus.ACTIVE.value,
            )
        return [self._tracking(r) for r in rows]

    async def compare_and_set_risk(
        self,
        tracking_id: str,
        expected: RiskLevel,
        new: RiskLevel,
        breached_minutes: int,
        evaluated_at: datetime,
    ) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                UPDATE sla_tracking
                SET risk_level = $1, breached_minutes = $2, last_evaluated_at = $3
                WHERE id = $4 AND risk_level = $5 AND status = $6
                """,
                new.value,
                breached_minutes,
                evaluated_at,
                tracking_id,
                expected.value,
                TrackingStatus.ACTIVE.value,
            )
        return _affected(status) == 1

    async def touch_sla_tracking(
        self, tracking_id: str, breached_minutes: int, evaluated_at: datetime
    ) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                """
                UPDATE sla_tracking
                SET breached_minutes = GREATEST(breached_minutes, $1), last_evaluated_at = $2
                WHERE id = $3
                """,
                breached_minutes,
                evaluated_at,
                tracking_id,
            )

    async def retire_sla_tracking(self, tracking_id: str, retired_at: datetime) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                "UPDATE sla_tracking SET status = $1, retired_at = $2 WHERE id = $3 AND status = $4",
                TrackingStatus.RETIRED.value,
                retired_at,
                tracking_id,
                TrackingStatus.ACTIVE.value,
            )
        return _affected(status) == 1

    async def reopen_sla_tracking(
        self,
        tracking_id: str,
        expected_cycle: int,
        started_at: datetime,
        due_at: datetime,
        sla_hours: float,
    ) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                UPDATE sla_tracking
                SET status = $1, cycle = cycle + 1, started_at = $2, due_at = $3,
                    sla_hours = $4, risk_level = $5, breached_minutes = 0,
                    retired_at = NULL, last_evaluated_at = NULL
                WHERE id = $6 AND status = $7 AND cycle = $8
                """,
                TrackingStatus.ACTIVE.value,
                started_at,
                due_at,
                sla_hours,
                RiskLevel.GREEN.value,
                tracking_id,
                TrackingStatus.RETIRED.value,
                expected_cycle,
            )
        return _affected(status) == 1

    # ------------------------------------------------------------------
    # Interrupt cases
    async def open_interrupt_case(
        self, case: InterruptCase
    ) -> tuple[InterruptCase, bool]:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO interrupt_cases (
                    id, workflow_id, step_type, reason, attempt_number, assigned_to,
                    escalated_to, opened_at, escalated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (workflow_id, step_type) WHERE resolved_at IS NULL DO NOTHING
                """,
                case.id,
                case.workflow_id,
                case.step_type,
                case.reason,
                case.attempt_number,
                case.assigned_to,
                case.escalated_to,
                case.opened_at,
                case.escalated_at,
            )
            row = await conn.fetchrow(
                """
                SELECT * FROM interrupt_cases
                WHERE workflow_id = $1 AND step_type = $2 AND resolved_at IS NULL
                """,
                case.workflow_id,
                case.step_type,
            )
        return self._case(row), _affected(status) == 1

    async def get_open_interrupt_case(
        self, workflow_id: str, step_type: str
    ) -> InterruptCase | None:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM interrupt_cases
                WHERE workflow_id = $1 AND step_type = $2 AND resolved_at IS NULL
                """,
                workflow_id,
                step_type,
            )
        return self._case(row) if row else None

    async def list_interrupt_cases(
        self, workflow_id: str | None = None, open_only: bool = True
    ) -> list[InterruptCase]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM interrupt_cases
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND (NOT $2 OR resolved_at IS NULL)
                ORDER BY opened_at
                """,
                workflow_id,
                open_only,
            )
        return [self._case(r) for r in rows]

    async def assign_interrupt_case(self, case_id: str, assignee: str) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                "UPDATE interrupt_cases SET assigned_to = $1 WHERE id = $2 AND resolved_at IS NULL",
                assignee,
                case_id,
            )
        return _affected(status) == 1

    async def escalate_interrupt_case(
        self, case_id: str, escalated_to: str, escalated_at: datetime
    ) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                UPDATE interrupt_cases SET escalated_to = $1, escalated_at = $2
                WHERE id = $3 AND resolved_at IS NULL
                """,
                escalated_to,
                escalated_at,
                case_id,
            )
        return _affected(status) == 1

    async def close_interrupt_case(
        self,
        case_id: str,
        resolution: InterruptResolution,
        resolved_at: datetime,
        resolved_by: str | None = None,
    ) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                UPDATE interrupt_cases SET resolution = $1, resolved_at = $2, resolved_by = $3
                WHERE id = $4 AND resolved_at IS NULL
                """,
                resolution.value,
                resolved_at,
                resolved_by,
                case_id,
            )
        return _affected(status) == 1

    # ------------------------------------------------------------------
    # Notifications
    async def insert_notification(
        self, notification: Notification
    ) -> tuple[Notification, bool]:
        async with self._acquire() as conn:
            status = await conn.execute(
                """
                INSERT INTO notifications (
                    id, recipient_id, kind, priority, dedup_key, title, message,
                    workflow_id, payload, created_at, read_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (recipient_id, dedup_key) DO NOTHING
                """,
                notification.id,
                notification.recipient_id,
                notification.kind.value,
                notification.priority.value,
                notification.dedup_key,
                notification.title,
                notification.message,
                notification.workflow_id,
                _json(notification.payload),
                notification.created_at,
                notification.read_at,
            )
            row = await conn.fetchrow(
                "SELECT * FROM notifications WHERE recipient_id = $1 AND dedup_key = $2",
                notification.recipient_id,
                notification.dedup_key,
            )
        return self._notification(row), _affected(status) == 1

    async def list_notifications(
        self, recipient_id: str | None = None, unread_only: bool = False
    ) -> list[Notification]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM notifications
                WHERE ($1::text IS NULL OR recipient_id = $1)
                  AND (NOT $2 OR read_at IS NULL)
                ORDER BY created_at DESC
                """,
                recipient_id,
                unread_only,
            )
        return [self._notification(r) for r in rows]

    async def mark_notification_read(
        self, notification_id: str, read_at: datetime
    ) -> bool:
        async with self._acquire() as conn:
            status = await conn.execute(
                "UPDATE notifications SET read_at = $1 WHERE id = $2 AND read_at IS NULL",
                read_at,
                notification_id,
            )
        return _affected(status) == 1

    # ------------------------------------------------------------------
    # Audit
    async def append_audit_event(self, event: AuditEvent) -> None:
        async with self._acquire() as conn:
            await conn.execute(
                """
                INSERT INTO audit_events (
                    id, actor_kind, actor_id, action, resource_kind, resource_id,
                    workflow_id, payload, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                event.id,
                event.actor_kind.value,
                event.actor_id,
                event.action,
                event.resource_kind,
                event.resource_id,
                event.workflow_id,
                _json(event.payload),
                event.created_at,
            )

    async def list_audit_events(
        self, workflow_id: str | None = None
    ) -> list[AuditEvent]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM audit_events
                WHERE ($1::text IS NULL OR workflow_id = $1)
                ORDER BY seq
                """,
                workflow_id,
            )
        return [self._audit(r) for r in rows]
