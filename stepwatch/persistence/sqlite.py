"""SQLite implementation of the engine repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..enums import InterruptResolution, RiskLevel, TrackingStatus
from ..utils.timeutil import ensure_aware, parse_timestamp
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
        created_at TEXT NOT NULL,
        metadata TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_ledger (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        step_type TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        ended_at TEXT,
        output TEXT,
        error TEXT,
        source_event_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        executor_kind TEXT NOT NULL,
        executor_id TEXT,
        recorded_at TEXT NOT NULL,
        UNIQUE (workflow_id, step_type, source_event_id),
        UNIQUE (workflow_id, step_type, attempt_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sla_tracking (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        step_type TEXT NOT NULL,
        started_at TEXT NOT NULL,
        due_at TEXT NOT NULL,
        sla_hours REAL NOT NULL,
        risk_level TEXT NOT NULL,
        breached_minutes INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        cycle INTEGER NOT NULL DEFAULT 1,
        last_evaluated_at TEXT,
        retired_at TEXT,
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
        opened_at TEXT NOT NULL,
        escalated_at TEXT,
        resolved_at TEXT,
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
        payload TEXT,
        created_at TEXT NOT NULL,
        read_at TEXT,
        UNIQUE (recipient_id, dedup_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        actor_kind TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        action TEXT NOT NULL,
        resource_kind TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        workflow_id TEXT,
        payload TEXT,
        created_at TEXT NOT NULL
    )
    """,
]


def _ts(value: datetime | None) -> str | None:
    # stored as UTC so lexical ordering matches time ordering
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).isoformat()


def _json(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _unjson(value: str | None) -> Any:
    return json.loads(value) if value else None


class SQLiteEngineRepository(EngineRepository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # one connection is shared by worker threads
        self._guard = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _workflow(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            workflow_id=row["workflow_id"],
            workflow_kind=row["workflow_kind"],
            created_at=parse_timestamp(row["created_at"]),
            metadata=_unjson(row["metadata"]) or {},
        )

    @staticmethod
    def _execution(row: sqlite3.Row) -> StepExecutionRecord:
        return StepExecutionRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_type=row["step_type"],
            attempt_number=row["attempt_number"],
            status=row["status"],
            started_at=parse_timestamp(row["started_at"]),
            ended_at=parse_timestamp(row["ended_at"]),
            output=_unjson(row["output"]),
            error=row["error"],
            source_event_id=row["source_event_id"],
            event_type=row["event_type"],
            executor_kind=row["executor_kind"],
            executor_id=row["executor_id"],
            recorded_at=parse_timestamp(row["recorded_at"]),
        )

    @staticmethod
    def _tracking(row: sqlite3.Row) -> SlaTracking:
        return SlaTracking(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_type=row["step_type"],
            started_at=parse_timestamp(row["started_at"]),
            due_at=parse_timestamp(row["due_at"]),
            sla_hours=row["sla_hours"],
            risk_level=row["risk_level"],
            breached_minutes=row["breached_minutes"],
            status=row["status"],
            cycle=row["cycle"],
            last_evaluated_at=parse_timestamp(row["last_evaluated_at"]),
            retired_at=parse_timestamp(row["retired_at"]),
        )

    @staticmethod
    def _case(row: sqlite3.Row) -> InterruptCase:
        return InterruptCase(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_type=row["step_type"],
            reason=row["reason"],
            attempt_number=row["attempt_number"],
            assigned_to=row["assigned_to"],
            escalated_to=row["escalated_to"],
            opened_at=parse_timestamp(row["opened_at"]),
            escalated_at=parse_timestamp(row["escalated_at"]),
            resolved_at=parse_timestamp(row["resolved_at"]),
            resolution=row["resolution"],
            resolved_by=row["resolved_by"],
        )

    @staticmethod
    def _notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            recipient_id=row["recipient_id"],
            kind=row["kind"],
            priority=row["priority"],
            dedup_key=row["dedup_key"],
            title=row["title"],
            message=row["message"],
            workflow_id=row["workflow_id"],
            payload=_unjson(row["payload"]) or {},
            created_at=parse_timestamp(row["created_at"]),
            read_at=parse_timestamp(row["read_at"]),
        )

    @staticmethod
    def _audit(row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            actor_kind=row["actor_kind"],
            actor_id=row["actor_id"],
            action=row["action"],
            resource_kind=row["resource_kind"],
            resource_id=row["resource_id"],
            workflow_id=row["workflow_id"],
            payload=_unjson(row["payload"]) or {},
            created_at=parse_timestamp(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def register_workflow(
        self, workflow: WorkflowInstance
    ) -> tuple[WorkflowInstance, bool]:
        inserted = await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO workflows (workflow_id, workflow_kind, created_at, metadata) VALUES (?, ?, ?, ?)",
            workflow.workflow_id,
            workflow.workflow_kind,
            _ts(workflow.created_at),
            _json(workflow.metadata),
        )
        stored = await self.get_workflow(workflow.workflow_id)
        return stored, inserted == 1

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflows WHERE workflow_id = ?",
            workflow_id,
        )
        return self._workflow(row) if row else None

    async def list_workflows(self) -> list[WorkflowInstance]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflows ORDER BY created_at"
        )
        return [self._workflow(r) for r in rows]

    # ------------------------------------------------------------------
    # Execution ledger
    async def append_execution(
        self, record: StepExecutionRecord
    ) -> tuple[StepExecutionRecord, bool]:
        # attempt number is computed inside the INSERT so no separate read
        # can race with a concurrent append
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO execution_ledger (
                id, workflow_id, step_type, attempt_number, status, started_at,
                ended_at, output, error, source_event_id, event_type,
                executor_kind, executor_id, recorded_at
            )
            SELECT ?, ?, ?, COALESCE(MAX(attempt_number), 0) + 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            FROM execution_ledger WHERE workflow_id = ? AND step_type = ?
            """,
            record.id,
            record.workflow_id,
            record.step_type,
            record.status.value,
            _ts(record.started_at),
            _ts(record.ended_at),
            _json(record.output),
            record.error,
            record.source_event_id,
            record.event_type,
            record.executor_kind.value,
            record.executor_id,
            _ts(record.recorded_at),
            record.workflow_id,
            record.step_type,
        )
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM execution_ledger WHERE workflow_id = ? AND step_type = ? AND source_event_id = ?",
            record.workflow_id,
            record.step_type,
            record.source_event_id,
        )
        return self._execution(row), inserted == 1

    async def list_executions(self, workflow_id: str) -> list[StepExecutionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM execution_ledger WHERE workflow_id = ? ORDER BY step_type, attempt_number",
            workflow_id,
        )
        return [self._execution(r) for r in rows]

    # ------------------------------------------------------------------
    # SLA tracking
    async def insert_sla_tracking(
        self, tracking: SlaTracking
    ) -> tuple[SlaTracking, bool]:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO sla_tracking (
                id, workflow_id, step_type, started_at, due_at, sla_hours,
                risk_level, breached_minutes, status, cycle, last_evaluated_at, retired_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            tracking.id,
            tracking.workflow_id,
            tracking.step_type,
            _ts(tracking.started_at),
            _ts(tracking.due_at),
            tracking.sla_hours,
            tracking.risk_level.value,
            tracking.breached_minutes,
            tracking.status.value,
            tracking.cycle,
            _ts(tracking.last_evaluated_at),
            _ts(tracking.retired_at),
        )
        stored = await self.get_sla_tracking(tracking.workflow_id, tracking.step_type)
        return stored, inserted == 1

    async def get_sla_tracking(
        self, workflow_id: str, step_type: str
    ) -> SlaTracking | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM sla_tracking WHERE workflow_id = ? AND step_type = ?",
            workflow_id,
            step_type,
        )
        return self._tracking(row) if row else None

    async def list_sla_tracking(
        self, workflow_id: str | None = None, active_only: bool = True
    ) -> list[SlaTracking]:
        query = "SELECT * FROM sla_tracking WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if active_only:
            query += " AND status = ?"
            params.append(TrackingStatus.ACTIVE.value)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY due_at", *params)
        return [self._tracking(r) for r in rows]

    async def compare_and_set_risk(
        self,
        tracking_id: str,
        expected: RiskLevel,
        new: RiskLevel,
        breached_minutes: int,
        evaluated_at: datetime,
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE sla_tracking
            SET risk_level = ?, breached_minutes = ?, last_evaluated_at = ?
            WHERE id = ? AND risk_level = ? AND status = ?
            """,
            new.value,
            breached_minutes,
            _ts(evaluated_at),
            tracking_id,
            expected.value,
            TrackingStatus.ACTIVE.value,
        )
        return updated == 1

    async def touch_sla_tracking(
        self, tracking_id: str, breached_minutes: int, evaluated_at: datetime
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE sla_tracking
            SET breached_minutes = MAX(breached_minutes, ?), last_evaluated_at = ?
            WHERE id = ?
            """,
            breached_minutes,
            _ts(evaluated_at),
            tracking_id,
        )

    async def retire_sla_tracking(self, tracking_id: str, retired_at: datetime) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE sla_tracking SET status = ?, retired_at = ? WHERE id = ? AND status = ?",
            TrackingStatus.RETIRED.value,
            _ts(retired_at),
            tracking_id,
            TrackingStatus.ACTIVE.value,
        )
        return updated == 1

    async def reopen_sla_tracking(
        self,
        tracking_id: str,
        expected_cycle: int,
        started_at: datetime,
        due_at: datetime,
        sla_hours: float,
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE sla_tracking
            SET status = ?, cycle = cycle + 1, started_at = ?, due_at = ?, sla_hours = ?,
                risk_level = ?, breached_minutes = 0, retired_at = NULL, last_evaluated_at = NULL
            WHERE id = ? AND status = ? AND cycle = ?
            """,
            TrackingStatus.ACTIVE.value,
            _ts(started_at),
            _ts(due_at),
            sla_hours,
            RiskLevel.GREEN.value,
            tracking_id,
            TrackingStatus.RETIRED.value,
            expected_cycle,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Interrupt cases
    async def open_interrupt_case(
        self, case: InterruptCase
    ) -> tuple[InterruptCase, bool]:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO interrupt_cases (
                id, workflow_id, step_type, reason, attempt_number, assigned_to,
                escalated_to, opened_at, escalated_at, resolved_at, resolution, resolved_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL)
            """,
            case.id,
            case.workflow_id,
            case.step_type,
            case.reason,
            case.attempt_number,
            case.assigned_to,
            case.escalated_to,
            _ts(case.opened_at),
            _ts(case.escalated_at),
        )
        stored = await self.get_open_interrupt_case(case.workflow_id, case.step_type)
        return stored, inserted == 1

    async def get_open_interrupt_case(
        self, workflow_id: str, step_type: str
    ) -> InterruptCase | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM interrupt_cases WHERE workflow_id = ? AND step_type = ? AND resolved_at IS NULL",
            workflow_id,
            step_type,
        )
        return self._case(row) if row else None

    async def list_interrupt_cases(
        self, workflow_id: str | None = None, open_only: bool = True
    ) -> list[InterruptCase]:
        query = "SELECT * FROM interrupt_cases WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if open_only:
            query += " AND resolved_at IS NULL"
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY opened_at", *params)
        return [self._case(r) for r in rows]

    async def assign_interrupt_case(self, case_id: str, assignee: str) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE interrupt_cases SET assigned_to = ? WHERE id = ? AND resolved_at IS NULL",
            assignee,
            case_id,
        )
        return updated == 1

    async def escalate_interrupt_case(
        self, case_id: str, escalated_to: str, escalated_at: datetime
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE interrupt_cases SET escalated_to = ?, escalated_at = ? WHERE id = ? AND resolved_at IS NULL",
            escalated_to,
            _ts(escalated_at),
            case_id,
        )
        return updated == 1

    async def close_interrupt_case(
        self,
        case_id: str,
        resolution: InterruptResolution,
        resolved_at: datetime,
        resolved_by: str | None = None,
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE interrupt_cases SET resolution = ?, resolved_at = ?, resolved_by = ?
            WHERE id = ? AND resolved_at IS NULL
            """,
            resolution.value,
            _ts(resolved_at),
            resolved_by,
            case_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Notifications
    async def insert_notification(
        self, notification: Notification
    ) -> tuple[Notification, bool]:
        inserted = await asyncio.to_thread(
            self._execute,
            """
            INSERT OR IGNORE INTO notifications (
                id, recipient_id, kind, priority, dedup_key, title, message,
                workflow_id, payload, created_at, read_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
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
            _ts(notification.created_at),
            _ts(notification.read_at),
        )
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM notifications WHERE recipient_id = ? AND dedup_key = ?",
            notification.recipient_id,
            notification.dedup_key,
        )
        return self._notification(row), inserted == 1

    async def list_notifications(
        self, recipient_id: str | None = None, unread_only: bool = False
    ) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE 1 = 1"
        params: list[Any] = []
        if recipient_id is not None:
            query += " AND recipient_id = ?"
            params.append(recipient_id)
        if unread_only:
            query += " AND read_at IS NULL"
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY created_at DESC", *params
        )
        return [self._notification(r) for r in rows]

    async def mark_notification_read(
        self, notification_id: str, read_at: datetime
    ) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE notifications SET read_at = ? WHERE id = ? AND read_at IS NULL",
            _ts(read_at),
            notification_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Audit
    async def append_audit_event(self, event: AuditEvent) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO audit_events (
                id, actor_kind, actor_id, action, resource_kind, resource_id,
                workflow_id, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            event.id,
            event.actor_kind.value,
            event.actor_id,
            event.action,
            event.resource_kind,
            event.resource_id,
            event.workflow_id,
            _json(event.payload),
            _ts(event.created_at),
        )

    async def list_audit_events(
        self, workflow_id: str | None = None
    ) -> list[AuditEvent]:
        if workflow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM audit_events ORDER BY seq"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM audit_events WHERE workflow_id = ? ORDER BY seq",
                workflow_id,
            )
        return [self._audit(r) for r in rows]
