"""SQLite-backed storage provider.

Rows keep the queried columns (state, host, timestamps, revision) next to a JSON
payload holding the full pydantic record. Updates are compare-and-set on
``state``/``revision`` inside a single transaction.

sqlite3 is blocking, so every operation runs in a worker thread via
``asyncio.to_thread`` and opens its own connection there.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

from core.exceptions import StorageError
from core.models import (
    ApprovalStatus,
    AuditEntry,
    Host,
    IncidentRun,
    IncidentState,
    IncidentTimelineEvent,
    RemediationRun,
    RunMode,
    RunState,
)
from integrations.base import StorageProvider

if TYPE_CHECKING:
    from app.config import Settings

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS hosts (
        id TEXT PRIMARY KEY,
        enabled INTEGER NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS remediation_runs (
        id TEXT PRIMARY KEY,
        host_id TEXT NOT NULL,
        action_id TEXT NOT NULL,
        mode TEXT NOT NULL,
        state TEXT NOT NULL,
        dlq INTEGER NOT NULL,
        auto_queued INTEGER NOT NULL,
        requested_at TEXT NOT NULL,
        next_attempt_at TEXT,
        awaiting_approval INTEGER NOT NULL DEFAULT 0,
        revision INTEGER NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_state ON remediation_runs(state, requested_at)",
    "CREATE INDEX IF NOT EXISTS idx_runs_host_action ON remediation_runs(host_id, action_id)",
    """
    CREATE TABLE IF NOT EXISTS incidents (
        id TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        created_at TEXT NOT NULL,
        revision INTEGER NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS incident_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        incident_id TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_incident ON incident_events(incident_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
)

_RUN_COLUMNS = (
    "host_id, action_id, mode, state, dlq, auto_queued, "
    "requested_at, next_attempt_at, awaiting_approval, revision, payload"
)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class SQLiteStore(StorageProvider):
    """File-backed store. One short-lived connection per operation."""

    def __init__(self, settings: Settings) -> None:
        self.db_path = Path(settings.storage_sqlite_path)
        self._init_database()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose ``with conn:`` block is one transaction."""
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite error on {self.db_path}: {exc}") from exc
        finally:
            conn.close()

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            with conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        logger.debug("SQLite store ready at %s", self.db_path)

    def _fetchone(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> sqlite3.Row | None:
        with self._get_connection() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> list[sqlite3.Row]:
        with self._get_connection() as conn:
            return conn.execute(sql, params).fetchall()

    def _write(self, sql: str, params: tuple[Any, ...] | list[Any] = ()) -> int:
        """Run one statement in its own transaction and return the affected row count."""
        with self._get_connection() as conn:
            with conn:
                return conn.execute(sql, params).rowcount

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    async def get_host(self, host_id: str) -> Host | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT payload FROM hosts WHERE id = ?", (host_id,)
        )
        return Host.model_validate_json(row["payload"]) if row else None

    async def list_hosts(self, enabled_only: bool = False) -> list[Host]:
        sql = "SELECT payload FROM hosts"
        if enabled_only:
            sql += " WHERE enabled = 1"
        rows = await asyncio.to_thread(self._fetchall, sql + " ORDER BY id")
        return [Host.model_validate_json(r["payload"]) for r in rows]

    async def save_host(self, host: Host) -> Host:
        await asyncio.to_thread(
            self._write,
            "INSERT OR REPLACE INTO hosts (id, enabled, payload) VALUES (?, ?, ?)",
            (host.id, int(host.enabled), host.model_dump_json()),
        )
        return host

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    @staticmethod
    def _run_row(run: RemediationRun) -> tuple[Any, ...]:
        awaiting = run.approval.required and run.approval.status != ApprovalStatus.APPROVED
        return (
            run.host_id,
            run.action_id,
            run.mode.value,
            run.state.value,
            int(run.dlq),
            int(run.auto_queued),
            _ts(run.requested_at),
            _ts(run.next_attempt_at) if run.next_attempt_at else None,
            int(awaiting),
            run.revision,
            run.model_dump_json(),
        )

    async def create_run(self, run: RemediationRun) -> RemediationRun:
        await asyncio.to_thread(
            self._write,
            f"INSERT INTO remediation_runs ({_RUN_COLUMNS}, id) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            self._run_row(run) + (run.id,),
        )
        return run

    async def get_run(self, run_id: str) -> RemediationRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT payload FROM remediation_runs WHERE id = ?", (run_id,)
        )
        return RemediationRun.model_validate_json(row["payload"]) if row else None

    async def update_run(
        self, run: RemediationRun, expected_state: RunState
    ) -> RemediationRun | None:
        updated = run.model_copy(update={"revision": run.revision + 1})
        rowcount = await asyncio.to_thread(
            self._write,
            """
            UPDATE remediation_runs SET
                host_id = ?, action_id = ?, mode = ?, state = ?, dlq = ?,
                auto_queued = ?, requested_at = ?, next_attempt_at = ?,
                awaiting_approval = ?, revision = ?, payload = ?
            WHERE id = ? AND state = ? AND revision = ?
            """,
            self._run_row(updated) + (run.id, expected_state.value, run.revision),
        )
        if rowcount != 1:
            return None
        return updated

    @staticmethod
    def _run_filters(
        host_id: str | None,
        action_id: str | None,
        mode: RunMode | None,
        states: list[RunState] | None,
        dlq: bool | None,
        requested_since: datetime | None,
        auto_queued: bool | None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if host_id is not None:
            clauses.append("host_id = ?")
            params.append(host_id)
        if action_id is not None:
            clauses.append("action_id = ?")
            params.append(action_id)
        if mode is not None:
            clauses.append("mode = ?")
            params.append(mode.value)
        if states is not None:
            if not states:
                clauses.append("0")
            else:
                clauses.append(f"state IN ({', '.join('?' for _ in states)})")
                params.extend(s.value for s in states)
        if dlq is not None:
            clauses.append("dlq = ?")
            params.append(int(dlq))
        if requested_since is not None:
            clauses.append("requested_at >= ?")
            params.append(_ts(requested_since))
        if auto_queued is not None:
            clauses.append("auto_queued = ?")
            params.append(int(auto_queued))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_runs(
        self,
        host_id: str | None = None,
        action_id: str | None = None,
        mode: RunMode | None = None,
        states: list[RunState] | None = None,
        dlq: bool | None = None,
        requested_since: datetime | None = None,
        auto_queued: bool | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[RemediationRun]:
        where, params = self._run_filters(
            host_id, action_id, mode, states, dlq, requested_since, auto_queued
        )
        order = "DESC" if newest_first else "ASC"
        sql = f"SELECT payload FROM remediation_runs{where} ORDER BY requested_at {order}, id {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, sql, params)
        return [RemediationRun.model_validate_json(r["payload"]) for r in rows]

    async def list_ready_runs(self, now: datetime, limit: int) -> list[RemediationRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT payload FROM remediation_runs
            WHERE mode = ? AND state = ? AND dlq = 0 AND awaiting_approval = 0
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            ORDER BY requested_at ASC, id ASC
            LIMIT ?
            """,
            (RunMode.EXECUTE.value, RunState.QUEUED.value, _ts(now), limit),
        )
        return [RemediationRun.model_validate_json(r["payload"]) for r in rows]

    async def count_runs(
        self,
        host_id: str | None = None,
        action_id: str | None = None,
        mode: RunMode | None = None,
        states: list[RunState] | None = None,
        requested_since: datetime | None = None,
        auto_queued: bool | None = None,
    ) -> int:
        where, params = self._run_filters(
            host_id, action_id, mode, states, None, requested_since, auto_queued
        )
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT COUNT(*) AS n FROM remediation_runs{where}", params
        )
        return int(row["n"])

    # ------------------------------------------------------------------
    # Incidents
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, event: IncidentTimelineEvent) -> None:
        conn.execute(
            "INSERT INTO incident_events (id, incident_id, payload) VALUES (?, ?, ?)",
            (event.id, event.incident_id, event.model_dump_json()),
        )

    def _create_incident(self, incident: IncidentRun, events: list[IncidentTimelineEvent]) -> None:
        with self._get_connection() as conn:
            with conn:
                conn.execute(
                    "INSERT INTO incidents (id, state, created_at, revision, payload) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        incident.id,
                        incident.state.value,
                        _ts(incident.created_at),
                        incident.revision,
                        incident.model_dump_json(),
                    ),
                )
                for event in events:
                    self._insert_event(conn, event)

    async def create_incident(
        self, incident: IncidentRun, events: list[IncidentTimelineEvent]
    ) -> IncidentRun:
        await asyncio.to_thread(self._create_incident, incident, events)
        return incident

    async def get_incident(self, incident_id: str) -> IncidentRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT payload FROM incidents WHERE id = ?", (incident_id,)
        )
        return IncidentRun.model_validate_json(row["payload"]) if row else None

    async def list_incidents(
        self,
        states: list[IncidentState] | None = None,
        limit: int | None = None,
    ) -> list[IncidentRun]:
        sql = "SELECT payload FROM incidents"
        params: list[Any] = []
        if states is not None:
            if not states:
                return []
            sql += f" WHERE state IN ({', '.join('?' for _ in states)})"
            params.extend(s.value for s in states)
        sql += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, sql, params)
        return [IncidentRun.model_validate_json(r["payload"]) for r in rows]

    def _transition_incident(
        self, updated: IncidentRun, expected_revision: int, event: IncidentTimelineEvent
    ) -> bool:
        with self._get_connection() as conn:
            with conn:
                cursor = conn.execute(
                    "UPDATE incidents SET state = ?, revision = ?, payload = ? "
                    "WHERE id = ? AND revision = ?",
                    (
                        updated.state.value,
                        updated.revision,
                        updated.model_dump_json(),
                        updated.id,
                        expected_revision,
                    ),
                )
                if cursor.rowcount != 1:
                    return False
                self._insert_event(conn, event)
        return True

    async def transition_incident(
        self,
        incident: IncidentRun,
        expected_revision: int,
        event: IncidentTimelineEvent,
    ) -> IncidentRun | None:
        updated = incident.model_copy(update={"revision": expected_revision + 1})
        written = await asyncio.to_thread(
            self._transition_incident, updated, expected_revision, event
        )
        return updated if written else None

    async def append_incident_event(self, event: IncidentTimelineEvent) -> None:
        await asyncio.to_thread(
            self._write,
            "INSERT INTO incident_events (id, incident_id, payload) VALUES (?, ?, ?)",
            (event.id, event.incident_id, event.model_dump_json()),
        )

    async def list_incident_events(
        self, incident_id: str, limit: int | None = None
    ) -> list[IncidentTimelineEvent]:
        sql = "SELECT payload FROM incident_events WHERE incident_id = ? ORDER BY seq DESC"
        params: list[Any] = [incident_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, sql, params)
        return [IncidentTimelineEvent.model_validate_json(r["payload"]) for r in reversed(rows)]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> None:
        await asyncio.to_thread(
            self._write,
            "INSERT INTO audit_log (action, payload) VALUES (?, ?)",
            (entry.action, entry.model_dump_json()),
        )

    async def list_audit(self, action: str | None = None, limit: int = 100) -> list[AuditEntry]:
        sql = "SELECT payload FROM audit_log"
        params: list[Any] = []
        if action is not None:
            sql += " WHERE action = ?"
            params.append(action)
        sql += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, sql, params)
        return [AuditEntry.model_validate_json(r["payload"]) for r in rows]
