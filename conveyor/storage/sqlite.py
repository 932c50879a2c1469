"""SQLite storage driver (default persistence).

This module provides a simple SQLite implementation behind the storage
interfaces. SQLite is used only as a local, file-backed state store.

Tables:
- jobs: one row per job, mutable only through lifecycle transitions
- job_events: append-only audit log
- approvals: append-only, one decision per (job_id, stage)
- job_sequence: monotonically increasing submission order
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from conveyor.errors import ConflictError, NotFoundError, PolicyViolationError
from conveyor.models import Job
from conveyor.storage.interfaces import ApprovalStore, JobStore
from conveyor.utils import format_rfc3339, json_dumps, utcnow

_SCHEMA_VERSION = 1


class SQLiteDatabase:
    def __init__(self, path: Path):
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL);")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (_SCHEMA_VERSION,))
                version = _SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != _SCHEMA_VERSION:
                raise PolicyViolationError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                  job_id TEXT PRIMARY KEY,
                  state TEXT NOT NULL,
                  priority INTEGER NOT NULL,
                  submitted_seq INTEGER NOT NULL,
                  submitted_at TEXT NOT NULL,
                  status_updated_at TEXT NOT NULL,
                  agent_id TEXT,
                  failure_reason TEXT,
                  doc_json TEXT NOT NULL
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state_seq ON jobs(state, submitted_seq);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_events (
                  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  job_id TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  details_json TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id, event_id);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS approvals (
                  job_id TEXT NOT NULL,
                  stage TEXT NOT NULL,
                  approved INTEGER NOT NULL,
                  approver TEXT NOT NULL,
                  decided_at TEXT NOT NULL,
                  doc_json TEXT NOT NULL,
                  PRIMARY KEY (job_id, stage)
                );
                """
            )

            conn.execute("CREATE TABLE IF NOT EXISTS job_sequence (seq INTEGER PRIMARY KEY AUTOINCREMENT, ts TEXT NOT NULL);")


def _job_columns(job: Job) -> tuple[Any, ...]:
    return (
        job.state,
        job.priority,
        job.submitted_seq,
        job.submitted_at,
        job.status_updated_at,
        job.agent_id,
        job.failure_reason,
        json_dumps(job.to_dict()),
        job.job_id,
    )


class SQLiteJobStore(JobStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def create(self, job: Job) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO jobs(
                      state, priority, submitted_seq, submitted_at, status_updated_at,
                      agent_id, failure_reason, doc_json, job_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    _job_columns(job),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Job already exists: {job.job_id}") from e

    def get(self, job_id: str) -> Job:
        with self._db.connect() as conn:
            row = conn.execute("SELECT doc_json FROM jobs WHERE job_id = ?;", (job_id,)).fetchone()
            if row is None:
                raise NotFoundError("Job", job_id)
            return Job.from_dict(json.loads(row["doc_json"]))

    def update(self, job: Job) -> None:
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE jobs SET
                  state = ?,
                  priority = ?,
                  submitted_seq = ?,
                  submitted_at = ?,
                  status_updated_at = ?,
                  agent_id = ?,
                  failure_reason = ?,
                  doc_json = ?
                WHERE job_id = ?;
                """,
                _job_columns(job),
            )
            if cur.rowcount != 1:
                raise NotFoundError("Job", job.job_id)

    def list_by_state(self, states: Iterable[str]) -> list[Job]:
        states = list(states)
        if not states:
            return []
        placeholders = ",".join("?" for _ in states)
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT doc_json FROM jobs WHERE state IN ({placeholders}) ORDER BY submitted_seq ASC;",
                states,
            ).fetchall()
            return [Job.from_dict(json.loads(r["doc_json"])) for r in rows]

    def next_sequence(self) -> int:
        with self._db.connect() as conn:
            cur = conn.execute("INSERT INTO job_sequence(ts) VALUES (?);", (format_rfc3339(utcnow()),))
            return int(cur.lastrowid)

    def record_event(self, *, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "INSERT INTO job_events(ts, job_id, event_type, details_json) VALUES (?, ?, ?, ?);",
                (format_rfc3339(utcnow()), job_id, event_type, json_dumps(details or {})),
            )

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT ts, event_type, details_json FROM job_events WHERE job_id = ? ORDER BY event_id ASC;",
                (job_id,),
            ).fetchall()
            return [
                {"ts": r["ts"], "event_type": r["event_type"], "details": json.loads(r["details_json"] or "{}")}
                for r in rows
            ]


class SQLiteApprovalStore(ApprovalStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    def append(self, decision: dict[str, Any]) -> None:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO approvals(job_id, stage, approved, approver, decided_at, doc_json)
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    (
                        decision["job_id"],
                        decision["stage"],
                        1 if decision["approved"] else 0,
                        decision["approver"],
                        decision["decided_at"],
                        json_dumps(decision),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Approval already decided: {decision['job_id']}/{decision['stage']}") from e

    def find(self, job_id: str, stage: str) -> dict[str, Any] | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT doc_json FROM approvals WHERE job_id = ? AND stage = ?;",
                (job_id, stage),
            ).fetchone()
            return json.loads(row["doc_json"]) if row is not None else None


class SQLiteStores:
    """Convenience container for the stores backed by one SQLite file."""

    def __init__(self, sqlite_path: Path):
        db = SQLiteDatabase(sqlite_path)
        self.jobs: JobStore = SQLiteJobStore(db)
        self.approvals: ApprovalStore = SQLiteApprovalStore(db)
