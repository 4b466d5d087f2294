"""
Verity — Instance State Store

SQLite-backed persistence for workflow instances, their runs
(continue-as-new chain), delivered signals and query snapshots.

The (subject_id, kind) uniqueness of in-flight instances is enforced
twice: find_active() before start, and a partial unique index so a
racing second insert fails at the database.

Phase 1: single-file SQLite (":memory:" in tests).
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from coordinator.types import ACTIVE_STATUSES, InstanceRecord, InstanceStatus

_ACTIVE_SQL = ", ".join(f"'{s.value}'" for s in sorted(ACTIVE_STATUSES, key=lambda s: s.value))


class DuplicateInstance(Exception):
    """An in-flight instance already exists for this subject and kind."""
    pass


class _Transaction:
    """
    SQLite transaction context manager.

    While active, individual save_*/commit() calls become no-ops.
    The real COMMIT happens when the context manager exits cleanly.
    """
    def __init__(self, conn, store):
        self.conn = conn
        self.store = store

    def __enter__(self):
        self.store._lock.acquire()
        self.conn.execute("BEGIN IMMEDIATE")
        self.store._in_transaction = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.store._in_transaction = False
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.store._lock.release()
        return False


class InstanceStore:
    """SQLite-backed store for runtime state."""

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.RLock()
        self._in_transaction = False
        self._create_tables()

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self._in_transaction:
            self.conn.commit()

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.save_instance(rec)
                store.save_snapshot(rec.instance_id, rec.run_id, snap)
        """
        return _Transaction(self.conn, self)

    def _create_tables(self):
        self.conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                run_id TEXT NOT NULL DEFAULT '',
                chain_length INTEGER NOT NULL DEFAULT 1,
                current_step TEXT DEFAULT '',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                completed_at REAL,
                result TEXT,
                error TEXT
            );

            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                input TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at REAL NOT NULL,
                ended_at REAL
            );

            CREATE TABLE IF NOT EXISTS signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT NOT NULL,
                run_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                name TEXT NOT NULL,
                payload TEXT NOT NULL,
                delivered_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS snapshots (
                instance_id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                snapshot TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_instances_active_subject
                ON instances(subject_id, kind)
                WHERE status IN ({_ACTIVE_SQL});
            CREATE INDEX IF NOT EXISTS idx_instances_status ON instances(status);
            CREATE INDEX IF NOT EXISTS idx_runs_instance ON runs(instance_id);
            CREATE INDEX IF NOT EXISTS idx_signals_instance ON signals(instance_id, sequence);
        """)
        self._commit()

    # ─── Instance CRUD ───────────────────────────────────────────────

    def save_instance(self, rec: InstanceRecord):
        rec.updated_at = time.time()
        try:
            with self._lock:
                self.conn.execute("""
                    INSERT OR REPLACE INTO instances
                    (instance_id, subject_id, kind, status, run_id, chain_length,
                     current_step, created_at, updated_at, completed_at, result, error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    rec.instance_id, rec.subject_id, rec.kind, rec.status.value,
                    rec.run_id, rec.chain_length, rec.current_step,
                    rec.created_at, rec.updated_at, rec.completed_at,
                    json.dumps(rec.result, default=str) if rec.result is not None else None,
                    json.dumps(rec.error, default=str) if rec.error is not None else None,
                ))
                self._commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateInstance(
                f"An in-flight {rec.kind} instance already exists for {rec.subject_id}"
            ) from e

    def get_instance(self, instance_id: str) -> InstanceRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM instances WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_instance(row)

    def find_active(self, subject_id: str, kind: str) -> InstanceRecord | None:
        with self._lock:
            row = self.conn.execute(
                f"SELECT * FROM instances WHERE subject_id = ? AND kind = ? "
                f"AND status IN ({_ACTIVE_SQL}) LIMIT 1",
                (subject_id, kind),
            ).fetchone()
        return self._row_to_instance(row) if row else None

    def fail_orphaned(self, error: dict[str, Any]) -> list[str]:
        """
        Mark every active instance (and its open run) FAILED.

        Called when a runtime starts: no task survives a restart, so an
        active row left behind would block its subject forever.
        """
        now = time.time()
        with self.transaction():
            with self._lock:
                rows = self.conn.execute(
                    f"SELECT instance_id, run_id FROM instances WHERE status IN ({_ACTIVE_SQL})"
                ).fetchall()
                for instance_id, run_id in rows:
                    self.conn.execute(
                        "UPDATE instances SET status = ?, error = ?, completed_at = ?, updated_at = ? "
                        "WHERE instance_id = ?",
                        (InstanceStatus.FAILED.value, json.dumps(error, default=str), now, now, instance_id),
                    )
                    self.conn.execute(
                        "UPDATE runs SET status = ?, ended_at = ? WHERE run_id = ?",
                        (InstanceStatus.FAILED.value, now, run_id),
                    )
        return [instance_id for instance_id, _ in rows]

    def list_instances(
        self,
        status: InstanceStatus | None = None,
        subject_id: str | None = None,
        limit: int = 500,
    ) -> list[InstanceRecord]:
        query = "SELECT * FROM instances WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if subject_id:
            query += " AND subject_id = ?"
            params.append(subject_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def _row_to_instance(self, row) -> InstanceRecord:
        return InstanceRecord(
            instance_id=row["instance_id"],
            subject_id=row["subject_id"],
            kind=row["kind"],
            status=InstanceStatus(row["status"]),
            run_id=row["run_id"],
            chain_length=row["chain_length"],
            current_step=row["current_step"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=json.loads(row["error"]) if row["error"] else None,
        )

    # ─── Runs ────────────────────────────────────────────────────────

    def start_run(self, instance_id: str, run_id: str, input: dict[str, Any]):
        with self._lock:
            self.conn.execute("""
                INSERT INTO runs (run_id, instance_id, input, status, started_at)
                VALUES (?, ?, ?, ?, ?)
            """, (run_id, instance_id, json.dumps(input, default=str),
                  InstanceStatus.IN_PROGRESS.value, time.time()))
            self._commit()

    def end_run(self, run_id: str, status: InstanceStatus):
        with self._lock:
            self.conn.execute(
                "UPDATE runs SET status = ?, ended_at = ? WHERE run_id = ?",
                (status.value, time.time(), run_id),
            )
            self._commit()

    def get_runs(self, instance_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM runs WHERE instance_id = ? ORDER BY started_at, rowid",
                (instance_id,),
            ).fetchall()
        return [
            {
                "run_id": r["run_id"],
                "input": json.loads(r["input"]),
                "status": r["status"],
                "started_at": r["started_at"],
                "ended_at": r["ended_at"],
            }
            for r in rows
        ]

    # ─── Signal Log ──────────────────────────────────────────────────

    def append_signal(
        self,
        instance_id: str,
        run_id: str,
        sequence: int,
        name: str,
        payload: dict[str, Any],
        delivered_at: str,
    ):
        with self._lock:
            self.conn.execute("""
                INSERT INTO signals (instance_id, run_id, sequence, name, payload, delivered_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (instance_id, run_id, sequence, name,
                  json.dumps(payload, default=str), delivered_at))
            self._commit()

    def get_signals(self, instance_id: str, run_id: str | None = None) -> list[dict[str, Any]]:
        query = "SELECT * FROM signals WHERE instance_id = ?"
        params: list[Any] = [instance_id]
        if run_id:
            query += " AND run_id = ?"
            params.append(run_id)
        query += " ORDER BY id"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            {
                "run_id": r["run_id"],
                "sequence": r["sequence"],
                "name": r["name"],
                "payload": json.loads(r["payload"]),
                "delivered_at": r["delivered_at"],
            }
            for r in rows
        ]

    # ─── Snapshots ───────────────────────────────────────────────────

    def save_snapshot(self, instance_id: str, run_id: str, snapshot: dict[str, Any]):
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO snapshots (instance_id, run_id, snapshot, updated_at)
                VALUES (?, ?, ?, ?)
            """, (instance_id, run_id, json.dumps(snapshot, default=str), time.time()))
            self._commit()

    def get_snapshot(self, instance_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT snapshot FROM snapshots WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        return json.loads(row["snapshot"]) if row else None

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self._lock:
            instances = self.conn.execute(
                "SELECT status, COUNT(*) as cnt FROM instances GROUP BY status"
            ).fetchall()
            signal_count = self.conn.execute(
                "SELECT COUNT(*) as cnt FROM signals"
            ).fetchone()["cnt"]
        return {
            "instances": {r["status"]: r["cnt"] for r in instances},
            "signals": signal_count,
        }

    def close(self):
        self.conn.close()
