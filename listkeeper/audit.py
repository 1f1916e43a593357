#!/usr/bin/env python3
"""
audit.py

Audit log writer on the relational store (sqlite3).

maintenance_runs is insert-only: a run is written once, after it is
finalized. contact_suppression_history holds one row per suppressed contact
and is written with INSERT OR IGNORE so a rerun never duplicates rows.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .models import APPLIED, MaintenanceRun, SuppressionEntry, to_jsonable

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS maintenance_runs (
    run_id TEXT PRIMARY KEY,
    workflow TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    used_fallback INTEGER NOT NULL DEFAULT 0,
    abort_reason TEXT,
    record_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_runs_workflow ON maintenance_runs (workflow, started_at);

CREATE TABLE IF NOT EXISTS contact_suppression_history (
    contact_id INTEGER PRIMARY KEY,
    email TEXT,
    reason TEXT NOT NULL,
    evidence_json TEXT,
    run_id TEXT NOT NULL,
    suppressed_at TEXT NOT NULL
);
"""


class AuditLogWriter:
    """Durable record of every finalized MaintenanceRun"""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or config.AUDIT_DB_PATH
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self):
        with self._lock:
            self._conn.close()

    # =========================================================================
    # ✍️ WRITES
    # =========================================================================

    def write_run(self, run: MaintenanceRun) -> bool:
        """
        Persist a finalized run and its suppression history rows.

        Returns:
            False when the run id was already recorded (nothing written)
        """
        if not run.finalized:
            raise ValueError(f"Run {run.run_id} must be finalized before it is audited")

        record = run.to_record()
        suppressed_at = (run.finished_at or datetime.now(timezone.utc)).isoformat()
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        "INSERT INTO maintenance_runs (run_id, workflow, status, started_at, finished_at, "
                        "used_fallback, abort_reason, record_json) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (run.run_id, run.workflow.value, run.status.value, run.started_at.isoformat(),
                         run.finished_at.isoformat() if run.finished_at else None,
                         int(run.used_fallback), run.abort_reason or None, json.dumps(record)),
                    )
                    inserted = 0
                    for result in run.operation_results:
                        if result.operation != "suppress" or result.status != APPLIED:
                            continue
                        inserted += self._insert_suppression(result.entry, run.run_id, suppressed_at)
            except sqlite3.IntegrityError:
                logger.warning(f"⚠️ Run {run.run_id} already audited - ignoring duplicate write")
                return False

        logger.info(f"🗄️ Audited run {run.run_id} ({run.status.value}), {inserted} suppression history rows")
        return True

    def _insert_suppression(self, entry: SuppressionEntry, run_id: str, suppressed_at: str) -> int:
        cursor = self._conn.execute(
            "INSERT OR IGNORE INTO contact_suppression_history "
            "(contact_id, email, reason, evidence_json, run_id, suppressed_at) VALUES (?, ?, ?, ?, ?, ?)",
            (int(entry.contact_id), entry.email, entry.reason,
             json.dumps(to_jsonable(entry.evidence), default=str), run_id, suppressed_at),
        )
        return cursor.rowcount

    # =========================================================================
    # 🔍 READS
    # =========================================================================

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM maintenance_runs WHERE run_id = ?", (run_id,)).fetchone()
        return json.loads(row["record_json"]) if row else None

    def list_runs(self, workflow: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent runs first"""
        query = "SELECT run_id, workflow, status, started_at, finished_at, used_fallback, abort_reason " \
                "FROM maintenance_runs"
        params: list = []
        if workflow:
            query += " WHERE workflow = ?"
            params.append(workflow)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(row, used_fallback=bool(row["used_fallback"])) for row in rows]

    def suppression_history(self, contact_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM contact_suppression_history WHERE contact_id = ?", (int(contact_id),)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["evidence"] = json.loads(data.pop("evidence_json") or "null")
        return data

    def suppressed_contact_ids(self) -> List[int]:
        with self._lock:
            rows = self._conn.execute("SELECT contact_id FROM contact_suppression_history").fetchall()
        return [row["contact_id"] for row in rows]

    def count_suppression_rows(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM contact_suppression_history").fetchone()[0]
