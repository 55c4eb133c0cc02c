"""
Report Store — append-only, hash-chained ledger of run Summaries.

Behavioral Contract:
- Append-only. No stored Summary is ever modified or deleted.
- Each record is signed (SHA-256 over its canonical JSON) and chained to
  the signature of the record before it.
- Queryable by run, status and resource key.
"""

import hashlib
import json
import sqlite3
from typing import List, Optional

from hostconverge.models.report import RunState, Summary


def _sign(summary_json: dict, prior_hash: Optional[str]) -> str:
    payload = {"summary": summary_json, "prior_record_hash": prior_hash}
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, default=str).encode()
    ).hexdigest()


class ReportStore:
    """
    Persisted Summaries in SQLite. Defaults to an in-memory database;
    pass a file path to keep the ledger across runs.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS reports (
                run_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                summary_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS report_resources (
                run_id TEXT NOT NULL,
                resource_key TEXT NOT NULL,
                outcome TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_reports_status ON reports(status)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_report_resources_key ON report_resources(resource_key)
        """)
        self._conn.commit()

    def append(self, summary: Summary) -> str:
        """Append a finalized Summary; returns its signature."""
        prior_hash = self._get_latest_hash()
        summary_json = summary.model_dump(mode="json")
        signature = _sign(summary_json, prior_hash)

        self._conn.execute(
            """
            INSERT INTO reports (
                run_id, status, started_at, finished_at,
                signature, prior_record_hash, summary_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                summary.run_id,
                summary.status.value,
                summary.started_at.isoformat(),
                summary.finished_at.isoformat(),
                signature,
                prior_hash,
                json.dumps(summary_json, sort_keys=True, default=str),
            ),
        )
        self._conn.executemany(
            "INSERT INTO report_resources (run_id, resource_key, outcome) VALUES (?, ?, ?)",
            [(summary.run_id, r.key, r.outcome.value) for r in summary.outcomes],
        )
        self._conn.commit()
        return signature

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM reports ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> Summary:
        return Summary.model_validate_json(row["summary_json"])

    def get_by_run(self, run_id: str) -> Optional[Summary]:
        row = self._conn.execute(
            "SELECT summary_json FROM reports WHERE run_id = ?", (run_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_recent(self, limit: int = 50) -> List[Summary]:
        """Most recent Summaries, oldest first."""
        rows = self._conn.execute(
            "SELECT summary_json FROM reports ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_by_status(self, status: RunState) -> List[Summary]:
        rows = self._conn.execute(
            "SELECT summary_json FROM reports WHERE status = ? ORDER BY rowid",
            (status.value,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_resource(self, key: str) -> List[Summary]:
        """Every run that recorded an outcome for the resource key."""
        rows = self._conn.execute(
            """
            SELECT summary_json FROM reports WHERE run_id IN (
                SELECT DISTINCT run_id FROM report_resources WHERE resource_key = ?
            ) ORDER BY rowid
            """,
            (key,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def verify_chain_integrity(self) -> bool:
        """Verify no stored Summary has been altered, removed or reordered."""
        rows = self._conn.execute(
            "SELECT summary_json, signature, prior_record_hash FROM reports ORDER BY rowid"
        ).fetchall()

        prior_sig = None
        for row in rows:
            if row["prior_record_hash"] != prior_sig:
                return False
            expected = _sign(json.loads(row["summary_json"]), row["prior_record_hash"])
            if row["signature"] != expected:
                return False
            prior_sig = row["signature"]
        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM reports").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
