from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .report import RunReport
    from .runner import RunResult
    from .trigger import PipelineEvent


class Data(ABC):
    """
    Abstract data store for run history.

    Implemented by an SQLite-backed store with small helpers for inserting
    JSON-friendly rows, querying and updating.
    """

    def __init__(self, db_path: Path | str = Path(".matrixci.db"), in_memory: bool = False) -> None:
        self._db_path = ":memory:" if in_memory else str(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self.connect()

    @property
    def conn(self) -> sqlite3.Connection:
        assert self._conn is not None, "Database connection is not initialized"
        return self._conn

    def connect(self) -> None:
        with self._lock:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        self._init_tables()

    @abstractmethod
    def _init_tables(self) -> None:
        """Create the tables used by run history."""

    @abstractmethod
    def insert(self, table_name: str, data: Dict[str, Any]) -> None:
        """Insert a dict as row; dict/list values are JSON-serialized automatically."""

    @abstractmethod
    def query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        """Execute a SELECT and return a list of dict rows with JSON automatically parsed."""

    @abstractmethod
    def update(self, table_name: str, data: Dict[str, Any], where: str, params: Tuple[Any, ...]) -> None:
        """Update rows matching the where clause with params."""

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class SqliteData(Data):
    """SQLite-backed Data implementation.

    Thread-safe via a re-entrant lock around connection operations.
    """

    def _init_tables(self) -> None:
        """Create runs, jobs and step_results tables."""
        with self._lock:
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    event_kind TEXT,
                    event_ref TEXT,
                    start_timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                    end_timestamp DATETIME,
                    status TEXT,
                    report_json TEXT
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    run_id TEXT,
                    instance_id TEXT,
                    execution_order INTEGER,
                    bindings_json TEXT,
                    status TEXT,
                    failed_at INTEGER,
                    FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS step_results (
                    output_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT,
                    step_index INTEGER,
                    name TEXT,
                    command TEXT,
                    status TEXT,
                    returncode INTEGER,
                    error TEXT,
                    stdout TEXT,
                    stderr TEXT,
                    duration REAL,
                    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (job_id) REFERENCES jobs(job_id) ON DELETE CASCADE
                )
                """
            )
            self.conn.commit()

    def _jsonify(self, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, separators=(",", ":"))
        return value

    def _dejsonify(self, value: Any) -> Any:
        if isinstance(value, str) and value[:1] in "[{":
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    def insert(self, table_name: str, data: Dict[str, Any]) -> None:
        data2 = {k: self._jsonify(v) for k, v in data.items()}
        placeholders = ", ".join(["?"] * len(data2))
        columns = ", ".join(data2.keys())
        with self._lock:
            self.conn.execute(
                f"INSERT INTO {table_name} ({columns}) VALUES ({placeholders})",
                tuple(data2.values()),
            )
            self.conn.commit()

    def query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.execute(sql, params)
            rows = cur.fetchall()
        results: List[Dict[str, Any]] = []
        for row in rows:
            d = dict(row)
            results.append({k: self._dejsonify(v) for k, v in d.items()})
        return results

    def update(self, table_name: str, data: Dict[str, Any], where: str, params: Tuple[Any, ...]) -> None:
        data2 = {k: self._jsonify(v) for k, v in data.items()}
        set_clause = ", ".join(f"{k} = ?" for k in data2.keys())
        with self._lock:
            self.conn.execute(
                f"UPDATE {table_name} SET {set_clause} WHERE {where}",
                tuple(data2.values()) + params,
            )
            self.conn.commit()


def start_run(data: Data, run_id: str, event: "PipelineEvent") -> None:
    data.insert(
        "runs",
        {"run_id": run_id, "event_kind": event.kind, "event_ref": event.ref, "status": "running"},
    )


def finish_run(data: Data, run_id: str, result: "RunResult", report: "RunReport") -> None:
    """Store every job and step outcome of a finished run."""
    for job in result.job_results:
        job_id = f"{run_id}:{job.instance.index}"
        data.insert(
            "jobs",
            {
                "job_id": job_id,
                "run_id": run_id,
                "instance_id": job.instance.id,
                "execution_order": job.instance.index,
                "bindings_json": dict(job.instance.bindings),
                "status": job.status,
                "failed_at": job.failed_at,
            },
        )
        for sr in job.step_results:
            data.insert(
                "step_results",
                {
                    "job_id": job_id,
                    "step_index": sr.index,
                    "name": sr.step.label,
                    "command": sr.step.display_command,
                    "status": sr.status,
                    "returncode": sr.returncode,
                    "error": sr.error,
                    "stdout": sr.stdout,
                    "stderr": sr.stderr,
                    "duration": sr.duration,
                },
            )
    data.update(
        "runs",
        {"status": report.overall, "end_timestamp": _now(data), "report_json": report.to_dict()},
        "run_id = ?",
        (run_id,),
    )


def list_runs(data: Data, limit: int = 20) -> List[Dict[str, Any]]:
    return data.query(
        "SELECT run_id, event_kind, event_ref, start_timestamp, end_timestamp, status "
        "FROM runs ORDER BY start_timestamp DESC, rowid DESC LIMIT ?",
        (limit,),
    )


def get_run_jobs(data: Data, run_id: str) -> List[Dict[str, Any]]:
    return data.query(
        "SELECT * FROM jobs WHERE run_id = ? ORDER BY execution_order",
        (run_id,),
    )


def _now(data: Data) -> str:
    rows = data.query("SELECT CURRENT_TIMESTAMP AS ts")
    return rows[0]["ts"]
