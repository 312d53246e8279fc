"""
Schedule repository: where schedule definitions live and run outcomes go.

The scheduler only ever reads active definitions and writes outcomes; the
create/update/delete helpers on the SQLite implementation exist for the
administrative CLI and for tests.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from colored_logger import get_colored_logger

from .errors import RepositoryError
from .models import (
    RunOutcome,
    RunStatus,
    ScheduleDefinition,
    ScheduleFilters,
    TriggerSource,
)

logger = get_colored_logger(__name__)


class ScheduleRepository(ABC):
    """Interface to the external schedule store."""

    @abstractmethod
    def list_active(self) -> List[ScheduleDefinition]:
        """Return all active definitions ordered by name."""

    @abstractmethod
    def get_by_name(self, name: str) -> Optional[ScheduleDefinition]:
        """Return one definition (active or not), or None."""

    @abstractmethod
    def record_outcome(self, name: str, outcome: RunOutcome) -> None:
        """Persist a run outcome; raises RepositoryError on failure."""


def create_connection(db_path: Path, enable_wal: bool = True) -> sqlite3.Connection:
    """Create a new database connection with the settings both stores use."""
    conn = sqlite3.connect(str(db_path), timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row  # Enable column access by name

    if enable_wal:
        conn.execute("PRAGMA journal_mode=WAL")  # Better concurrency
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")

    return conn


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteScheduleRepository(ScheduleRepository):
    """
    SQLite-backed schedule store.

    Features:
    - One shared connection guarded by a lock
    - Outcome persistence and run history in a single transaction
    - Driver errors surfaced as RepositoryError
    """

    def __init__(self, db_path: str = "scheduler.db", enable_wal: bool = True):
        """
        Initialize the repository.

        Args:
            db_path: Path to SQLite database file
            enable_wal: Whether to enable WAL mode for better concurrency
        """
        self.db_path = Path(db_path)
        self._lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = create_connection(self.db_path, enable_wal)
            self._init_database()
        except (sqlite3.Error, OSError) as e:
            raise RepositoryError(f"Cannot open schedule database {db_path}: {e}") from e

        logger.info("Schedule repository initialized with database: %s", self.db_path)

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_configs (
                    name TEXT PRIMARY KEY,
                    description TEXT,
                    cron_expression TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    filters TEXT,  -- JSON object
                    priority INTEGER NOT NULL DEFAULT 5,
                    last_run_at TEXT,
                    last_status TEXT,
                    next_run_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule_name TEXT NOT NULL,
                    ran_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    reason TEXT,
                    item_count INTEGER NOT NULL DEFAULT 0,
                    submitted_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    next_run_at TEXT,
                    trigger TEXT NOT NULL,
                    duration_seconds REAL NOT NULL DEFAULT 0
                )
            """
            )

            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_schedule_configs_active
                ON schedule_configs (is_active, name)
            """
            )

            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_schedule_runs_name
                ON schedule_runs (schedule_name, ran_at)
            """
            )

    def list_active(self) -> List[ScheduleDefinition]:
        rows = self._fetchall(
            "SELECT * FROM schedule_configs WHERE is_active = 1 ORDER BY name"
        )
        return self._rows_to_definitions(rows)

    def list_all(self) -> List[ScheduleDefinition]:
        rows = self._fetchall("SELECT * FROM schedule_configs ORDER BY name")
        return self._rows_to_definitions(rows)

    def _rows_to_definitions(self, rows: List[sqlite3.Row]) -> List[ScheduleDefinition]:
        """Convert rows, skipping (and logging) any that cannot be decoded."""
        definitions = []
        for row in rows:
            try:
                definitions.append(self._row_to_definition(row))
            except RepositoryError as e:
                logger.error("Skipping schedule row: %s", e)
        return definitions

    def get_by_name(self, name: str) -> Optional[ScheduleDefinition]:
        rows = self._fetchall("SELECT * FROM schedule_configs WHERE name = ?", (name,))
        return self._row_to_definition(rows[0]) if rows else None

    def save_schedule(self, definition: ScheduleDefinition) -> None:
        """Insert or update a definition, keeping its recorded run fields."""
        now = datetime.now().astimezone().isoformat()
        params = {
            "name": definition.name,
            "description": definition.description,
            "cron_expression": definition.cron_expression,
            "is_active": 1 if definition.is_active else 0,
            "filters": json.dumps(definition.filters.to_dict()),
            "priority": definition.priority,
            "now": now,
        }
        self._execute(
            """
            INSERT INTO schedule_configs
            (name, description, cron_expression, is_active, filters, priority,
             created_at, updated_at)
            VALUES (:name, :description, :cron_expression, :is_active, :filters,
                    :priority, :now, :now)
            ON CONFLICT(name) DO UPDATE SET
                description = excluded.description,
                cron_expression = excluded.cron_expression,
                is_active = excluded.is_active,
                filters = excluded.filters,
                priority = excluded.priority,
                updated_at = excluded.updated_at
        """,
            params,
        )
        logger.debug("Saved schedule '%s'", definition.name)

    def set_active(self, name: str, active: bool) -> bool:
        """Activate or deactivate a schedule. Returns False if it does not exist."""
        cursor = self._execute(
            "UPDATE schedule_configs SET is_active = ?, updated_at = ? WHERE name = ?",
            (1 if active else 0, datetime.now().astimezone().isoformat(), name),
        )
        return cursor.rowcount > 0

    def delete_schedule(self, name: str) -> bool:
        """Delete a schedule definition. Its run history is kept."""
        cursor = self._execute("DELETE FROM schedule_configs WHERE name = ?", (name,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted schedule '%s' from database", name)
        return deleted

    def record_outcome(self, name: str, outcome: RunOutcome) -> None:
        """
        Update the schedule's run fields and append a history row atomically.

        Raises:
            RepositoryError: If the schedule row is gone or the write fails
        """
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        """
                        UPDATE schedule_configs
                        SET last_run_at = ?, last_status = ?,
                            next_run_at = COALESCE(?, next_run_at), updated_at = ?
                        WHERE name = ?
                    """,
                        (
                            outcome.ran_at.isoformat(),
                            outcome.status_text,
                            _to_iso(outcome.next_run_at),
                            datetime.now().astimezone().isoformat(),
                            name,
                        ),
                    )
                    if cursor.rowcount == 0:
                        raise RepositoryError(f"Schedule '{name}' no longer exists")

                    self._conn.execute(
                        """
                        INSERT INTO schedule_runs
                        (schedule_name, ran_at, status, reason, item_count,
                         submitted_count, failed_count, next_run_at, trigger,
                         duration_seconds)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                        (
                            name,
                            outcome.ran_at.isoformat(),
                            outcome.status.value,
                            outcome.reason,
                            outcome.item_count,
                            outcome.submitted_count,
                            outcome.failed_count,
                            _to_iso(outcome.next_run_at),
                            outcome.trigger.value,
                            outcome.duration_seconds,
                        ),
                    )
            except sqlite3.Error as e:
                raise RepositoryError(
                    f"Failed to record outcome for schedule '{name}': {e}"
                ) from e

        logger.debug("Recorded %s outcome for schedule '%s'", outcome.status.value, name)

    def get_run_history(self, name: Optional[str] = None, limit: int = 50) -> List[RunOutcome]:
        """Return recorded outcomes, newest first."""
        query = "SELECT * FROM schedule_runs"
        params: List[Any] = []
        if name:
            query += " WHERE schedule_name = ?"
            params.append(name)
        query += " ORDER BY ran_at DESC, id DESC LIMIT ?"
        params.append(limit)

        return [
            RunOutcome(
                name=row["schedule_name"],
                ran_at=datetime.fromisoformat(row["ran_at"]),
                status=RunStatus(row["status"]),
                reason=row["reason"],
                item_count=row["item_count"],
                submitted_count=row["submitted_count"],
                failed_count=row["failed_count"],
                next_run_at=_from_iso(row["next_run_at"]),
                trigger=TriggerSource(row["trigger"]),
                duration_seconds=row["duration_seconds"],
            )
            for row in self._fetchall(query, params)
        ]

    def get_statistics(self) -> Dict[str, Any]:
        """Get database statistics."""
        schedules = self._fetchall(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END) AS active,
                MAX(last_run_at) AS last_execution
            FROM schedule_configs
        """
        )[0]
        runs = self._fetchall(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) AS errors,
                SUM(submitted_count) AS submitted
            FROM schedule_runs
        """
        )[0]

        return {
            "schedules": {
                "total": schedules["total"] or 0,
                "active": schedules["active"] or 0,
                "last_execution": schedules["last_execution"],
            },
            "runs": {
                "total": runs["total"] or 0,
                "errors": runs["errors"] or 0,
                "jobs_submitted": runs["submitted"] or 0,
            },
            "database": {
                "path": str(self.db_path),
                "size_bytes": self.db_path.stat().st_size if self.db_path.exists() else 0,
            },
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.info("Schedule repository closed")

    def _fetchall(self, query: str, params: Any = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"Schedule query failed: {e}") from e

    def _execute(self, query: str, params: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(query, params)
            except sqlite3.Error as e:
                raise RepositoryError(f"Schedule update failed: {e}") from e

    def _row_to_definition(self, row: sqlite3.Row) -> ScheduleDefinition:
        """Convert a database row to a ScheduleDefinition."""
        try:
            filters = json.loads(row["filters"]) if row["filters"] else {}
            return ScheduleDefinition(
                name=row["name"],
                cron_expression=row["cron_expression"],
                is_active=bool(row["is_active"]),
                filters=ScheduleFilters.from_dict(filters),
                priority=row["priority"],
                description=row["description"],
                last_run_at=_from_iso(row["last_run_at"]),
                last_status=row["last_status"],
                next_run_at=_from_iso(row["next_run_at"]),
            )
        except (ValueError, TypeError) as e:
            raise RepositoryError(f"Corrupt schedule row '{row['name']}': {e}") from e
