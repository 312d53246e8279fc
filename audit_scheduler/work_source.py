"""
Work-item selection: the bounded query that turns a schedule's filters into
POIs to dispatch.
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, List, Tuple

from colored_logger import get_colored_logger

from .errors import RepositoryError
from .models import ScheduleFilters, WorkItem
from .repository import create_connection

logger = get_colored_logger(__name__)


class WorkItemSource(ABC):
    """Interface to the POI store consulted on every execution."""

    @abstractmethod
    def select(self, filters: ScheduleFilters, limit: int) -> List[WorkItem]:
        """
        Return at most ``limit`` active, not soft-deleted items matching filters.

        Raises:
            RepositoryError: If the query fails
        """


def build_poi_query(filters: ScheduleFilters, limit: int) -> Tuple[str, List[Any]]:
    """
    Build the selection SQL for a set of filters.

    Active and not-deleted are always required and the row count is always
    bounded, whatever the filters say.
    """
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")

    clauses = ["is_active = 1", "deleted_at IS NULL"]
    params: List[Any] = []

    if filters.region:
        clauses.append("region = ?")
        params.append(filters.region)
    if filters.category:
        clauses.append("category = ?")
        params.append(filters.category)
    if filters.max_score is not None:
        clauses.append("audit_score < ?")
        params.append(filters.max_score)
    if filters.min_score is not None:
        clauses.append("audit_score >= ?")
        params.append(filters.min_score)

    query = (
        "SELECT id, name, website FROM pois WHERE "
        + " AND ".join(clauses)
        + " ORDER BY id LIMIT ?"
    )
    params.append(limit)
    return query, params


class SQLitePoiSource(WorkItemSource):
    """Reads POIs from a SQLite ``pois`` table."""

    def __init__(self, db_path: str = "scheduler.db", create_schema: bool = False):
        """
        Args:
            db_path: Path to SQLite database file
            create_schema: Create the ``pois`` table if it is missing. The table
                normally belongs to the platform's main database.
        """
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = create_connection(self.db_path)
            if create_schema:
                self._create_schema()
        except sqlite3.Error as e:
            raise RepositoryError(f"Cannot open POI database {db_path}: {e}") from e

    def _create_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pois (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    website TEXT,
                    region TEXT,
                    category TEXT,
                    audit_score REAL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    deleted_at TEXT
                )
            """
            )
            self._conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pois_selection
                ON pois (is_active, region, category)
            """
            )

    def select(self, filters: ScheduleFilters, limit: int) -> List[WorkItem]:
        query, params = build_poi_query(filters, limit)
        with self._lock:
            try:
                rows = self._conn.execute(query, params).fetchall()
            except sqlite3.Error as e:
                raise RepositoryError(f"POI selection failed: {e}") from e

        logger.debug("Selected %d POIs for filters %s", len(rows), filters.to_dict())
        return [
            WorkItem(id=str(row["id"]), website=row["website"] or None, name=row["name"])
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
