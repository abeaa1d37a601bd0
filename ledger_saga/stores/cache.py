"""
Relational cache store backed by SQLite.

Holds denormalized copies of ledger records for fast listing, plus the
principals that created them.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from ledger_saga.config.loader import HealthConfig
from ledger_saga.core.errors import StorageError
from ledger_saga.core.serialization import format_decimal
from ledger_saga.storage.db import get_connection
from ledger_saga.storage.models import (
    Facets,
    ListFilters,
    Record,
    RecordPage,
    StorageLocations,
    Visibility,
)
from .base import CacheStore

logger = logging.getLogger(__name__)

SORTABLE_COLUMNS = {
    "start_date": "start_date",
    "end_date": "end_date",
    "created_at": "created_at",
    "title": "title",
    "ticket_price": "CAST(ticket_price AS REAL)",
}

RECORD_COLUMNS = (
    "id, slug, title, description, location, start_date, end_date, max_capacity, "
    "ticket_price, creator, require_approval, visibility, timezone, category, tags_json, "
    "status, ledger_id, ledger_tx, media_refs_json, created_at"
)


def initialize_schema(db_path: str) -> None:
    """Create the principal and record tables if they don't exist."""
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS principal (
                id TEXT PRIMARY KEY,
                external_id TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS record (
                id TEXT PRIMARY KEY,
                slug TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                location TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                max_capacity INTEGER NOT NULL,
                ticket_price TEXT NOT NULL,
                principal_id TEXT REFERENCES principal (id),
                creator TEXT NOT NULL,
                require_approval INTEGER NOT NULL DEFAULT 0,
                visibility TEXT NOT NULL,
                timezone TEXT NOT NULL,
                category TEXT,
                tags_json TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL,
                ledger_id TEXT,
                ledger_tx TEXT,
                media_refs_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_record_ledger ON record (ledger_id, ledger_tx);
            CREATE INDEX IF NOT EXISTS idx_record_start ON record (start_date);
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteCacheStore(CacheStore):
    """Mutable record cache with full CRUD."""

    def __init__(self, db_path: str, health_config: Optional[HealthConfig] = None):
        super().__init__(health_config)
        self.db_path = db_path
        initialize_schema(db_path)

    @contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Cache connection failed: {e}", "cache", operation) from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Cache {operation} failed: {e}", "cache", operation) from e
        finally:
            conn.close()

    def _probe(self) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path, timeout=self.health_config.timeout_s)
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM record").fetchone()
            return {"record_count": row["n"]}
        finally:
            conn.close()

    def get_config(self) -> Dict[str, Any]:
        return {"backend": "sqlite", "db_path": self.db_path}

    def get_or_create_principal(self, external_id: str) -> str:
        key = external_id.lower()
        with self._connection("get_or_create_principal") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO principal (id, external_id, created_at) VALUES (?, ?, ?)",
                (str(uuid.uuid4()), key, datetime.now().isoformat()),
            )
            row = conn.execute("SELECT id FROM principal WHERE external_id = ?", (key,)).fetchone()
            return row["id"]

    def create(self, record: Record, principal_id: Optional[str] = None) -> str:
        now = datetime.now()
        created_at = record.created_at or now
        with self._connection("create") as conn:
            conn.execute("""
                INSERT INTO record
                (id, slug, title, description, location, start_date, end_date, max_capacity,
                 ticket_price, principal_id, creator, require_approval, visibility, timezone,
                 category, tags_json, status, ledger_id, ledger_tx, media_refs_json,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.record_id,
                record.slug,
                record.title,
                record.description,
                record.location,
                record.start_date.isoformat(),
                record.end_date.isoformat(),
                record.max_capacity,
                record.ticket_price,
                principal_id,
                record.creator,
                1 if record.require_approval else 0,
                record.visibility.value,
                record.timezone,
                record.category,
                json.dumps(list(record.tags)),
                record.status,
                record.locations.ledger_id,
                record.locations.ledger_tx,
                json.dumps(list(record.locations.media_refs)),
                created_at.isoformat(),
                now.isoformat(),
            ))
        return record.record_id

    def get(self, record_id: str) -> Optional[Record]:
        with self._connection("get") as conn:
            row = conn.execute(
                f"SELECT {RECORD_COLUMNS} FROM record WHERE id = ?", (record_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def update(self, record: Record) -> None:
        with self._connection("update") as conn:
            cursor = conn.execute("""
                UPDATE record SET
                    slug = ?, title = ?, description = ?, location = ?, start_date = ?,
                    end_date = ?, max_capacity = ?, ticket_price = ?, creator = ?,
                    require_approval = ?, visibility = ?, timezone = ?, category = ?,
                    tags_json = ?, status = ?, ledger_id = ?, ledger_tx = ?,
                    media_refs_json = ?, updated_at = ?
                WHERE id = ?
            """, (
                record.slug,
                record.title,
                record.description,
                record.location,
                record.start_date.isoformat(),
                record.end_date.isoformat(),
                record.max_capacity,
                record.ticket_price,
                record.creator,
                1 if record.require_approval else 0,
                record.visibility.value,
                record.timezone,
                record.category,
                json.dumps(list(record.tags)),
                record.status,
                record.locations.ledger_id,
                record.locations.ledger_tx,
                json.dumps(list(record.locations.media_refs)),
                datetime.now().isoformat(),
                record.record_id,
            ))
            if cursor.rowcount == 0:
                raise StorageError(
                    f"Record {record.record_id} not found", "cache", "update", code="not_found"
                )

    def delete(self, record_id: str) -> bool:
        with self._connection("delete") as conn:
            cursor = conn.execute("DELETE FROM record WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def list(self, filters: Optional[ListFilters] = None) -> RecordPage:
        """Filtered, sorted, paginated listing with facets over the whole table.

        Args:
            filters: Paging, sorting and filtering options

        Returns:
            One page of records plus total count and facets

        Raises:
            ValueError: On an unknown sort field or order
        """
        filters = filters or ListFilters()
        if filters.sort_by not in SORTABLE_COLUMNS:
            raise ValueError(f"Cannot sort by {filters.sort_by!r}")
        if filters.order.lower() not in ("asc", "desc"):
            raise ValueError(f"Order must be 'asc' or 'desc', got {filters.order!r}")
        if filters.page < 1 or filters.limit < 1:
            raise ValueError("page and limit must be >= 1")

        conditions: List[str] = []
        params: List[Any] = []
        if filters.category:
            conditions.append("LOWER(category) = LOWER(?)")
            params.append(filters.category)
        if filters.location:
            conditions.append("LOWER(location) LIKE LOWER(?)")
            params.append(f"%{filters.location}%")
        if filters.search:
            conditions.append("(LOWER(title) LIKE LOWER(?) OR LOWER(description) LIKE LOWER(?))")
            params.extend([f"%{filters.search}%", f"%{filters.search}%"])
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""

        with self._connection("list") as conn:
            total = conn.execute(f"SELECT COUNT(*) AS n FROM record{where}", params).fetchone()["n"]
            query = (
                f"SELECT {RECORD_COLUMNS} FROM record{where} "
                f"ORDER BY {SORTABLE_COLUMNS[filters.sort_by]} {filters.order.upper()}, id "
                f"LIMIT ? OFFSET ?"
            )
            rows = conn.execute(
                query, params + [filters.limit, (filters.page - 1) * filters.limit]
            ).fetchall()
            facets = self._facets(conn)

        return RecordPage(
            records=tuple(self._row_to_record(row) for row in rows),
            total=total,
            page=filters.page,
            limit=filters.limit,
            facets=facets,
        )

    def _facets(self, conn: sqlite3.Connection) -> Facets:
        categories = [
            row["category"] for row in conn.execute(
                "SELECT DISTINCT category FROM record WHERE category IS NOT NULL ORDER BY category"
            )
        ]
        locations = [
            row["location"] for row in conn.execute("SELECT DISTINCT location FROM record ORDER BY location")
        ]
        prices = [Decimal(row["ticket_price"]) for row in conn.execute("SELECT ticket_price FROM record")]
        return Facets(
            categories=tuple(categories),
            locations=tuple(locations),
            min_price=format_decimal(min(prices)) if prices else None,
            max_price=format_decimal(max(prices)) if prices else None,
        )

    def list_without_ledger_proof(self, grace_period: timedelta) -> List[Record]:
        cutoff = (datetime.now() - grace_period).isoformat()
        with self._connection("list_without_ledger_proof") as conn:
            rows = conn.execute(f"""
                SELECT {RECORD_COLUMNS} FROM record
                WHERE ledger_id IS NULL AND ledger_tx IS NULL AND created_at < ?
                ORDER BY created_at
            """, (cutoff,)).fetchall()
            return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        return Record(
            record_id=row["id"],
            slug=row["slug"],
            title=row["title"],
            description=row["description"],
            location=row["location"],
            start_date=datetime.fromisoformat(row["start_date"]),
            end_date=datetime.fromisoformat(row["end_date"]),
            max_capacity=row["max_capacity"],
            ticket_price=row["ticket_price"],
            creator=row["creator"],
            require_approval=bool(row["require_approval"]),
            visibility=Visibility(row["visibility"]),
            timezone=row["timezone"],
            category=row["category"],
            tags=tuple(json.loads(row["tags_json"])),
            status=row["status"],
            locations=StorageLocations(
                ledger_id=row["ledger_id"],
                ledger_tx=row["ledger_tx"],
                cache_id=row["id"],
                media_refs=tuple(json.loads(row["media_refs_json"])),
            ),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
