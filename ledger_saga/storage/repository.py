"""
Repository pattern for operation state.

Persists each creation attempt keyed by operation id so that the second
half of a creation can run in a different process from the first.
"""

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ledger_saga.core.serialization import to_serializable
from .db import get_connection
from .models import Compensation, CompensationKind, OperationPhase, OperationState


def initialize_schema(db_path: str) -> None:
    """Create the operation_state table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS operation_state (
                operation_id TEXT PRIMARY KEY,
                idempotency_key TEXT UNIQUE,
                phase TEXT NOT NULL,
                state_json TEXT NOT NULL,
                pending_rollback INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(operation_state)")}
        if "pending_rollback" not in columns:
            conn.execute(
                "ALTER TABLE operation_state ADD COLUMN pending_rollback INTEGER NOT NULL DEFAULT 0"
            )
            rows = conn.execute("SELECT operation_id, state_json FROM operation_state").fetchall()
            conn.executemany(
                "UPDATE operation_state SET pending_rollback = 1 WHERE operation_id = ?",
                [
                    (row["operation_id"],) for row in rows
                    if _state_from_json(row["state_json"]).pending_compensations
                ],
            )
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_operation_state_phase
            ON operation_state (phase, updated_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_operation_state_pending
            ON operation_state (pending_rollback, updated_at)
        """)
        conn.commit()
    finally:
        conn.close()


def _state_to_json(state: OperationState) -> str:
    payload = to_serializable(state)
    payload["compensations"] = [c.to_dict() for c in state.compensations]
    return json.dumps(payload, sort_keys=True)


def _state_from_json(raw: str) -> OperationState:
    data: Dict[str, Any] = json.loads(raw)
    return OperationState(
        operation_id=data["operation_id"],
        record_id=data["record_id"],
        slug=data["slug"],
        signer=data["signer"],
        input_fingerprint=data["input_fingerprint"],
        phase=OperationPhase(data["phase"]),
        idempotency_key=data.get("idempotency_key"),
        media_refs=list(data.get("media_refs") or []),
        metadata_uri=data.get("metadata_uri"),
        unsigned_transaction=data.get("unsigned_transaction"),
        ledger_tx=data.get("ledger_tx"),
        ledger_id=data.get("ledger_id"),
        cache_id=data.get("cache_id"),
        compensations=[Compensation.from_dict(c) for c in data.get("compensations") or []],
        rollback_kinds=[CompensationKind(k) for k in data.get("rollback_kinds") or []],
        result=data.get("result"),
        error=data.get("error"),
        created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None,
        updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
    )


class OperationRepository:
    """Repository for persisting and loading OperationState.

    Every write replaces the whole state row; the row is the unit of
    durability for a saga.
    """

    def __init__(self, db_path: str = "ledger_saga_operations.db"):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def insert(self, state: OperationState) -> bool:
        """Insert a new operation.

        Returns:
            False if another operation already holds the idempotency key
        """
        now = datetime.now()
        state.created_at = state.created_at or now
        state.updated_at = now
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO operation_state
                (operation_id, idempotency_key, phase, state_json, pending_rollback, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                state.operation_id,
                state.idempotency_key,
                state.phase.value,
                _state_to_json(state),
                int(bool(state.pending_compensations)),
                state.created_at.isoformat(),
                state.updated_at.isoformat(),
            ))
            conn.commit()
            return True
        except sqlite3.IntegrityError:
            conn.rollback()
            return False
        finally:
            conn.close()

    def save(self, state: OperationState) -> None:
        """Persist the current state of an existing operation."""
        state.updated_at = datetime.now()
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE operation_state
                SET idempotency_key = ?, phase = ?, state_json = ?, pending_rollback = ?, updated_at = ?
                WHERE operation_id = ?
            """, (
                state.idempotency_key,
                state.phase.value,
                _state_to_json(state),
                int(bool(state.pending_compensations)),
                state.updated_at.isoformat(),
                state.operation_id,
            ))
            conn.commit()
        finally:
            conn.close()

    def get(self, operation_id: str) -> Optional[OperationState]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT state_json FROM operation_state WHERE operation_id = ?",
                (operation_id,),
            ).fetchone()
            return _state_from_json(row["state_json"]) if row else None
        finally:
            conn.close()

    def find_by_idempotency_key(self, key: str) -> Optional[OperationState]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT state_json FROM operation_state WHERE idempotency_key = ?",
                (key,),
            ).fetchone()
            return _state_from_json(row["state_json"]) if row else None
        finally:
            conn.close()

    def list_operations(
        self,
        phase: Optional[OperationPhase] = None,
        limit: int = 100
    ) -> List[OperationState]:
        """List operations, most recently updated first.

        Args:
            phase: Optional filter for a single phase
            limit: Maximum number of operations to return
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT state_json FROM operation_state"
            params: List[Any] = []
            if phase is not None:
                query += " WHERE phase = ?"
                params.append(phase.value)
            query += " ORDER BY updated_at DESC LIMIT ?"
            params.append(limit)
            return [_state_from_json(row["state_json"]) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def iter_operations(
        self,
        phase: Optional[OperationPhase] = None,
        batch_size: int = 500
    ) -> Iterator[OperationState]:
        """Every operation, oldest first, fetched batch_size rows at a time.

        Keyset pagination on (created_at, operation_id), so rows saved while
        iterating are neither skipped nor repeated.
        """
        last: Optional[Tuple[str, str]] = None
        while True:
            conditions: List[str] = []
            params: List[Any] = []
            if phase is not None:
                conditions.append("phase = ?")
                params.append(phase.value)
            if last is not None:
                conditions.append("(created_at, operation_id) > (?, ?)")
                params.extend(last)
            where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(
                    f"SELECT operation_id, state_json, created_at FROM operation_state{where} "
                    "ORDER BY created_at, operation_id LIMIT ?",
                    params + [batch_size],
                ).fetchall()
            finally:
                conn.close()
            for row in rows:
                yield _state_from_json(row["state_json"])
            if len(rows) < batch_size:
                return
            last = (rows[-1]["created_at"], rows[-1]["operation_id"])

    def list_with_pending_compensations(self, limit: Optional[int] = None) -> List[OperationState]:
        """Operations whose rollback did not run to completion, oldest first.

        Args:
            limit: Maximum number to return (default: all)
        """
        conn = get_connection(self.db_path)
        try:
            query = (
                "SELECT state_json FROM operation_state WHERE pending_rollback = 1 "
                "ORDER BY updated_at ASC"
            )
            params: List[Any] = []
            if limit is not None:
                query += " LIMIT ?"
                params.append(limit)
            return [_state_from_json(row["state_json"]) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def purge_terminal(self, older_than: timedelta) -> int:
        """Delete consistent or failed operations not touched within older_than.

        Failed operations with pending compensations are kept.

        Returns:
            Number of rows deleted
        """
        cutoff = (datetime.now() - older_than).isoformat()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                DELETE FROM operation_state
                WHERE phase IN (?, ?) AND updated_at < ? AND pending_rollback = 0
            """, (OperationPhase.CONSISTENT.value, OperationPhase.FAILED.value, cutoff))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()
