"""
Local append-only ledger journal backed by SQLite.

Stands in for a chain client: entries are only ever INSERTed, signed
submissions are recorded as-is, and confirmation is derived from what
exists in the journal. Prices are carried in integer base units.
"""

import hashlib
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from ledger_saga.config.loader import HealthConfig
from ledger_saga.core.errors import StorageError, ValidationError
from ledger_saga.core.serialization import canonical_json, format_decimal, to_serializable
from ledger_saga.core.validation import (
    DEFAULT_MAX_CAPACITY,
    DEFAULT_SIGNER_PATTERN,
    base_units_to_price,
    price_to_base_units,
)
from ledger_saga.storage.db import get_connection
from ledger_saga.storage.models import (
    CreationInput,
    Record,
    SignedTransaction,
    StorageLocations,
    TransactionStatus,
    VerificationResult,
    Visibility,
)
from .base import LedgerStore, ServiceSigner

logger = logging.getLogger(__name__)

CONTRACT_ADDRESS = "local-ledger"
CREATE_METHOD = "createRecord"


def local_signature(descriptor: Dict[str, Any], signer: str) -> str:
    """Deterministic signature accepted by the local ledger."""
    payload = canonical_json(descriptor) + "|" + signer.lower()
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def initialize_schema(db_path: str) -> None:
    """Create the ledger tables.

    All three tables are append-only: no UPDATE or DELETE is ever issued
    against them.
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS ledger_submission (
                tx_ref TEXT PRIMARY KEY,
                signer TEXT NOT NULL,
                descriptor_json TEXT NOT NULL,
                submitted_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS ledger_rejection (
                tx_ref TEXT PRIMARY KEY,
                reason TEXT NOT NULL,
                rejected_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS ledger_entry (
                ledger_id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_ref TEXT NOT NULL UNIQUE,
                block_ref TEXT NOT NULL,
                record_id TEXT,
                external_ref TEXT NOT NULL,
                creator TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                location TEXT NOT NULL,
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                max_capacity INTEGER NOT NULL,
                ticket_price_units TEXT NOT NULL,
                require_approval INTEGER NOT NULL,
                visibility TEXT NOT NULL,
                timezone TEXT NOT NULL,
                category TEXT,
                tags_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_ledger_entry_external_ref ON ledger_entry (external_ref);
            CREATE INDEX IF NOT EXISTS idx_ledger_entry_record_id ON ledger_entry (record_id);
            CREATE TABLE IF NOT EXISTS ledger_credit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                identity TEXT NOT NULL,
                amount TEXT NOT NULL,
                credited_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteLedgerStore(LedgerStore):
    """Append-only ledger journal.

    submit() records a signed transaction. With confirm=True (default) the
    entry is appended immediately; otherwise it stays pending until
    confirm_pending() runs, which mirrors block production.
    """

    def __init__(
        self,
        db_path: str,
        network_id: int = 43113,
        health_config: Optional[HealthConfig] = None,
        signer_pattern: str = DEFAULT_SIGNER_PATTERN,
        max_capacity: int = DEFAULT_MAX_CAPACITY,
    ):
        super().__init__(health_config, signer_pattern=signer_pattern, max_capacity=max_capacity)
        self.db_path = db_path
        self.network_id = network_id
        initialize_schema(db_path)

    def _probe(self) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path, timeout=self.health_config.timeout_s)
        try:
            row = conn.execute("SELECT COALESCE(MAX(ledger_id), 0) AS latest FROM ledger_entry").fetchone()
            return {"latest_block": row["latest"], "network_id": self.network_id}
        finally:
            conn.close()

    def get_config(self) -> Dict[str, Any]:
        return {
            "backend": "sqlite-journal",
            "db_path": self.db_path,
            "network_id": self.network_id,
            "contract_address": CONTRACT_ADDRESS,
        }

    def _build_descriptor(
        self,
        data: CreationInput,
        external_ref: str,
        signer_identity: str,
        record_id: Optional[str],
    ) -> Dict[str, Any]:
        args = {
            "record_id": record_id,
            "external_ref": external_ref,
            "title": data.title,
            "description": data.description,
            "location": data.location,
            "start_time": int(data.start_date.timestamp()),
            "end_time": int(data.end_date.timestamp()),
            "max_capacity": data.max_capacity,
            "ticket_price": price_to_base_units(data.ticket_price),
            "require_approval": data.require_approval,
            "visibility": data.visibility.value,
            "timezone": data.timezone,
            "category": data.category,
            "tags": list(data.tags),
        }
        return to_serializable({
            "network_id": self.network_id,
            "to": CONTRACT_ADDRESS,
            "method": CREATE_METHOD,
            "from": signer_identity,
            "nonce": uuid.uuid4().hex,
            "args": args,
        })

    def submit(self, descriptor: Dict[str, Any], signature: str, confirm: bool = True) -> SignedTransaction:
        """Record a signed transaction, as a wallet broadcast would.

        A bad signature or wrong network is recorded as a rejection, so
        verify_transaction() later reports it as failed.
        """
        signer = str(descriptor.get("from", ""))
        tx_ref = "0x" + hashlib.sha256((canonical_json(descriptor) + signature).encode("utf-8")).hexdigest()
        now = datetime.now().isoformat()

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR IGNORE INTO ledger_submission (tx_ref, signer, descriptor_json, submitted_at) "
                "VALUES (?, ?, ?, ?)",
                (tx_ref, signer, canonical_json(descriptor), now),
            )
            reason = None
            if descriptor.get("network_id") != self.network_id:
                reason = "wrong network"
            elif signature != local_signature(descriptor, signer):
                reason = "invalid signature"
            if reason:
                conn.execute(
                    "INSERT OR IGNORE INTO ledger_rejection (tx_ref, reason, rejected_at) VALUES (?, ?, ?)",
                    (tx_ref, reason, now),
                )
            elif confirm:
                self._append_entry(conn, tx_ref, descriptor)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Ledger submission failed: {e}", "ledger", "submit") from e
        finally:
            conn.close()
        return SignedTransaction(tx_ref=tx_ref, signer=signer, signature=signature)

    def confirm_pending(self) -> int:
        """Append entries for every accepted submission still pending."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT s.tx_ref, s.descriptor_json FROM ledger_submission s
                LEFT JOIN ledger_entry e ON e.tx_ref = s.tx_ref
                LEFT JOIN ledger_rejection r ON r.tx_ref = s.tx_ref
                WHERE e.tx_ref IS NULL AND r.tx_ref IS NULL
                ORDER BY s.submitted_at
            """).fetchall()
            for row in rows:
                self._append_entry(conn, row["tx_ref"], json.loads(row["descriptor_json"]))
            conn.commit()
            return len(rows)
        finally:
            conn.close()

    def _append_entry(self, conn: sqlite3.Connection, tx_ref: str, descriptor: Dict[str, Any]) -> None:
        args = descriptor["args"]
        block_ref = "0x" + hashlib.sha256(f"block:{tx_ref}".encode("utf-8")).hexdigest()[:16]
        conn.execute("""
            INSERT OR IGNORE INTO ledger_entry
            (tx_ref, block_ref, record_id, external_ref, creator, title, description, location,
             start_time, end_time, max_capacity, ticket_price_units, require_approval,
             visibility, timezone, category, tags_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            tx_ref,
            block_ref,
            args.get("record_id"),
            args["external_ref"],
            descriptor["from"],
            args["title"],
            args["description"],
            args["location"],
            int(args["start_time"]),
            int(args["end_time"]),
            int(args["max_capacity"]),
            str(int(args["ticket_price"])),
            1 if args.get("require_approval") else 0,
            args.get("visibility", Visibility.PUBLIC.value),
            args.get("timezone", "UTC"),
            args.get("category"),
            json.dumps(list(args.get("tags") or [])),
            datetime.now().isoformat(),
        ))

    def verify_transaction(self, tx_ref: str) -> VerificationResult:
        try:
            conn = get_connection(self.db_path)
            try:
                entry = conn.execute(
                    "SELECT ledger_id, block_ref FROM ledger_entry WHERE tx_ref = ?", (tx_ref,)
                ).fetchone()
                if entry:
                    return VerificationResult(
                        status=TransactionStatus.SUCCESS,
                        block_ref=entry["block_ref"],
                        ledger_id=str(entry["ledger_id"]),
                    )
                rejected = conn.execute(
                    "SELECT reason FROM ledger_rejection WHERE tx_ref = ?", (tx_ref,)
                ).fetchone()
                if rejected:
                    return VerificationResult(status=TransactionStatus.FAILED)
                return VerificationResult(status=TransactionStatus.PENDING)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Ledger read failed: {e}", "ledger", "verify_transaction") from e

    def _fetch_one(self, where: str, params: tuple, operation: str) -> Optional[Record]:
        try:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    f"SELECT * FROM ledger_entry WHERE {where} ORDER BY ledger_id DESC LIMIT 1", params
                ).fetchone()
                return self._row_to_record(row) if row else None
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Ledger read failed: {e}", "ledger", operation) from e

    def get_by_id(self, ledger_id: str) -> Optional[Record]:
        try:
            key = int(ledger_id)
        except (TypeError, ValueError):
            return None
        return self._fetch_one("ledger_id = ?", (key,), "get_by_id")

    def find_by_external_ref(self, external_ref: str) -> Optional[Record]:
        return self._fetch_one("external_ref = ?", (external_ref,), "find_by_external_ref")

    def find_by_record_id(self, record_id: str) -> Optional[Record]:
        return self._fetch_one("record_id = ?", (record_id,), "find_by_record_id")

    def fund(self, identity: str, amount: str) -> None:
        """Credit an identity; balances are the sum of credits."""
        amount = format_decimal(Decimal(amount))
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO ledger_credit (identity, amount, credited_at) VALUES (?, ?, ?)",
                (identity.lower(), amount, datetime.now().isoformat()),
            )
            conn.commit()
        finally:
            conn.close()

    def get_balance(self, identity: str) -> Decimal:
        try:
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(
                    "SELECT amount FROM ledger_credit WHERE identity = ?", (identity.lower(),)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Ledger read failed: {e}", "ledger", "get_balance") from e
        return sum((Decimal(row["amount"]) for row in rows), Decimal(0))

    def get_network_id(self) -> int:
        return self.network_id

    def list_entries(self, limit: int = 1000) -> List[Record]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM ledger_entry ORDER BY ledger_id LIMIT ?", (limit,)
            ).fetchall()
            return [self._row_to_record(row) for row in rows]
        finally:
            conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Record:
        price = base_units_to_price(int(row["ticket_price_units"]))
        return Record(
            record_id=row["record_id"] or "",
            title=row["title"],
            description=row["description"],
            location=row["location"],
            start_date=datetime.fromtimestamp(row["start_time"], tz=timezone.utc),
            end_date=datetime.fromtimestamp(row["end_time"], tz=timezone.utc),
            max_capacity=row["max_capacity"],
            ticket_price=format_decimal(price),
            creator=row["creator"],
            require_approval=bool(row["require_approval"]),
            visibility=Visibility(row["visibility"]),
            timezone=row["timezone"],
            category=row["category"],
            tags=tuple(json.loads(row["tags_json"])),
            locations=StorageLocations(
                ledger_id=str(row["ledger_id"]),
                ledger_tx=row["tx_ref"],
                media_refs=(row["external_ref"],),
            ),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


class LocalServiceSigner(ServiceSigner):
    """Service-held identity that signs and submits to a SqliteLedgerStore."""

    def __init__(self, ledger: SqliteLedgerStore, identity: str):
        self.ledger = ledger
        self.identity = identity

    def sign_and_submit(self, descriptor: Dict[str, Any]) -> SignedTransaction:
        if descriptor.get("from") != self.identity:
            raise ValidationError("Descriptor was prepared for a different signer", field="signer")
        return self.ledger.submit(descriptor, local_signature(descriptor, self.identity))
