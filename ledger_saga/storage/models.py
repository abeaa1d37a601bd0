"""
Data models shared by the stores and the orchestrator.

Defines records, operation state, health snapshots and result summaries.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Visibility(Enum):
    """Listing visibility of a record."""
    PUBLIC = "public"
    PRIVATE = "private"
    UNLISTED = "unlisted"


class HealthState(Enum):
    """Health levels ordered from best to worst."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class TransactionStatus(Enum):
    """Ledger-side status of a submitted transaction."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class OperationPhase(Enum):
    """Phases of a creation attempt.

    prepared -> ledger_verifying -> ledger_confirmed -> cache_written -> consistent,
    or failed at any edge.
    """
    PREPARED = "prepared"
    LEDGER_VERIFYING = "ledger_verifying"
    LEDGER_CONFIRMED = "ledger_confirmed"
    CACHE_WRITTEN = "cache_written"
    CONSISTENT = "consistent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationPhase.CONSISTENT, OperationPhase.FAILED)


class CompensationKind(Enum):
    """Reversal actions the orchestrator knows how to run."""
    DELETE_MEDIA = "delete_media"
    DELETE_CACHE_RECORD = "delete_cache_record"


@dataclass(frozen=True)
class StorageLocations:
    """Where the pieces of a record live."""
    ledger_id: Optional[str] = None
    ledger_tx: Optional[str] = None
    cache_id: Optional[str] = None
    media_refs: Tuple[str, ...] = ()

    @property
    def has_ledger_proof(self) -> bool:
        return bool(self.ledger_id and self.ledger_tx)


@dataclass(frozen=True)
class Record:
    """Canonical record as seen by any of the three stores.

    A record is durable only once its ledger reference exists and is
    confirmed. Cache and media copies are denormalized and must eventually
    match the ledger.
    """
    record_id: str
    title: str
    description: str
    location: str
    start_date: datetime
    end_date: datetime
    max_capacity: int
    ticket_price: str
    creator: str
    slug: str = ""
    require_approval: bool = False
    visibility: Visibility = Visibility.PUBLIC
    timezone: str = "UTC"
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    status: str = "active"
    locations: StorageLocations = field(default_factory=StorageLocations)
    created_at: Optional[datetime] = None

    def with_locations(self, **changes: Any) -> "Record":
        """Return a copy with updated storage locations."""
        return replace(self, locations=replace(self.locations, **changes))


@dataclass(frozen=True)
class CreationInput:
    """Caller request for a new record."""
    title: str
    description: str
    location: str
    start_date: datetime
    end_date: datetime
    max_capacity: int
    ticket_price: str
    signer: str
    require_approval: bool = False
    visibility: Visibility = Visibility.PUBLIC
    timezone: str = "UTC"
    category: Optional[str] = None
    tags: Tuple[str, ...] = ()
    banner: Optional[bytes] = None
    banner_content_type: str = "image/jpeg"
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class MediaRef:
    """Result of a content-addressed upload."""
    uri: str
    content_hash: str
    size: int


@dataclass(frozen=True)
class SignedTransaction:
    """A transaction signed outside this service and handed back to us."""
    tx_ref: str
    signer: str
    signature: str


@dataclass(frozen=True)
class VerificationResult:
    """Ledger answer for a transaction reference."""
    status: TransactionStatus
    block_ref: Optional[str] = None
    ledger_id: Optional[str] = None


@dataclass(frozen=True)
class HealthStatus:
    """Point-in-time health of one store."""
    status: HealthState
    response_time_ms: float
    checked_at: datetime
    detail: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Compensation:
    """Serializable reversal action registered after a successful phase."""
    kind: CompensationKind
    target: str
    done: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "target": self.target, "done": self.done}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Compensation":
        return cls(
            kind=CompensationKind(data["kind"]),
            target=data["target"],
            done=bool(data.get("done", False)),
        )


@dataclass
class OperationState:
    """One creation attempt, persisted by operation id between its two halves."""
    operation_id: str
    record_id: str
    slug: str
    signer: str
    input_fingerprint: str
    phase: OperationPhase = OperationPhase.PREPARED
    idempotency_key: Optional[str] = None
    media_refs: List[str] = field(default_factory=list)
    metadata_uri: Optional[str] = None
    unsigned_transaction: Optional[Dict[str, Any]] = None
    ledger_tx: Optional[str] = None
    ledger_id: Optional[str] = None
    cache_id: Optional[str] = None
    compensations: List[Compensation] = field(default_factory=list)
    rollback_kinds: List[CompensationKind] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def pending_compensations(self) -> List[Compensation]:
        """Compensations of an unfinished rollback."""
        return [
            c for c in self.compensations
            if not c.done and c.kind in self.rollback_kinds
        ]


@dataclass(frozen=True)
class PreparedCreation:
    """First-half result: everything the caller needs to get a signature.

    A replayed idempotency key returns the original preparation with the
    operation's current phase; once that phase is terminal, result holds
    the stored outcome and the transaction must not be signed again.
    """
    operation_id: str
    record_id: str
    slug: str
    unsigned_transaction: Dict[str, Any]
    media_refs: Tuple[str, ...]
    phase: OperationPhase = OperationPhase.PREPARED
    result: Optional["CreationResult"] = None

    @property
    def already_completed(self) -> bool:
        return self.phase.is_terminal


@dataclass(frozen=True)
class CreatedOn:
    ledger: bool = False
    cache: bool = False
    media: bool = False


@dataclass(frozen=True)
class CreationResult:
    """Second-half result, returned even on partial failure."""
    operation_id: str
    record_id: str
    slug: str
    created_on: CreatedOn
    errors: Tuple[str, ...] = ()
    ledger_id: Optional[str] = None
    ledger_tx: Optional[str] = None
    media_refs: Tuple[str, ...] = ()
    retryable: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and self.created_on.ledger and self.created_on.cache


@dataclass(frozen=True)
class ConsistencyReport:
    """Read-only diff of one record across the three stores."""
    record_id: str
    present_in_ledger: bool
    present_in_cache: bool
    present_in_media: bool
    discrepancies: Tuple[str, ...]
    checked_at: datetime

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies


@dataclass
class RepairResult:
    """Outcome of an automated repair attempt."""
    record_id: str
    actions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    manual: List[str] = field(default_factory=list)
    mutations: int = 0

    @property
    def success(self) -> bool:
        return not self.errors and not self.manual


@dataclass
class CleanupSummary:
    processed: int = 0
    removed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class SyncSummary:
    total: int = 0
    synced: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None


@dataclass(frozen=True)
class ListFilters:
    """Filtering, sorting and paging for cache listings."""
    page: int = 1
    limit: int = 20
    sort_by: str = "start_date"
    order: str = "asc"
    category: Optional[str] = None
    location: Optional[str] = None
    search: Optional[str] = None


@dataclass(frozen=True)
class Facets:
    categories: Tuple[str, ...] = ()
    locations: Tuple[str, ...] = ()
    min_price: Optional[str] = None
    max_price: Optional[str] = None


@dataclass(frozen=True)
class RecordPage:
    records: Tuple[Record, ...]
    total: int
    page: int
    limit: int
    facets: Facets = field(default_factory=Facets)

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total
