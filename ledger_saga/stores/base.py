"""
Storage-provider contract and the three store interfaces.

Every store exposes a cached, never-raising health check and a
secret-free diagnostic config. The orchestrator only ever talks to these
interfaces, so concrete stores and test doubles are interchangeable.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ledger_saga.config.loader import HealthConfig
from ledger_saga.core.errors import StorageError
from ledger_saga.core.serialization import canonical_json
from ledger_saga.core.validation import (
    DEFAULT_MAX_CAPACITY,
    DEFAULT_SIGNER_PATTERN,
    validate_ledger_invariants,
)
from ledger_saga.storage.models import (
    CreationInput,
    HealthState,
    HealthStatus,
    ListFilters,
    MediaRef,
    Record,
    RecordPage,
    SignedTransaction,
    VerificationResult,
)

logger = logging.getLogger(__name__)

_probe_pool: Optional[ThreadPoolExecutor] = None
_probe_pool_lock = threading.Lock()


def _get_probe_pool() -> ThreadPoolExecutor:
    global _probe_pool
    if _probe_pool is None:
        with _probe_pool_lock:
            if _probe_pool is None:
                _probe_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="health-probe")
    return _probe_pool


class StorageProvider(ABC):
    """Shared health/config behaviour for every store."""

    name: str = "storage"

    def __init__(
        self,
        health_config: Optional[HealthConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.health_config = health_config or HealthConfig()
        self._clock = clock
        self._health_lock = threading.Lock()
        self._cached_health: Optional[HealthStatus] = None
        self._cached_at: float = 0.0

    @abstractmethod
    def _probe(self) -> Optional[Dict[str, Any]]:
        """Touch the backend once. Raise on failure, optionally return detail."""

    @abstractmethod
    def get_config(self) -> Dict[str, Any]:
        """Diagnostic configuration. Must never contain secrets."""

    def health_check(self) -> HealthStatus:
        """Return the store's health, cached for health_config.cache_ttl_s.

        Never raises. A probe that errors or exceeds the timeout yields
        unhealthy; one slower than degraded_threshold_ms yields degraded.
        """
        with self._health_lock:
            now = self._clock()
            if (
                self._cached_health is not None
                and now - self._cached_at < self.health_config.cache_ttl_s
            ):
                return self._cached_health

            status = self._run_probe()
            self._cached_health = status
            self._cached_at = now
            return status

    def invalidate_health(self) -> None:
        with self._health_lock:
            self._cached_health = None

    def _run_probe(self) -> HealthStatus:
        started = time.perf_counter()
        future = _get_probe_pool().submit(self._probe)
        try:
            detail = future.result(timeout=self.health_config.timeout_s)
        except FutureTimeout:
            future.cancel()
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.warning("%s health probe timed out after %.0fms", self.name, elapsed_ms)
            return HealthStatus(
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms,
                checked_at=datetime.now(),
                detail={"error": f"timed out after {self.health_config.timeout_s}s"},
            )
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.warning("%s health probe failed: %s", self.name, exc)
            return HealthStatus(
                status=HealthState.UNHEALTHY,
                response_time_ms=elapsed_ms,
                checked_at=datetime.now(),
                detail={"error": str(exc)},
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        state = HealthState.HEALTHY
        if elapsed_ms > self.health_config.degraded_threshold_ms:
            state = HealthState.DEGRADED
        return HealthStatus(
            status=state,
            response_time_ms=elapsed_ms,
            checked_at=datetime.now(),
            detail=detail,
        )


class MediaStore(StorageProvider):
    """Write-once, content-addressed blob store."""

    name = "media"

    @abstractmethod
    def upload(self, content: bytes, content_type: str, tags: Optional[Dict[str, str]] = None) -> MediaRef:
        """Store content and return its content-addressed reference.

        Raises:
            UploadError: On transport or auth failure
        """

    def upload_json(self, document: Any, tags: Optional[Dict[str, str]] = None) -> MediaRef:
        return self.upload(canonical_json(document).encode("utf-8"), "application/json", tags)

    def delete(self, uri: str) -> bool:
        """No-op. Content-addressed data is immutable and never reclaimed."""
        logger.debug("media delete requested for %s (no-op)", uri)
        return True

    @abstractmethod
    def resolve_url(self, ref: str) -> str:
        """Public URL for a reference. Pure, performs no I/O."""

    @abstractmethod
    def is_reachable(self, ref: str) -> bool:
        """True if the content behind ref can currently be fetched."""


class LedgerStore(StorageProvider):
    """Authoritative append-only store written through external signatures.

    No update or delete exists; corrections are new entries.
    """

    name = "ledger"

    def __init__(
        self,
        health_config: Optional[HealthConfig] = None,
        signer_pattern: str = DEFAULT_SIGNER_PATTERN,
        max_capacity: int = DEFAULT_MAX_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(health_config, clock)
        self.signer_pattern = signer_pattern
        self.max_capacity = max_capacity

    def prepare_transaction(
        self,
        data: CreationInput,
        external_ref: str,
        signer_identity: str,
        record_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build an unsigned transaction descriptor.

        external_ref points at the metadata in the media store; record_id,
        when given, is embedded so the entry can be found from the cache side.

        Raises:
            ValidationError: Before any network call if an invariant fails
        """
        validate_ledger_invariants(data, signer_identity, self.signer_pattern, self.max_capacity)
        if not external_ref:
            raise StorageError(
                "External reference is required", store=self.name,
                operation="prepare_transaction", code="missing_external_ref",
            )
        return self._build_descriptor(data, external_ref, signer_identity, record_id)

    @abstractmethod
    def _build_descriptor(
        self,
        data: CreationInput,
        external_ref: str,
        signer_identity: str,
        record_id: Optional[str],
    ) -> Dict[str, Any]:
        """Backend-specific unsigned transaction."""

    @abstractmethod
    def verify_transaction(self, tx_ref: str) -> VerificationResult:
        """Status of a submitted transaction. Pending is not an error."""

    @abstractmethod
    def get_by_id(self, ledger_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    def find_by_external_ref(self, external_ref: str) -> Optional[Record]:
        pass

    @abstractmethod
    def find_by_record_id(self, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    def get_balance(self, identity: str):
        """Spendable balance of identity as a Decimal."""

    @abstractmethod
    def get_network_id(self) -> int:
        pass


class CacheStore(StorageProvider):
    """Mutable relational copy used for queries and listing."""

    name = "cache"

    @abstractmethod
    def create(self, record: Record, principal_id: str) -> str:
        """Insert a record and return its cache id."""

    @abstractmethod
    def get(self, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    def update(self, record: Record) -> None:
        pass

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    @abstractmethod
    def list(self, filters: Optional[ListFilters] = None) -> RecordPage:
        pass

    @abstractmethod
    def get_or_create_principal(self, external_id: str) -> str:
        """Idempotent upsert of a principal by external identity."""

    @abstractmethod
    def list_without_ledger_proof(self, grace_period: timedelta) -> List[Record]:
        """Records with no ledger reference created before now - grace_period."""

    def iter_all(self, batch_size: int = 100) -> Iterable[Record]:
        page = 1
        while True:
            result = self.list(ListFilters(page=page, limit=batch_size, sort_by="created_at"))
            yield from result.records
            if not result.has_more:
                return
            page += 1


class ServiceSigner(ABC):
    """Service-held signing capability. Absent unless explicitly configured."""

    identity: str

    @abstractmethod
    def sign_and_submit(self, descriptor: Dict[str, Any]) -> SignedTransaction:
        pass
