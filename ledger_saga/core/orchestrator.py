"""
Consistency orchestrator for the ledger, cache and media stores.

Creation is a saga split around an external signature:

1. prepare_creation: validate, check principal and store health, upload
   metadata to the media store, prepare an unsigned ledger transaction.
2. (the caller gets the transaction signed and broadcast)
3. complete_creation: poll the ledger until the transaction confirms,
   write the cache row with the ledger reference, cross-verify.

Each successful phase registers a compensation; a failing phase rolls
back what was registered, in reverse order. The ledger itself is never
rolled back. Maintenance operations (cleanup_orphans, sync_all) collect
errors instead of raising since they run unattended.
"""

import dataclasses
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from ledger_saga.config.loader import OrchestratorConfig
from ledger_saga.storage.models import (
    Compensation,
    CompensationKind,
    ConsistencyReport,
    CleanupSummary,
    CreatedOn,
    CreationInput,
    CreationResult,
    HealthState,
    HealthStatus,
    ListFilters,
    OperationPhase,
    OperationState,
    PreparedCreation,
    Record,
    RecordPage,
    RepairResult,
    SignedTransaction,
    StorageLocations,
    SyncSummary,
    TransactionStatus,
    VerificationResult,
)
from ledger_saga.storage.repository import OperationRepository
from ledger_saga.stores.base import CacheStore, LedgerStore, MediaStore, ServiceSigner, StorageProvider
from .compensation import CompensationRunner
from .errors import ConsistencyError, StorageError, ValidationError
from .serialization import fingerprint, to_serializable
from .validation import make_slug, validate_creation_input

logger = logging.getLogger(__name__)

OutcomeListener = Callable[[str, float, bool], None]

METADATA_VERSION = "2.0"
PENDING_VERIFICATION_STATUS = "verification_pending"

_RECORD_FIELDS = {f.name for f in dataclasses.fields(Record)}


def _normalize(field_name: str, value: Any) -> Any:
    """Comparable form of a record field across stores."""
    if value is None:
        return None
    if field_name == "ticket_price":
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return value


def _input_fingerprint(data: CreationInput) -> str:
    payload = to_serializable(replace(data, banner=None))
    payload["banner"] = fingerprint(data.banner.hex()) if data.banner else None
    return fingerprint(payload)


class ConsistencyOrchestrator:
    """Drives phased creation, rollback, verification, repair and cleanup.

    Stores are injected; the orchestrator never constructs clients and
    never holds a signing key unless a ServiceSigner is explicitly given.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        cache: CacheStore,
        media: MediaStore,
        operations: OperationRepository,
        config: Optional[OrchestratorConfig] = None,
        signer: Optional[ServiceSigner] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.cache = cache
        self.media = media
        self.operations = operations
        self.config = config or OrchestratorConfig()
        self.signer = signer
        self._sleep = sleep
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._listeners: List[OutcomeListener] = []
        self._compensations = CompensationRunner(media, cache)

        unknown = set(self.config.critical_fields) - _RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown critical fields: {sorted(unknown)}")

    @property
    def stores(self) -> Dict[str, StorageProvider]:
        return {"ledger": self.ledger, "cache": self.cache, "media": self.media}

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        """Register a callback receiving (store, duration_ms, success) per store call."""
        self._listeners.append(listener)

    def _timed(self, store: str, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        started = time.perf_counter()
        success = False
        try:
            result = fn(*args, **kwargs)
            success = True
            return result
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            for listener in self._listeners:
                try:
                    listener(store, duration_ms, success)
                except Exception as exc:
                    logger.warning("Outcome listener failed: %s", exc)

    # ------------------------------------------------------------------
    # Creation, first half
    # ------------------------------------------------------------------

    def prepare_creation(self, data: CreationInput) -> PreparedCreation:
        """Validate, upload media and prepare the unsigned ledger transaction.

        Args:
            data: The creation request

        Returns:
            Operation id, record id, slug, unsigned transaction and media refs

        Raises:
            ValidationError: Bad input or an unfit principal
            StorageError: A store is unhealthy or a phase failed; every
                compensation registered so far has run before this surfaces
        """
        validate_creation_input(
            data,
            signer_pattern=self.config.signer_pattern,
            max_capacity=self.config.max_capacity,
            now=self._now(),
        )

        if data.idempotency_key:
            existing = self.operations.find_by_idempotency_key(data.idempotency_key)
            if existing is not None:
                return self._replay_prepared(existing)

        state = OperationState(
            operation_id=str(uuid.uuid4()),
            record_id=str(uuid.uuid4()),
            slug=make_slug(data.title),
            signer=data.signer,
            input_fingerprint=_input_fingerprint(data),
            idempotency_key=data.idempotency_key,
        )
        if not self.operations.insert(state):
            # Lost the race for the idempotency key to a concurrent attempt.
            return self._replay_prepared(self.operations.find_by_idempotency_key(data.idempotency_key))

        try:
            self._validate_principal(data.signer)
            self._require_healthy_stores()
            self._upload_media(data, state)
            descriptor = self._prepare_ledger_transaction(data, state)
        except Exception as exc:
            self._fail_preparation(state, exc)
            raise

        state.unsigned_transaction = to_serializable(descriptor)
        prepared = PreparedCreation(
            operation_id=state.operation_id,
            record_id=state.record_id,
            slug=state.slug,
            unsigned_transaction=state.unsigned_transaction,
            media_refs=tuple(state.media_refs),
        )
        self.operations.save(state)
        logger.info("Prepared operation %s for record %s", state.operation_id, state.record_id)
        return prepared

    def _replay_prepared(self, state: Optional[OperationState]) -> PreparedCreation:
        if state is None or state.unsigned_transaction is None:
            raise ValidationError(
                "An operation with this idempotency key is already in progress", field="idempotency_key"
            )
        logger.info(
            "Idempotency key replay for operation %s (%s)", state.operation_id, state.phase.value
        )
        return PreparedCreation(
            operation_id=state.operation_id,
            record_id=state.record_id,
            slug=state.slug,
            unsigned_transaction=state.unsigned_transaction,
            media_refs=tuple(state.media_refs),
            phase=state.phase,
            result=self._result_from_dict(state.result) if state.result else None,
        )

    def _validate_principal(self, signer: str) -> None:
        balance = self._timed("ledger", self.ledger.get_balance, signer)
        if balance < self.config.min_principal_balance:
            raise ValidationError(
                f"Insufficient balance for ledger fees: {balance} < {self.config.min_principal_balance}",
                field="signer",
            )
        network_id = self._timed("ledger", self.ledger.get_network_id)
        if network_id not in self.config.allowed_networks:
            raise ValidationError(
                f"Ledger network {network_id} is not one of {list(self.config.allowed_networks)}",
                field="signer",
            )

    def health_statuses(self) -> Dict[str, HealthStatus]:
        return {name: store.health_check() for name, store in self.stores.items()}

    def _require_healthy_stores(self) -> None:
        unhealthy = [
            name for name, status in self.health_statuses().items()
            if status.status is HealthState.UNHEALTHY
        ]
        if unhealthy:
            raise StorageError(
                f"{unhealthy[0]} is unhealthy", store=unhealthy[0],
                operation="health_check", code="unhealthy",
            )

    def _upload_media(self, data: CreationInput, state: OperationState) -> None:
        metadata = {
            "record_id": state.record_id,
            "title": data.title,
            "description": data.description,
            "location": data.location,
            "start_date": data.start_date,
            "end_date": data.end_date,
            "max_capacity": data.max_capacity,
            "ticket_price": data.ticket_price,
            "require_approval": data.require_approval,
            "visibility": data.visibility,
            "timezone": data.timezone,
            "category": data.category,
            "tags": list(data.tags),
            "creator": data.signer,
            "version": METADATA_VERSION,
        }
        tags = {"record_id": state.record_id, "kind": "metadata"}
        ref = self._guard_media("upload_metadata", self.media.upload_json, metadata, tags)
        self._register_media(state, ref.uri)
        state.metadata_uri = ref.uri
        self.operations.save(state)

        if data.banner:
            tags = {"record_id": state.record_id, "kind": "banner"}
            ref = self._guard_media(
                "upload_banner", self.media.upload, data.banner, data.banner_content_type, tags
            )
            self._register_media(state, ref.uri)
            self.operations.save(state)

    def _guard_media(self, operation: str, fn: Callable, *args: Any) -> Any:
        try:
            return self._timed("media", fn, *args)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Media phase failed: {exc}", "media", operation) from exc

    @staticmethod
    def _register_media(state: OperationState, uri: str) -> None:
        state.media_refs.append(uri)
        state.compensations.append(Compensation(CompensationKind.DELETE_MEDIA, uri))

    def _prepare_ledger_transaction(self, data: CreationInput, state: OperationState) -> Dict[str, Any]:
        try:
            return self._timed(
                "ledger", self.ledger.prepare_transaction,
                data, state.metadata_uri, data.signer, record_id=state.record_id,
            )
        except (ValidationError, StorageError):
            raise
        except Exception as exc:
            raise StorageError(
                f"Transaction preparation failed: {exc}", "ledger", "prepare_transaction"
            ) from exc

    def _fail_preparation(self, state: OperationState, exc: Exception) -> None:
        errors = self._compensations.rollback(state, persist=self.operations.save)
        state.phase = OperationPhase.FAILED
        state.error = str(exc)
        if errors:
            state.error += " | rollback errors: " + "; ".join(errors)
        # Free the key so the caller can retry the same intent.
        state.idempotency_key = None
        self.operations.save(state)
        logger.warning("Preparation of %s failed: %s", state.operation_id, exc)

    # ------------------------------------------------------------------
    # Creation, second half
    # ------------------------------------------------------------------

    def complete_creation(
        self,
        data: CreationInput,
        signed_transaction: SignedTransaction,
        operation_id: str,
    ) -> CreationResult:
        """Confirm the signed transaction, write the cache row and cross-verify.

        Safe to call again with the same signed transaction after a
        retryable result; finished operations return their stored result.

        Args:
            data: The same creation request given to prepare_creation
            signed_transaction: Reference to the signed, broadcast transaction
            operation_id: Id returned by prepare_creation

        Returns:
            CreationResult describing which stores hold the record

        Raises:
            ValidationError: Unknown operation, or input/signer/transaction
                that does not belong to it
        """
        state = self.operations.get(operation_id)
        if state is None:
            raise ValidationError(f"Unknown operation {operation_id}", field="operation_id")
        if state.input_fingerprint != _input_fingerprint(data):
            raise ValidationError("Input does not match the prepared operation", field="input")
        if signed_transaction.signer.lower() != state.signer.lower():
            raise ValidationError("Transaction was signed by a different principal", field="signer")
        if state.phase.is_terminal and state.result is not None:
            return self._result_from_dict(state.result)
        if state.phase is OperationPhase.FAILED:
            raise ValidationError(f"Operation {operation_id} failed during preparation: {state.error}")
        if state.ledger_tx and state.ledger_tx != signed_transaction.tx_ref:
            raise ValidationError(
                "Retries must use the originally submitted transaction", field="signed_transaction"
            )

        errors: List[str] = []
        retryable = False
        try:
            if state.phase in (OperationPhase.PREPARED, OperationPhase.LEDGER_VERIFYING):
                self._verify_ledger(state, signed_transaction)
            if state.phase is OperationPhase.LEDGER_CONFIRMED:
                self._write_cache(data, state)
            if state.phase is OperationPhase.CACHE_WRITTEN:
                self._cross_verify(state)
                state.phase = OperationPhase.CONSISTENT
        except StorageError as exc:
            errors.append(str(exc))
            retryable = self._handle_completion_storage_error(state, exc)
        except ConsistencyError as exc:
            errors.append(str(exc))
            retryable = True
            self._rollback_cache(state)
            logger.error("Cross-verification failed for %s: %s", state.record_id, exc)

        result = self._build_result(state, errors, retryable)
        if state.phase.is_terminal:
            state.result = to_serializable(result)
        state.error = errors[0] if errors else None
        self.operations.save(state)
        return result

    def _verify_ledger(self, state: OperationState, signed: SignedTransaction) -> None:
        state.ledger_tx = signed.tx_ref
        state.phase = OperationPhase.LEDGER_VERIFYING
        self.operations.save(state)

        verification = self._await_confirmation(signed.tx_ref)
        state.ledger_id = verification.ledger_id
        state.phase = OperationPhase.LEDGER_CONFIRMED
        self.operations.save(state)
        logger.info("Ledger confirmed %s as entry %s", signed.tx_ref, state.ledger_id)

    def _await_confirmation(self, tx_ref: str) -> VerificationResult:
        """Poll verify_transaction with bounded retries.

        Raises:
            StorageError: code "transaction_failed" if the ledger rejected
                the transaction, "confirmation_timeout" if it never settled
        """
        attempts = self.config.verification_attempts
        for attempt in range(1, attempts + 1):
            try:
                result = self._timed("ledger", self.ledger.verify_transaction, tx_ref)
            except StorageError as exc:
                logger.warning("Transaction confirmation attempt %d failed: %s", attempt, exc)
            else:
                if result.status is TransactionStatus.SUCCESS:
                    if not result.ledger_id:
                        raise StorageError(
                            "Ledger confirmed the transaction without an entry id",
                            "ledger", "verify_transaction", code="missing_ledger_id",
                        )
                    return result
                if result.status is TransactionStatus.FAILED:
                    raise StorageError(
                        "Transaction failed on ledger", "ledger", "verify_transaction",
                        code="transaction_failed",
                    )
            if attempt < attempts:
                self._sleep(self.config.verification_delay_s)
        raise StorageError(
            f"Transaction confirmation timeout after {attempts} attempts",
            "ledger", "verify_transaction", code="confirmation_timeout",
        )

    def _handle_completion_storage_error(self, state: OperationState, exc: StorageError) -> bool:
        """Move state to where a retry can resume. Returns True if retryable."""
        if exc.code == "transaction_failed":
            self._rollback_cache(state)
            state.phase = OperationPhase.FAILED
            logger.error("Ledger rejected transaction %s for %s", state.ledger_tx, state.record_id)
            return False
        if exc.code == "confirmation_timeout":
            logger.warning("Ledger still pending for %s; retry with the same transaction", state.ledger_tx)
            return True
        self._rollback_cache(state)
        if state.ledger_id:
            state.phase = OperationPhase.LEDGER_CONFIRMED
        logger.error("Completion of %s failed: %s", state.operation_id, exc)
        return True

    def _write_cache(self, data: CreationInput, state: OperationState) -> None:
        record = Record(
            record_id=state.record_id,
            slug=state.slug,
            title=data.title,
            description=data.description,
            location=data.location,
            start_date=data.start_date,
            end_date=data.end_date,
            max_capacity=data.max_capacity,
            ticket_price=data.ticket_price,
            creator=state.signer,
            require_approval=data.require_approval,
            visibility=data.visibility,
            timezone=data.timezone,
            category=data.category,
            tags=tuple(data.tags),
            locations=StorageLocations(
                ledger_id=state.ledger_id,
                ledger_tx=state.ledger_tx,
                cache_id=state.record_id,
                media_refs=tuple(state.media_refs),
            ),
        )
        try:
            principal_id = self._timed("cache", self.cache.get_or_create_principal, state.signer)
            if self._timed("cache", self.cache.get, state.record_id) is not None:
                self._timed("cache", self.cache.update, record)
            else:
                self._timed("cache", self.cache.create, record, principal_id)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"Cache phase failed: {exc}", "cache", "create") from exc

        state.cache_id = state.record_id
        state.compensations.append(Compensation(CompensationKind.DELETE_CACHE_RECORD, state.record_id))
        state.phase = OperationPhase.CACHE_WRITTEN
        self.operations.save(state)

    def _cross_verify(self, state: OperationState) -> None:
        ledger_record = self._timed("ledger", self.ledger.get_by_id, state.ledger_id)
        cache_record = self._timed("cache", self.cache.get, state.record_id)
        discrepancies: List[str] = []
        if ledger_record is None:
            discrepancies.append("Record not found on ledger after creation")
        if cache_record is None:
            discrepancies.append("Record not found in cache after creation")
        if ledger_record is not None and cache_record is not None:
            discrepancies.extend(self._field_mismatches(ledger_record, cache_record))
        discrepancies.extend(self._unreachable_media(state.media_refs))
        if discrepancies:
            raise ConsistencyError(state.record_id, discrepancies)

    def _rollback_cache(self, state: OperationState) -> None:
        errors = self._compensations.rollback(
            state, persist=self.operations.save, kinds=[CompensationKind.DELETE_CACHE_RECORD]
        )
        if not errors and state.cache_id:
            state.cache_id = None
            if state.phase is OperationPhase.CACHE_WRITTEN:
                state.phase = OperationPhase.LEDGER_CONFIRMED

    @staticmethod
    def _build_result(state: OperationState, errors: List[str], retryable: bool) -> CreationResult:
        return CreationResult(
            operation_id=state.operation_id,
            record_id=state.record_id,
            slug=state.slug,
            created_on=CreatedOn(
                ledger=state.ledger_id is not None,
                cache=state.cache_id is not None,
                media=bool(state.media_refs),
            ),
            errors=tuple(errors),
            ledger_id=state.ledger_id,
            ledger_tx=state.ledger_tx,
            media_refs=tuple(state.media_refs),
            retryable=retryable,
        )

    @staticmethod
    def _result_from_dict(data: Dict[str, Any]) -> CreationResult:
        return CreationResult(
            operation_id=data["operation_id"],
            record_id=data["record_id"],
            slug=data["slug"],
            created_on=CreatedOn(**data["created_on"]),
            errors=tuple(data.get("errors") or ()),
            ledger_id=data.get("ledger_id"),
            ledger_tx=data.get("ledger_tx"),
            media_refs=tuple(data.get("media_refs") or ()),
            retryable=bool(data.get("retryable")),
        )

    def resume_rollbacks(self) -> CleanupSummary:
        """Finish rollbacks interrupted by a crash or a failing compensation. Never raises."""
        summary = CleanupSummary()
        try:
            pending = self.operations.list_with_pending_compensations()
        except Exception as exc:
            summary.errors.append(f"Could not list pending rollbacks: {exc}")
            return summary
        for state in pending:
            summary.processed += 1
            errors = self._compensations.rollback(
                state, persist=self.operations.save, kinds=list(state.rollback_kinds)
            )
            if errors:
                summary.errors.extend(f"{state.operation_id}: {e}" for e in errors)
            else:
                summary.removed += 1
        return summary

    # ------------------------------------------------------------------
    # Verification helpers
    # ------------------------------------------------------------------

    def _field_mismatches(self, ledger_record: Record, cache_record: Record) -> List[str]:
        mismatches = []
        for name in self.config.critical_fields:
            ledger_value = getattr(ledger_record, name)
            cache_value = getattr(cache_record, name)
            if _normalize(name, ledger_value) != _normalize(name, cache_value):
                mismatches.append(
                    f"{name} mismatch between ledger ({ledger_value!r}) and cache ({cache_value!r})"
                )
        return mismatches

    def _unreachable_media(self, refs: Any) -> List[str]:
        problems = []
        for ref in refs:
            try:
                reachable = self._timed("media", self.media.is_reachable, ref)
            except Exception as exc:
                problems.append(f"Media {ref} check failed: {exc}")
                continue
            if not reachable:
                problems.append(f"Media {ref} not reachable")
        return problems

    def _locate_ledger_record(self, record_id: str, cache_record: Optional[Record]) -> Optional[Record]:
        if cache_record is not None and cache_record.locations.ledger_id:
            return self._timed("ledger", self.ledger.get_by_id, cache_record.locations.ledger_id)
        return self._timed("ledger", self.ledger.find_by_record_id, record_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def check_consistency(self, record_id: str) -> ConsistencyReport:
        """Read-only diff of one record across the three stores."""
        discrepancies: List[str] = []

        cache_record: Optional[Record] = None
        try:
            cache_record = self._timed("cache", self.cache.get, record_id)
        except StorageError as exc:
            discrepancies.append(f"Cache read failed: {exc}")
        if cache_record is None and not discrepancies:
            discrepancies.append("Record not found in cache")

        ledger_record: Optional[Record] = None
        try:
            ledger_record = self._locate_ledger_record(record_id, cache_record)
        except StorageError as exc:
            discrepancies.append(f"Ledger read failed: {exc}")
        else:
            if cache_record is not None and not cache_record.locations.has_ledger_proof:
                discrepancies.append("No ledger reference in cache")
            if ledger_record is None:
                discrepancies.append("Record not found on ledger")

        if cache_record is not None and ledger_record is not None:
            discrepancies.extend(self._field_mismatches(ledger_record, cache_record))
            if (
                cache_record.locations.has_ledger_proof
                and cache_record.locations.ledger_tx != ledger_record.locations.ledger_tx
            ):
                discrepancies.append("Ledger transaction reference mismatch")

        source = cache_record or ledger_record
        media_refs: Tuple[str, ...] = source.locations.media_refs if source else ()
        media_problems = self._unreachable_media(media_refs)
        if source is not None and not media_refs:
            media_problems.append("No media reference recorded")
        discrepancies.extend(media_problems)

        return ConsistencyReport(
            record_id=record_id,
            present_in_ledger=ledger_record is not None,
            present_in_cache=cache_record is not None,
            present_in_media=bool(media_refs) and not media_problems,
            discrepancies=tuple(discrepancies),
            checked_at=self._now(),
        )

    def repair_consistency(self, record_id: str) -> RepairResult:
        """Attempt automated repair; report what worked and what needs a human.

        The ledger is the source of truth: cache rows are restored from it,
        never the other way round. A missing ledger entry is only recreated
        when a ServiceSigner is configured.
        """
        result = RepairResult(record_id=record_id)
        report = self.check_consistency(record_id)
        if report.is_consistent:
            result.actions.append("Record already consistent")
            return result

        try:
            cache_record = self._timed("cache", self.cache.get, record_id)
            ledger_record = self._locate_ledger_record(record_id, cache_record)

            if cache_record is None:
                if ledger_record is None:
                    result.manual.append("Record missing from both cache and ledger")
                    return result
                self._recreate_cache_row(record_id, ledger_record, result)
                cache_record = self._timed("cache", self.cache.get, record_id)
            elif ledger_record is None:
                ledger_record = self._recreate_ledger_entry(cache_record, result)
            else:
                self._restore_cache_from_ledger(cache_record, ledger_record, result)
        except (StorageError, ValidationError) as exc:
            result.errors.append(f"Consistency repair failed: {exc}")
            return result

        refs = (cache_record or ledger_record).locations.media_refs if (cache_record or ledger_record) else ()
        for problem in self._unreachable_media(refs):
            result.manual.append(f"{problem}; content must be re-uploaded by its owner")

        logger.info(
            "Repair of %s: %d mutation(s), %d error(s), %d manual item(s)",
            record_id, result.mutations, len(result.errors), len(result.manual),
        )
        return result

    def _recreate_cache_row(self, record_id: str, ledger_record: Record, result: RepairResult) -> None:
        record = replace(
            ledger_record,
            record_id=record_id,
            slug=make_slug(ledger_record.title),
            locations=replace(ledger_record.locations, cache_id=record_id),
            created_at=None,
        )
        principal_id = self._timed("cache", self.cache.get_or_create_principal, ledger_record.creator)
        self._timed("cache", self.cache.create, record, principal_id)
        result.mutations += 1
        result.actions.append("Recreated cache record from ledger")

    def _restore_cache_from_ledger(
        self, cache_record: Record, ledger_record: Record, result: RepairResult
    ) -> None:
        changes: Dict[str, Any] = {}
        for name in self.config.critical_fields:
            if _normalize(name, getattr(ledger_record, name)) != _normalize(name, getattr(cache_record, name)):
                changes[name] = getattr(ledger_record, name)

        locations = cache_record.locations
        if (
            locations.ledger_id != ledger_record.locations.ledger_id
            or locations.ledger_tx != ledger_record.locations.ledger_tx
        ):
            locations = replace(
                locations,
                ledger_id=ledger_record.locations.ledger_id,
                ledger_tx=ledger_record.locations.ledger_tx,
            )

        if not changes and locations == cache_record.locations:
            result.actions.append("Ledger record verified")
            return

        updated = replace(cache_record, locations=locations, **changes)
        self._timed("cache", self.cache.update, updated)
        result.mutations += 1
        if changes:
            result.actions.append("Restored cache fields from ledger: " + ", ".join(sorted(changes)))
        if locations != cache_record.locations:
            result.actions.append("Backfilled ledger reference in cache")

    def _recreate_ledger_entry(self, cache_record: Record, result: RepairResult) -> Optional[Record]:
        if self.signer is None:
            result.manual.append(
                "Record not found on ledger; no service signer configured, creator must re-sign"
            )
            return None
        if not cache_record.locations.media_refs:
            result.manual.append("Record not found on ledger and has no metadata reference to anchor it")
            return None

        data = CreationInput(
            title=cache_record.title,
            description=cache_record.description,
            location=cache_record.location,
            start_date=cache_record.start_date,
            end_date=cache_record.end_date,
            max_capacity=cache_record.max_capacity,
            ticket_price=cache_record.ticket_price,
            signer=self.signer.identity,
            require_approval=cache_record.require_approval,
            visibility=cache_record.visibility,
            timezone=cache_record.timezone,
            category=cache_record.category,
            tags=cache_record.tags,
        )
        descriptor = self._timed(
            "ledger", self.ledger.prepare_transaction,
            data, cache_record.locations.media_refs[0], self.signer.identity,
            record_id=cache_record.record_id,
        )
        signed = self.signer.sign_and_submit(to_serializable(descriptor))
        try:
            verification = self._await_confirmation(signed.tx_ref)
        except StorageError as exc:
            result.errors.append(f"Failed to recreate on ledger: {exc}")
            return None

        updated = cache_record.with_locations(ledger_id=verification.ledger_id, ledger_tx=signed.tx_ref)
        self._timed("cache", self.cache.update, updated)
        result.mutations += 1
        result.actions.append("Recreated record on ledger and updated cache")
        return self._timed("ledger", self.ledger.get_by_id, verification.ledger_id)

    def cleanup_orphans(self) -> CleanupSummary:
        """Delete cache records with no ledger proof past the grace period. Never raises."""
        summary = CleanupSummary()
        grace = timedelta(minutes=self.config.orphan_grace_period_minutes)
        try:
            orphans = self._timed("cache", self.cache.list_without_ledger_proof, grace)
        except Exception as exc:
            logger.error("Failed to list orphaned records: %s", exc)
            summary.errors.append(f"Failed to list orphaned records: {exc}")
            return summary

        for record in orphans:
            summary.processed += 1
            try:
                logger.info("Cleaning up orphaned record %s", record.record_id)
                self._timed("cache", self.cache.delete, record.record_id)
                for ref in record.locations.media_refs:
                    self.media.delete(ref)
                summary.removed += 1
            except Exception as exc:
                logger.error("Failed to clean up orphan %s: %s", record.record_id, exc)
                summary.errors.append(f"{record.record_id}: {exc}")

        logger.info("Cleaned up %d of %d orphaned records", summary.removed, summary.processed)
        return summary

    def sync_all(self) -> SyncSummary:
        """check_consistency + repair_consistency over every known record. Never raises.

        Covers every cache record plus operations whose ledger write
        landed but whose cache row is missing. Both sets are read in pages
        of sync_batch_size.
        """
        summary = SyncSummary()
        batch_size = self.config.sync_batch_size
        try:
            record_ids = [r.record_id for r in self.cache.iter_all(batch_size=batch_size)]
            seen = set(record_ids)
            for state in self.operations.iter_operations(
                OperationPhase.LEDGER_CONFIRMED, batch_size=batch_size
            ):
                if state.record_id not in seen:
                    record_ids.append(state.record_id)
                    seen.add(state.record_id)
        except Exception as exc:
            logger.error("Sync could not enumerate records: %s", exc)
            summary.failed = 1
            summary.errors.append(str(exc))
            summary.finished_at = self._now()
            return summary

        for record_id in record_ids:
            summary.total += 1
            try:
                report = self.check_consistency(record_id)
                if report.is_consistent:
                    summary.synced += 1
                    continue
                repair = self.repair_consistency(record_id)
                if repair.success:
                    summary.synced += 1
                else:
                    summary.failed += 1
                    summary.errors.append(
                        f"Failed to sync record {record_id}: " + ", ".join(repair.errors + repair.manual)
                    )
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"Failed to sync record {record_id}: {exc}")

        summary.finished_at = self._now()
        logger.info("Sync finished: %d/%d synced, %d failed", summary.synced, summary.total, summary.failed)
        return summary

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[Record]:
        """Cache-first read, flagged verification_pending if the ledger disagrees."""
        record = self._timed("cache", self.cache.get, record_id)
        if record is None:
            return self._timed("ledger", self.ledger.find_by_record_id, record_id)
        return self._verified(record)

    def list_records(self, filters: Optional[ListFilters] = None) -> RecordPage:
        page = self._timed("cache", self.cache.list, filters)
        return replace(page, records=tuple(self._verified(r) for r in page.records))

    def _verified(self, record: Record) -> Record:
        if not record.locations.ledger_id:
            return record
        try:
            confirmed = self._timed("ledger", self.ledger.get_by_id, record.locations.ledger_id) is not None
        except StorageError as exc:
            logger.warning("Ledger verification of %s failed: %s", record.record_id, exc)
            confirmed = False
        return record if confirmed else replace(record, status=PENDING_VERIFICATION_STATUS)
