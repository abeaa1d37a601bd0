"""
Compensation execution for saga rollback.

Compensations are plain descriptors ({kind, target, done}) so they can be
persisted with the operation and resumed after a crash. Execution is
strictly reverse-registration order and best-effort: a failing
compensation is logged and the rest still run.
"""

import logging
from dataclasses import replace
from typing import Callable, List, Optional

from ledger_saga.storage.models import Compensation, CompensationKind, OperationState
from ledger_saga.stores.base import CacheStore, MediaStore

logger = logging.getLogger(__name__)


class CompensationRunner:
    """Maps compensation kinds onto store calls."""

    def __init__(self, media: MediaStore, cache: CacheStore):
        self.media = media
        self.cache = cache

    def apply(self, compensation: Compensation) -> None:
        """Run one compensation. Raises whatever the store raises."""
        if compensation.kind is CompensationKind.DELETE_MEDIA:
            self.media.delete(compensation.target)
        elif compensation.kind is CompensationKind.DELETE_CACHE_RECORD:
            self.cache.delete(compensation.target)
        else:
            raise ValueError(f"Unknown compensation kind: {compensation.kind}")

    def rollback(
        self,
        state: OperationState,
        persist: Optional[Callable[[OperationState], None]] = None,
        kinds: Optional[List[CompensationKind]] = None,
    ) -> List[str]:
        """Run pending compensations of state in reverse order.

        Each compensation is attempted once per call; successes are marked
        done so a resumed rollback never repeats them. While any targeted
        compensation is outstanding, state.rollback_kinds stays set and the
        operation shows up as resumable.

        Args:
            state: Operation whose compensations to run
            persist: Called whenever rollback progress changes
            kinds: Only run compensations of these kinds (default: all)

        Returns:
            Error messages of compensations that failed
        """
        state.rollback_kinds = list(kinds) if kinds is not None else list(CompensationKind)
        self._persist(state, persist)

        errors: List[str] = []
        logger.info("Executing rollback for operation %s", state.operation_id)
        for index in range(len(state.compensations) - 1, -1, -1):
            compensation = state.compensations[index]
            if compensation.done or compensation.kind not in state.rollback_kinds:
                continue
            try:
                self.apply(compensation)
            except Exception as exc:
                message = f"{compensation.kind.value}({compensation.target}) failed: {exc}"
                logger.error("Rollback action %d for %s %s", index, state.operation_id, message)
                errors.append(message)
                continue
            state.compensations[index] = replace(compensation, done=True)
            self._persist(state, persist)

        if not errors:
            state.rollback_kinds = []
            self._persist(state, persist)
        return errors

    @staticmethod
    def _persist(state: OperationState, persist: Optional[Callable[[OperationState], None]]) -> None:
        if persist is None:
            return
        try:
            persist(state)
        except Exception as exc:
            logger.error("Could not persist rollback progress for %s: %s", state.operation_id, exc)
