"""
Health and performance monitoring for the three stores.

Aggregates per-store health with worst-of semantics, keeps rolling
latency/error metrics fed by the orchestrator's outcome listener, raises
alerts through pluggable sinks and schedules reconciliation sweeps.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ledger_saga.config.loader import MonitorConfig
from ledger_saga.storage.models import ConsistencyReport, HealthState, HealthStatus, SyncSummary
from .orchestrator import ConsistencyOrchestrator

logger = logging.getLogger(__name__)

STORE_NAMES = ("ledger", "cache", "media")

_SEVERITY = {HealthState.HEALTHY: 0, HealthState.DEGRADED: 1, HealthState.UNHEALTHY: 2}


@dataclass
class StoreMetrics:
    """Rolling performance numbers for one store."""
    avg_response_time_ms: float = 0.0
    operations: int = 0
    errors: int = 0

    @property
    def error_rate_pct(self) -> float:
        if self.operations == 0:
            return 0.0
        return self.errors / self.operations * 100


@dataclass(frozen=True)
class Alert:
    """Threshold breach raised by the monitor."""
    store: str
    kind: str
    message: str
    value: float
    threshold: float
    raised_at: datetime


@dataclass(frozen=True)
class SystemHealth:
    overall: HealthState
    stores: Dict[str, HealthStatus]
    checked_at: datetime
    response_time_ms: float
    last_sweep: Optional[SyncSummary] = None


class LoggingAlertSink:
    """Writes alerts to the log at WARNING level."""

    def __init__(self, logger_name: str = "ledger_saga.alerts"):
        self._logger = logging.getLogger(logger_name)

    def __call__(self, alert: Alert) -> None:
        self._logger.warning(
            "ALERT [%s/%s] %s (value=%.2f threshold=%.2f)",
            alert.store, alert.kind, alert.message, alert.value, alert.threshold,
        )


class CallbackAlertSink:
    """Forwards alerts to an arbitrary callable, e.g. a pager hook."""

    def __init__(self, callback: Callable[[Alert], None]):
        self.callback = callback

    def __call__(self, alert: Alert) -> None:
        self.callback(alert)


class HealthMonitor:
    """System-level view over the orchestrator's stores.

    Metrics are updated from many threads; every read and write of the
    counters goes through a single lock.
    """

    def __init__(
        self,
        orchestrator: ConsistencyOrchestrator,
        config: Optional[MonitorConfig] = None,
        sinks: Optional[Iterable[Callable[[Alert], None]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.config = config or MonitorConfig()
        self.sinks: List[Callable[[Alert], None]] = list(sinks) if sinks is not None else [LoggingAlertSink()]
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics: Dict[str, StoreMetrics] = {name: StoreMetrics() for name in STORE_NAMES}
        self._last_sweep_at: Optional[float] = None
        self._last_sweep: Optional[SyncSummary] = None

        orchestrator.add_outcome_listener(self.record_outcome)

    @staticmethod
    def aggregate_status(statuses: Iterable[HealthState]) -> HealthState:
        """Worst-of: all healthy -> healthy, any unhealthy -> unhealthy, else degraded."""
        worst = HealthState.HEALTHY
        for status in statuses:
            if _SEVERITY[status] > _SEVERITY[worst]:
                worst = status
        return worst

    def system_health(self) -> SystemHealth:
        """Check every store and aggregate. Never raises."""
        started = time.perf_counter()
        stores = self.orchestrator.health_statuses()
        overall = self.aggregate_status(s.status for s in stores.values())
        with self._lock:
            last_sweep = self._last_sweep
        return SystemHealth(
            overall=overall,
            stores=stores,
            checked_at=datetime.now(),
            response_time_ms=(time.perf_counter() - started) * 1000,
            last_sweep=last_sweep,
        )

    def storage_configs(self) -> Dict[str, Dict[str, Any]]:
        return {name: store.get_config() for name, store in self.orchestrator.stores.items()}

    def record_outcome(self, store: str, duration_ms: float, success: bool) -> None:
        """Fold one store call into the rolling metrics and check thresholds.

        Args:
            store: Store name ("ledger", "cache" or "media")
            duration_ms: Wall time of the call
            success: Whether the call completed without raising
        """
        smoothing = self.config.latency_smoothing
        with self._lock:
            metrics = self._metrics.setdefault(store, StoreMetrics())
            if metrics.operations == 0:
                metrics.avg_response_time_ms = duration_ms
            else:
                metrics.avg_response_time_ms += smoothing * (duration_ms - metrics.avg_response_time_ms)
            metrics.operations += 1
            if not success:
                metrics.errors += 1
            avg_ms = metrics.avg_response_time_ms
            error_rate = metrics.error_rate_pct

        if self.config.alerts_enabled:
            self._check_alerts(store, duration_ms, avg_ms, error_rate, success)

    def _check_alerts(
        self, store: str, duration_ms: float, avg_ms: float, error_rate: float, success: bool
    ) -> None:
        if duration_ms > self.config.response_time_threshold_ms:
            self._raise_alert(Alert(
                store=store,
                kind="response_time",
                message=f"{store} call took {duration_ms:.0f}ms (average {avg_ms:.0f}ms)",
                value=duration_ms,
                threshold=self.config.response_time_threshold_ms,
                raised_at=datetime.now(),
            ))
        if not success and error_rate > self.config.error_rate_threshold_pct:
            self._raise_alert(Alert(
                store=store,
                kind="error_rate",
                message=f"{store} error rate at {error_rate:.1f}%",
                value=error_rate,
                threshold=self.config.error_rate_threshold_pct,
                raised_at=datetime.now(),
            ))

    def _raise_alert(self, alert: Alert) -> None:
        for sink in self.sinks:
            try:
                sink(alert)
            except Exception as exc:
                logger.error("Alert sink %r failed: %s", sink, exc)

    def metrics(self) -> Dict[str, StoreMetrics]:
        """Snapshot of per-store metrics plus an "overall" roll-up."""
        with self._lock:
            snapshot = {
                name: StoreMetrics(m.avg_response_time_ms, m.operations, m.errors)
                for name, m in self._metrics.items()
            }
        total_ops = sum(m.operations for m in snapshot.values())
        overall = StoreMetrics(
            avg_response_time_ms=(
                sum(m.avg_response_time_ms * m.operations for m in snapshot.values()) / total_ops
                if total_ops else 0.0
            ),
            operations=total_ops,
            errors=sum(m.errors for m in snapshot.values()),
        )
        snapshot["overall"] = overall
        return snapshot

    def is_sweep_due(self) -> bool:
        with self._lock:
            last = self._last_sweep_at
        if last is None:
            return True
        return (self._clock() - last) / 60 >= self.config.sweep_interval_minutes

    def run_sweep(self) -> SyncSummary:
        """Run sync_all and remember its outcome for system_health()."""
        summary = self.orchestrator.sync_all()
        with self._lock:
            self._last_sweep_at = self._clock()
            self._last_sweep = summary
        if summary.failed:
            logger.warning("Sweep left %d of %d records unsynced", summary.failed, summary.total)
        return summary

    def run_consistency_check(self, limit: int = 1000) -> List[ConsistencyReport]:
        """Read-only consistency reports for up to limit cached records."""
        reports = []
        for record in self.orchestrator.cache.iter_all(batch_size=min(limit, 500)):
            if len(reports) >= limit:
                break
            reports.append(self.orchestrator.check_consistency(record.record_id))
        inconsistent = sum(1 for r in reports if not r.is_consistent)
        if inconsistent:
            logger.warning("%d of %d records inconsistent", inconsistent, len(reports))
        return reports
