"""
Wiring of concrete stores, the orchestrator and the monitor from Settings.
"""

import logging
import os
from typing import Optional

from ledger_saga.config.loader import MediaBackend, Settings
from ledger_saga.core.monitor import HealthMonitor
from ledger_saga.core.orchestrator import ConsistencyOrchestrator
from ledger_saga.storage.repository import OperationRepository
from ledger_saga.stores import (
    KuboMediaStore,
    LocalMediaStore,
    MediaStore,
    ServiceSigner,
    SqliteCacheStore,
    SqliteLedgerStore,
)

logger = logging.getLogger(__name__)

MEDIA_TOKEN_ENV = "LEDGER_SAGA_MEDIA_TOKEN"


def build_media_store(settings: Settings) -> MediaStore:
    media = settings.stores.media
    if media.backend is MediaBackend.KUBO:
        return KuboMediaStore(
            api_url=media.api_url,
            gateway_url=media.gateway_url,
            health_config=settings.health,
            api_token=os.environ.get(MEDIA_TOKEN_ENV),
        )
    return LocalMediaStore(media.directory, health_config=settings.health)


def build_orchestrator(
    settings: Settings,
    signer: Optional[ServiceSigner] = None,
) -> ConsistencyOrchestrator:
    """Create every store named in settings and inject them into an orchestrator.

    Args:
        settings: Loaded configuration
        signer: Optional service-held signer used by repair to recreate
            missing ledger entries

    Returns:
        A ready ConsistencyOrchestrator
    """
    stores = settings.stores
    ledger = SqliteLedgerStore(
        stores.ledger_db_path,
        network_id=stores.network_id,
        health_config=settings.health,
        signer_pattern=settings.orchestrator.signer_pattern,
        max_capacity=settings.orchestrator.max_capacity,
    )
    cache = SqliteCacheStore(stores.cache_db_path, health_config=settings.health)
    media = build_media_store(settings)
    operations = OperationRepository(stores.operations_db_path)
    logger.debug("Stores wired: %s", {"ledger": ledger.get_config(), "cache": cache.get_config()})
    return ConsistencyOrchestrator(
        ledger=ledger,
        cache=cache,
        media=media,
        operations=operations,
        config=settings.orchestrator,
        signer=signer,
    )


def build_monitor(settings: Settings, orchestrator: Optional[ConsistencyOrchestrator] = None) -> HealthMonitor:
    orchestrator = orchestrator or build_orchestrator(settings)
    return HealthMonitor(orchestrator, config=settings.monitor)
