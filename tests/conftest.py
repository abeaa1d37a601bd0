"""
Shared fixtures: temporary sqlite stores, a local media directory and a
funded signer.
"""

import os
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from ledger_saga.config.loader import HealthConfig, OrchestratorConfig
from ledger_saga.core.orchestrator import ConsistencyOrchestrator
from ledger_saga.storage.models import CreationInput
from ledger_saga.storage.repository import OperationRepository
from ledger_saga.stores import LocalMediaStore, SqliteCacheStore, SqliteLedgerStore, local_signature

SIGNER = "0x" + "a1" * 20
SERVICE_SIGNER = "0x" + "b2" * 20

# Health results are not cached so tests can flip store health.
NO_CACHE = HealthConfig(cache_ttl_s=0)


def make_input(**overrides) -> CreationInput:
    """Valid creation request starting in one hour."""
    start = datetime.now(timezone.utc) + timedelta(hours=1)
    data = CreationInput(
        title="Test",
        description="A test record",
        location="Online",
        start_date=start,
        end_date=start + timedelta(hours=1),
        max_capacity=10,
        ticket_price="0",
        signer=SIGNER,
        category="Technology",
        tags=("demo",),
    )
    return replace(data, **overrides)


def sign(ledger: SqliteLedgerStore, descriptor: dict, signer: str = SIGNER, confirm: bool = True):
    """Sign and broadcast the way a wallet would."""
    return ledger.submit(descriptor, local_signature(descriptor, signer), confirm=confirm)


@pytest.fixture
def workspace():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


@pytest.fixture
def ledger(workspace):
    store = SqliteLedgerStore(os.path.join(workspace, "ledger.db"), health_config=NO_CACHE)
    store.fund(SIGNER, "1.0")
    store.fund(SERVICE_SIGNER, "1.0")
    return store


@pytest.fixture
def cache(workspace):
    return SqliteCacheStore(os.path.join(workspace, "cache.db"), health_config=NO_CACHE)


@pytest.fixture
def media(workspace):
    return LocalMediaStore(os.path.join(workspace, "media"), health_config=NO_CACHE)


@pytest.fixture
def operations(workspace):
    return OperationRepository(os.path.join(workspace, "operations.db"))


@pytest.fixture
def orchestrator_config():
    return OrchestratorConfig(verification_attempts=3, verification_delay_s=0)


@pytest.fixture
def orchestrator(ledger, cache, media, operations, orchestrator_config):
    return ConsistencyOrchestrator(
        ledger=ledger,
        cache=cache,
        media=media,
        operations=operations,
        config=orchestrator_config,
        sleep=lambda seconds: None,
    )
