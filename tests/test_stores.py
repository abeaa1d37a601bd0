"""
Unit tests for the concrete stores.

Tests the sqlite cache and ledger, the local media directory, the Kubo
adapter against mocked HTTP endpoints and the shared health-check contract.
"""

import time
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest
import respx
from httpx import Response

from ledger_saga.config.loader import HealthConfig
from ledger_saga.core.errors import StorageError, UploadError, ValidationError
from ledger_saga.storage.models import (
    HealthState,
    ListFilters,
    Record,
    StorageLocations,
    TransactionStatus,
)
from ledger_saga.stores import KuboMediaStore, LocalMediaStore, StorageProvider, local_signature
from ledger_saga.stores.media import content_id

from conftest import SIGNER, make_input, sign


def _record(record_id, title="Record", price="1", category=None, location="Online", **locations):
    start = datetime(2030, 6, 1, 18, 0)
    return Record(
        record_id=record_id,
        slug=record_id,
        title=title,
        description=f"{title} description",
        location=location,
        start_date=start,
        end_date=start + timedelta(hours=3),
        max_capacity=50,
        ticket_price=price,
        creator=SIGNER,
        category=category,
        locations=StorageLocations(**locations),
    )


class CountingProvider(StorageProvider):
    """Provider whose probe behaviour is set per test."""

    name = "counting"

    def __init__(self, health_config, clock=time.monotonic, delay=0.0, error=None):
        super().__init__(health_config, clock)
        self.calls = 0
        self.delay = delay
        self.error = error

    def _probe(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return {"calls": self.calls}

    def get_config(self):
        return {}


class TestHealthCheck:
    """Test the cached, never-raising health check."""

    def test_result_is_cached_within_ttl(self):
        now = [100.0]
        provider = CountingProvider(HealthConfig(cache_ttl_s=30), clock=lambda: now[0])

        first = provider.health_check()
        now[0] += 29
        second = provider.health_check()
        now[0] += 2
        third = provider.health_check()

        assert first is second
        assert third is not first
        assert provider.calls == 2

    def test_probe_error_is_unhealthy(self):
        provider = CountingProvider(HealthConfig(cache_ttl_s=0), error=ConnectionError("refused"))

        status = provider.health_check()

        assert status.status == HealthState.UNHEALTHY
        assert "refused" in status.detail["error"]

    def test_probe_timeout_is_unhealthy(self):
        provider = CountingProvider(HealthConfig(cache_ttl_s=0, timeout_s=0.05), delay=0.5)

        status = provider.health_check()

        assert status.status == HealthState.UNHEALTHY
        assert "timed out" in status.detail["error"]

    def test_slow_probe_is_degraded(self):
        provider = CountingProvider(HealthConfig(cache_ttl_s=0, degraded_threshold_ms=1), delay=0.05)

        assert provider.health_check().status == HealthState.DEGRADED

    def test_invalidate_forces_new_probe(self):
        provider = CountingProvider(HealthConfig(cache_ttl_s=60))
        provider.health_check()
        provider.invalidate_health()
        provider.health_check()

        assert provider.calls == 2


class TestSqliteCacheStore:
    """Test cache CRUD, listing and orphan queries."""

    def test_create_get_update_delete(self, cache):
        principal = cache.get_or_create_principal(SIGNER)
        cache.create(_record("r1", title="First"), principal)

        fetched = cache.get("r1")
        assert fetched.title == "First"
        assert fetched.locations.cache_id == "r1"
        assert fetched.created_at is not None

        cache.update(fetched.with_locations(ledger_id="3", ledger_tx="0xabc"))
        assert cache.get("r1").locations.has_ledger_proof

        assert cache.delete("r1") is True
        assert cache.delete("r1") is False
        assert cache.get("r1") is None

    def test_update_missing_record_raises(self, cache):
        with pytest.raises(StorageError) as exc_info:
            cache.update(_record("ghost"))

        assert exc_info.value.store == "cache"
        assert exc_info.value.code == "not_found"

    def test_duplicate_create_is_storage_error(self, cache):
        cache.create(_record("dup"))
        with pytest.raises(StorageError):
            cache.create(_record("dup"))

    def test_principal_upsert_is_idempotent(self, cache):
        first = cache.get_or_create_principal(SIGNER)
        second = cache.get_or_create_principal(SIGNER.upper().replace("0X", "0x"))

        assert first == second

    def test_list_filters_sorts_and_facets(self, cache):
        cache.create(_record("a", title="Jazz Night", price="10", category="Music", location="Downtown"))
        cache.create(_record("b", title="Art Walk", price="2.5", category="Art", location="Park"))
        cache.create(_record("c", title="Rock Show", price="30", category="Music", location="Downtown"))

        page = cache.list(ListFilters(category="music", sort_by="ticket_price", order="desc"))
        assert [r.record_id for r in page.records] == ["c", "a"]
        assert page.total == 2

        searched = cache.list(ListFilters(search="walk"))
        assert [r.record_id for r in searched.records] == ["b"]

        assert page.facets.categories == ("Art", "Music")
        assert page.facets.locations == ("Downtown", "Park")
        assert page.facets.min_price == "2.5"
        assert page.facets.max_price == "30"

    def test_list_paginates(self, cache):
        for i in range(5):
            cache.create(_record(f"p{i}", title=f"Item {i}"))

        first = cache.list(ListFilters(page=1, limit=2, sort_by="title"))
        last = cache.list(ListFilters(page=3, limit=2, sort_by="title"))

        assert first.has_more
        assert [r.title for r in first.records] == ["Item 0", "Item 1"]
        assert not last.has_more
        assert [r.title for r in last.records] == ["Item 4"]
        assert len(list(cache.iter_all(batch_size=2))) == 5

    def test_list_rejects_unknown_sort(self, cache):
        with pytest.raises(ValueError):
            cache.list(ListFilters(sort_by="creator; DROP TABLE record"))
        with pytest.raises(ValueError):
            cache.list(ListFilters(order="sideways"))

    def test_list_without_ledger_proof_respects_grace_period(self, cache):
        old = datetime.now() - timedelta(hours=2)
        cache.create(replace(_record("stale"), created_at=old))
        cache.create(_record("fresh"))
        cache.create(replace(_record("anchored", ledger_id="1", ledger_tx="0x1"), created_at=old))

        orphans = cache.list_without_ledger_proof(timedelta(minutes=60))

        assert [r.record_id for r in orphans] == ["stale"]

    def test_health_reports_record_count(self, cache):
        cache.create(_record("x"))

        status = cache.health_check()

        assert status.status == HealthState.HEALTHY
        assert status.detail == {"record_count": 1}


class TestSqliteLedgerStore:
    """Test the append-only journal."""

    def test_prepare_validates_before_building(self, ledger):
        data = make_input(max_capacity=0)
        with pytest.raises(ValidationError) as exc_info:
            ledger.prepare_transaction(data, "ipfs://meta", SIGNER)

        assert exc_info.value.field == "max_capacity"

    def test_prepare_requires_external_ref(self, ledger):
        with pytest.raises(StorageError) as exc_info:
            ledger.prepare_transaction(make_input(), "", SIGNER)

        assert exc_info.value.code == "missing_external_ref"

    def test_descriptor_stringifies_large_prices(self, ledger):
        descriptor = ledger.prepare_transaction(
            make_input(ticket_price="12.5"), "ipfs://meta", SIGNER, record_id="rec-1"
        )

        assert descriptor["args"]["ticket_price"] == "12500000000000000000"
        assert descriptor["args"]["record_id"] == "rec-1"
        assert descriptor["network_id"] == 43113

    def test_signed_submission_is_confirmed(self, ledger):
        descriptor = ledger.prepare_transaction(
            make_input(ticket_price="12.5"), "ipfs://meta", SIGNER, record_id="rec-1"
        )
        signed = sign(ledger, descriptor)

        verification = ledger.verify_transaction(signed.tx_ref)
        assert verification.status == TransactionStatus.SUCCESS
        assert verification.block_ref.startswith("0x")

        record = ledger.get_by_id(verification.ledger_id)
        assert record.ticket_price == "12.5"
        assert record.locations.ledger_tx == signed.tx_ref
        assert record.locations.media_refs == ("ipfs://meta",)
        assert ledger.find_by_record_id("rec-1") == record
        assert ledger.find_by_external_ref("ipfs://meta") == record

    def test_bad_signature_is_rejected(self, ledger):
        descriptor = ledger.prepare_transaction(make_input(), "ipfs://meta", SIGNER)
        signed = ledger.submit(descriptor, "forged")

        assert ledger.verify_transaction(signed.tx_ref).status == TransactionStatus.FAILED
        assert ledger.list_entries() == []

    def test_wrong_network_is_rejected(self, ledger):
        descriptor = ledger.prepare_transaction(make_input(), "ipfs://meta", SIGNER)
        descriptor["network_id"] = 1
        signed = ledger.submit(descriptor, local_signature(descriptor, SIGNER))

        assert ledger.verify_transaction(signed.tx_ref).status == TransactionStatus.FAILED

    def test_unconfirmed_submission_is_pending(self, ledger):
        descriptor = ledger.prepare_transaction(make_input(), "ipfs://meta", SIGNER)
        signed = sign(ledger, descriptor, confirm=False)

        assert ledger.verify_transaction(signed.tx_ref).status == TransactionStatus.PENDING
        assert ledger.confirm_pending() == 1
        assert ledger.verify_transaction(signed.tx_ref).status == TransactionStatus.SUCCESS
        assert ledger.confirm_pending() == 0

    def test_unknown_ids_return_none(self, ledger):
        assert ledger.get_by_id("not-a-number") is None
        assert ledger.get_by_id("12345") is None
        assert ledger.find_by_record_id("nothing") is None
        assert ledger.verify_transaction("0xunknown").status == TransactionStatus.PENDING

    def test_balance_sums_credits(self, ledger):
        ledger.fund(SIGNER.upper().replace("0X", "0x"), "0.25")

        assert ledger.get_balance(SIGNER) == Decimal("1.25")
        assert ledger.get_balance("0x" + "0" * 40) == Decimal(0)


class TestLocalMediaStore:
    """Test the content-addressed directory store."""

    def test_upload_is_content_addressed(self, media):
        first = media.upload(b"hello", "text/plain")
        second = media.upload(b"hello", "text/plain", tags={"kind": "banner"})

        assert first == second
        assert first.uri == f"ipfs://{first.content_hash}"
        assert first.size == 5
        assert media.read(first.uri) == b"hello"
        assert media.is_reachable(first.uri)
        assert not media.is_reachable("ipfs://" + "0" * 64)

    def test_upload_json_is_canonical(self, media):
        a = media.upload_json({"b": 1, "a": 2})
        b = media.upload_json({"a": 2, "b": 1})

        assert a.uri == b.uri
        assert media.read(a.uri) == b'{"a":2,"b":1}'

    def test_delete_is_noop(self, media):
        ref = media.upload(b"keep me", "text/plain")

        assert media.delete(ref.uri) is True
        assert media.is_reachable(ref.uri)

    def test_resolve_url_is_file_uri(self, media):
        ref = media.upload(b"x", "text/plain")

        assert media.resolve_url(ref.uri).startswith("file://")
        assert media.resolve_url(ref.uri).endswith(ref.content_hash)

    def test_write_failure_is_upload_error(self, media):
        with patch("ledger_saga.stores.media.tempfile.mkstemp", side_effect=OSError("disk full")):
            with pytest.raises(UploadError) as exc_info:
                media.upload(b"data", "text/plain")

        assert exc_info.value.store == "media"
        assert exc_info.value.code == "io_error"

    def test_content_id_accepts_all_forms(self):
        assert content_id("ipfs://bafy123") == "bafy123"
        assert content_id("https://gw.example/ipfs/bafy123?download=1") == "bafy123"
        assert content_id("bafy123") == "bafy123"


class TestKuboMediaStore:
    """Test the Kubo HTTP adapter with respx-mocked endpoints."""

    def _store(self, token=None):
        return KuboMediaStore(
            "http://kubo:5001/", "https://gateway.example/",
            health_config=HealthConfig(cache_ttl_s=0),
            api_token=token,
        )

    @respx.mock
    def test_upload_returns_cid(self):
        route = respx.post(host="kubo", path="/api/v0/add").mock(
            return_value=Response(200, json={"Hash": "bafyTEST", "Size": "5"})
        )

        store = self._store()
        ref = store.upload(b"hello", "text/plain")

        assert ref.uri == "ipfs://bafyTEST"
        assert ref.size == 5
        assert route.called
        assert route.calls.last.request.url.params["pin"] == "true"
        assert store.resolve_url(ref.uri) == "https://gateway.example/ipfs/bafyTEST"

    @respx.mock
    def test_token_is_sent_as_bearer(self):
        route = respx.post(host="kubo", path="/api/v0/add").mock(
            return_value=Response(200, json={"Hash": "bafyTEST"})
        )

        self._store(token="s3cret").upload(b"x", "text/plain")

        assert route.calls.last.request.headers["Authorization"] == "Bearer s3cret"

    @pytest.mark.parametrize("status,code", [(401, "auth"), (403, "auth"), (500, "http_500")])
    @respx.mock
    def test_http_errors_become_upload_errors(self, status, code):
        respx.post(host="kubo", path="/api/v0/add").mock(return_value=Response(status, text="nope"))

        with pytest.raises(UploadError) as exc_info:
            self._store().upload(b"x", "text/plain")

        assert exc_info.value.code == code

    @respx.mock
    def test_malformed_response(self):
        respx.post(host="kubo", path="/api/v0/add").mock(return_value=Response(200, json={"Name": "x"}))

        with pytest.raises(UploadError) as exc_info:
            self._store().upload(b"x", "text/plain")

        assert exc_info.value.code == "bad_response"

    @respx.mock
    def test_transport_failure(self):
        respx.post(host="kubo").mock(side_effect=httpx.ConnectError)
        respx.head(host="gateway.example").mock(side_effect=httpx.ConnectError)
        store = self._store()

        with pytest.raises(UploadError) as exc_info:
            store.upload(b"x", "text/plain")
        assert exc_info.value.code == "transport"
        assert store.is_reachable("ipfs://bafyTEST") is False
        assert store.health_check().status == HealthState.UNHEALTHY

    @respx.mock
    def test_health_and_reachability(self):
        respx.post(host="kubo", path="/api/v0/version").mock(
            return_value=Response(200, json={"Version": "0.29.0"})
        )
        respx.head("https://gateway.example/ipfs/bafyOK").mock(return_value=Response(200))
        respx.head("https://gateway.example/ipfs/bafyGONE").mock(return_value=Response(404))
        store = self._store()

        status = store.health_check()
        assert status.status == HealthState.HEALTHY
        assert status.detail == {"version": "0.29.0"}
        assert store.is_reachable("ipfs://bafyOK")
        assert not store.is_reachable("ipfs://bafyGONE")

    def test_config_never_contains_token(self):
        config = self._store(token="s3cret").get_config()

        assert config["has_token"] is True
        assert "s3cret" not in str(config)
