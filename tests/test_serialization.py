"""
Unit tests for canonical serialization and input validation.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledger_saga.core.errors import ConsistencyError, StorageError, UploadError, ValidationError
from ledger_saga.core.serialization import (
    MAX_SAFE_INTEGER,
    canonical_json,
    fingerprint,
    format_decimal,
    to_serializable,
)
from ledger_saga.core.validation import (
    base_units_to_price,
    make_slug,
    parse_price,
    price_to_base_units,
    validate_creation_input,
)
from ledger_saga.storage.models import Compensation, CompensationKind, OperationPhase, Visibility

from conftest import make_input


class TestSerialization:
    """Test the canonical recursive serializer."""

    def test_integers_beyond_safe_range_become_strings(self):
        payload = {
            "safe": MAX_SAFE_INTEGER,
            "unsafe": MAX_SAFE_INTEGER + 1,
            "negative": -(MAX_SAFE_INTEGER + 1),
            "nested": [{"wei": 10 ** 18}],
        }

        result = to_serializable(payload)

        assert result["safe"] == MAX_SAFE_INTEGER
        assert result["unsafe"] == str(MAX_SAFE_INTEGER + 1)
        assert result["negative"] == str(-(MAX_SAFE_INTEGER + 1))
        assert result["nested"] == [{"wei": "1000000000000000000"}]

    def test_rich_types(self):
        when = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        comp = Compensation(CompensationKind.DELETE_CACHE_RECORD, "rec-1")

        result = to_serializable({
            "when": when,
            "price": Decimal("1.500"),
            "visibility": Visibility.UNLISTED,
            "blob": b"\x01\xff",
            "comp": comp,
            "flag": True,
            "tags": ("a", "b"),
        })

        assert result == {
            "when": "2030-01-02T03:04:05+00:00",
            "price": "1.5",
            "visibility": "unlisted",
            "blob": "01ff",
            "comp": {"kind": "delete_cache_record", "target": "rec-1", "done": False},
            "flag": True,
            "tags": ["a", "b"],
        }

    def test_unknown_type_is_rejected(self):
        with pytest.raises(TypeError):
            to_serializable(object())

    def test_canonical_json_is_order_independent(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
        assert fingerprint({"b": 1, "a": 2}) == fingerprint({"a": 2, "b": 1})
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})

    @pytest.mark.parametrize("value,expected", [
        (Decimal("0"), "0"),
        (Decimal("0E-18"), "0"),
        (Decimal("1.50"), "1.5"),
        (Decimal("100"), "100"),
        (Decimal("0.000000000000000001"), "0.000000000000000001"),
    ])
    def test_format_decimal(self, value, expected):
        assert format_decimal(value) == expected


class TestPrices:
    """Test price parsing and base-unit conversion."""

    def test_base_units_use_eighteen_decimals(self):
        assert price_to_base_units("1") == 10 ** 18
        assert price_to_base_units("0.5") == 5 * 10 ** 17
        assert base_units_to_price(25 * 10 ** 17) == Decimal("2.5")

    @pytest.mark.parametrize("raw", ["-1", "abc", "NaN", "Infinity", "0.0000000000000000001"])
    def test_invalid_prices(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            parse_price(raw)
        assert exc_info.value.field == "ticket_price"


class TestValidation:
    """Test creation input validation."""

    def test_valid_input_passes(self):
        validate_creation_input(make_input())

    @pytest.mark.parametrize("changes,field", [
        ({"title": "  "}, "title"),
        ({"description": ""}, "description"),
        ({"max_capacity": 0}, "max_capacity"),
        ({"max_capacity": 1_000_001}, "max_capacity"),
        ({"max_capacity": True}, "max_capacity"),
        ({"ticket_price": "-3"}, "ticket_price"),
        ({"signer": "not-an-address"}, "signer"),
        ({"banner": b""}, "banner"),
        ({"tags": ("ok", "")}, "tags"),
        ({"visibility": "public"}, "visibility"),
    ])
    def test_invalid_fields(self, changes, field):
        with pytest.raises(ValidationError) as exc_info:
            validate_creation_input(replace(make_input(), **changes))
        assert exc_info.value.field == field

    def test_start_must_be_in_future(self):
        data = make_input()
        later = data.start_date + timedelta(minutes=1)

        with pytest.raises(ValidationError) as exc_info:
            validate_creation_input(data, now=later)
        assert exc_info.value.field == "start_date"

    def test_end_must_follow_start(self):
        data = make_input()
        with pytest.raises(ValidationError) as exc_info:
            validate_creation_input(replace(data, end_date=data.start_date))
        assert exc_info.value.field == "end_date"

    def test_custom_signer_pattern(self):
        data = make_input(signer="acct-0001")
        validate_creation_input(data, signer_pattern=r"^acct-\d{4}$")

    def test_slug(self):
        assert make_slug("  Hello, World! 2030 ") == "hello-world-2030"


class TestModelsAndErrors:
    """Test small model and error behaviours."""

    def test_terminal_phases(self):
        assert OperationPhase.CONSISTENT.is_terminal
        assert OperationPhase.FAILED.is_terminal
        assert not OperationPhase.LEDGER_CONFIRMED.is_terminal

    def test_compensation_round_trip(self):
        comp = Compensation(CompensationKind.DELETE_MEDIA, "ipfs://x", done=True)
        assert Compensation.from_dict(comp.to_dict()) == comp

    def test_storage_error_names_store_and_operation(self):
        error = StorageError("boom", "ledger", "verify_transaction", code="confirmation_timeout")
        assert str(error) == "[ledger.verify_transaction:confirmation_timeout] boom"

    def test_upload_error_is_storage_error(self):
        error = UploadError("denied", code="auth")
        assert isinstance(error, StorageError)
        assert error.store == "media"
        assert error.operation == "upload"

    def test_consistency_error_carries_discrepancies(self):
        error = ConsistencyError("rec-1", ["title mismatch", "media missing"])
        assert error.record_id == "rec-1"
        assert error.discrepancies == ("title mismatch", "media missing")
        assert "title mismatch; media missing" in str(error)
