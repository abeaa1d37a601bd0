"""
Input validation for record creation.

All checks here are pure: they run before any store is touched.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from ledger_saga.storage.models import CreationInput, Visibility
from .errors import ValidationError

PRICE_DECIMALS = 18
DEFAULT_SIGNER_PATTERN = r"^0x[a-fA-F0-9]{40}$"
DEFAULT_MAX_CAPACITY = 1_000_000


def parse_price(raw: str) -> Decimal:
    """Parse a ticket price string into a non-negative Decimal.

    Raises:
        ValidationError: If the price is not a finite, non-negative number
            with at most PRICE_DECIMALS fractional digits
    """
    try:
        price = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid ticket price: {raw!r}", field="ticket_price")
    if not price.is_finite() or price < 0:
        raise ValidationError(f"Invalid ticket price: {raw!r}", field="ticket_price")
    if price.as_tuple().exponent < -PRICE_DECIMALS:
        raise ValidationError(
            f"Ticket price supports at most {PRICE_DECIMALS} decimals", field="ticket_price"
        )
    return price


def price_to_base_units(raw: str) -> int:
    """Convert a decimal price string to integer base units (18 decimals)."""
    return int(parse_price(raw).scaleb(PRICE_DECIMALS))


def base_units_to_price(units: int) -> Decimal:
    return Decimal(units).scaleb(-PRICE_DECIMALS)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_ledger_invariants(
    data: CreationInput,
    signer: str,
    signer_pattern: str = DEFAULT_SIGNER_PATTERN,
    max_capacity: int = DEFAULT_MAX_CAPACITY,
) -> None:
    """Domain invariants every ledger entry must satisfy.

    Raises:
        ValidationError: On the first violated invariant
    """
    if _aware(data.start_date) >= _aware(data.end_date):
        raise ValidationError("End date must be after start date", field="end_date")
    parse_price(data.ticket_price)
    if isinstance(data.max_capacity, bool) or not isinstance(data.max_capacity, int):
        raise ValidationError("Max capacity must be an integer", field="max_capacity")
    if data.max_capacity < 1 or data.max_capacity > max_capacity:
        raise ValidationError(
            f"Max capacity must be between 1 and {max_capacity:,}", field="max_capacity"
        )
    if not signer or not re.match(signer_pattern, signer):
        raise ValidationError("Valid signer identity is required", field="signer")


def validate_creation_input(
    data: CreationInput,
    signer_pattern: str = DEFAULT_SIGNER_PATTERN,
    max_capacity: int = DEFAULT_MAX_CAPACITY,
    now: Optional[datetime] = None,
) -> None:
    """Validate shape and invariants of a creation request.

    Args:
        data: The creation request
        signer_pattern: Regex a signer identity must match
        max_capacity: Upper bound for max_capacity
        now: Reference time for the "starts in the future" check

    Raises:
        ValidationError: If the request is malformed
    """
    for name in ("title", "description", "location"):
        value = getattr(data, name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Title, description, and location are required", field=name)

    for name in ("start_date", "end_date"):
        if not isinstance(getattr(data, name), datetime):
            raise ValidationError("Invalid date format", field=name)

    reference = _aware(now or datetime.now(timezone.utc))
    if _aware(data.start_date) <= reference:
        raise ValidationError("Record must start in the future", field="start_date")

    if not isinstance(data.visibility, Visibility):
        raise ValidationError("Invalid visibility", field="visibility")

    if data.banner is not None and not data.banner:
        raise ValidationError("Banner content must not be empty", field="banner")

    if any(not isinstance(tag, str) or not tag.strip() for tag in data.tags):
        raise ValidationError("Tags must be non-empty strings", field="tags")

    validate_ledger_invariants(data, data.signer, signer_pattern, max_capacity)


def make_slug(title: str) -> str:
    """URL-friendly slug: lowercase alphanumerics joined by single dashes."""
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
