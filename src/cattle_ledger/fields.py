"""Parsers that turn free-text input into the typed values the engine expects."""

from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

from .core_logic import AllocationRequest, FieldValidationError


def parse_money(raw: str, *, field: str = "amount") -> Decimal:
    """Parse a currency amount, tolerating thousands separators and a ``$``.

    Raises:
        FieldValidationError: If ``raw`` is blank or not a finite number.
    """
    cleaned = (raw or "").strip().replace(",", "").replace("$", "")
    if not cleaned:
        raise FieldValidationError(field, "a value is required")
    try:
        value = Decimal(cleaned)
    except InvalidOperation as exc:
        raise FieldValidationError(field, f"'{raw}' is not a valid amount") from exc
    if not value.is_finite():
        raise FieldValidationError(field, f"'{raw}' is not a valid amount")
    return value


def parse_optional_money(raw: Optional[str], *, field: str) -> Optional[Decimal]:
    if raw is None or not raw.strip():
        return None
    return parse_money(raw, field=field)


def parse_quantity(raw: str, *, field: str = "quantity") -> int:
    """Parse a head count written with ASCII digits and an optional sign.

    Fractions are rejected, not truncated, and so are digit group
    underscores and non-ASCII digits that ``int()`` would otherwise accept.
    """
    cleaned = (raw or "").strip()
    digits = cleaned[1:] if cleaned.startswith(("+", "-")) else cleaned
    if not (digits.isascii() and digits.isdigit()):
        raise FieldValidationError(field, f"'{raw}' is not a whole number")
    return int(cleaned)


def parse_date(raw: str, *, field: str = "occurred_on") -> date:
    """Parse an ISO ``YYYY-MM-DD`` or compact ``YYYYMMDD`` calendar date."""
    cleaned = (raw or "").strip()
    if len(cleaned) == 8 and cleaned.isdigit():
        cleaned = f"{cleaned[:4]}-{cleaned[4:6]}-{cleaned[6:]}"
    try:
        return date.fromisoformat(cleaned)
    except ValueError as exc:
        raise FieldValidationError(field, f"'{raw}' is not a valid date") from exc


def parse_optional_date(raw: Optional[str], *, field: str = "occurred_on") -> Optional[date]:
    if raw is None or not raw.strip():
        return None
    return parse_date(raw, field=field)


def parse_allocation(raw: str, *, field: str = "allocation") -> AllocationRequest:
    """Parse ``BATCH_ID:QUANTITY`` into an :class:`AllocationRequest`.

    The quantity is only parsed here; whether it is positive is a sale rule
    checked by the validator.
    """
    batch_id, separator, quantity_raw = (raw or "").rpartition(":")
    batch_id = batch_id.strip()
    if not separator or not batch_id:
        raise FieldValidationError(field, f"'{raw}' must look like BATCH_ID:QUANTITY")
    return AllocationRequest(batch_id=batch_id, quantity=parse_quantity(quantity_raw, field=field))
