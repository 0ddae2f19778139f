from __future__ import annotations
from datetime import datetime
from retail.time_utils import parse_iso_datetime

from dataclasses import dataclass, field, asdict
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime, Numeric
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# Stored alongside delivery/payment/customer JSON so later readers can migrate
PAYLOAD_SCHEMA_VERSION = 1

DELIVERY_METHODS = {"pickup", "delivery"}
PAYMENT_METHODS = {"cash", "card", "mobile"}


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def coerce_cents(key: str, value: Any) -> int:
    cents = coerce_int(key, value)
    if cents < 0:
        raise ValidationError(f"{key} must not be negative")
    if cents > MAX_PRICE_CENTS:
        raise ValidationError(f"{key} exceeds maximum of {MAX_PRICE_CENTS}")
    return cents


def coerce_quantity(key: str, value: Any, *, allow_negative: bool = False, allow_zero: bool = False) -> float:
    """Stock quantities are fractional (weighed goods)."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{key} must be a number")
    try:
        qty = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number")
    if qty != qty or qty in (float("inf"), float("-inf")):
        raise ValidationError(f"{key} must be a finite number")
    # Stock is kept to the gram
    qty = round(qty, 3)
    if not allow_negative and qty < 0:
        raise ValidationError(f"{key} must not be negative")
    if not allow_zero and qty == 0:
        raise ValidationError(f"{key} must not be zero")
    return qty


def coerce_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        if dt is None:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        return dt
    raise ValidationError(f"{key} must be a datetime")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        if col.key.endswith("_cents"):
            return coerce_cents(col.key, value)
        return coerce_int(col.key, value)

    if isinstance(coltype, Numeric):
        return coerce_quantity(col.key, value, allow_zero=True)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        return coerce_datetime(col.key, value)

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: update semantics (only validate provided fields)
    """
    if not isinstance(payload, dict):
        raise ValidationError("JSON body must be an object")

    cols = _columns_by_key(model)
    required = policy.required_on_create or set()

    unknown = set(payload) - policy.writable_fields
    if unknown:
        raise ValidationError(f"Unknown or read-only fields: {', '.join(sorted(unknown))}")

    if not partial:
        missing = [k for k in sorted(required) if payload.get(k) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cleaned: dict[str, Any] = {}
    for key, raw in payload.items():
        col = cols[key]
        value = _coerce_value(col, raw)

        if value is None and not col.nullable:
            raise ValidationError(f"{key} cannot be null")

        if isinstance(value, str):
            if value == "" and not col.nullable:
                raise ValidationError(f"{key} cannot be empty")
            length = getattr(col.type, "length", None)
            if length and len(value) > length:
                raise ValidationError(f"{key} must be at most {length} characters")

        cleaned[key] = value

    return cleaned


# =============================================================================
# ORDER BOUNDARY PAYLOADS
# =============================================================================
# Delivery, payment and customer arrive as free-form JSON from POS terminals and
# the storefront. They are validated here into tagged structures and stored as
# JSON with an explicit schema_version.


def _optional_str(data: dict, key: str, max_len: int = 255) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    value = str(value).strip()
    if len(value) > max_len:
        raise ValidationError(f"{key} must be at most {max_len} characters")
    return value or None


def normalize_phone(phone: str | None) -> str:
    """Phone numbers compare with all whitespace removed."""
    return "".join((phone or "").split())


@dataclass(frozen=True)
class DeliveryInfo:
    method: str = "pickup"
    address: str | None = None
    notes: str | None = None
    schema_version: int = PAYLOAD_SCHEMA_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "DeliveryInfo":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("delivery must be an object")
        method = str(data.get("method") or "pickup").strip().lower()
        if method not in DELIVERY_METHODS:
            raise ValidationError(f"delivery.method must be one of {', '.join(sorted(DELIVERY_METHODS))}")
        address = _optional_str(data, "address", 500)
        if method == "delivery" and not address:
            raise ValidationError("delivery.address is required for delivery orders")
        return cls(method=method, address=address, notes=_optional_str(data, "notes", 500))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PaymentInfo:
    method: str = "cash"
    # Provider reference (card intent id, mobile transaction code)
    reference: str | None = None
    amount_tendered_cents: int | None = None
    schema_version: int = PAYLOAD_SCHEMA_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "PaymentInfo":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("payment must be an object")
        method = str(data.get("method") or "cash").strip().lower()
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"payment.method must be one of {', '.join(sorted(PAYMENT_METHODS))}")
        tendered = data.get("amount_tendered_cents")
        if tendered is not None:
            tendered = coerce_cents("payment.amount_tendered_cents", tendered)
        return cls(method=method, reference=_optional_str(data, "reference", 128), amount_tendered_cents=tendered)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CustomerInfo:
    name: str | None = None
    phone: str | None = None
    schema_version: int = PAYLOAD_SCHEMA_VERSION

    @classmethod
    def from_dict(cls, data: Any) -> "CustomerInfo":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("customer must be an object")
        phone = normalize_phone(_optional_str(data, "phone", 32)) or None
        return cls(name=_optional_str(data, "name", 120), phone=phone)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LineItem:
    product_id: int
    qty: float
    price_at_cents: int | None = None


@dataclass
class OrderDraft:
    """Validated order input, shared by POS sync and web checkout."""
    items: list[LineItem]
    delivery: DeliveryInfo = field(default_factory=DeliveryInfo)
    payment: PaymentInfo = field(default_factory=PaymentInfo)
    customer: CustomerInfo = field(default_factory=CustomerInfo)
    external_id: str | None = None
    source: str | None = None
    staff_name: str | None = None
    staff_role: str | None = None
    branch_id: int | None = None
    branch_name: str | None = None
    created_at: datetime | None = None
    total_cents: int | None = None

    @classmethod
    def from_dict(cls, data: Any, *, allow_price_override: bool) -> "OrderDraft":
        """
        allow_price_override: POS terminals may carry the price captured at sale
        time; the storefront always pays the current product price.
        """
        if not isinstance(data, dict):
            raise ValidationError("order payload must be an object")

        raw_items = data.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("items must be a non-empty list")

        items = []
        for idx, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise ValidationError(f"items[{idx}] must be an object")
            if raw.get("product_id") is None:
                raise ValidationError(f"items[{idx}].product_id is required")
            product_id = coerce_int(f"items[{idx}].product_id", raw.get("product_id"))
            qty = coerce_quantity(f"items[{idx}].qty", raw.get("qty"))
            price_at = None
            if allow_price_override and raw.get("price_at_cents") is not None:
                price_at = coerce_cents(f"items[{idx}].price_at_cents", raw.get("price_at_cents"))
            items.append(LineItem(product_id=product_id, qty=qty, price_at_cents=price_at))

        staff = data.get("staff") or {}
        branch = data.get("branch") or {}
        if not isinstance(staff, dict) or not isinstance(branch, dict):
            raise ValidationError("staff and branch must be objects")

        branch_id = branch.get("id")
        if branch_id is not None:
            branch_id = coerce_int("branch.id", branch_id)

        total_cents = None
        if allow_price_override and data.get("total_cents") is not None:
            total_cents = coerce_cents("total_cents", data.get("total_cents"))

        created_at = data.get("created_at")
        if created_at is not None:
            created_at = coerce_datetime("created_at", created_at)

        external_id = data.get("external_id")
        if external_id is not None:
            external_id = str(external_id).strip() or None
            if external_id and len(external_id) > 64:
                raise ValidationError("external_id must be at most 64 characters")

        return cls(
            items=items,
            delivery=DeliveryInfo.from_dict(data.get("delivery")),
            payment=PaymentInfo.from_dict(data.get("payment")),
            customer=CustomerInfo.from_dict(data.get("customer")),
            external_id=external_id,
            source=(str(data["source"]).strip() or None) if data.get("source") else None,
            staff_name=_optional_str(staff, "name", 120),
            staff_role=_optional_str(staff, "role", 32),
            branch_id=branch_id,
            branch_name=_optional_str(branch, "name", 120),
            created_at=created_at,
            total_cents=total_cents,
        )
