# Overview: Request objects parsed at the API boundary and passed into the transaction managers.

"""
Typed requests for sales and payments.

WHY: Services receive already-parsed Decimals and ints, never raw JSON.
Parsing errors surface as ValidationError before any transaction opens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from ..errors import ValidationError
from ..money import ZERO, money, quantity, to_decimal
from ..time_utils import parse_iso_datetime


DEFAULT_UNIT_TYPE = "CRTN"


def _optional_int(value, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")


def parse_bool(value, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{field_name} must be true or false", {field_name: value})
    return value


def _optional_str(value) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _optional_datetime(value, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return parse_iso_datetime(str(value))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO-8601 date")


@dataclass
class SaleItemInput:
    product_id: int
    qty: Decimal
    unit_price: Decimal
    unit_type: str = DEFAULT_UNIT_TYPE
    discount: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: dict) -> "SaleItemInput":
        if not isinstance(data, dict):
            raise ValidationError("Each item must be an object")
        product_id = _optional_int(data.get("product_id"), "product_id")
        if product_id is None:
            raise ValidationError("product_id is required for every item")
        unit_type = (_optional_str(data.get("unit_type")) or DEFAULT_UNIT_TYPE).upper()
        return cls(
            product_id=product_id,
            qty=quantity(to_decimal(data.get("qty"), "qty")),
            unit_price=money(to_decimal(data.get("unit_price"), "unit_price")),
            unit_type=unit_type,
            discount=money(to_decimal(data.get("discount", 0), "discount")),
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "qty": str(self.qty),
            "unit_price": str(self.unit_price),
            "unit_type": self.unit_type,
            "discount": str(self.discount),
        }


@dataclass
class PaymentInput:
    amount: Decimal
    mode: str
    reference: str | None = None
    payment_date: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentInput":
        if not isinstance(data, dict):
            raise ValidationError("Each payment must be an object")
        return cls(
            amount=money(to_decimal(data.get("amount"), "amount")),
            mode=(_optional_str(data.get("mode")) or "").upper(),
            reference=_optional_str(data.get("reference")),
            payment_date=_optional_datetime(data.get("payment_date"), "payment_date"),
        )


@dataclass
class SaleRequest:
    """Create and update share one shape; invoice_no and external_reference only apply on create."""
    items: list[SaleItemInput]
    customer_id: int | None = None
    invoice_no: str | None = None
    external_reference: str | None = None
    invoice_date: datetime | None = None
    discount: Decimal = ZERO
    notes: str | None = None
    is_finalized: bool = True
    payments: list[PaymentInput] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "SaleRequest":
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        items = data.get("items") or []
        if not isinstance(items, list):
            raise ValidationError("items must be a list")
        payments = data.get("payments") or []
        if not isinstance(payments, list):
            raise ValidationError("payments must be a list")
        return cls(
            items=[SaleItemInput.from_dict(item) for item in items],
            customer_id=_optional_int(data.get("customer_id"), "customer_id"),
            invoice_no=_optional_str(data.get("invoice_no")),
            external_reference=_optional_str(data.get("external_reference")),
            invoice_date=_optional_datetime(data.get("invoice_date"), "invoice_date"),
            discount=money(to_decimal(data.get("discount", 0), "discount")),
            notes=_optional_str(data.get("notes")),
            is_finalized=parse_bool(data.get("is_finalized", True), "is_finalized"),
            payments=[PaymentInput.from_dict(p) for p in payments],
        )


@dataclass
class PaymentRequest:
    amount: Decimal
    mode: str
    sale_id: int | None = None
    customer_id: int | None = None
    reference: str | None = None
    payment_date: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "PaymentRequest":
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        base = PaymentInput.from_dict(data)
        return cls(
            amount=base.amount,
            mode=base.mode,
            sale_id=_optional_int(data.get("sale_id"), "sale_id"),
            customer_id=_optional_int(data.get("customer_id"), "customer_id"),
            reference=base.reference,
            payment_date=base.payment_date,
        )


@dataclass
class AllocationLine:
    sale_id: int
    amount: Decimal | None = None


@dataclass
class AllocationRequest:
    """
    One customer payment spread across several invoices.

    allocations: explicit per-invoice amounts in the order given. When empty,
    the amount is applied to outstanding invoices oldest first.
    """
    customer_id: int
    amount: Decimal
    mode: str
    reference: str | None = None
    payment_date: datetime | None = None
    allocations: list[AllocationLine] = field(default_factory=list)
    allow_unallocated: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "AllocationRequest":
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        customer_id = _optional_int(data.get("customer_id"), "customer_id")
        if customer_id is None:
            raise ValidationError("customer_id is required")
        base = PaymentInput.from_dict(data)
        lines = []
        for raw in data.get("allocations") or []:
            if not isinstance(raw, dict):
                raise ValidationError("Each allocation must be an object")
            sale_id = _optional_int(raw.get("sale_id"), "sale_id")
            if sale_id is None:
                raise ValidationError("sale_id is required for every allocation")
            amount = raw.get("amount")
            lines.append(AllocationLine(
                sale_id=sale_id,
                amount=money(to_decimal(amount, "amount")) if amount is not None else None,
            ))
        return cls(
            customer_id=customer_id,
            amount=base.amount,
            mode=base.mode,
            reference=base.reference,
            payment_date=base.payment_date,
            allocations=lines,
            allow_unallocated=parse_bool(data.get("allow_unallocated", False), "allow_unallocated"),
        )
