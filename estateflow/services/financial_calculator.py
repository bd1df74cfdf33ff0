"""
Financial Calculator — pure derivation of pipeline money figures.

    balance_outstanding = max(negotiated − deposit, 0)       (negotiated known)
    expected_profit     = negotiated − total_cost            (DISPOSAL only)
    roi_percentage      = round(profit / total_cost × 100, 2) (total_cost > 0)

Profit is only meaningful on the sell side, so ACQUISITION pipelines carry
a null ``expected_profit`` until the asset later enters a DISPOSAL pipeline.

Itemised ledger:
    cost_entries      → total_cost     = Σ entry.amount    (while non-empty)
    payment_receipts  → deposit_amount = Σ receipt.amount  (while non-empty)

A ledger-backed field can no longer be written directly; removing the last
entry makes it unknown (None) again.

``recompute`` never raises: unknown inputs propagate as None so reporting
layers can show "pending". Input coercion (``to_amount``) is where bad
values are rejected.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from estateflow.core.exceptions import NotFoundError, ValidationError
from estateflow.services.pipeline_record import CostEntry, FinancialSnapshot, PaymentReceipt
from estateflow.services.stage_registry import Direction

_CENTS = Decimal("0.01")
_ZERO = Decimal("0")

COST_CATEGORIES = {
    Direction.ACQUISITION: (
        "PRE_PURCHASE", "AGREEMENT_LEGAL", "LCB_PROCESS", "PAYMENTS", "TRANSFER_REGISTRATION", "OTHER",
    ),
    Direction.DISPOSAL: (
        "PRE_HANDOVER", "AGREEMENT_LEGAL", "LCB_PROCESS", "PAYMENT_TRACKING", "TRANSFER_REGISTRATION", "OTHER",
    ),
}

PAYMENT_METHODS = ("CASH", "BANK_TRANSFER", "CHEQUE", "MOBILE_MONEY", "OTHER")

COST_ENTRY_FIELDS = ("category", "amount", "description", "payment_reference", "incurred_on")
PAYMENT_RECEIPT_FIELDS = ("amount", "payment_method", "payment_reference", "paid_on", "notes")


def to_amount(value, field_name: str = "amount") -> Decimal | None:
    """Coerce an input money value to Decimal (2 dp). None / "" stay None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number", details={field_name: "not a number"})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number", details={field_name: "not a number"}) from None
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite", details={field_name: "not finite"})
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative", details={field_name: "negative"})
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _to_date(value, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(
            f"Invalid date: {value!r}", details={field_name: "expected YYYY-MM-DD"},
        ) from None


def _positive_amount(value) -> Decimal:
    amount = to_amount(value, "amount")
    if amount is None or amount == _ZERO:
        raise ValidationError("amount must be greater than zero", details={"amount": "required, > 0"})
    return amount


def _check_fields(fields: dict, allowed: tuple[str, ...], label: str) -> None:
    if not isinstance(fields, dict):
        raise ValidationError(f"{label} must be an object", details={label: "expected an object"})
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationError(
            f"Unknown {label} fields: {', '.join(unknown)}",
            details={name: "unknown" for name in unknown},
        )


def recompute(financial: FinancialSnapshot, direction: Direction) -> FinancialSnapshot:
    """Return a snapshot with all derived fields recomputed from the inputs."""
    negotiated = financial.negotiated_amount
    deposit = financial.deposit_amount
    total_cost = financial.total_cost

    balance = None
    if negotiated is not None:
        balance = max(negotiated - (deposit or _ZERO), _ZERO)

    profit = None
    if direction == Direction.DISPOSAL and negotiated is not None and total_cost is not None:
        profit = negotiated - total_cost

    roi = None
    if profit is not None and total_cost is not None and total_cost > 0:
        roi = (profit / total_cost * 100).quantize(_CENTS, rounding=ROUND_HALF_UP)

    return replace(
        financial,
        balance_outstanding=balance,
        expected_profit=profit,
        roi_percentage=roi,
    )


def apply_inputs(financial: FinancialSnapshot, direction: Direction, /, **fields) -> FinancialSnapshot:
    """Write input fields and recompute. Derived or unknown fields are rejected."""
    derived = sorted(set(fields) & set(FinancialSnapshot.DERIVED_FIELDS))
    if derived:
        raise ValidationError(
            "Derived financial fields cannot be set directly",
            details={name: "derived" for name in derived},
        )
    unknown = sorted(set(fields) - set(FinancialSnapshot.INPUT_FIELDS))
    if unknown:
        raise ValidationError(
            f"Unknown financial fields: {', '.join(unknown)}",
            details={name: "unknown" for name in unknown},
        )
    ledger_backed = {}
    if financial.cost_entries and "total_cost" in fields:
        ledger_backed["total_cost"] = "derived from cost entries"
    if financial.payment_receipts and "deposit_amount" in fields:
        ledger_backed["deposit_amount"] = "derived from payment receipts"
    if ledger_backed:
        raise ValidationError(
            "Ledger-backed financial fields cannot be set directly", details=ledger_backed,
        )
    values = {name: to_amount(value, name) for name, value in fields.items()}
    return recompute(replace(financial, **values), direction)


def payment_progress_percentage(financial: FinancialSnapshot) -> Decimal | None:
    """Share of the negotiated amount already covered by payments."""
    return financial.payment_progress_percentage


# ── Ledger ───────────────────────────────────────────────────────────────────


def _with_costs(financial: FinancialSnapshot, direction: Direction, entries) -> FinancialSnapshot:
    entries = tuple(entries)
    total = sum((e.amount for e in entries), _ZERO) if entries else None
    return recompute(replace(financial, cost_entries=entries, total_cost=total), direction)


def _with_receipts(financial: FinancialSnapshot, direction: Direction, receipts) -> FinancialSnapshot:
    receipts = tuple(receipts)
    paid = sum((r.amount for r in receipts), _ZERO) if receipts else None
    return recompute(replace(financial, payment_receipts=receipts, deposit_amount=paid), direction)


def add_cost_entry(
    financial: FinancialSnapshot,
    direction: Direction,
    fields: dict,
    *,
    entry_id: str,
    created_at: datetime | None = None,
    created_by: str | None = None,
) -> FinancialSnapshot:
    """Book one itemised cost; ``total_cost`` becomes the ledger sum."""
    _check_fields(fields, COST_ENTRY_FIELDS, "cost_entry")
    category = str(fields.get("category") or "").upper()
    if category not in COST_CATEGORIES[direction]:
        raise ValidationError(
            f"Unknown cost category: {fields.get('category')!r}",
            details={"category": f"must be one of {list(COST_CATEGORIES[direction])}"},
        )
    entry = CostEntry(
        id=entry_id,
        category=category,
        amount=_positive_amount(fields.get("amount")),
        description=fields.get("description"),
        payment_reference=fields.get("payment_reference"),
        incurred_on=_to_date(fields.get("incurred_on"), "incurred_on"),
        created_at=created_at,
        created_by=created_by,
    )
    return _with_costs(financial, direction, financial.cost_entries + (entry,))


def remove_cost_entry(financial: FinancialSnapshot, direction: Direction, entry_id: str) -> FinancialSnapshot:
    remaining = [e for e in financial.cost_entries if e.id != entry_id]
    if len(remaining) == len(financial.cost_entries):
        raise NotFoundError(resource="CostEntry", resource_id=entry_id)
    return _with_costs(financial, direction, remaining)


def add_payment_receipt(
    financial: FinancialSnapshot,
    direction: Direction,
    fields: dict,
    *,
    receipt_id: str,
    created_at: datetime | None = None,
    created_by: str | None = None,
) -> FinancialSnapshot:
    """Record one payment; receipts are numbered 1, 2, … in booking order."""
    _check_fields(fields, PAYMENT_RECEIPT_FIELDS, "payment_receipt")
    method = fields.get("payment_method")
    if method is not None:
        method = str(method).upper()
        if method not in PAYMENT_METHODS:
            raise ValidationError(
                f"Unknown payment method: {fields.get('payment_method')!r}",
                details={"payment_method": f"must be one of {list(PAYMENT_METHODS)}"},
            )
    number = max((r.receipt_number for r in financial.payment_receipts), default=0) + 1
    receipt = PaymentReceipt(
        id=receipt_id,
        receipt_number=number,
        amount=_positive_amount(fields.get("amount")),
        payment_method=method,
        payment_reference=fields.get("payment_reference"),
        paid_on=_to_date(fields.get("paid_on"), "paid_on"),
        notes=fields.get("notes"),
        created_at=created_at,
        created_by=created_by,
    )
    return _with_receipts(financial, direction, financial.payment_receipts + (receipt,))


def remove_payment_receipt(financial: FinancialSnapshot, direction: Direction, receipt_id: str) -> FinancialSnapshot:
    remaining = [r for r in financial.payment_receipts if r.id != receipt_id]
    if len(remaining) == len(financial.payment_receipts):
        raise NotFoundError(resource="PaymentReceipt", resource_id=receipt_id)
    return _with_receipts(financial, direction, remaining)


def financial_summary(financial: FinancialSnapshot, direction: Direction) -> dict:
    """Roll-up of the ledger next to the headline figures."""
    by_category = {name: _ZERO for name in COST_CATEGORIES[direction]}
    for entry in financial.cost_entries:
        by_category[entry.category] = by_category.get(entry.category, _ZERO) + entry.amount
    total_costs = sum((e.amount for e in financial.cost_entries), _ZERO)
    total_receipts = sum((r.amount for r in financial.payment_receipts), _ZERO)
    negotiated = financial.negotiated_amount

    def money(value):
        return str(value.quantize(_CENTS)) if value is not None else None

    return {
        "negotiated_amount": money(negotiated),
        "total_costs": money(total_costs),
        "total_receipts": money(total_receipts),
        "remaining_balance": money(financial.balance_outstanding),
        "net_income": money(negotiated - total_costs) if negotiated is not None else None,
        "payment_progress_percentage": money(financial.payment_progress_percentage),
        "cost_breakdown": {
            "by_category": {name: money(value) for name, value in by_category.items()},
            "total_costs": money(total_costs),
        },
        "counts": {
            "cost_entries": len(financial.cost_entries),
            "payment_receipts": len(financial.payment_receipts),
        },
    }
