"""
Pipeline record value types.

PipelineRecord is the aggregate root the engine operates on. All types here
are frozen dataclasses: every engine operation returns a *new* record, so a
failed operation can never leave a half-mutated record behind. Stores map
these values to and from their own persistence shape.

Persisted shape (``PipelineRecord.to_dict``):
    id, direction, asset_reference, counterparty_info, stages[], financial{},
    current_stage_id, overall_status, overall_progress, revision,
    is_archived, cancel_reason, cancelled_at, completed_at,
    target_completion_date, created_at, updated_at

``financial`` also carries the itemised ledger (``cost_entries[]``,
``payment_receipts[]``) and the derived ``payment_progress_percentage``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, ClassVar

from estateflow.services.stage_registry import Direction


class StageStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class OverallStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _money(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _parse_date(value) -> date | None:
    if not value:
        return None
    return value if isinstance(value, date) else date.fromisoformat(str(value)[:10])


def _parse_datetime(value) -> datetime | None:
    if not value:
        return None
    return value if isinstance(value, datetime) else datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class StageState:
    """Mutable-by-replacement state of one stage within one pipeline."""
    stage_id: str
    status: StageStatus = StageStatus.NOT_STARTED
    notes: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attached_document_types: frozenset[str] = frozenset()
    updated_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "status": self.status.value,
            "notes": self.notes,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "attached_document_types": sorted(self.attached_document_types),
            "updated_by": self.updated_by,
        }


@dataclass(frozen=True)
class CostEntry:
    """One itemised cost booked against a pipeline."""
    id: str
    category: str
    amount: Decimal
    description: str | None = None
    payment_reference: str | None = None
    incurred_on: date | None = None
    created_at: datetime | None = None
    created_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "amount": _money(self.amount),
            "description": self.description,
            "payment_reference": self.payment_reference,
            "incurred_on": _iso(self.incurred_on),
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CostEntry:
        return cls(
            id=data["id"],
            category=data["category"],
            amount=Decimal(str(data["amount"])),
            description=data.get("description"),
            payment_reference=data.get("payment_reference"),
            incurred_on=_parse_date(data.get("incurred_on")),
            created_at=_parse_datetime(data.get("created_at")),
            created_by=data.get("created_by"),
        )


@dataclass(frozen=True)
class PaymentReceipt:
    """One payment from the buyer (DISPOSAL) or to the seller (ACQUISITION)."""
    id: str
    receipt_number: int
    amount: Decimal
    payment_method: str | None = None
    payment_reference: str | None = None
    paid_on: date | None = None
    notes: str | None = None
    created_at: datetime | None = None
    created_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "amount": _money(self.amount),
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "paid_on": _iso(self.paid_on),
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PaymentReceipt:
        return cls(
            id=data["id"],
            receipt_number=int(data["receipt_number"]),
            amount=Decimal(str(data["amount"])),
            payment_method=data.get("payment_method"),
            payment_reference=data.get("payment_reference"),
            paid_on=_parse_date(data.get("paid_on")),
            notes=data.get("notes"),
            created_at=_parse_datetime(data.get("created_at")),
            created_by=data.get("created_by"),
        )


@dataclass(frozen=True)
class FinancialSnapshot:
    """Financial figures of a pipeline.

    ``asking_amount``: asking price (ACQUISITION) or listed price (DISPOSAL).
    ``total_cost``: cost basis (ACQUISITION) or the property's recorded cost
    (DISPOSAL). The last three fields are derived by the financial
    calculator and never accepted as input.

    While ``cost_entries`` is non-empty, ``total_cost`` is their sum; while
    ``payment_receipts`` is non-empty, ``deposit_amount`` is theirs.
    """
    asking_amount: Decimal | None = None
    negotiated_amount: Decimal | None = None
    deposit_amount: Decimal | None = None
    total_cost: Decimal | None = None
    expected_profit: Decimal | None = None
    roi_percentage: Decimal | None = None
    balance_outstanding: Decimal | None = None
    cost_entries: tuple[CostEntry, ...] = ()
    payment_receipts: tuple[PaymentReceipt, ...] = ()

    INPUT_FIELDS: ClassVar[tuple[str, ...]] = (
        "asking_amount", "negotiated_amount", "deposit_amount", "total_cost",
    )
    DERIVED_FIELDS: ClassVar[tuple[str, ...]] = (
        "expected_profit", "roi_percentage", "balance_outstanding",
    )

    @property
    def payment_progress_percentage(self) -> Decimal | None:
        """Share of the negotiated amount already paid, capped at 100."""
        negotiated = self.negotiated_amount
        if not negotiated:
            return None
        paid = self.deposit_amount or Decimal("0")
        return min(paid / negotiated * 100, Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def to_dict(self) -> dict:
        data = {name: _money(getattr(self, name)) for name in self.INPUT_FIELDS + self.DERIVED_FIELDS}
        data["payment_progress_percentage"] = _money(self.payment_progress_percentage)
        data["cost_entries"] = [e.to_dict() for e in self.cost_entries]
        data["payment_receipts"] = [r.to_dict() for r in self.payment_receipts]
        return data


@dataclass(frozen=True)
class PipelineRecord:
    """Aggregate root: one asset moving through one direction's stages."""
    id: str
    direction: Direction
    asset_reference: str
    stages: tuple[StageState, ...]
    financial: FinancialSnapshot = field(default_factory=FinancialSnapshot)
    counterparty_info: dict[str, Any] = field(default_factory=dict)
    current_stage_id: str | None = None
    overall_status: OverallStatus = OverallStatus.NOT_STARTED
    overall_progress: int = 0
    revision: int = 1
    is_archived: bool = False
    cancel_reason: str | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    target_completion_date: date | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def stage(self, stage_id: str) -> StageState | None:
        for state in self.stages:
            if state.stage_id == stage_id:
                return state
        return None

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in (OverallStatus.COMPLETED, OverallStatus.CANCELLED)

    def completed_stage_count(self) -> int:
        return sum(1 for s in self.stages if s.status == StageStatus.COMPLETED)

    def to_dict(self, registry=None) -> dict:
        """Serialise to the persisted shape.

        When a stage registry is passed, each stage also carries its
        ``name`` and ``order`` for display.
        """
        stages = []
        for state in self.stages:
            item = state.to_dict()
            if registry is not None:
                definition = registry.get_stage(self.direction, state.stage_id)
                item["name"] = definition.name
                item["order"] = definition.order
            stages.append(item)
        return {
            "id": self.id,
            "direction": self.direction.value,
            "asset_reference": self.asset_reference,
            "counterparty_info": dict(self.counterparty_info),
            "stages": stages,
            "financial": self.financial.to_dict(),
            "current_stage_id": self.current_stage_id,
            "overall_status": self.overall_status.value,
            "overall_progress": self.overall_progress,
            "revision": self.revision,
            "is_archived": self.is_archived,
            "cancel_reason": self.cancel_reason,
            "cancelled_at": _iso(self.cancelled_at),
            "completed_at": _iso(self.completed_at),
            "target_completion_date": _iso(self.target_completion_date),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
