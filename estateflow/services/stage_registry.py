"""
Stage Registry — single source of truth for pipeline stage shape.

Each direction (ACQUISITION, DISPOSAL) owns an ordered, immutable list of
StageDefinition entries plus a direction-level ``allow_out_of_order`` flag.
Pipeline records only hold per-stage *state*; they never redefine structure.

Invariant: within one direction, stage orders form the contiguous sequence
1..N. ``validate_registry`` checks it and runs at import time.

Usage:
    from estateflow.services.stage_registry import Direction, default_registry

    stages = default_registry.stages_for(Direction.DISPOSAL)
    legal = default_registry.get_stage(Direction.ACQUISITION, "legal_verification")
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from estateflow.core.exceptions import UnknownStageError, ValidationError


class Direction(str, Enum):
    ACQUISITION = "ACQUISITION"
    DISPOSAL = "DISPOSAL"


@dataclass(frozen=True)
class StageDefinition:
    """One ordered step of a pipeline direction."""
    id: str
    order: int
    name: str
    required_document_types: frozenset[str] = frozenset()
    description: str = ""
    estimated_days: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order": self.order,
            "name": self.name,
            "description": self.description,
            "estimated_days": self.estimated_days,
            "required_document_types": sorted(self.required_document_types),
        }


@dataclass(frozen=True)
class StageRegistryEntry:
    """All stages of one direction plus its ordering policy."""
    direction: Direction
    stages: tuple[StageDefinition, ...]
    allow_out_of_order: bool = False

    def to_dict(self) -> dict:
        return {
            "direction": self.direction.value,
            "allow_out_of_order": self.allow_out_of_order,
            "stages": [s.to_dict() for s in self.stages],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Stage catalogues
# ═════════════════════════════════════════════════════════════════════════════

ACQUISITION_STAGES = (
    StageDefinition(
        "initial_search", 1, "Initial Search & Evaluation",
        frozenset({"property_photos", "location_map", "property_details"}),
        description="Property identification, site photos and first evaluation",
        estimated_days=7,
    ),
    StageDefinition(
        "survey_mapping", 2, "Survey & Mapping",
        frozenset({"survey_report", "survey_map", "deed_plan"}),
        description="Professional land survey and beacon placement",
        estimated_days=14,
    ),
    StageDefinition(
        "legal_verification", 3, "Legal Verification",
        frozenset({"title_deed", "witness_statements", "legal_opinion"}),
        description="Title search and lawyer's opinion on the property",
        estimated_days=21,
    ),
    StageDefinition(
        "agreement", 4, "Agreement & Documentation",
        frozenset({"purchase_agreement", "sale_contract"}),
        description="Purchase agreement drafting and signing",
        estimated_days=10,
    ),
    StageDefinition(
        "valuation", 5, "Valuation & Financial Assessment",
        frozenset({"valuation_report", "financial_analysis"}),
        description="Certified valuation and investment analysis",
        estimated_days=7,
    ),
    StageDefinition(
        "deposit_payment", 6, "Payment & Financial Arrangements",
        frozenset({"deposit_receipt", "payment_schedule"}),
        description="Deposit paid to vendor and payment plan agreed",
        estimated_days=5,
    ),
    StageDefinition(
        "registration", 7, "Final Documentation & Registration",
        frozenset({"transfer_documents", "final_payment_receipt"}),
        description="Transfer paperwork and final settlement",
        estimated_days=30,
    ),
    StageDefinition(
        "property_transfer", 8, "Property Transfer & Handover",
        frozenset({"handover_certificate", "keys_receipt"}),
        description="Keys and possession handed to the new owner",
        estimated_days=7,
    ),
)

DISPOSAL_STAGES = (
    StageDefinition(
        "handover_preparation", 1, "Initial Handover Preparation",
        description="Property preparation and buyer identification",
        estimated_days=7,
    ),
    StageDefinition(
        "documentation_survey", 2, "Property Documentation & Survey",
        frozenset({"survey_report"}),
        description="Document preparation and property survey verification",
        estimated_days=14,
    ),
    StageDefinition(
        "legal_clearance", 3, "Legal Clearance & Verification",
        frozenset({"title_deed", "legal_opinion"}),
        description="Legal verification and clearance documentation",
        estimated_days=21,
    ),
    StageDefinition(
        "sale_agreement", 4, "Handover Agreement & Documentation",
        frozenset({"sale_agreement"}),
        description="Sale agreement preparation and signing",
        estimated_days=10,
    ),
    StageDefinition(
        "deposit_payment", 5, "Payment Processing",
        frozenset({"deposit_receipt"}),
        description="Initial payment and deposit processing",
        estimated_days=5,
    ),
    StageDefinition(
        "final_payment", 6, "Final Payment Processing",
        frozenset({"final_payment_receipt"}),
        description="Balance payment and final settlement",
        estimated_days=7,
    ),
    StageDefinition(
        "lcb_transfer_forms", 7, "LCB & Transfer Forms Processing",
        frozenset({"lcb_consent", "transfer_forms"}),
        description="Land Control Board approval and transfer forms",
        estimated_days=30,
    ),
    StageDefinition(
        "title_transfer", 8, "Title Transfer & Registration",
        frozenset({"registered_title"}),
        description="Final title transfer and registration completion",
        estimated_days=14,
    ),
)


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════


def coerce_direction(value: Direction | str) -> Direction:
    """Accept a Direction or its string value (case-insensitive)."""
    if isinstance(value, Direction):
        return value
    try:
        return Direction(str(value).upper())
    except ValueError:
        raise ValidationError(
            f"Unknown direction: {value!r}",
            details={"direction": f"must be one of {[d.value for d in Direction]}"},
        ) from None


class StageRegistry:
    """Immutable lookup of stage definitions per direction."""

    def __init__(self, entries: dict[Direction, StageRegistryEntry]) -> None:
        self._entries = dict(entries)
        self._by_id = {
            direction: {s.id: s for s in entry.stages}
            for direction, entry in self._entries.items()
        }
        validate_registry(self)

    def entry(self, direction: Direction | str) -> StageRegistryEntry:
        return self._entries[coerce_direction(direction)]

    def stages_for(self, direction: Direction | str) -> list[StageDefinition]:
        """Ordered stage list for a direction."""
        return list(self.entry(direction).stages)

    def get_stage(self, direction: Direction | str, stage_id: str) -> StageDefinition:
        direction = coerce_direction(direction)
        stage = self._by_id[direction].get(stage_id)
        if stage is None:
            raise UnknownStageError(stage_id, direction.value)
        return stage

    def allows_out_of_order(self, direction: Direction | str) -> bool:
        return self.entry(direction).allow_out_of_order

    def directions(self) -> list[Direction]:
        return list(self._entries)

    def with_out_of_order(self, **flags: bool) -> "StageRegistry":
        """Return a copy with per-direction out-of-order flags overridden.

        Keys are lower-case direction names: ``acquisition=True``.
        """
        entries = dict(self._entries)
        for name, allowed in flags.items():
            direction = coerce_direction(name)
            entries[direction] = replace(entries[direction], allow_out_of_order=bool(allowed))
        return StageRegistry(entries)


def validate_registry(registry: StageRegistry) -> None:
    """Raise ValueError unless every direction has contiguous orders 1..N and unique ids."""
    for direction in registry.directions():
        stages = registry.stages_for(direction)
        orders = [s.order for s in stages]
        if orders != list(range(1, len(stages) + 1)):
            raise ValueError(f"{direction.value} stage orders must be 1..{len(stages)}, got {orders}")
        ids = [s.id for s in stages]
        if len(set(ids)) != len(ids):
            raise ValueError(f"{direction.value} has duplicate stage ids: {ids}")


def registry_from_config(config) -> StageRegistry:
    """Build the registry for an app config mapping (out-of-order overrides)."""
    return default_registry.with_out_of_order(
        acquisition=config.get("PIPELINE_ACQUISITION_OUT_OF_ORDER", False),
        disposal=config.get("PIPELINE_DISPOSAL_OUT_OF_ORDER", False),
    )


default_registry = StageRegistry({
    Direction.ACQUISITION: StageRegistryEntry(Direction.ACQUISITION, ACQUISITION_STAGES),
    Direction.DISPOSAL: StageRegistryEntry(Direction.DISPOSAL, DISPOSAL_STAGES),
})


def stages_for(direction: Direction | str) -> list[StageDefinition]:
    """Module-level shortcut against the default registry."""
    return default_registry.stages_for(direction)
