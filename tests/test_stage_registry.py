"""
Stage registry tests: shape, contiguity, lookups, config overrides.
"""

import pytest

from estateflow.core.exceptions import UnknownStageError, ValidationError
from estateflow.services.stage_registry import (
    ACQUISITION_STAGES,
    DISPOSAL_STAGES,
    Direction,
    StageDefinition,
    StageRegistry,
    StageRegistryEntry,
    coerce_direction,
    default_registry,
    registry_from_config,
    stages_for,
    validate_registry,
)


class TestRegistryShape:
    @pytest.mark.parametrize("direction", list(Direction))
    def test_orders_are_contiguous_from_one(self, direction):
        orders = [s.order for s in stages_for(direction)]
        assert orders == list(range(1, len(orders) + 1))

    @pytest.mark.parametrize("direction", list(Direction))
    def test_eight_stages_per_direction(self, direction):
        assert len(default_registry.stages_for(direction)) == 8

    def test_acquisition_stage_ids_in_order(self):
        assert [s.id for s in ACQUISITION_STAGES] == [
            "initial_search", "survey_mapping", "legal_verification", "agreement",
            "valuation", "deposit_payment", "registration", "property_transfer",
        ]

    def test_disposal_stage_ids_in_order(self):
        assert [s.id for s in DISPOSAL_STAGES] == [
            "handover_preparation", "documentation_survey", "legal_clearance", "sale_agreement",
            "deposit_payment", "final_payment", "lcb_transfer_forms", "title_transfer",
        ]

    def test_required_documents(self):
        legal = default_registry.get_stage(Direction.ACQUISITION, "legal_verification")
        assert legal.required_document_types == {"title_deed", "witness_statements", "legal_opinion"}
        prep = default_registry.get_stage(Direction.DISPOSAL, "handover_preparation")
        assert prep.required_document_types == frozenset()

    def test_same_stage_id_differs_per_direction(self):
        acq = default_registry.get_stage("acquisition", "deposit_payment")
        disp = default_registry.get_stage("disposal", "deposit_payment")
        assert acq.order == 6 and disp.order == 5
        assert acq.required_document_types != disp.required_document_types

    def test_out_of_order_disabled_by_default(self):
        for direction in Direction:
            assert default_registry.allows_out_of_order(direction) is False


class TestLookups:
    def test_unknown_stage_raises(self):
        with pytest.raises(UnknownStageError) as exc:
            default_registry.get_stage(Direction.DISPOSAL, "initial_search")
        assert exc.value.stage_id == "initial_search"
        assert exc.value.direction == "DISPOSAL"

    def test_unknown_stage_is_validation_error(self):
        with pytest.raises(ValidationError):
            default_registry.get_stage(Direction.ACQUISITION, "nope")

    def test_coerce_direction_case_insensitive(self):
        assert coerce_direction("disposal") is Direction.DISPOSAL
        assert coerce_direction(Direction.ACQUISITION) is Direction.ACQUISITION

    def test_coerce_direction_rejects_unknown(self):
        with pytest.raises(ValidationError):
            coerce_direction("LEASE")

    def test_entry_to_dict(self):
        data = default_registry.entry(Direction.DISPOSAL).to_dict()
        assert data["direction"] == "DISPOSAL"
        assert data["allow_out_of_order"] is False
        assert data["stages"][-1]["id"] == "title_transfer"
        assert data["stages"][-1]["required_document_types"] == ["registered_title"]


class TestValidation:
    def test_gap_in_orders_rejected(self):
        stages = (
            StageDefinition("a", 1, "A"),
            StageDefinition("b", 3, "B"),
        )
        with pytest.raises(ValueError):
            StageRegistry({Direction.ACQUISITION: StageRegistryEntry(Direction.ACQUISITION, stages)})

    def test_duplicate_ids_rejected(self):
        stages = (
            StageDefinition("a", 1, "A"),
            StageDefinition("a", 2, "A again"),
        )
        with pytest.raises(ValueError):
            StageRegistry({Direction.DISPOSAL: StageRegistryEntry(Direction.DISPOSAL, stages)})

    def test_default_registry_valid(self):
        validate_registry(default_registry)


class TestConfigOverrides:
    def test_with_out_of_order_returns_copy(self):
        relaxed = default_registry.with_out_of_order(disposal=True)
        assert relaxed.allows_out_of_order(Direction.DISPOSAL) is True
        assert relaxed.allows_out_of_order(Direction.ACQUISITION) is False
        assert default_registry.allows_out_of_order(Direction.DISPOSAL) is False

    def test_registry_from_config(self):
        registry = registry_from_config({"PIPELINE_ACQUISITION_OUT_OF_ORDER": True})
        assert registry.allows_out_of_order(Direction.ACQUISITION) is True
        assert registry.allows_out_of_order(Direction.DISPOSAL) is False
