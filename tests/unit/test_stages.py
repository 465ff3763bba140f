"""
Tests for the case stage definition.
"""

import dataclasses

import pytest

from caseflow.core.cases.stages import (
    PIPELINE,
    STAGE_DISPLAY_NAMES,
    TERMINAL_STAGES,
    CaseStage,
    StageDefinition,
    get_stage_definition,
)


class TestCaseStageEnum:
    """Test CaseStage enum and pipeline."""

    def test_all_stages_defined(self):
        """All expected stages should be defined."""
        expected = {
            "enquiry", "estimation", "quotation", "order",
            "production", "delivery", "closed", "rejected"
        }
        assert {s.value for s in CaseStage} == expected

    def test_pipeline_order(self):
        assert [s.value for s in PIPELINE] == [
            "enquiry", "estimation", "quotation", "order", "production", "delivery", "closed"
        ]

    def test_terminal_stages(self):
        assert TERMINAL_STAGES == {CaseStage.CLOSED, CaseStage.REJECTED}

    def test_every_stage_has_display_name(self):
        for stage in CaseStage:
            assert STAGE_DISPLAY_NAMES[stage]
        assert STAGE_DISPLAY_NAMES[CaseStage.ORDER] == "Sales Order"


class TestStageDefinition:
    """Test the stage graph."""

    def test_first_transition_must_enter_enquiry(self):
        definition = get_stage_definition()
        assert definition.valid_transition(None, CaseStage.ENQUIRY)
        assert not definition.valid_transition(None, CaseStage.ESTIMATION)
        assert not definition.valid_transition(None, CaseStage.REJECTED)

    def test_happy_path_is_linear(self):
        definition = get_stage_definition()
        for current, following in zip(PIPELINE, PIPELINE[1:]):
            assert definition.valid_transition(current, following)

    def test_stage_skipping_is_invalid(self):
        definition = get_stage_definition()
        assert not definition.valid_transition(CaseStage.ENQUIRY, CaseStage.PRODUCTION)
        assert not definition.valid_transition(CaseStage.ESTIMATION, CaseStage.ORDER)
        assert not definition.valid_transition(CaseStage.DELIVERY, CaseStage.DELIVERY)

    def test_reverse_edges_are_invalid(self):
        definition = get_stage_definition()
        for current, following in zip(PIPELINE, PIPELINE[1:]):
            assert not definition.valid_transition(following, current)

    def test_rejected_reachable_from_every_open_stage(self):
        definition = get_stage_definition()
        for stage in PIPELINE:
            if stage in TERMINAL_STAGES:
                continue
            assert definition.valid_transition(stage, CaseStage.REJECTED)

    def test_terminal_stages_have_no_transitions(self):
        definition = get_stage_definition()
        for stage in TERMINAL_STAGES:
            assert definition.allowed_targets(stage) == []
            assert definition.is_terminal(stage)
        assert not definition.valid_transition(CaseStage.REJECTED, CaseStage.ENQUIRY)

    def test_allowed_targets_pipeline_order_first(self):
        definition = get_stage_definition()
        assert definition.allowed_targets(CaseStage.QUOTATION) == [CaseStage.ORDER, CaseStage.REJECTED]
        assert definition.allowed_targets(CaseStage.DELIVERY) == [CaseStage.CLOSED, CaseStage.REJECTED]

    def test_predecessor_and_successor(self):
        definition = get_stage_definition()
        assert definition.predecessor_of(CaseStage.ESTIMATION) == CaseStage.ENQUIRY
        assert definition.predecessor_of(CaseStage.CLOSED) == CaseStage.DELIVERY
        assert definition.predecessor_of(CaseStage.ENQUIRY) is None
        assert definition.predecessor_of(CaseStage.REJECTED) is None
        assert definition.successor_of(CaseStage.QUOTATION) == CaseStage.ORDER
        assert definition.successor_of(CaseStage.CLOSED) is None
        assert definition.successor_of(CaseStage.REJECTED) is None

    def test_accepts_plain_strings(self):
        definition = get_stage_definition()
        assert definition.valid_transition("enquiry", "estimation")
        assert definition.predecessor_of("order") == CaseStage.QUOTATION


class TestDefinitionImmutability:
    """The definition is loaded once and cannot be changed."""

    def test_singleton(self):
        assert get_stage_definition() is get_stage_definition()

    def test_fields_are_frozen(self):
        definition = StageDefinition()
        with pytest.raises(dataclasses.FrozenInstanceError):
            definition.version = "other"

    def test_transition_table_is_read_only(self):
        definition = StageDefinition()
        with pytest.raises(TypeError):
            definition.transitions[CaseStage.ENQUIRY] = frozenset({CaseStage.CLOSED})

    def test_to_dict(self):
        data = get_stage_definition().to_dict()
        assert data["version"] == get_stage_definition().version
        assert data["pipeline"][0] == "enquiry"
        assert data["transitions"]["enquiry"] == ["estimation", "rejected"]
        assert data["transitions"]["closed"] == []
        assert data["terminal"] == ["closed", "rejected"]
