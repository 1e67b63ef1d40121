"""Tests for the qualification stage machine."""

from api.flows.definitions import get_lead_qualification_flow
from api.flows.engine import (
    Stage,
    advance_stage,
    next_stage,
    parse_stage,
    resolve_transition,
)


class TestTransitions:
    def test_skip_is_clamped_to_next_stage(self):
        assert resolve_transition(Stage.INITIAL, Stage.COMPLETED) == Stage.COLLECT_NAME

    def test_stay(self):
        assert resolve_transition(Stage.COLLECT_ROLE, Stage.COLLECT_ROLE) == Stage.COLLECT_ROLE
        assert resolve_transition(Stage.COLLECT_ROLE, None) == Stage.COLLECT_ROLE

    def test_one_step(self):
        assert resolve_transition(Stage.COLLECT_EMAIL, Stage.OFFER_SLOTS) == Stage.OFFER_SLOTS

    def test_terminal_never_moves(self):
        assert resolve_transition(Stage.COMPLETED, Stage.INITIAL) == Stage.COMPLETED
        assert resolve_transition(Stage.ABANDONED, Stage.COLLECT_NAME) == Stage.ABANDONED

    def test_oracle_cannot_abandon(self):
        assert resolve_transition(Stage.COLLECT_NAME, Stage.ABANDONED) == Stage.COLLECT_NAME

    def test_backward_proposal_stays(self):
        assert resolve_transition(Stage.OFFER_SLOTS, Stage.COLLECT_NAME) == Stage.OFFER_SLOTS
        assert resolve_transition(Stage.COLLECT_EMAIL, Stage.INITIAL) == Stage.COLLECT_EMAIL

    def test_next_stage_of_terminal(self):
        assert next_stage(Stage.COMPLETED) == Stage.COMPLETED
        assert next_stage(Stage.CONFIRM_BOOKING) == Stage.COMPLETED


class TestAdvance:
    def test_never_regresses(self):
        assert advance_stage(Stage.CONFIRM_BOOKING, Stage.OFFER_SLOTS) == Stage.CONFIRM_BOOKING

    def test_moves_forward(self):
        assert advance_stage(Stage.OFFER_SLOTS, Stage.CONFIRM_BOOKING) == Stage.CONFIRM_BOOKING

    def test_terminal_is_sticky(self):
        assert advance_stage(Stage.ABANDONED, Stage.COLLECT_NAME) == Stage.ABANDONED


class TestParse:
    def test_case_insensitive(self):
        assert parse_stage(" offer_slots ") == Stage.OFFER_SLOTS

    def test_unknown(self):
        assert parse_stage("LUNCH") is None

    def test_passthrough(self):
        assert parse_stage(Stage.COMPLETED) is Stage.COMPLETED
        assert parse_stage(None) is None


def test_flow_collects_fields_in_order():
    flow = get_lead_qualification_flow()
    assert flow.collected_fields() == ["name", "role", "email"]
    assert flow.step_for(Stage.OFFER_SLOTS).offers_slots
