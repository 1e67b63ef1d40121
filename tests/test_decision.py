"""Tests for the AI decision contract and the oracle wrapper."""

import asyncio
import json

import pytest

from api.flows.engine import Stage
from llm.decision import (
    FALLBACK_REPLY,
    AIDecision,
    DecisionParseError,
    Intent,
    extract_json_object,
    fallback_decision,
    parse_decision,
    parse_slot_index,
)
from llm.oracle import DecisionOracle
from llm.prompt_templates import PromptTemplates

from tests.conftest import FakeProvider, decision


# ── Parsing ───────────────────────────────────────────

class TestParseDecision:
    def test_valid(self):
        raw = json.dumps(decision("Qual seu nome?", "COLLECT_NAME", intent="greeting"))
        result = parse_decision(raw, Stage.INITIAL)
        assert result.intent == Intent.GREETING
        assert result.next_stage == Stage.COLLECT_NAME
        assert result.reply_text == "Qual seu nome?"

    def test_code_fenced(self):
        raw = "```json\n" + json.dumps(decision("Oi")) + "\n```"
        assert parse_decision(raw, Stage.INITIAL).reply_text == "Oi"

    def test_surrounding_prose(self):
        raw = "Aqui está: " + json.dumps(decision("Oi")) + " obrigado"
        assert parse_decision(raw, Stage.INITIAL).reply_text == "Oi"

    def test_missing_reply_is_rejected(self):
        with pytest.raises(DecisionParseError):
            parse_decision(json.dumps(decision("")), Stage.INITIAL)

    def test_not_json(self):
        with pytest.raises(DecisionParseError):
            extract_json_object("desculpe, não entendi")

    def test_array_is_rejected(self):
        with pytest.raises(DecisionParseError):
            extract_json_object("[1, 2]")

    def test_unknown_intent_becomes_other(self):
        raw = json.dumps(decision("Oi", intent="dancing"))
        assert parse_decision(raw, Stage.INITIAL).intent == Intent.OTHER

    def test_confidence_clamped(self):
        raw = json.dumps(decision("Oi", confidence=7))
        assert parse_decision(raw, Stage.INITIAL).confidence == 1.0
        raw = json.dumps(decision("Oi", confidence="high"))
        assert parse_decision(raw, Stage.INITIAL).confidence == 0.0

    def test_string_booleans(self):
        raw = json.dumps(decision("Oi", needsSlotOffer="true", requestsBooking="no"))
        result = parse_decision(raw, Stage.INITIAL)
        assert result.needs_slot_offer is True
        assert result.requests_booking is False


class TestStageConstraint:
    def test_skip_clamps_to_successor(self):
        raw = json.dumps(decision("Oi", "COMPLETED"))
        assert parse_decision(raw, Stage.INITIAL).next_stage == Stage.COLLECT_NAME

    def test_backwards_means_stay(self):
        raw = json.dumps(decision("Oi", "COLLECT_NAME"))
        assert parse_decision(raw, Stage.COLLECT_EMAIL).next_stage == Stage.COLLECT_EMAIL

    def test_unknown_stage_means_stay(self):
        raw = json.dumps(decision("Oi", "NEGOTIATION"))
        assert parse_decision(raw, Stage.COLLECT_ROLE).next_stage == Stage.COLLECT_ROLE

    def test_abandon_means_stay(self):
        raw = json.dumps(decision("Oi", "ABANDONED"))
        assert parse_decision(raw, Stage.COLLECT_ROLE).next_stage == Stage.COLLECT_ROLE


class TestFields:
    def test_absence_markers_dropped(self):
        d = AIDecision.model_validate(decision(
            "Oi", extractedFields={"name": "null", "role": "N/A", "email": None, "slot": ""}
        ))
        assert d.extracted_fields == {}

    def test_applicable_fields(self):
        d = AIDecision.model_validate(decision(
            "Oi", extractedFields={"name": " Ana Souza ", "email": "Ana@Example.COM", "company": "ACME"}
        ))
        assert d.applicable_fields() == {"name": "Ana Souza", "email": "ana@example.com"}

    def test_slot_selection(self):
        d = AIDecision.model_validate(decision("Ok", extractedFields={"slot": "2"}))
        assert d.slot_selection() == 2

    def test_slot_index_parsing(self):
        assert parse_slot_index("3") == 3
        assert parse_slot_index(" 1 ") == 1
        assert parse_slot_index("0") is None
        assert parse_slot_index("o segundo") is None
        assert parse_slot_index(True) is None
        assert parse_slot_index(2.0) == 2

    def test_fallback(self):
        d = fallback_decision(Stage.COLLECT_ROLE)
        assert d.is_fallback
        assert d.next_stage == Stage.COLLECT_ROLE
        assert d.reply_text == FALLBACK_REPLY
        assert d.extracted_fields == {}
        assert not (d.needs_slot_offer or d.requests_booking or d.ready_to_forward)


# ── Oracle ────────────────────────────────────────────

class SlowProvider:
    async def complete(self, system, prompt):
        await asyncio.sleep(1)
        return json.dumps(decision("tarde demais"))


class TestOracle:
    @pytest.mark.asyncio
    async def test_decides(self):
        provider = FakeProvider(decision("Qual seu nome?", "COLLECT_NAME"))
        oracle = DecisionOracle(provider)
        result = await oracle.decide(Stage.INITIAL, {}, "Olá")
        assert result.next_stage == Stage.COLLECT_NAME
        assert "Olá" in provider.prompts[0]

    @pytest.mark.asyncio
    async def test_unconfigured_falls_back(self):
        result = await DecisionOracle(None).decide(Stage.INITIAL, {}, "Olá")
        assert result.is_fallback

    @pytest.mark.asyncio
    async def test_transport_error_falls_back(self):
        oracle = DecisionOracle(FakeProvider(RuntimeError("connection reset")))
        result = await oracle.decide(Stage.COLLECT_NAME, {}, "Ana")
        assert result.is_fallback
        assert result.next_stage == Stage.COLLECT_NAME

    @pytest.mark.asyncio
    async def test_malformed_falls_back(self):
        oracle = DecisionOracle(FakeProvider("não sou JSON"))
        assert (await oracle.decide(Stage.INITIAL, {}, "Olá")).is_fallback

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        oracle = DecisionOracle(SlowProvider(), timeout_seconds=0.05)
        assert (await oracle.decide(Stage.INITIAL, {}, "Olá")).is_fallback


def test_prompt_carries_stage_contract():
    templates = PromptTemplates(brand_name="ACME")
    system = templates.system_prompt(Stage.COLLECT_ROLE)
    assert "ACME" in system
    assert '"COLLECT_ROLE" to stay' in system
    assert '"COLLECT_EMAIL"' in system
    prompt = templates.user_prompt(Stage.COLLECT_ROLE, {"name": "Ana"}, "Sou CTO")
    assert '"name": "Ana"' in prompt
    assert "Sou CTO" in prompt
