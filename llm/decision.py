"""
AI decision contract.

The oracle's completion is untrusted text. It is parsed into an AIDecision
whose validators coerce every field into something the stage machine can
apply safely; anything unusable degrades to the fallback decision.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from api.flows.engine import Stage, next_stage, parse_stage, stage_rank

logger = logging.getLogger(__name__)

ABSENCE_MARKERS = frozenset({"", "null", "none", "n/a", "unknown"})

APPLIED_FIELDS = ("name", "role", "email")

FALLBACK_REPLY = (
    "Desculpe, tive um problema para processar sua mensagem. "
    "Pode repetir, por favor?"
)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class Intent(str, Enum):
    GREETING = "greeting"
    PROVIDING_INFO = "providing_info"
    CONFIRMING = "confirming"
    QUESTION = "question"
    SCHEDULING = "scheduling"
    SELECTING_SLOT = "selecting_slot"
    OTHER = "other"
    ERROR = "error"


class DecisionParseError(ValueError):
    """The completion did not contain a usable decision object."""


def is_absent(value: Any) -> bool:
    """True for null and the textual absence markers."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in ABSENCE_MARKERS
    return False


class AIDecision(BaseModel):
    """Structured decision returned by the oracle for one inbound turn."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    intent: Intent = Intent.OTHER
    extracted_fields: Dict[str, Any] = Field(default_factory=dict, alias="extractedFields")
    reply_text: str = Field(default="", alias="replyText")
    next_stage: Optional[Stage] = Field(default=None, alias="nextStage")
    confidence: float = 0.0
    needs_slot_offer: bool = Field(default=False, alias="needsSlotOffer")
    requests_booking: bool = Field(default=False, alias="requestsBooking")
    ready_to_forward: bool = Field(default=False, alias="readyToForward")

    @field_validator("intent", mode="before")
    @classmethod
    def _coerce_intent(cls, v):
        if isinstance(v, Intent):
            return v
        try:
            return Intent(str(v).strip().lower())
        except ValueError:
            return Intent.OTHER

    @field_validator("extracted_fields", mode="before")
    @classmethod
    def _drop_absent(cls, v):
        if not isinstance(v, dict):
            return {}
        return {str(k): val for k, val in v.items() if not is_absent(val)}

    @field_validator("reply_text", mode="before")
    @classmethod
    def _coerce_reply(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("next_stage", mode="before")
    @classmethod
    def _coerce_stage(cls, v):
        return parse_stage(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if value != value:  # NaN
            return 0.0
        return max(0.0, min(1.0, value))

    @field_validator("needs_slot_offer", "requests_booking", "ready_to_forward", mode="before")
    @classmethod
    def _coerce_bool(cls, v):
        if isinstance(v, str):
            return v.strip().lower() in ("true", "yes", "1", "sim")
        return bool(v)

    @property
    def is_fallback(self) -> bool:
        return self.intent == Intent.ERROR

    def applicable_fields(self) -> Dict[str, str]:
        """Collected fields the conversation stores (name, role, email)."""
        applied = {}
        for key in APPLIED_FIELDS:
            value = self.extracted_fields.get(key)
            if value is None:
                continue
            value = str(value).strip()
            if key == "email":
                value = value.lower()
            if value:
                applied[key] = value
        return applied

    def slot_selection(self) -> Optional[int]:
        """Positive integer slot choice from extractedFields.slot, if any."""
        return parse_slot_index(self.extracted_fields.get("slot"))

    def constrain(self, current: Stage) -> "AIDecision":
        """
        Coerce nextStage to the current stage or its canonical successor.

        A forward skip clamps to the successor; a backward move, ABANDONED
        or a missing stage means "stay".
        """
        proposed = self.next_stage
        if proposed in (current, next_stage(current)):
            return self
        if (
            proposed is not None
            and proposed != Stage.ABANDONED
            and stage_rank(proposed) > stage_rank(current)
        ):
            target = next_stage(current)
        else:
            target = current
        if proposed is not None:
            logger.info(
                f"Oracle proposed {proposed.value} from {current.value}; using {target.value}"
            )
        return self.model_copy(update={"next_stage": target})

    def annotation(self) -> Dict[str, Any]:
        """Compact form stored on the inbound message log entry."""
        return {
            "intent": self.intent.value,
            "extractedFields": self.extracted_fields,
            "nextStage": self.next_stage.value if self.next_stage else None,
            "confidence": self.confidence,
            "needsSlotOffer": self.needs_slot_offer,
            "requestsBooking": self.requests_booking,
            "readyToForward": self.ready_to_forward,
        }


def parse_slot_index(value: Any) -> Optional[int]:
    """Parse a positive integer from an int or a bare-digit string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value.is_integer() and value > 0 else None
    text = str(value).strip()
    if text.isdigit():
        index = int(text)
        return index if index > 0 else None
    return None


def extract_json_object(raw: str) -> Dict[str, Any]:
    """
    Pull the outermost JSON object out of a completion.

    Models sometimes wrap JSON in code fences or surround it with prose.

    Raises:
        DecisionParseError: no JSON object could be decoded
    """
    if not raw or not raw.strip():
        raise DecisionParseError("Empty completion")

    text = raw.strip()
    fence = _FENCE_RE.search(text)
    if fence:
        text = fence.group(1).strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise DecisionParseError("No JSON object in completion")

    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise DecisionParseError(f"Malformed JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecisionParseError("Completion JSON is not an object")
    return data


def parse_decision(raw: str, current: Stage) -> AIDecision:
    """
    Parse and validate a completion into a decision for the current stage.

    Raises:
        DecisionParseError: the completion is not a usable decision
    """
    data = extract_json_object(raw)
    try:
        decision = AIDecision.model_validate(data)
    except ValidationError as e:
        raise DecisionParseError(f"Invalid decision: {e}") from e
    if not decision.reply_text:
        raise DecisionParseError("Decision has no replyText")
    return decision.constrain(current)


def fallback_decision(current: Stage) -> AIDecision:
    """Decision substituted whenever the oracle cannot be used."""
    return AIDecision(
        intent=Intent.ERROR,
        extracted_fields={},
        reply_text=FALLBACK_REPLY,
        next_stage=current,
        confidence=0.0,
        needs_slot_offer=False,
        requests_booking=False,
        ready_to_forward=False,
    )
