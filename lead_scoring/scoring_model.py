"""
Lead Scoring Model.

Rule-based, deterministic scoring of a conversation's current state.
The score is always recomputed from scratch; nothing is patched
incrementally.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional

from api.flows.engine import Stage, parse_stage

logger = logging.getLogger(__name__)


class LeadTemperature(Enum):
    """Lead temperature bands."""
    HOT = "hot"      # Score >= 70 - Immediate follow-up
    WARM = "warm"    # Score 40-69 - Standard follow-up
    COLD = "cold"    # Score < 40 - Nurture


@dataclass(frozen=True)
class ScoringInput:
    """The slice of conversation state the score depends on."""
    stage: Stage
    name: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None
    inbound_messages: int = 0
    scheduled: bool = False

    @classmethod
    def from_conversation(cls, conv: Any, inbound_messages: int) -> "ScoringInput":
        return cls(
            stage=parse_stage(conv.stage) or Stage.INITIAL,
            name=conv.name,
            role=conv.role,
            email=conv.email,
            inbound_messages=inbound_messages,
            scheduled=bool(conv.appointment_scheduled),
        )


@dataclass
class LeadScore:
    """Lead score result."""
    score: int  # 0-100
    temperature: LeadTemperature
    breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "temperature": self.temperature.value,
            "breakdown": self.breakdown,
        }


# Scoring weights
FIELD_WEIGHTS = {"name": 15, "role": 15, "email": 20}

ENGAGEMENT_PER_MESSAGE = 3
ENGAGEMENT_CAP = 20

STAGE_WEIGHTS = {
    Stage.INITIAL: 0,
    Stage.COLLECT_NAME: 1,
    Stage.COLLECT_ROLE: 3,
    Stage.COLLECT_EMAIL: 6,
    Stage.OFFER_SLOTS: 10,
    Stage.CONFIRM_BOOKING: 13,
    Stage.COMPLETED: 15,
    Stage.ABANDONED: 0,
}

SCHEDULED_BONUS = 15


def _breakdown(state: ScoringInput) -> Dict[str, int]:
    parts: Dict[str, int] = {}
    for key, weight in FIELD_WEIGHTS.items():
        value = getattr(state, key)
        parts[key] = weight if value and str(value).strip() else 0
    # The opening message earns nothing; engagement is what follows it
    follow_ups = max(0, state.inbound_messages - 1)
    parts["engagement"] = min(ENGAGEMENT_CAP, follow_ups * ENGAGEMENT_PER_MESSAGE)
    parts["stage"] = STAGE_WEIGHTS.get(state.stage, 0)
    parts["scheduled"] = SCHEDULED_BONUS if state.scheduled else 0
    return parts


def score_conversation(state: ScoringInput) -> int:
    """Score 0-100 for the given state. Pure and deterministic."""
    return max(0, min(100, sum(_breakdown(state).values())))


class LeadScorer:
    """
    Scores leads from conversation state.

    Scoring Rules (0-100):
    - name: +15, role: +15, email: +20
    - engagement: +3 per inbound message after the first, capped at 20
    - stage: 0 (INITIAL) up to 15 (COMPLETED)
    - scheduled meeting: +15

    Thresholds:
    - Score >= 70: Hot
    - Score >= 40: Warm
    - Otherwise: Cold
    """

    def __init__(self, hot_threshold: int = 70, warm_threshold: int = 40):
        self.hot_threshold = hot_threshold
        self.warm_threshold = warm_threshold

    def score(self, state: ScoringInput) -> int:
        return score_conversation(state)

    def score_conversation(self, conv: Any, inbound_messages: int) -> int:
        return score_conversation(ScoringInput.from_conversation(conv, inbound_messages))

    def temperature(self, score: int) -> LeadTemperature:
        if score >= self.hot_threshold:
            return LeadTemperature.HOT
        if score >= self.warm_threshold:
            return LeadTemperature.WARM
        return LeadTemperature.COLD

    def breakdown(self, state: ScoringInput) -> LeadScore:
        """Score with per-component contributions and temperature."""
        parts = _breakdown(state)
        total = max(0, min(100, sum(parts.values())))
        return LeadScore(score=total, temperature=self.temperature(total), breakdown=parts)
