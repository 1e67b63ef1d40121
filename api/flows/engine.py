"""
Lead qualification stage machine.

Defines the canonical funnel order and the transition rules applied to
every inbound turn: a turn either stays in its stage or advances exactly
one step, and stored stages never move backwards.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    INITIAL = "INITIAL"
    COLLECT_NAME = "COLLECT_NAME"
    COLLECT_ROLE = "COLLECT_ROLE"
    COLLECT_EMAIL = "COLLECT_EMAIL"
    OFFER_SLOTS = "OFFER_SLOTS"
    CONFIRM_BOOKING = "CONFIRM_BOOKING"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


STAGE_ORDER: List[Stage] = [
    Stage.INITIAL,
    Stage.COLLECT_NAME,
    Stage.COLLECT_ROLE,
    Stage.COLLECT_EMAIL,
    Stage.OFFER_SLOTS,
    Stage.CONFIRM_BOOKING,
    Stage.COMPLETED,
]

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.ABANDONED})

# Stages the idle sweep leaves alone
CLEANUP_EXEMPT_STAGES = frozenset({Stage.COMPLETED, Stage.ABANDONED, Stage.CONFIRM_BOOKING})


def parse_stage(value: Optional[str]) -> Optional[Stage]:
    """Parse a stage name, returning None for anything unknown."""
    if value is None or isinstance(value, Stage):
        return value
    try:
        return Stage(str(value).strip().upper())
    except ValueError:
        return None


def stage_rank(stage: Stage) -> int:
    """Position in the funnel. ABANDONED ranks past every live stage."""
    if stage == Stage.ABANDONED:
        return len(STAGE_ORDER)
    return STAGE_ORDER.index(stage)


def next_stage(stage: Stage) -> Stage:
    """Canonical successor of a stage; terminal stages map to themselves."""
    if stage in TERMINAL_STAGES:
        return stage
    return STAGE_ORDER[STAGE_ORDER.index(stage) + 1]


def resolve_transition(current: Stage, proposed: Optional[Stage]) -> Stage:
    """
    Clamp a proposed stage to a legal one-step move.

    A forward proposal advances exactly one step along the canonical
    order, so skips are clamped to the successor. Backward proposals stay
    on the current stage. Terminal stages never move.
    """
    if current in TERMINAL_STAGES or proposed is None or proposed == current:
        return current
    if proposed == Stage.ABANDONED:
        # Only the idle sweep abandons conversations
        return current
    if stage_rank(proposed) < stage_rank(current):
        logger.info(f"Ignoring backward stage proposal {proposed.value} (from {current.value})")
        return current
    target = next_stage(current)
    if proposed != target:
        logger.info(
            f"Clamping stage proposal {proposed.value} -> {target.value} (from {current.value})"
        )
    return target


def advance_stage(stored: Stage, target: Stage) -> Stage:
    """Return the later of two stages so stored stages never regress."""
    if stored in TERMINAL_STAGES:
        return stored
    return target if stage_rank(target) > stage_rank(stored) else stored


@dataclass
class FlowStep:
    """A single stage of the qualification flow."""
    stage: Stage
    prompt_text: str  # Instruction for the oracle at this stage
    entity_field: Optional[str] = None  # Field collected at this stage
    offers_slots: bool = False


@dataclass
class FlowDefinition:
    """Complete flow definition."""
    id: str
    name: str
    steps: Dict[Stage, FlowStep] = field(default_factory=dict)

    def step_for(self, stage: Stage) -> Optional[FlowStep]:
        return self.steps.get(stage)

    def collected_fields(self) -> List[str]:
        return [s.entity_field for s in self.steps.values() if s.entity_field]
