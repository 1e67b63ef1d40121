"""
Lead Scoring Module.

- Lead scoring (0-100 scale) from conversation state
- Forwarding of qualified leads to the automation webhook
"""

from .scoring_model import LeadScorer, LeadScore, LeadTemperature, ScoringInput, score_conversation
from .lead_router import LeadForwarder, SCHEMA_VERSION

__all__ = [
    "LeadScorer",
    "LeadScore",
    "LeadTemperature",
    "ScoringInput",
    "score_conversation",
    "LeadForwarder",
    "SCHEMA_VERSION",
]
