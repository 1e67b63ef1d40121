"""
LLM Orchestration Module.

This module handles:
- LLM provider abstraction (Bedrock, OpenAI)
- The AI decision contract and its fallback
- The per-message conversation engine
"""

from .decision import AIDecision, Intent, fallback_decision, parse_decision
from .oracle import DecisionOracle, OracleError
from .orchestrator import ConversationOrchestrator, TurnResult
from .prompt_templates import PromptTemplates

__all__ = [
    "AIDecision",
    "Intent",
    "fallback_decision",
    "parse_decision",
    "DecisionOracle",
    "OracleError",
    "ConversationOrchestrator",
    "TurnResult",
    "PromptTemplates",
]
