"""
Decision oracle.

Wraps an LLM provider behind the decision contract: builds the stage
prompt, enforces the timeout and turns every failure into the fallback
decision. decide() never raises.
"""

import asyncio
import logging
import time
from typing import Dict, Optional

from api.flows.engine import Stage
from api.middleware.metrics import record_intent, record_oracle_fallback, record_oracle_latency

from .decision import AIDecision, DecisionParseError, fallback_decision, parse_decision
from .prompt_templates import PromptTemplates
from .providers import LLMProvider

logger = logging.getLogger(__name__)


class OracleError(Exception):
    """The oracle could not produce a completion."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class DecisionOracle:
    """Calls the provider with the stage prompt and validates the answer."""

    def __init__(
        self,
        provider: Optional[LLMProvider],
        templates: Optional[PromptTemplates] = None,
        timeout_seconds: float = 20.0,
    ):
        self.provider = provider
        self.templates = templates or PromptTemplates()
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return self.provider is not None

    async def _complete(self, stage: Stage, fields: Dict[str, Optional[str]], text: str) -> str:
        if self.provider is None:
            raise OracleError("unconfigured", "No LLM provider configured")

        system = self.templates.system_prompt(stage)
        prompt = self.templates.user_prompt(stage, fields, text)

        start = time.time()
        try:
            return await asyncio.wait_for(
                self.provider.complete(system, prompt), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise OracleError("timeout", f"Oracle timed out after {self.timeout_seconds}s") from e
        except Exception as e:
            raise OracleError("transport", f"Oracle call failed: {e}") from e
        finally:
            record_oracle_latency(time.time() - start)

    async def decide(
        self, stage: Stage, fields: Dict[str, Optional[str]], text: str
    ) -> AIDecision:
        """
        Ask the oracle for this turn's decision.

        Returns the fallback decision on timeout, transport failure,
        unconfigured provider or malformed output.
        """
        try:
            raw = await self._complete(stage, fields, text)
            decision = parse_decision(raw, stage)
        except OracleError as e:
            logger.warning(f"Oracle failure ({e.reason}): {e}")
            record_oracle_fallback(e.reason)
            decision = fallback_decision(stage)
        except DecisionParseError as e:
            logger.warning(f"Oracle returned unusable output: {e}")
            record_oracle_fallback("malformed")
            decision = fallback_decision(stage)

        record_intent(decision.intent.value)
        return decision
