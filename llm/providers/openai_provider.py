"""
OpenAI LLM Provider.
"""

import logging
from typing import Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class OpenAIProvider:
    """
    OpenAI chat-completions provider.

    Requests JSON-object output so the decision contract parses cleanly.
    """

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_id: str = DEFAULT_MODEL,
        max_tokens: int = 600,
        temperature: float = 0.2,
        timeout: float = 20.0,
    ):
        """
        Initialize OpenAI provider.

        Args:
            api_key: OpenAI API key
            model_id: Model ID
            max_tokens: Maximum tokens
            temperature: Generation temperature
            timeout: Per-request timeout in seconds
        """
        self._client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.temperature = temperature

        logger.info(f"OpenAI provider initialized: {model_id}")

    async def complete(self, system: str, prompt: str) -> str:
        """
        Run one completion and return the raw text.

        Args:
            system: System prompt
            prompt: User prompt

        Returns:
            Completion text (expected to hold a JSON object)
        """
        try:
            response = await self._client.chat.completions.create(
                model=self.model_id,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
            return (response.choices[0].message.content or "").strip()

        except Exception as e:
            logger.error(f"OpenAI generation failed: {e}")
            raise
