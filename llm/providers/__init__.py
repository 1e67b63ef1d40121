"""
LLM Provider implementations.

Every provider exposes ``async complete(system, prompt) -> str``.
"""

from typing import Protocol

from .bedrock import BedrockProvider
from .openai_provider import OpenAIProvider


class LLMProvider(Protocol):
    async def complete(self, system: str, prompt: str) -> str: ...


__all__ = ["BedrockProvider", "LLMProvider", "OpenAIProvider"]
