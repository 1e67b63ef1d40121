"""
AWS Bedrock LLM Provider.
"""

import asyncio
import json
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class BedrockProvider:
    """
    AWS Bedrock LLM provider.

    Supports Claude models via Bedrock. boto3 is synchronous, so calls run
    in a worker thread.
    """

    DEFAULT_MODEL = "us.anthropic.claude-sonnet-4-20250514-v1:0"

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL,
        region: str = "us-east-1",
        max_tokens: int = 600,
        temperature: float = 0.2,
        timeout: float = 20.0,
    ):
        self.model_id = model_id
        self.region = region
        self.max_tokens = max_tokens
        self.temperature = temperature

        self._client = boto3.client(
            "bedrock-runtime",
            region_name=region,
            config=Config(read_timeout=timeout, connect_timeout=timeout, retries={"max_attempts": 1}),
        )
        logger.info(f"Bedrock provider initialized: {model_id} in {region}")

    def _invoke(self, system: str, prompt: str) -> str:
        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system,
            "messages": [
                {
                    "role": "user",
                    "content": [{"type": "text", "text": prompt}]
                }
            ]
        }

        try:
            response = self._client.invoke_model(
                modelId=self.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
        except ClientError as e:
            logger.error(f"Bedrock API error: {e}")
            raise

        response_body = json.loads(response["body"].read())

        if "content" in response_body and response_body["content"]:
            return response_body["content"][0]["text"].strip()

        logger.warning("Empty response from Bedrock")
        return ""

    async def complete(self, system: str, prompt: str) -> str:
        """Run one completion and return the raw text."""
        return await asyncio.to_thread(self._invoke, system, prompt)
