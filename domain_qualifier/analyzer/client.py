"""
Claude client used as the qualification judge.

The judge only ever needs "prompt in, text out". Everything else here is
bookkeeping: token usage, cost estimate, and retries for transient API errors.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import anthropic

from ..utils.config import ConfigurationError, get_settings

logger = logging.getLogger(__name__)

# USD per million tokens (Sonnet 4)
INPUT_PRICE_PER_MTOK = 3.0
OUTPUT_PRICE_PER_MTOK = 15.0


class ModelCallError(Exception):
    """The model call failed after all retries."""


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def estimated_cost(self) -> float:
        return (
            self.input_tokens / 1_000_000 * INPUT_PRICE_PER_MTOK
            + self.output_tokens / 1_000_000 * OUTPUT_PRICE_PER_MTOK
        )

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass
class AnalysisResponse:
    content: str
    usage: TokenUsage
    model: str
    stop_reason: str
    success: bool = True
    error: Optional[str] = None

    @classmethod
    def failed(cls, model: str, error: str, stop_reason: str = "error") -> "AnalysisResponse":
        return cls(content="", usage=TokenUsage(), model=model, stop_reason=stop_reason, success=False, error=error)


class ClaudeClient:
    """
    Async Claude client with usage tracking.

    Usage:
        client = ClaudeClient()
        text = await client.judge(prompt)
        print(client.get_usage_summary())
    """

    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    MAX_TOKENS = 4000
    TEMPERATURE = 0.2
    MAX_RETRIES = 3
    SYSTEM_PROMPT = (
        "You are an expert SEO analyst qualifying guest-post sites for link building. "
        "Follow the classification framework exactly and answer with a single JSON object."
    )

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        if not self.api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY not provided")

        self.model = model or settings.CLAUDE_MODEL or self.DEFAULT_MODEL
        self.async_client = anthropic.AsyncAnthropic(api_key=self.api_key)

        self.total_usage = TokenUsage()
        self.call_count = 0

    async def analyze(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE,
    ) -> AnalysisResponse:
        """Single Claude call. API errors come back as success=False, never raised."""
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            request["system"] = system

        try:
            message = await self.async_client.messages.create(**request)
        except anthropic.APIError as e:
            logger.error(f"Claude API error: {e}")
            return AnalysisResponse.failed(self.model, str(e))

        text = "".join(getattr(block, "text", "") for block in message.content)
        usage = TokenUsage(message.usage.input_tokens, message.usage.output_tokens)
        self.total_usage.add(usage)
        self.call_count += 1

        logger.info(
            f"Claude call: {usage.input_tokens} in, {usage.output_tokens} out, "
            f"${usage.estimated_cost:.4f}"
        )
        return AnalysisResponse(content=text, usage=usage, model=self.model, stop_reason=message.stop_reason)

    async def judge(self, prompt: str) -> str:
        """
        Prompt in, response text out.

        Transient failures are retried with exponential backoff (1s, 2s, ...).

        Raises:
            ModelCallError: If every attempt fails
        """
        response = AnalysisResponse.failed(self.model, "not attempted")

        for attempt in range(1, self.MAX_RETRIES + 1):
            response = await self.analyze(prompt, system=self.SYSTEM_PROMPT)
            if response.success:
                return response.content

            if attempt < self.MAX_RETRIES:
                wait = 2 ** (attempt - 1)
                logger.warning(
                    f"Claude call failed (attempt {attempt}/{self.MAX_RETRIES}), "
                    f"retrying in {wait}s: {response.error}"
                )
                await asyncio.sleep(wait)

        raise ModelCallError(f"Claude call failed after {self.MAX_RETRIES} attempts: {response.error}")

    def get_total_cost(self) -> float:
        return self.total_usage.estimated_cost

    def get_usage_summary(self) -> Dict[str, Any]:
        return {
            "total_calls": self.call_count,
            "input_tokens": self.total_usage.input_tokens,
            "output_tokens": self.total_usage.output_tokens,
            "total_tokens": self.total_usage.total_tokens,
            "estimated_cost": self.total_usage.estimated_cost,
        }
