"""
Thin OpenAI wrapper: one prompt in, one JSON object out.

Used by the intent cascade (classification) and the general-inquiry handler
(reply drafting). Transport errors are retried with tenacity; anything else
(bad JSON, non-object output, exhausted retries) is raised as
``ClassificationFailure`` for the caller to degrade on.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionMessageParam
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from app.errors import ClassificationFailure

_LOGGER = logging.getLogger(__name__)

# Retry only on transport / rate-limit / backend errors
RETRY_ERRORS = (
    openai.APIStatusError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.APITimeoutError,
)

MAX_USER_CHARS = 1_000


class JsonCompletion:
    """``await llm(system_prompt, user_message) -> dict``."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4.1-mini",
        timeout: float = 15.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        self._client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.timeout = timeout

    async def __call__(self, system_prompt: str, user_message: str) -> Dict[str, Any]:
        messages: List[ChatCompletionMessageParam] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message[:MAX_USER_CHARS]},
        ]
        try:
            raw = await self._create(messages)
        except RETRY_ERRORS as exc:
            _LOGGER.warning("LLM call failed after retries: %s", exc)
            raise ClassificationFailure(f"llm unavailable: {exc}") from exc

        _LOGGER.debug("LLM raw JSON: %s", raw)
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ClassificationFailure("llm returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise ClassificationFailure("llm returned a non-object JSON value")
        return parsed

    @retry(
        wait=wait_random_exponential(multiplier=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(RETRY_ERRORS),
        reraise=True,
    )
    async def _create(self, messages: List[ChatCompletionMessageParam]) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            response_format={"type": "json_object"},
            temperature=0,
            timeout=self.timeout,
        )
        return response.choices[0].message.content or ""


def build_llm(api_key: Optional[str], model: str, timeout: float) -> Optional[JsonCompletion]:
    """``None`` without an API key; the cascade then runs keyword → fallback."""
    if not api_key:
        _LOGGER.info("OPENAI_API_KEY not set; LLM classification disabled")
        return None
    return JsonCompletion(api_key=api_key, model=model, timeout=timeout)
