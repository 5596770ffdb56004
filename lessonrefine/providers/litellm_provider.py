"""Universal LiteLLM adapter implementing the ModelProvider interface.

Routes completion requests to any LLM provider via LiteLLM's unified API and
translates provider exceptions into the engine's TransportError. Also hosts
the JSON extraction helpers used to parse judge and verifier responses.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

import litellm

# Suppress LiteLLM's "Give Feedback / Get Help" and "Provider List" banners
litellm.suppress_debug_info = True

from lessonrefine.errors import MalformedResponseError, TransportError
from lessonrefine.providers.base import Completion, ModelProvider
from lessonrefine.schemas.pipeline import ModelConfig

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)

# Errors worth another attempt; everything else fails fast
_RETRYABLE = (
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
    litellm.APIConnectionError,
    litellm.Timeout,
)


class LiteLLMProvider(ModelProvider):
    """LLM adapter powered by LiteLLM.

    Routes calls to any provider (Anthropic, OpenAI, Google, ...) through
    litellm.acompletion(). This is the only place models are called.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._api_key = os.environ.get(config.api_key_env, "")

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str,
        *,
        json_mode: bool = False,
        timeout: float = 60.0,
    ) -> Completion:
        """Send one completion request via LiteLLM.

        Raises:
            TransportError: On any provider failure. ``retryable`` is set on
                the exception for transient failures.
        """
        full_messages = [{"role": "system", "content": system}, *messages]
        kwargs = self._build_completion_kwargs(full_messages, json_mode, timeout)

        try:
            response = await litellm.acompletion(**kwargs)
        except TimeoutError as e:
            raise TransportError(f"{self.display_name} timed out after {timeout}s") from e
        except litellm.AuthenticationError as e:
            raise TransportError(
                f"Authentication failed for {self._config.model}. "
                f"Check that {self._config.api_key_env} is set correctly.",
                retryable=False,
            ) from e
        except litellm.BadRequestError as e:
            raise TransportError(
                f"Bad request to {self._config.model}: {e}", retryable=False
            ) from e
        except _RETRYABLE as e:
            raise TransportError(f"{self.display_name}: {short_error_reason(e)}") from e

        content = self._extract_content(response)
        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        return Completion(
            content=content,
            model=self._config.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=self.calculate_cost(prompt_tokens, completion_tokens),
        )

    def _build_completion_kwargs(
        self,
        messages: list[dict[str, str]],
        json_mode: bool,
        timeout: float,
    ) -> dict:
        """Build the kwargs dict for litellm.acompletion."""
        kwargs: dict = {
            "model": self._config.model,
            "messages": messages,
            "timeout": float(timeout),
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._config.api_base:
            kwargs["api_base"] = self._config.api_base
        if json_mode and self._config.supports_structured:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _extract_content(self, response: litellm.ModelResponse) -> str:
        """Extract text content from a LiteLLM response."""
        if not response.choices:
            return ""
        message = response.choices[0].message
        return message.content or "" if message else ""


def short_error_reason(error: BaseException) -> str:
    """Extract a short, user-friendly reason from a provider error.

    Maps error types and status codes to concise descriptions instead
    of dumping full JSON error payloads.
    """
    error_str = str(error).lower()
    if "rate" in error_str or "429" in error_str:
        return "rate limit"
    if "overloaded" in error_str or "529" in error_str:
        return "overloaded"
    if "timeout" in error_str or "timed out" in error_str or isinstance(error, TimeoutError):
        return "timeout"
    if "503" in error_str or "unavailable" in error_str:
        return "service unavailable"
    if "500" in error_str or "internal" in error_str:
        return "server error"
    if "connection" in error_str:
        return "connection error"
    return str(error)[:80]


def extract_json(content: str) -> dict[str, Any]:
    """Parse a JSON object from model output.

    Accepts a bare JSON object, a ```json fenced block, or the outermost
    ``{...}`` span embedded in prose.

    Raises:
        MalformedResponseError: If no JSON object can be parsed.
    """
    candidates = [content.strip()]
    block = _JSON_BLOCK_RE.search(content)
    if block:
        candidates.append(block.group(1))
    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        candidates.append(content[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    logger.debug("No JSON object found in response: %.200s", content)
    raise MalformedResponseError("Response does not contain a JSON object")
