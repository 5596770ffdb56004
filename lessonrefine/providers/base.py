"""Abstract base class for all model providers.

Defines the ModelProvider interface every LLM adapter must implement. The
capability layer (judges, patchers, regenerators, fix verifiers) talks to
models exclusively through this interface and never calls provider SDKs
directly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from lessonrefine.schemas.pipeline import ModelConfig


class Completion(BaseModel):
    """Raw text response of one model call with its token accounting."""

    content: str = Field(description="Text returned by the model")
    model: str = Field(default="", description="Model identifier that answered")
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0.0, description="Cost of the call in USD")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ModelProvider(ABC):
    """Abstract interface for any LLM used as a judge or a generator.

    Initialized from a ModelConfig loaded from the TOML registry. Exposes
    identity, cost info and a single async complete() method.
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    # ── Identity ──────────────────────────────────────────────

    @property
    def provider_id(self) -> str:
        """Provider identifier (e.g. 'anthropic', 'openai')."""
        return self._config.provider

    @property
    def model_id(self) -> str:
        """LiteLLM model identifier used for routing."""
        return self._config.model

    @property
    def display_name(self) -> str:
        """Human-friendly model name for CLI output."""
        return self._config.display_name

    @property
    def historical_accuracy(self) -> float:
        """Calibration accuracy used to weight this model's votes."""
        return self._config.historical_accuracy

    @property
    def config(self) -> ModelConfig:
        """The full ModelConfig backing this provider."""
        return self._config

    # ── Cost ──────────────────────────────────────────────────

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate USD cost from token counts and the registry prices."""
        return (
            prompt_tokens * self._config.cost_input
            + completion_tokens * self._config.cost_output
        ) / 1_000_000

    # ── Core interface ────────────────────────────────────────

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str,
        *,
        json_mode: bool = False,
        timeout: float = 60.0,
    ) -> Completion:
        """Send one completion request and return the raw text response.

        Implementations make a single attempt. Retries are applied by the
        caller, per call, so that malformed responses are retried the same
        way as transport failures.

        Args:
            messages: Conversation messages in OpenAI format.
            system: System prompt for this call.
            json_mode: Request a JSON object response when supported.
            timeout: Timeout in seconds for the model call.

        Raises:
            TransportError: On network failure, timeout or provider error.
        """
