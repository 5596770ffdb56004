"""Configuration schemas for models, the cascade and the refinement loop.

Loaded from the TOML files in ``lessonrefine/config/`` and overridden by CLI
flags. Defaults mirror the shipped ``defaults.toml``.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class OperationMode(StrEnum):
    """Whether a human is available to take escalations."""

    SEMI_AUTO = "semi-auto"
    FULL_AUTO = "full-auto"


class ModelConfig(BaseModel):
    """Configuration for a single LLM model in the registry.

    Each entry provides the LiteLLM routing information, cost data and the
    judge calibration accuracy used to weight its votes.
    """

    provider: str = Field(description="Provider identifier (e.g. 'anthropic', 'openai')")
    model: str = Field(description="LiteLLM model identifier")
    display_name: str = Field(description="Human-friendly model name for CLI output")
    api_key_env: str = Field(description="Environment variable name holding the API key")
    api_base: str = Field(default="", description="Custom API base URL (empty = provider default)")
    context_window: int = Field(gt=0, description="Maximum context window size in tokens")
    supports_structured: bool = Field(
        default=False, description="Whether the model supports structured output"
    )
    cost_input: float = Field(ge=0.0, description="Cost per 1M input tokens in USD")
    cost_output: float = Field(ge=0.0, description="Cost per 1M output tokens in USD")
    historical_accuracy: float = Field(
        default=0.0, description="Judge accuracy from calibration runs (vote weight input)"
    )


class ModeThresholds(BaseModel):
    """Score thresholds for one operation mode."""

    accept: float = Field(ge=0.0, le=1.0, description="Score that ends the session as ACCEPTED")
    good_enough: float = Field(
        ge=0.0, le=1.0, description="Score accepted when no critical issue is outstanding"
    )

    @model_validator(mode="after")
    def _ordered(self) -> ModeThresholds:
        if self.good_enough > self.accept:
            raise ValueError("good_enough threshold must not exceed accept threshold")
        return self


class SessionLimits(BaseModel):
    """Hard limits for one refinement session."""

    max_iterations: int = Field(default=3, ge=1, le=10)
    token_budget: int = Field(default=15000, gt=0)
    timeout_seconds: float = Field(default=300.0, gt=0)


class CascadeConfig(BaseModel):
    """Judge assignment and thresholds for cascade evaluation."""

    single_judge: str = Field(default="", description="Registry key of the single judge")
    voting_judges: list[str] = Field(
        default_factory=list, description="Registry keys of the consensus judges"
    )
    tiebreaker: str = Field(default="", description="Registry key of the tiebreaker judge")
    delta_judge: str = Field(default="", description="Registry key of the fix verifier")
    generator: str = Field(default="", description="Registry key of the patcher/regenerator")
    accept_threshold: float = Field(default=0.90, ge=0.0, le=1.0)
    reject_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    disagreement_delta: float = Field(default=0.15, ge=0.0, le=1.0)
    judge_timeout: float = Field(default=30.0, gt=0, description="Per-call judge timeout (s)")
    min_quorum: int = Field(default=2, ge=1)


class HeuristicConfig(BaseModel):
    """Thresholds for the deterministic pre-filter."""

    min_words: int = Field(default=500, ge=0)
    max_words: int = Field(default=10000, gt=0)
    fk_min: float = Field(default=6.0)
    fk_max: float = Field(default=14.0)
    fk_target: float = Field(default=10.0)
    keyword_coverage: float = Field(default=0.5, ge=0.0, le=1.0)
    foreign_script_major: float = Field(
        default=0.20, ge=0.0, le=1.0, description="Foreign-script letter share that is major"
    )
    foreign_script_minor: float = Field(
        default=0.05, ge=0.0, le=1.0, description="Foreign-script letter share that is minor"
    )
    min_length_ratio: float = Field(
        default=0.5, gt=0.0, description="Smallest allowed new/old word ratio for a patch"
    )
    max_length_ratio: float = Field(
        default=2.5, gt=0.0, description="Largest allowed new/old word ratio for a patch"
    )


class ExecutionConfig(BaseModel):
    """Task execution limits."""

    max_concurrent: int = Field(default=3, ge=1, description="Concurrency cap K within a batch")
    call_timeout: float = Field(default=60.0, gt=0, description="Per-call fixer timeout (s)")
    max_retries: int = Field(default=2, ge=0, le=5, description="Retries after the first attempt")
    base_backoff: float = Field(default=1.0, ge=0.0, description="Base backoff in seconds")
    context_chars: int = Field(
        default=400, ge=0, description="Characters of each neighbour passed to fixers"
    )


class RefinementConfig(BaseModel):
    """Top-level configuration for a refinement session."""

    mode: OperationMode = OperationMode.SEMI_AUTO
    modes: dict[OperationMode, ModeThresholds] = Field(
        default_factory=lambda: {
            OperationMode.SEMI_AUTO: ModeThresholds(accept=0.90, good_enough=0.85),
            OperationMode.FULL_AUTO: ModeThresholds(accept=0.85, good_enough=0.75),
        }
    )
    limits: SessionLimits = Field(default_factory=SessionLimits)
    regression_tolerance: float = Field(default=0.05, ge=0.0, le=0.5)
    lock_passing_threshold: float = Field(
        default=0.75, ge=0.0, le=1.0, description="Criterion score counted as passing"
    )
    section_lock_after_edits: int = Field(default=2, ge=1)
    convergence_threshold: float = Field(default=0.02, ge=0.0)
    alpha_high: float = Field(default=0.80, ge=-1.0, le=1.0)
    alpha_moderate: float = Field(default=0.67, ge=-1.0, le=1.0)
    structural_floor: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Structural score below which the lesson is rebuilt",
    )
    critical_section_ratio: float = Field(
        default=0.4, ge=0.0, le=1.0, description="Share of critical sections that forces a rebuild"
    )
    budget_warning_ratio: float = Field(default=0.9, gt=0.0, le=1.0)
    cascade: CascadeConfig = Field(default_factory=CascadeConfig)
    heuristics: HeuristicConfig = Field(default_factory=HeuristicConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)

    @property
    def thresholds(self) -> ModeThresholds:
        """Thresholds of the active mode."""
        return self.modes[self.mode]
