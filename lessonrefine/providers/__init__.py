"""Provider layer: the only way models are called.

All LLM interactions go through LiteLLMProvider via the ModelProvider
interface, wrapped per call by ``call_with_retry``.
"""

from lessonrefine.providers.base import Completion, ModelProvider
from lessonrefine.providers.litellm_provider import LiteLLMProvider, extract_json
from lessonrefine.providers.registry import (
    build_provider,
    load_models,
    load_refinement_config,
    required_key_envs,
)
from lessonrefine.providers.retry import call_with_retry

__all__ = [
    "Completion",
    "LiteLLMProvider",
    "ModelProvider",
    "build_provider",
    "call_with_retry",
    "extract_json",
    "load_models",
    "load_refinement_config",
    "required_key_envs",
]
