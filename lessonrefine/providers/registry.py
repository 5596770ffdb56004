"""Model registry and TOML configuration loader.

Loads model definitions from models.toml and refinement defaults from
defaults.toml, and builds providers for the configured judge roles.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from lessonrefine.providers.base import ModelProvider
from lessonrefine.providers.litellm_provider import LiteLLMProvider
from lessonrefine.schemas.pipeline import (
    CascadeConfig,
    ExecutionConfig,
    HeuristicConfig,
    ModelConfig,
    ModeThresholds,
    OperationMode,
    RefinementConfig,
    SessionLimits,
)

# Default config directory inside the lessonrefine package
_CONFIG_DIR = Path(__file__).parent.parent / "config"


def load_models(config_path: Path | None = None) -> dict[str, ModelConfig]:
    """Load the model registry from a TOML file.

    Args:
        config_path: Path to models.toml. Defaults to lessonrefine/config/models.toml.

    Returns:
        Dictionary mapping model keys to ModelConfig instances.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the TOML structure is invalid.
    """
    path = config_path or _CONFIG_DIR / "models.toml"
    if not path.exists():
        raise FileNotFoundError(f"Model registry not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    models_section = raw.get("models")
    if not models_section or not isinstance(models_section, dict):
        raise ValueError(f"No [models] section found in {path}")

    return {
        key: ModelConfig(**entry)
        for key, entry in models_section.items()
        if isinstance(entry, dict)
    }


def load_refinement_config(config_path: Path | None = None) -> RefinementConfig:
    """Load refinement defaults from a TOML file.

    Args:
        config_path: Path to defaults.toml. Defaults to lessonrefine/config/defaults.toml.

    Returns:
        RefinementConfig with values from the TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If a section has the wrong shape.
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Refinement config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    raw_section = raw.get("refinement", {})
    if not isinstance(raw_section, dict):
        raise ValueError(f"[refinement] must be a table in {path}")
    section = dict(raw_section)

    modes_data = section.pop("modes", {})
    limits_data = section.pop("limits", {})
    modes = {
        OperationMode(name): ModeThresholds(**values)
        for name, values in modes_data.items()
    }

    config = RefinementConfig(
        **section,
        limits=SessionLimits(**limits_data),
        cascade=CascadeConfig(**raw.get("cascade", {})),
        heuristics=HeuristicConfig(**raw.get("heuristics", {})),
        execution=ExecutionConfig(**raw.get("execution", {})),
    )
    if modes:
        config = config.model_copy(update={"modes": {**config.modes, **modes}})
    return config


def build_provider(registry: dict[str, ModelConfig], key: str) -> ModelProvider:
    """Instantiate the provider for a registry key.

    Raises:
        KeyError: If the key is not in the registry.
    """
    if key not in registry:
        raise KeyError(f"Model '{key}' is not in the registry ({', '.join(sorted(registry))})")
    return LiteLLMProvider(registry[key])


def required_key_envs(registry: dict[str, ModelConfig], cascade: CascadeConfig) -> list[str]:
    """API key variables needed by every model the cascade references."""
    keys = [
        cascade.single_judge,
        *cascade.voting_judges,
        cascade.tiebreaker,
        cascade.delta_judge,
        cascade.generator,
    ]
    return sorted({registry[k].api_key_env for k in keys if k in registry})
