"""Engine configuration.

Configuration is read once at startup. Environment variables
(GUIDANCE_*) override defaults so deployments and CI can tune the
engine without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .generation import GenerationConfig

ASSIGNMENT_STRATEGIES = ("bandit", "static", "diagnostic")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for the adaptive guidance engine."""

    # Grounding
    top_k: int = 3

    # Profile assignment: "bandit" | "static" | "diagnostic"
    strategy: str = "bandit"
    seed: int | None = None

    # Content generation
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    # Persistence
    artifacts_dir: Path = field(default_factory=lambda: Path("artifacts"))
    ledger_path: Path | None = None
    store_path: Path | None = None
    outcome_db_path: Path | None = None

    # Logging
    log_level: str = "INFO"

    def __post_init__(self):
        if self.strategy not in ASSIGNMENT_STRATEGIES:
            raise ValueError(
                f"Unknown assignment strategy: {self.strategy} (expected one of {', '.join(ASSIGNMENT_STRATEGIES)})"
            )
        if self.top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {self.top_k}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Build a config from GUIDANCE_* environment variables.

        Recognized variables: GUIDANCE_TOP_K, GUIDANCE_STRATEGY,
        GUIDANCE_SEED, GUIDANCE_ARTIFACTS_DIR, GUIDANCE_LEDGER_PATH,
        GUIDANCE_STORE_PATH, GUIDANCE_OUTCOME_DB, GUIDANCE_LOG_LEVEL,
        GUIDANCE_LLM_PROVIDER, GUIDANCE_LLM_MODEL, GUIDANCE_LLM_TEMPERATURE,
        GUIDANCE_LLM_MAX_TOKENS, GUIDANCE_LLM_API_KEY_ENV,
        GUIDANCE_LLM_BASE_URL, GUIDANCE_LLM_TIMEOUT, GUIDANCE_LLM_CACHE.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(f"GUIDANCE_{name}")
            return value if value not in (None, "") else None

        generation = GenerationConfig()
        if get("LLM_PROVIDER"):
            generation.provider = get("LLM_PROVIDER")
        if get("LLM_MODEL"):
            generation.model = get("LLM_MODEL")
        if get("LLM_TEMPERATURE"):
            generation.temperature = float(get("LLM_TEMPERATURE"))
        if get("LLM_MAX_TOKENS"):
            generation.max_tokens = int(get("LLM_MAX_TOKENS"))
        if get("LLM_API_KEY_ENV"):
            generation.api_key_env = get("LLM_API_KEY_ENV")
        elif generation.provider == "anthropic":
            generation.api_key_env = "ANTHROPIC_API_KEY"
        if get("LLM_BASE_URL"):
            generation.base_url = get("LLM_BASE_URL")
        if get("LLM_TIMEOUT"):
            generation.timeout_seconds = float(get("LLM_TIMEOUT"))
        if get("LLM_CACHE"):
            generation.cache_results = _env_bool(get("LLM_CACHE"))

        kwargs: dict[str, Any] = {"generation": generation}
        if get("TOP_K"):
            kwargs["top_k"] = int(get("TOP_K"))
        if get("STRATEGY"):
            kwargs["strategy"] = get("STRATEGY")
        if get("SEED"):
            kwargs["seed"] = int(get("SEED"))
        if get("ARTIFACTS_DIR"):
            kwargs["artifacts_dir"] = Path(get("ARTIFACTS_DIR"))
        if get("LEDGER_PATH"):
            kwargs["ledger_path"] = Path(get("LEDGER_PATH"))
        if get("STORE_PATH"):
            kwargs["store_path"] = Path(get("STORE_PATH"))
        if get("OUTCOME_DB"):
            kwargs["outcome_db_path"] = Path(get("OUTCOME_DB"))
        if get("LOG_LEVEL"):
            kwargs["log_level"] = get("LOG_LEVEL").upper()
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for audit logging."""
        return {
            "top_k": self.top_k,
            "strategy": self.strategy,
            "seed": self.seed,
            "generation": {
                "provider": self.generation.provider,
                "model": self.generation.model,
                **self.generation.params(),
            },
            "artifacts_dir": str(self.artifacts_dir),
            "ledger_path": str(self.ledger_path) if self.ledger_path else None,
            "store_path": str(self.store_path) if self.store_path else None,
            "outcome_db_path": str(self.outcome_db_path) if self.outcome_db_path else None,
            "log_level": self.log_level,
        }
