"""Runtime configuration for the planner and the chain execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .types import RetryConfig


@dataclass(frozen=True)
class EngineSettings:
    """Defaults applied by :class:`ChainExecutionEngine` when a task omits them."""

    default_timeout_ms: int = 300_000
    default_parallelism: int = 5
    default_retry: RetryConfig = field(default_factory=RetryConfig)
    environment: str = "development"
    recovery_enabled: bool = True

    def __post_init__(self) -> None:
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")
        if self.default_parallelism < 1:
            raise ValueError("default_parallelism must be >= 1")


@dataclass(frozen=True)
class PlannerSettings:
    max_parallelism: int = 10
    checkpoint_interval: int = 3
    conservative_buffer: float = 1.5
    fast_track_factor: float = 0.8
    tight_deadline_ms: int = 24 * 3_600_000
    learning_threshold: int = 5


@dataclass(frozen=True)
class Settings:
    """Settings grouped by component."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    planner: PlannerSettings = field(default_factory=PlannerSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from ``GOALFLOW_*`` environment variables."""

        engine = EngineSettings(
            default_timeout_ms=int(os.getenv("GOALFLOW_DEFAULT_TIMEOUT_MS", "300000")),
            default_parallelism=int(os.getenv("GOALFLOW_MAX_PARALLELISM", "5")),
            environment=os.getenv("GOALFLOW_ENV", "development"),
            recovery_enabled=_env_flag("GOALFLOW_RECOVERY_ENABLED", default=True),
        )
        return cls(engine=engine)


def _env_flag(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


__all__ = ["EngineSettings", "PlannerSettings", "Settings"]
