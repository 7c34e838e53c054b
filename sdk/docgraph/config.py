"""
Configuration for docgraph.

Uses pydantic-settings for environment variable loading. Every field can be
set with a DOCGRAPH_ prefixed variable, e.g. DOCGRAPH_MAX_ATTEMPTS=5.

Example:
    >>> settings = Settings(max_attempts=5, backoff="jitter")
    >>> policy = settings.backoff_policy()
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from .controller import BackoffPolicy, FixedDelay, NoBackoff, RandomizedJitter
from .schema import RecomputeStrategy

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """docgraph configuration loaded from environment."""

    # Concurrency controller
    max_attempts: int = Field(default=3, ge=1, description="Conditional writes before giving up")
    backoff: Literal["none", "fixed", "jitter"] = Field(
        default="jitter", description="Backoff policy between conflicting attempts"
    )
    backoff_fixed_ms: int = Field(default=20, ge=0, description="Delay for the fixed policy")
    backoff_jitter_min_ms: int = Field(default=5, ge=0, description="Jitter lower bound")
    backoff_jitter_max_ms: int = Field(default=50, ge=0, description="Jitter upper bound")
    default_deadline_ms: int = Field(
        default=0, ge=0, description="Deadline for calls that pass none (0=disabled)"
    )

    # Aggregates, keyed by "field" or "Type.field"
    aggregate_strategies: dict[str, str] = Field(
        default_factory=dict, description="Per-field recompute strategy"
    )

    # Limits
    max_references_per_entity: int = Field(default=1000, ge=1)
    max_batch_size: int = Field(default=100, ge=1, description="Keys per batched fetch")
    max_fanout_partitions: int = Field(default=256, ge=1)

    # Query routing
    partition_key: str = Field(default="tenantId", description="Field mirroring the partition")

    # SQLite store
    data_dir: str = Field(default="./data", description="Directory for partition databases")
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0)
    sqlite_wal_mode: bool = Field(default=True)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    model_config = {"env_prefix": "DOCGRAPH_"}

    @field_validator("aggregate_strategies")
    @classmethod
    def _check_strategies(cls, value: dict[str, str]) -> dict[str, str]:
        for name, strategy in value.items():
            RecomputeStrategy.from_str(strategy)
            if not name or name.endswith("."):
                raise ValueError(f"Invalid aggregate field name: '{name}'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @model_validator(mode="after")
    def _check_jitter_bounds(self) -> Settings:
        if self.backoff_jitter_max_ms < self.backoff_jitter_min_ms:
            raise ValueError("backoff_jitter_max_ms must be >= backoff_jitter_min_ms")
        return self

    def backoff_policy(self) -> BackoffPolicy:
        """Build the configured backoff policy."""
        if self.backoff == "none":
            return NoBackoff()
        if self.backoff == "fixed":
            return FixedDelay(self.backoff_fixed_ms)
        return RandomizedJitter(self.backoff_jitter_min_ms, self.backoff_jitter_max_ms)

    def log_config(self) -> None:
        """Log effective configuration (for debugging)."""
        logger.info(
            "docgraph configuration",
            extra={
                "max_attempts": self.max_attempts,
                "backoff": self.backoff,
                "default_deadline_ms": self.default_deadline_ms,
                "max_references_per_entity": self.max_references_per_entity,
                "max_batch_size": self.max_batch_size,
                "max_fanout_partitions": self.max_fanout_partitions,
                "partition_key": self.partition_key,
                "data_dir": self.data_dir,
            },
        )
