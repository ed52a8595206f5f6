"""Pydantic models for weft configuration.

Every field has a default, so an empty or missing config file yields a
working engine: no retries, no default step timeout, one-hour human input
deadline.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator


class RetryDefaults(BaseModel):
    """Retry policy applied to failable steps that declare none."""

    max_retries: int = Field(default=0, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    retryable_errors: list[str] | None = None
    jitter: float = Field(default=0.0, ge=0, le=1)

    @model_validator(mode="after")
    def _check_delays(self) -> RetryDefaults:
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class EngineConfig(BaseModel):
    # Seconds; None means steps without their own timeout run unbounded.
    default_step_timeout: float | None = Field(default=None, gt=0)
    human_input_timeout: float = Field(default=3600.0, gt=0)
    retry: RetryDefaults = Field(default_factory=RetryDefaults)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None
    rotation: str = "10 MB"
    retention: str = "7 days"

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class WeftConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    # Directory for the JSON workflow repository and execution store.
    state_dir: str = "~/.weft/state"
