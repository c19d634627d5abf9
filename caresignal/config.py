"""
Configuration management with environment variable support and validation.

Design principles:
- Validation at startup (fail fast)
- Type safety with Pydantic
- Scoring weights and thresholds are explicit constants, overridable per deployment
- Secure defaults (no API keys in code, narration off unless configured)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from caresignal.domain.models import AnomalyType, RiskCategory

# Load environment variables from .env file
load_dotenv()


class BaselineConfig(BaseModel):
    """Rolling baseline windows and sample requirements."""

    short_window_days: int = Field(default=7, gt=0, description="Short rolling window")
    long_window_days: int = Field(default=30, gt=0, description="Long rolling window")
    min_samples_clinical: int = Field(default=7, gt=1, description="Minimum samples, vitals")
    min_samples_performance: int = Field(
        default=10, gt=1, description="Minimum samples, caregiver performance metrics"
    )
    confidence_sample_threshold: int = Field(
        default=20, gt=0, description="Sample count at which confidence saturates"
    )
    low_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    high_confidence: float = Field(default=0.9, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def windows_are_nested(self) -> "BaselineConfig":
        if self.short_window_days > self.long_window_days:
            raise ValueError("short baseline window must not exceed the long window")
        if self.low_confidence > self.high_confidence:
            raise ValueError("low_confidence must not exceed high_confidence")
        return self


class DetectionConfig(BaseModel):
    """Thresholds for the detector strategies."""

    evaluation_window_hours: int = Field(
        default=24, gt=0, description="Lookback for observations under evaluation"
    )

    # Deviation detector
    deviation_flag_sigma: float = Field(default=2.0, gt=0.0)
    deviation_medium_sigma: float = Field(default=2.0, gt=0.0)
    deviation_high_sigma: float = Field(default=3.0, gt=0.0)
    deviation_confidence: float = Field(default=0.9, ge=0.0, le=1.0)

    # Rushed care pattern detector
    rushed_completion_seconds: float = Field(default=10.0, gt=0.0)
    rushed_min_count: int = Field(default=3, gt=0)
    pattern_confidence: float = Field(default=0.85, ge=0.0, le=1.0)

    # Workload detector
    workload_ceiling: int = Field(default=50, gt=0, description="Tasks per window before flagging")
    workload_high_ceiling: int = Field(default=70, gt=0)
    workload_confidence: float = Field(default=0.85, ge=0.0, le=1.0)

    # Performance drift detector
    drift_sigma: float = Field(default=1.0, ge=0.0)
    drift_min_samples: int = Field(default=3, gt=0)
    drift_confidence: float = Field(default=0.75, ge=0.0, le=1.0)

    # Trend detector
    trend_min_velocity: float = Field(
        default=2.0, gt=0.0, description="Minimum absolute baseline slope per sample"
    )
    trend_min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    trend_window_days: int = Field(default=7, gt=0, description="Reported trend window")

    @model_validator(mode="after")
    def bands_are_ordered(self) -> "DetectionConfig":
        if self.deviation_medium_sigma > self.deviation_high_sigma:
            raise ValueError("deviation_medium_sigma must not exceed deviation_high_sigma")
        if self.workload_ceiling > self.workload_high_ceiling:
            raise ValueError("workload_ceiling must not exceed workload_high_ceiling")
        return self


def _default_weights() -> dict[AnomalyType, int]:
    return {
        AnomalyType.DEVIATION: 30,
        AnomalyType.PATTERN: 20,
        AnomalyType.WORKLOAD: 25,
        AnomalyType.DRIFT: 20,
        AnomalyType.TREND: 15,
    }


class ScoringConfig(BaseModel):
    """Risk weights and priority constants. Not calibrated against outcomes."""

    anomaly_weights: dict[AnomalyType, int] = Field(default_factory=_default_weights)
    default_weight: int = Field(default=15, description="Weight for unlisted anomaly types")
    high_threshold: int = Field(default=60, ge=0, le=100)
    medium_threshold: int = Field(default=40, ge=0, le=100)
    category_confidence: dict[RiskCategory, float] = Field(
        default_factory=lambda: {
            RiskCategory.RESIDENT_HEALTH: 0.85,
            RiskCategory.CAREGIVER_PERFORMANCE: 0.80,
        }
    )
    category_urgency: dict[RiskCategory, int] = Field(
        default_factory=lambda: {
            RiskCategory.RESIDENT_HEALTH: 80,
            RiskCategory.CAREGIVER_PERFORMANCE: 70,
        }
    )

    @model_validator(mode="after")
    def thresholds_are_ordered(self) -> "ScoringConfig":
        if self.medium_threshold > self.high_threshold:
            raise ValueError("medium_threshold must not exceed high_threshold")
        for category in RiskCategory:
            if category not in self.category_confidence:
                raise ValueError(f"missing confidence for category {category.value}")
            if category not in self.category_urgency:
                raise ValueError(f"missing urgency for category {category.value}")
        return self


class SchedulerConfig(BaseModel):
    """Trigger and run timeout settings."""

    interval_seconds: float = Field(default=300.0, gt=0.0, description="Scheduled cycle interval")
    backlog_threshold: int = Field(default=5, gt=0, description="Unprocessed events per trigger")
    backlog_lookback_minutes: int = Field(default=60, gt=0)
    run_timeout_seconds: float = Field(default=240.0, gt=0.0)
    max_concurrent_tenants: int = Field(default=10, gt=0)
    source_timeout_seconds: float = Field(default=10.0, gt=0.0)
    observation_lookback_days: int = Field(
        default=30, gt=0, description="How far back raw sources are pulled"
    )


class NarrationConfig(BaseModel):
    """Optional LLM narration of issue descriptions."""

    enabled: bool = Field(default=False)
    model_name: str = Field(default="openai:gpt-4o-mini")
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=15.0, gt=0.0)
    failure_threshold: int = Field(default=5, gt=0)
    recovery_timeout_seconds: int = Field(default=60, gt=0)

    @field_validator("openai_api_key")
    def validate_api_key(cls, v):
        if v in (None, ""):
            return None
        if not v.startswith("sk-"):
            raise ValueError("AI provider API key must start with 'sk-'")
        return v

    @model_validator(mode="after")
    def key_required_when_enabled(self) -> "NarrationConfig":
        if self.enabled and self.model_name.startswith("openai:") and not self.openai_api_key:
            raise ValueError("narration with an OpenAI model requires OPENAI_API_KEY")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    narration: NarrationConfig = Field(default_factory=NarrationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    @model_validator(mode="after")
    def run_fits_in_cycle(self) -> "AppConfig":
        """A run must finish (or be aborted) before the next scheduled cycle."""
        if self.scheduler.run_timeout_seconds >= self.scheduler.interval_seconds:
            raise ValueError("run_timeout_seconds must be shorter than the schedule interval")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    detection_config = DetectionConfig(
        evaluation_window_hours=int(os.getenv("EVALUATION_WINDOW_HOURS", "24")),
        deviation_medium_sigma=float(os.getenv("DEVIATION_MEDIUM_SIGMA", "2.0")),
        deviation_high_sigma=float(os.getenv("DEVIATION_HIGH_SIGMA", "3.0")),
    )

    scheduler_config = SchedulerConfig(
        interval_seconds=float(os.getenv("PIPELINE_INTERVAL_SECONDS", "300")),
        backlog_threshold=int(os.getenv("BACKLOG_THRESHOLD", "5")),
        backlog_lookback_minutes=int(os.getenv("BACKLOG_LOOKBACK_MINUTES", "60")),
        run_timeout_seconds=float(os.getenv("RUN_TIMEOUT_SECONDS", "240")),
        max_concurrent_tenants=int(os.getenv("MAX_CONCURRENT_TENANTS", "10")),
        source_timeout_seconds=float(os.getenv("SOURCE_TIMEOUT_SECONDS", "10")),
    )

    narration_config = NarrationConfig(
        enabled=_parse_bool(os.getenv("NARRATION_ENABLED"), False),
        model_name=os.getenv("NARRATION_MODEL", "openai:gpt-4o-mini"),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        detection=detection_config,
        scheduler=scheduler_config,
        narration=narration_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def print_config_summary(config: AppConfig | None = None) -> None:
    """Print configuration summary for debugging."""
    config = config or get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nSCHEDULER")
    print(f"Interval: {config.scheduler.interval_seconds}s")
    print(f"Backlog Threshold: {config.scheduler.backlog_threshold} events")
    print(f"Run Timeout: {config.scheduler.run_timeout_seconds}s")
    print(f"Source Timeout: {config.scheduler.source_timeout_seconds}s")

    print("\nSCORING")
    weights = ", ".join(f"{k.value}={v}" for k, v in config.scoring.anomaly_weights.items())
    print(f"Anomaly Weights: {weights} (default {config.scoring.default_weight})")
    print(f"Narration: {'on' if config.narration.enabled else 'off'}")


if __name__ == "__main__":
    print_config_summary()
