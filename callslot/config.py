"""
Configuration management using Pydantic models loaded from YAML.
"""

from datetime import time
from pathlib import Path
from typing import Dict, List, Optional

import pendulum
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .domain.models import BusinessHours


class BusinessHoursConfig(BaseModel):
    """Bookable window of a day in the callee's local time."""
    start_hour: int = 8
    start_minute: int = 0
    end_hour: int = 18
    end_minute: int = 0
    slot_duration_minutes: int = 15
    lead_time_minutes: int = 0
    exclude_days: List[int] = Field(default_factory=list)

    @field_validator("start_hour", "end_hour")
    @classmethod
    def validate_hour(cls, v: int) -> int:
        """Validate hour is between 0 and 23."""
        if not 0 <= v <= 23:
            raise ValueError(f"Hour must be between 0 and 23, got {v}")
        return v

    @field_validator("start_minute", "end_minute")
    @classmethod
    def validate_minute(cls, v: int) -> int:
        if not 0 <= v <= 59:
            raise ValueError(f"Minute must be between 0 and 59, got {v}")
        return v

    @field_validator("slot_duration_minutes")
    @classmethod
    def validate_duration(cls, value: int) -> int:
        """Ensure slot duration is positive."""
        if value <= 0:
            raise ValueError("slot_duration_minutes must be greater than zero")
        return value

    @field_validator("lead_time_minutes")
    @classmethod
    def validate_lead_time(cls, value: int) -> int:
        if value < 0:
            raise ValueError("lead_time_minutes must not be negative")
        return value

    @field_validator("exclude_days")
    @classmethod
    def validate_exclude_days(cls, value: List[int]) -> List[int]:
        """Ensure weekdays are in valid range and deduplicated."""
        invalid_days = [day for day in value if day not in range(7)]
        if invalid_days:
            raise ValueError(f"exclude_days must be between 0 and 6, got {invalid_days}")
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def validate_hours_order(self) -> "BusinessHoursConfig":
        """Ensure the configured window opens before it closes."""
        if (self.end_hour, self.end_minute) <= (self.start_hour, self.start_minute):
            raise ValueError("business hours must open before they close")
        span = (self.end_hour * 60 + self.end_minute) - (self.start_hour * 60 + self.start_minute)
        if span < self.slot_duration_minutes:
            raise ValueError(
                f"business hours span {span} minutes, shorter than one "
                f"{self.slot_duration_minutes}-minute slot"
            )
        return self

    def get_start_time(self) -> time:
        return time(hour=self.start_hour, minute=self.start_minute)

    def get_end_time(self) -> time:
        return time(hour=self.end_hour, minute=self.end_minute)

    def for_timezone(self, timezone: str) -> BusinessHours:
        """Build the domain BusinessHours for a callee time zone."""
        return BusinessHours(
            start_time=self.get_start_time(),
            end_time=self.get_end_time(),
            timezone=timezone,
            slot_duration_minutes=self.slot_duration_minutes,
            lead_time_minutes=self.lead_time_minutes,
            exclude_weekdays=tuple(self.exclude_days),
        )


class PlanLimits(BaseModel):
    """Monthly call allowance of a plan."""
    caller_monthly_calls: int = 1
    callee_monthly_calls: int = 3

    @field_validator("caller_monthly_calls", "callee_monthly_calls")
    @classmethod
    def validate_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Monthly call limits must be 0 or greater")
        return value


class QuotaConfig(BaseModel):
    """Plan definitions for quota enforcement."""
    default_plan: str = "free"
    plans: Dict[str, PlanLimits] = Field(
        default_factory=lambda: {"free": PlanLimits()}
    )

    @model_validator(mode="after")
    def validate_default_plan(self) -> "QuotaConfig":
        if self.default_plan not in self.plans:
            raise ValueError(f"default_plan '{self.default_plan}' is not a configured plan")
        return self

    def limits_for(self, plan: Optional[str]) -> PlanLimits:
        """Return the limits of a plan, falling back to the default plan."""
        if plan and plan.lower() in self.plans:
            return self.plans[plan.lower()]
        return self.plans[self.default_plan]


class CalendarConfig(BaseModel):
    """External calendar provider settings."""
    client_id: str = ""
    tenant_id: str = "common"
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 4.0
    request_timeout_seconds: float = 10.0
    confirm_timeout_seconds: float = 10.0
    require_connected_calendar: bool = False
    mock_data_file: Optional[Path] = None

    @field_validator("retry_attempts")
    @classmethod
    def validate_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retry_attempts must be at least 1")
        return value

    @field_validator(
        "retry_base_delay_seconds",
        "retry_max_delay_seconds",
        "request_timeout_seconds",
        "confirm_timeout_seconds",
    )
    @classmethod
    def validate_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("Delays and timeouts must not be negative")
        return value

    def get_authority_url(self) -> str:
        """Get the formatted authority URL."""
        return f"https://login.microsoftonline.com/{self.tenant_id}"


class AppConfig(BaseModel):
    """Application configuration."""
    database_url: str = "sqlite:///callslot.db"
    database_echo: bool = False
    slow_query_threshold_seconds: float = 1.0
    timezone: str = "UTC"
    business_hours: BusinessHoursConfig = Field(default_factory=BusinessHoursConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    availability_cache_ttl_seconds: int = 10
    log_level: str = "INFO"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            pendulum.timezone(value)
        except Exception as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @field_validator("availability_cache_ttl_seconds")
    @classmethod
    def validate_ttl(cls, value: int) -> int:
        if value < 0:
            raise ValueError("availability_cache_ttl_seconds must not be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def load_from_yaml(cls, config_path: Path) -> "AppConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML config file

        Returns:
            AppConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(
                f"Config file not found: {config_path}\n"
                f"Please create a config.yaml file. See config.example.yaml for reference."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("Config file must contain a mapping at the root level.")

        return cls(**data)


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    # Look for config.yaml in current directory
    current_dir = Path.cwd()
    config_path = current_dir / "config.yaml"

    if not config_path.exists():
        # Try in the project root (parent of the package)
        project_root = Path(__file__).parent.parent
        config_path = project_root / "config.yaml"

    return config_path


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load the config file if present, otherwise fall back to defaults."""
    path = config_path or get_default_config_path()
    if config_path is None and not path.exists():
        return AppConfig()
    return AppConfig.load_from_yaml(path)
