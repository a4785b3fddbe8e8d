"""
Configuration loader for the photo preparation service.

Environment variables are centralized here to keep the rest of the code
focused on the submission rules and to make operational tuning clear.
"""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Submission rules
    max_upload_bytes: int = Field(10 * MIB, gt=0)
    min_long_edge: int = Field(1500, gt=0)

    # Normalization
    max_long_edge: int = Field(2000, gt=0)
    target_bytes: int = Field(1 * MIB, gt=0)
    initial_quality: float = 0.92
    min_quality: float = 0.30
    quality_step: float = 0.05

    # HEIC/HEIF conversion
    heic_conversion_quality: float = 0.95

    # API
    log_level: str = "INFO"

    @field_validator("initial_quality", "min_quality", "quality_step", "heic_conversion_quality")
    @classmethod
    def validate_quality(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("quality values must be within (0, 1]")
        return v

    @model_validator(mode="after")
    def validate_ladder(self) -> "Settings":
        if self.min_quality > self.initial_quality:
            raise ValueError("MIN_QUALITY must not exceed INITIAL_QUALITY")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
