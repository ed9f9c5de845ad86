"""Configuration management using Pydantic settings."""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .coverage import DEFAULT_WINDOW
from .parser import DEFAULT_EXCLUDE, DEFAULT_INCLUDE


class Settings(BaseSettings):
    """Defaults for the command line, overridable with THREATLINK_* variables."""

    model_config = SettingsConfigDict(
        env_prefix='THREATLINK_',
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
    )

    # Logging
    log_level: Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'] = Field(
        default='INFO',
        description='Logging level',
    )
    log_format: Literal['json', 'console'] = Field(
        default='console',
        description='Log output format',
    )

    # Scanning
    include: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INCLUDE),
        description='Glob patterns of files to scan',
    )
    exclude: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE),
        description='Glob patterns of files to skip',
    )
    parse_workers: int = Field(
        default=1,
        ge=1,
        le=64,
        description='Worker threads used to parse files',
    )
    coverage_window: int = Field(
        default=DEFAULT_WINDOW,
        ge=0,
        le=50,
        description='Lines above a symbol that still count as annotating it',
    )

    # Merging
    stale_threshold_hours: float = Field(
        default=168,
        gt=0,
        description='Age after which a repository report is flagged as stale',
    )

    @field_validator('log_level', mode='before')
    @classmethod
    def upper_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v


def get_settings() -> Settings:
    """Get settings instance. Use this instead of module-level instantiation
    so tests can change the environment between calls."""
    return Settings()
