"""Configuration primitives shared by the voice capture services."""

from .base import (
    BaseConfig,
    ConfigError,
    FieldDefinition,
    LoggingConfig,
    RequiredFieldError,
    ValidationError,
)


__all__ = [
    "BaseConfig",
    "ConfigError",
    "FieldDefinition",
    "LoggingConfig",
    "RequiredFieldError",
    "ValidationError",
]
