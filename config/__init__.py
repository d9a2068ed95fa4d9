"""
Configuration package for the survey link gate.
Provides centralized configuration management with environment overrides
and feature flags.
"""

from .config import (
    AdmissionConfig,
    ChallengeConfig,
    Config,
    DatabaseConfig,
    FeatureFlags,
    LinkIssuanceConfig,
    PersistenceSettings,
    QualificationConfig,
    config,
)
from .environments import environment_manager


def get_flag(name: str):
    return getattr(config.feature_flags, name, None)


def is_enabled(name: str) -> bool:
    return bool(get_flag(name))


__all__ = [
    # Main configuration
    "config",
    "Config",
    "DatabaseConfig",
    "AdmissionConfig",
    "QualificationConfig",
    "ChallengeConfig",
    "LinkIssuanceConfig",
    "PersistenceSettings",
    "FeatureFlags",
    "environment_manager",
    # Feature flags
    "get_flag",
    "is_enabled",
]
