"""Configuration management: engine settings, profiles, and TOML loading.

Usage:
    >>> from record_engine.config import load_engine_config, EngineConfig
"""

from record_engine.config.loader import load_engine_config
from record_engine.config.models import DatabaseProfile, EngineConfig, LocaleSettings

__all__ = ["load_engine_config", "EngineConfig", "DatabaseProfile", "LocaleSettings"]
