"""Database factory for engine profiles.

Profiles live in ``engine.toml`` under ``[profiles.<name>]``. The active
profile is chosen explicitly or through the ``RECORD_ENGINE_PROFILE``
environment variable.

Usage:
    from record_engine.factory import connect_and_validate, create_database

    database = create_database("local")
    registry = CollectionRegistry(database, config=load_engine_config())

    result = connect_and_validate(registry, "local")
    if not result.success:
        print(result.error)
"""

import logging
import os
from urllib.parse import quote

from record_engine.adapters.database import AsyncDatabase
from record_engine.config.loader import load_engine_config
from record_engine.config.models import DatabaseProfile, EngineConfig
from record_engine.schema.comparator import validate_schema
from record_engine.schema.introspector import SchemaIntrospector
from record_engine.schema.models import ConnectionResult

logger = logging.getLogger(__name__)

PROFILE_ENV_VAR = "RECORD_ENGINE_PROFILE"


# ============================================================================
# Profile Resolution
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured or the name is unknown."""

    pass


def get_active_profile_name() -> str:
    """Get active profile name from the environment.

    Returns:
        Profile name from ``RECORD_ENGINE_PROFILE``

    Raises:
        ProfileNotFoundError: If the variable is unset or empty
    """
    env_profile = os.environ.get(PROFILE_ENV_VAR)
    if env_profile:
        return env_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Set {PROFILE_ENV_VAR}=<name> or pass --profile <name>"
    )


def get_active_profile(
    profile_name: str | None = None, config: EngineConfig | None = None
) -> tuple[str, DatabaseProfile]:
    """Get profile name and configuration.

    Args:
        profile_name: Explicit profile; defaults to ``get_active_profile_name()``
        config: Loaded configuration; defaults to ``./engine.toml``

    Returns:
        Tuple of (profile_name, DatabaseProfile)

    Raises:
        ProfileNotFoundError: If no profile is configured or it is not in the config
        FileNotFoundError: If engine.toml is missing
    """
    if profile_name is None:
        profile_name = get_active_profile_name()
    if config is None:
        config = load_engine_config()

    if profile_name not in config.profiles:
        available = ", ".join(config.profiles) or "(none)"
        raise ProfileNotFoundError(
            f"Profile '{profile_name}' not found in engine.toml.\n"
            f"Available profiles: {available}"
        )

    return profile_name, config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with the ``[YOUR-PASSWORD]`` placeholder substituted

    Example:
        >>> resolve_url(DatabaseProfile(url="postgresql://u:[YOUR-PASSWORD]@h/db", db_password="p@ss"))
        'postgresql://u:p%40ss@h/db'
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Database Factory
# ============================================================================


def create_database(
    profile_name: str | None = None,
    config: EngineConfig | None = None,
    **engine_kwargs,
) -> AsyncDatabase:
    """Create an ``AsyncDatabase`` for a profile.

    Args:
        profile_name: Profile from engine.toml; defaults to ``RECORD_ENGINE_PROFILE``
        config: Loaded configuration; defaults to ``./engine.toml``
        **engine_kwargs: Forwarded to ``create_async_engine_pooled``

    Returns:
        ``AsyncDatabase`` bound to the profile URL

    Raises:
        ProfileNotFoundError: If no profile is configured or it is unknown
    """
    name, profile = get_active_profile(profile_name, config)
    logger.info(f"Using database profile '{name}'")
    return AsyncDatabase(resolve_url(profile), **engine_kwargs)


def connect_and_validate(
    registry,
    profile_name: str | None = None,
    config: EngineConfig | None = None,
) -> ConnectionResult:
    """Compare the live schema of a profile against a registry's tables.

    Args:
        registry: ``CollectionRegistry`` whose topology is the expected schema
        profile_name: Profile from engine.toml; defaults to ``RECORD_ENGINE_PROFILE``
        config: Loaded configuration; defaults to ``./engine.toml``

    Returns:
        ConnectionResult with success status and validation report

    Example:
        >>> result = connect_and_validate(registry, "local")
        >>> if not result.success:
        ...     print(result.schema_report.format_report())
    """
    try:
        profile_name, profile = get_active_profile(profile_name, config)
    except (ProfileNotFoundError, FileNotFoundError) as e:
        return ConnectionResult(success=False, profile_name=profile_name, error=str(e))

    try:
        with SchemaIntrospector(resolve_url(profile)) as introspector:
            actual_columns = introspector.get_column_names()
    except Exception as e:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Failed to connect to database: {e}",
        )

    validation = validate_schema(actual_columns, registry.expected_columns())
    if validation.valid:
        return ConnectionResult(
            success=True,
            profile_name=profile_name,
            schema_valid=True,
            schema_report=validation,
        )
    return ConnectionResult(
        success=False,
        profile_name=profile_name,
        schema_valid=False,
        schema_report=validation,
        error=f"Schema validation failed: {validation.error_count} errors",
    )
