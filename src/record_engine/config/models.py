"""Pydantic models for engine configuration loaded from engine.toml."""

from pydantic import BaseModel, Field, model_validator


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from engine.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class LocaleSettings(BaseModel):
    """Locale and query-shape settings shared by every collection."""

    default_locale: str = "en"
    locales: list[str] = Field(default_factory=lambda: ["en"])
    locale_fallback: bool = True
    max_query_depth: int = Field(default=8, ge=1)

    @model_validator(mode="after")
    def _default_locale_listed(self) -> "LocaleSettings":
        if self.default_locale not in self.locales:
            self.locales = [self.default_locale, *self.locales]
        return self


class EngineConfig(BaseModel):
    """Complete engine configuration from engine.toml."""

    profiles: dict[str, DatabaseProfile] = Field(default_factory=dict)
    engine: LocaleSettings = Field(default_factory=LocaleSettings)
