"""
Configuration Management for KidsBank

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here, including the
family itself. Who the parents and children are is data loaded from
FAMILY_MEMBERS, never something baked into the code.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kidsbank.models.ledger import FamilyMember, Role


class DatabaseSettings(BaseSettings):
    """SQL storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///kidsbank.db",
        description="SQLAlchemy database URL"
    )
    busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="How long SQLite waits for a competing writer"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)"
    )


class CloudinarySettings(BaseSettings):
    """Cloudinary avatar storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CLOUDINARY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    cloud_name: str = Field(
        ...,
        description="Cloudinary cloud name"
    )
    api_key: str = Field(
        ...,
        description="Cloudinary API key"
    )
    api_secret: str = Field(
        ...,
        description="Cloudinary API secret"
    )
    avatar_folder: str = Field(
        default="kidsbank/avatars",
        description="Folder that holds the avatar images"
    )


class FamilySettings(BaseSettings):
    """
    The family using this bank.

    FAMILY_MEMBERS is a JSON list, e.g.
    [{"name": "Anna", "role": "parent"}, {"name": "Mark", "role": "child", "allowance": "6.00"}]
    """

    model_config = SettingsConfigDict(
        env_prefix="FAMILY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    members: list[FamilyMember] = Field(
        default_factory=list,
        description="Family members, in display order"
    )

    @field_validator('members')
    @classmethod
    def validate_members(cls, v: list[FamilyMember]) -> list[FamilyMember]:
        """Names must be unique (case-insensitive) and at least one parent must exist."""
        seen = set()
        for member in v:
            key = member.user_id
            if key in seen:
                raise ValueError(f"Duplicate family member: {member.name}")
            seen.add(key)
        if v and not any(m.role == Role.PARENT for m in v):
            raise ValueError("At least one parent is required")
        return v

    @property
    def children(self) -> list[FamilyMember]:
        return [m for m in self.members if m.role == Role.CHILD]


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Login
    pin_length: int = Field(
        default=4,
        ge=4,
        le=8,
        description="Number of digits in a login PIN"
    )

    # Allowance processing
    allowance_first_run_lookback_days: int = Field(
        default=6,
        ge=0,
        le=6,
        description="Days before today scanned when no allowance run has happened yet"
    )
    operation_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="Abort a stuck allowance run after this many seconds"
    )

    # History
    transaction_history_limit: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Default number of transactions shown in history"
    )

    # Avatars
    avatar_size_px: int = Field(
        default=256,
        ge=32,
        le=1024,
        description="Edge length of the square avatar image"
    )
    avatar_jpeg_quality: int = Field(
        default=80,
        ge=10,
        le=100,
        description="JPEG quality used for avatars"
    )
    max_avatar_upload_mb: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum avatar upload size in MB"
    )

    @property
    def max_avatar_upload_bytes(self) -> int:
        """Get max avatar upload size in bytes."""
        return self.max_avatar_upload_mb * 1024 * 1024


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration
    # (e.g. no Cloudinary account when avatars are not used).

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def cloudinary(self) -> CloudinarySettings:
        return CloudinarySettings()

    @property
    def family(self) -> FamilySettings:
        return FamilySettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    {setting_name}_error entries for the groups that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("database", "cloudinary", "family", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
