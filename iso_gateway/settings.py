from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    """Request handling configuration for the gateway."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    allowed_origins: str = Field(
        default="",
        validation_alias=AliasChoices("ISO_GATEWAY_ALLOWED_ORIGINS", "ALLOWED_ORIGINS"),
    )
    cache_control: str = Field(
        default="",
        validation_alias=AliasChoices("ISO_GATEWAY_CACHE_CONTROL", "CACHE_CONTROL"),
    )
    notfound_file: str = Field(
        default="",
        validation_alias=AliasChoices("ISO_GATEWAY_NOTFOUND_FILE", "NOTFOUND_FILE"),
    )
    date_suffix: str = Field(
        default="",
        validation_alias=AliasChoices("ISO_GATEWAY_DATE_SUFFIX", "DATE_SUFFIX"),
    )
    retries: int = Field(
        default=0,
        validation_alias=AliasChoices("ISO_GATEWAY_RETRIES", "R2_RETRIES"),
    )
    logging: bool = Field(
        default=False,
        validation_alias=AliasChoices("ISO_GATEWAY_LOGGING", "LOGGING"),
    )
    product: str = Field(
        default="secureblue",
        validation_alias="ISO_GATEWAY_PRODUCT",
    )
    keyring_filename: str = Field(
        default="secureblue-keyring.gpg",
        validation_alias="ISO_GATEWAY_KEYRING_FILENAME",
    )

    @field_validator("retries")
    @classmethod
    def _check_retries(cls, value: int) -> int:
        if value < -1:
            msg = "retries must be -1 (unbounded) or a non-negative count"
            raise ValueError(msg)
        return value

    @property
    def caching_enabled(self) -> bool:
        return self.cache_control != "no-store"


class OriginSettings(BaseSettings):
    """Configuration for the S3-compatible bucket holding the objects."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="ISO_GATEWAY_ORIGIN_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ISO_GATEWAY_ORIGIN_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ISO_GATEWAY_ORIGIN_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ISO_GATEWAY_ORIGIN_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "ISO_GATEWAY_ORIGIN_REGION",
            "AWS_REGION",
        ),
    )
    bucket: str = Field(
        default="secureblue",
        validation_alias="ISO_GATEWAY_ORIGIN_BUCKET",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="virtual",
        validation_alias="ISO_GATEWAY_ORIGIN_ADDRESSING_STYLE",
    )


class CacheSettings(BaseSettings):
    """Configuration for the edge cache store."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    backend: Literal["memory", "s3"] = Field(
        default="memory",
        validation_alias="ISO_GATEWAY_CACHE_BACKEND",
    )
    max_entries: int = Field(
        default=1024,
        validation_alias="ISO_GATEWAY_CACHE_MAX_ENTRIES",
    )
    max_memory_bytes: int = Field(
        default=256 * 1024 * 1024,
        validation_alias="ISO_GATEWAY_CACHE_MAX_MEMORY_BYTES",
    )
    max_object_size: int = Field(
        default=512 * 1024 * 1024,
        validation_alias="ISO_GATEWAY_CACHE_MAX_OBJECT_SIZE",
    )
    endpoint: str = Field(
        default="http://127.0.0.1:9000",
        validation_alias="ISO_GATEWAY_CACHE_ENDPOINT",
    )
    access_key: str = Field(
        default="minioadmin",
        validation_alias="ISO_GATEWAY_CACHE_ACCESS_KEY",
    )
    secret_key: str = Field(
        default="minioadmin",
        validation_alias="ISO_GATEWAY_CACHE_SECRET_KEY",
    )
    region: str = Field(
        default="us-east-1",
        validation_alias="ISO_GATEWAY_CACHE_REGION",
    )
    bucket_name: str = Field(
        default="iso-gateway-cache",
        validation_alias="ISO_GATEWAY_CACHE_BUCKET",
    )

    @field_validator("max_entries", "max_memory_bytes")
    @classmethod
    def _check_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            msg = f"{info.field_name} must be positive"
            raise ValueError(msg)
        return value


def load_gateway_settings_from_env() -> GatewaySettings:
    """Load gateway settings from environment variables.

    Returns:
        GatewaySettings instance populated from environment variables.
    """
    return GatewaySettings()


def load_origin_settings_from_env() -> OriginSettings:
    """Load origin bucket settings from environment variables.

    Returns:
        OriginSettings instance populated from environment variables.
    """
    return OriginSettings()


def load_cache_settings_from_env() -> CacheSettings:
    return CacheSettings()
