from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mirrorcache.cache.keys import normalize_prefix
from mirrorcache.cache.local import LocalCache, MemoryLocalCache
from mirrorcache.cache.serializers import Serializer, create_serializer
from mirrorcache.cache.ttl import resolve_ttl


class CacheSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MIRRORCACHE_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("MIRRORCACHE_REDIS_URL", "REDIS_URL"),
    )

    # Cache behaviour
    default_ttl: str = "1 hour"
    key_prefix: str = "cache:"
    scan_batch_size: int = Field(default=10000, gt=0)
    serializer: str = "msgpack"  # msgpack, json or pickle
    local_max_size: int | None = Field(default=None, gt=0)

    # Resilience
    reconnect_interval: float = Field(default=1.0, gt=0)
    health_check_interval: float = Field(default=5.0, ge=0)

    # Observability
    log_level: str = "INFO"
    log_json: bool = True
    enable_metrics: bool = True


settings = CacheSettings()


class CacheConfig(BaseModel):
    """Immutable configuration of one cache client.

    ``ttl`` accepts anything ``resolve_ttl`` does and is stored as whole
    seconds; ``key_prefix`` always ends with ":".
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    store_url: str
    ttl: int = 3600
    key_prefix: str = "cache:"
    serializer: Serializer
    local_cache: LocalCache
    scan_batch_size: int = Field(default=10000, gt=0)
    reconnect_interval: float = Field(default=1.0, gt=0)
    health_check_interval: float = Field(default=5.0, ge=0)

    @field_validator("ttl", mode="before")
    @classmethod
    def _resolve_ttl(cls, value: Any) -> int:
        return resolve_ttl(value)

    @field_validator("key_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        return normalize_prefix(value)

    @classmethod
    def from_settings(
        cls, source: CacheSettings | None = None, **overrides: Any
    ) -> "CacheConfig":
        """Build a config from settings, with caller values taking precedence.

        Raises:
            TypeError: If an override does not name a config field.
        """
        unknown = set(overrides) - set(cls.model_fields)
        if unknown:
            raise TypeError(f"Unknown cache config option(s): {', '.join(sorted(unknown))}")

        base = source if source is not None else settings
        values: dict[str, Any] = {
            "store_url": base.redis_url,
            "ttl": base.default_ttl,
            "key_prefix": base.key_prefix,
            "scan_batch_size": base.scan_batch_size,
            "reconnect_interval": base.reconnect_interval,
            "health_check_interval": base.health_check_interval,
        }
        values.update(overrides)

        if "serializer" not in values:
            values["serializer"] = create_serializer(base.serializer)
        if "local_cache" not in values:
            values["local_cache"] = MemoryLocalCache(max_size=base.local_max_size)

        return cls(**values)
