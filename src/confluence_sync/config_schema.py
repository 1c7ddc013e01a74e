"""Unified configuration schema for confluence_sync.

Defines Pydantic models for the YAML config file with dedicated sections
for the Confluence connection, the search index, sync tuning, local
storage and logging.  Includes adapter functions producing the runtime
``Config`` dataclass.

Usage:
    from confluence_sync.config_schema import (
        UnifiedConfig, build_config, to_runtime_config,
    )

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_runtime_config(unified, cli_overrides={"space_keys": "DEV"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ConfluenceSection(BaseModel):
    """Confluence connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    base_url: str | None = Field(
        default=None, description="Confluence site URL"
    )
    email: str | None = Field(
        default=None, description="Account email for basic auth"
    )
    api_token: str | None = Field(default=None, description="API token")
    space_keys: list[str] | None = Field(
        default=None, description="Space keys to sync"
    )
    max_items_per_run: int | None = Field(
        default=None,
        ge=1,
        le=100000,
        description="Maximum pages listed per space (1-100000)",
    )
    exclude_archived: bool | None = Field(
        default=None, description="Only list current pages"
    )

    model_config = {"frozen": True}

    @field_validator("space_keys", mode="before")
    @classmethod
    def _split_keys(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [k.strip() for k in value.split(",") if k.strip()]
        return value


class IndexSection(BaseModel):
    """External search index (Gemini File Search) settings."""

    google_api_key: str | None = Field(
        default=None, description="Gemini API key"
    )
    display_name: str | None = Field(
        default=None, description="File Search store display name"
    )
    poll_interval: float | None = Field(
        default=None, gt=0, le=60, description="Seconds between polls"
    )
    poll_timeout: float | None = Field(
        default=None, ge=1, le=3600, description="Upload timeout seconds"
    )
    upload_max_retries: int | None = Field(
        default=None, ge=1, le=10, description="Attempts per upload"
    )

    model_config = {"frozen": True}


class SyncSection(BaseModel):
    """Sync tuning."""

    max_parallel_fetches: int | None = Field(
        default=None,
        ge=1,
        le=50,
        description="Concurrent space fetches (1-50)",
    )
    debug: bool | None = Field(default=None, description="Debug mode")

    model_config = {"frozen": True}


class StorageSection(BaseModel):
    """Local mirror locations."""

    state_path: str | None = Field(
        default=None, description="Record store JSON file"
    )
    content_dir: str | None = Field(
        default=None, description="Markdown artifact directory"
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    confluence: ConfluenceSection = Field(default_factory=ConfluenceSection)
    index: IndexSection = Field(default_factory=IndexSection)
    sync: SyncSection = Field(default_factory=SyncSection)
    storage: StorageSection = Field(default_factory=StorageSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapters: UnifiedConfig -> runtime Config dataclass
# ---------------------------------------------------------------------------


def to_fallbacks(unified: UnifiedConfig) -> dict[str, Any]:
    """Flatten the YAML sections into ``Config`` field names.

    Only values set in the file are returned, so they act as fallbacks
    below CLI arguments and environment variables in ``load_config()``.
    """
    flat = {
        "confluence_base_url": unified.confluence.base_url,
        "confluence_email": unified.confluence.email,
        "confluence_api_token": unified.confluence.api_token,
        "space_keys": unified.confluence.space_keys,
        "max_items_per_run": unified.confluence.max_items_per_run,
        "exclude_archived": unified.confluence.exclude_archived,
        "google_api_key": unified.index.google_api_key,
        "index_display_name": unified.index.display_name,
        "poll_interval": unified.index.poll_interval,
        "poll_timeout": unified.index.poll_timeout,
        "upload_max_retries": unified.index.upload_max_retries,
        "max_parallel_fetches": unified.sync.max_parallel_fetches,
        "debug": unified.sync.debug,
        "state_path": unified.storage.state_path,
        "content_dir": unified.storage.content_dir,
    }
    return {k: v for k, v in flat.items() if v is not None}


def to_runtime_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Convert a ``UnifiedConfig`` into the ``Config`` dataclass,
    applying CLI overrides on top.

    The precedence applied here is:
        CLI override > unified config value > built-in default

    CLI overrides dict keys: base_url, email, api_token, space_keys,
    google_api_key, debug.

    Args:
        unified: The unified config produced by ``build_config()``.
        cli_overrides: Optional dict of CLI argument values.

    Returns:
        ``Config`` dataclass instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    # Import here to avoid circular imports (config.py is the leaf module)
    from .config import Config, parse_space_keys

    overrides = cli_overrides or {}
    fb = to_fallbacks(unified)
    defaults = Config(
        confluence_base_url="", confluence_email="", confluence_api_token=""
    )

    def pick(key: str) -> Any:
        return fb.get(key, getattr(defaults, key))

    return Config(
        confluence_base_url=overrides.get("base_url")
        or pick("confluence_base_url"),
        confluence_email=overrides.get("email") or pick("confluence_email"),
        confluence_api_token=overrides.get("api_token")
        or pick("confluence_api_token"),
        space_keys=parse_space_keys(
            overrides.get("space_keys") or pick("space_keys")
        ),
        google_api_key=overrides.get("google_api_key")
        or pick("google_api_key"),
        index_display_name=pick("index_display_name"),
        max_items_per_run=pick("max_items_per_run"),
        exclude_archived=pick("exclude_archived"),
        poll_interval=pick("poll_interval"),
        poll_timeout=pick("poll_timeout"),
        upload_max_retries=pick("upload_max_retries"),
        max_parallel_fetches=pick("max_parallel_fetches"),
        state_path=pick("state_path"),
        content_dir=pick("content_dir"),
        debug=overrides.get("debug", False) or pick("debug"),
    )
