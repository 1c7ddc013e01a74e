"""Startup wiring: configuration in, concrete collaborators out."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import LoggingConfig, build_config, to_fallbacks
from .converters import ConfluenceConverter
from .core.async_utils import run_sync
from .core.client import ConfluenceClient
from .core.index import GeminiIndexClient
from .sync.artifacts import ArtifactStore
from .sync.detector import ChangeDetector
from .sync.ledger import RunLedger
from .sync.orchestrator import SyncOrchestrator
from .sync.state import RecordStore
from .sync.uploader import Uploader

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """Collaborators built for one process, sharing one record store."""

    config: Config
    store: RecordStore
    artifacts: ArtifactStore
    ledger: RunLedger
    detector: ChangeDetector
    client: ConfluenceClient
    uploader: Uploader | None = None

    def orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(
            source=self.client,
            converter=ConfluenceConverter(),
            artifacts=self.artifacts,
            store=self.store,
            uploader=self.uploader,
            collection_keys=self.config.space_keys,
            ledger=self.ledger,
            detector=self.detector,
            max_parallel_fetches=self.config.max_parallel_fetches,
        )


def logging_settings() -> LoggingConfig:
    """Return the YAML ``logging`` section, or defaults.

    Called before logging is configured.  A broken config file yields the
    defaults here and is reported by ``load_settings()`` afterwards.
    """
    load_dotenv()
    if not discover_config_files():
        return LoggingConfig()
    try:
        return build_config(load_hierarchical_config()).logging
    except (OSError, ValueError, yaml.YAMLError):
        return LoggingConfig()


def load_settings(config_overrides: dict[str, Any] | None = None) -> Config:
    """Resolve configuration from CLI overrides, env, .env and YAML.

    Raises:
        ValueError: If required settings are missing or invalid.
    """
    # .env first so ${VAR} interpolation in YAML can use its values
    load_dotenv()

    yaml_fallbacks: dict[str, Any] | None = None
    config_files = discover_config_files()
    sources = []
    if config_files:
        unified = build_config(load_hierarchical_config())
        yaml_fallbacks = to_fallbacks(unified)
        sources.append(f"config file: {config_files[0]}")

    overrides = config_overrides or {}
    config = load_config(
        base_url=overrides.get("base_url"),
        email=overrides.get("email"),
        api_token=overrides.get("api_token"),
        space_keys=overrides.get("space_keys"),
        google_api_key=overrides.get("google_api_key"),
        debug=overrides.get("debug", False),
        yaml_fallbacks=yaml_fallbacks,
    )

    if overrides:
        sources.append("CLI arguments")
    sources.append("environment variables")
    logger.info("Configuration loaded from: %s", ", ".join(sources))
    logger.info("Confluence URL: %s", config.confluence_base_url)
    return config


def build_context(config: Config, index_client: Any = None) -> SyncContext:
    """Create the collaborators for *config* and open the record store.

    Args:
        config: Validated configuration.
        index_client: Optional pre-built ``genai.Client`` (tests).

    Raises:
        RecordStoreError: If the record store cannot be opened.
    """
    store = RecordStore(Path(config.state_path)).open()
    artifacts = ArtifactStore(Path(config.content_dir))

    uploader = None
    if config.google_api_key:
        index = GeminiIndexClient(
            config.google_api_key, store, client=index_client
        )
        uploader = Uploader(
            index,
            config.index_display_name,
            poll_interval=config.poll_interval,
            poll_timeout=config.poll_timeout,
            max_retries=config.upload_max_retries,
        )

    return SyncContext(
        config=config,
        store=store,
        artifacts=artifacts,
        ledger=RunLedger(store),
        detector=ChangeDetector(store, artifacts),
        client=ConfluenceClient(config),
        uploader=uploader,
    )


@asynccontextmanager
async def sync_lifespan(
    config_overrides: dict[str, Any] | None = None,
) -> AsyncIterator[SyncContext]:
    """
    Manage startup and shutdown for one command.

    On startup:
    - Load configuration: CLI > env vars (.env loaded first) > YAML > defaults
    - Open the record store (fatal when unreadable)
    - Build the remote client, artifact store and uploader

    Args:
        config_overrides: Optional dict with config values from CLI
            (base_url, email, api_token, space_keys, google_api_key, debug)

    Yields:
        The wired ``SyncContext``

    Raises:
        ValueError: If configuration is invalid.
        RecordStoreError: If the record store cannot be opened.
    """
    config = load_settings(config_overrides)
    context = await run_sync(build_context, config)
    logger.info(
        "Record store: %s (%d records)",
        config.state_path,
        context.store.count(),
    )
    if context.uploader is None:
        logger.info("Uploads disabled: no Gemini API key configured")

    yield context

    logger.debug("confluence-sync shutting down")
