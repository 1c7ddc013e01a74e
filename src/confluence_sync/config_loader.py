"""
Hierarchical YAML configuration loader for confluence_sync.

Discovers config files by convention, interpolates ``${VAR}`` references
and merges files so that the project-level file wins over the global one.

Usage:
    from confluence_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CONFLUENCE_SYNC_CONFIG"
PROJECT_CONFIG_DIR = ".confluence_sync"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` / ``${VAR:-default}`` from the environment.

    An unset or empty variable yields its default, or ``""`` when there
    is none.  Text without a closing brace is left as is.
    """

    def _replace(match: re.Match) -> str:
        env_val = os.environ.get(match.group(1))
        if env_val:
            return env_val
        return match.group(2) if match.group(2) is not None else ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any) -> Any:
    """Apply ``interpolate_env_vars`` to every string in a nested value."""
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _interpolate_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. File loading
# ---------------------------------------------------------------------------


def load_config_file(path: Path) -> Any:
    """Parse one YAML config file with the safe loader."""
    with open(path, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh)


# ---------------------------------------------------------------------------
# 3. Convention-based file discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config files, highest precedence first.

    Search order:
        1. ``CONFLUENCE_SYNC_CONFIG`` env var (explicit single path)
        2. ``.confluence_sync/config.yml`` in CWD (project-level)
        3. ``.confluence_sync/config.yaml`` in CWD
        4. ``~/.config/confluence_sync/config.yml`` (XDG global)
    """
    candidates: list[Path] = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    project_dir = Path.cwd() / PROJECT_CONFIG_DIR
    candidates.append(project_dir / "config.yml")
    candidates.append(project_dir / "config.yaml")
    candidates.append(
        Path.home() / ".config" / "confluence_sync" / "config.yml"
    )

    return [p for p in candidates if p.exists()]


# ---------------------------------------------------------------------------
# 3a. Config bootstrapping
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# confluence-sync configuration
#
# Every value can also be set via environment variables (or a .env file):
#   CONFLUENCE_BASE_URL, CONFLUENCE_EMAIL, CONFLUENCE_API_TOKEN,
#   CONFLUENCE_SPACE_KEYS, GOOGLE_API_KEY, FILE_SEARCH_STORE_NAME
#
# confluence:
#   base_url: https://your-domain.atlassian.net
#   email: you@example.com
#   api_token: ${CONFLUENCE_API_TOKEN}
#   space_keys: [DEV, OPS]
#   max_items_per_run: 500
#   exclude_archived: true
#
# index:
#   google_api_key: ${GOOGLE_API_KEY}
#   display_name: confluence-knowledge-base
#   poll_interval: 2
#   poll_timeout: 300
#   upload_max_retries: 3
#
# sync:
#   max_parallel_fetches: 5
#
# storage:
#   state_path: data/confluence-sync.json
#   content_dir: data/confluence-content
#
# logging:
#   level: INFO
#   file: null
"""


def resolve_config_path() -> Path:
    """Return the active config file, or the default project path.

    Does NOT create the file; use ``ensure_config()`` for that.
    """
    existing = discover_config_files()
    if existing:
        return existing[0]
    return Path.cwd() / PROJECT_CONFIG_DIR / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a starter file if none exists.

    Args:
        target: Explicit path to create.  Defaults to
            ``resolve_config_path()``.

    Returns:
        Path to the config file (existing or newly created).
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or resolve_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load and merge every discovered config file.

    Files are applied from lowest to highest precedence and top-level
    sections of a later file **replace** earlier ones ("project wins").
    Env var interpolation runs after the merge.

    Returns an empty dict when no config files exist (zero-config).
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_config_file(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged)
