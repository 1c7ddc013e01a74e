"""Runtime configuration for confluence-sync.

Reads Confluence, Gemini and sync settings from CLI args, environment
variables, .env files, and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    CONFLUENCE_BASE_URL: Confluence site URL (required)
    CONFLUENCE_EMAIL: Account email for basic auth (required)
    CONFLUENCE_API_TOKEN: API token for basic auth (required)
    CONFLUENCE_SPACE_KEYS: Comma-separated space keys to sync
    GOOGLE_API_KEY: Gemini API key (uploads are skipped when unset)
    FILE_SEARCH_STORE_NAME: Display name of the File Search store
        (default: confluence-knowledge-base)
    MAX_PAGES_PER_SYNC: Max pages listed per space (default: 500)
    EXCLUDE_ARCHIVED: Only list current pages (default: true)
    OPERATION_POLL_INTERVAL: Seconds between upload polls (default: 2)
    OPERATION_POLL_TIMEOUT: Upload timeout in seconds (default: 300)
    UPLOAD_MAX_RETRIES: Attempts per upload (default: 3)
    MAX_PARALLEL_FETCHES: Concurrent space fetches (default: 5)
    DB_PATH: Record store file (default: data/confluence-sync.json)
    CONTENT_DIR: Artifact directory (default: data/confluence-content)
    CONFLUENCE_SYNC_DEBUG: Enable debug logging (default: false)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_INDEX_DISPLAY_NAME = "confluence-knowledge-base"
DEFAULT_STATE_PATH = "data/confluence-sync.json"
DEFAULT_CONTENT_DIR = "data/confluence-content"


@dataclass
class Config:
    confluence_base_url: str
    confluence_email: str
    confluence_api_token: str
    space_keys: list[str] = field(default_factory=list)
    google_api_key: str | None = None
    index_display_name: str = DEFAULT_INDEX_DISPLAY_NAME
    max_items_per_run: int = 500
    exclude_archived: bool = True
    poll_interval: float = 2.0
    poll_timeout: float = 300.0
    upload_max_retries: int = 3
    max_parallel_fetches: int = 5
    state_path: str = DEFAULT_STATE_PATH
    content_dir: str = DEFAULT_CONTENT_DIR
    debug: bool = False


def parse_space_keys(value: str | list[str] | None) -> list[str]:
    """Split a comma-separated key list, dropping blanks and duplicates.

    Examples:
        >>> parse_space_keys("DEV, OPS,,DOC")
        ['DEV', 'OPS', 'DOC']
    """
    if not value:
        return []
    parts = value.split(",") if isinstance(value, str) else value
    keys = [str(p).strip() for p in parts]
    return list(dict.fromkeys(k for k in keys if k))


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the URL format is invalid, credentials are empty
            or a numeric setting is out of range.
    """
    # Normalize URL: strip whitespace
    config.confluence_base_url = config.confluence_base_url.strip()

    if not config.confluence_base_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid Confluence URL '{config.confluence_base_url}': "
            "must start with http:// or https://"
        )

    parsed = urlparse(config.confluence_base_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid Confluence URL '{config.confluence_base_url}': "
            "URL must include a hostname"
        )

    config.confluence_base_url = config.confluence_base_url.removesuffix("/")

    if not config.confluence_email.strip():
        raise ValueError(
            "Confluence email cannot be empty. "
            "Set CONFLUENCE_EMAIL environment variable."
        )

    if not config.confluence_api_token.strip():
        raise ValueError(
            "Confluence API token cannot be empty. "
            "Set CONFLUENCE_API_TOKEN environment variable."
        )

    checks = [
        ("max_items_per_run", config.max_items_per_run, 1, 100000),
        ("poll_interval", config.poll_interval, 0.1, 60),
        ("poll_timeout", config.poll_timeout, 1, 3600),
        ("upload_max_retries", config.upload_max_retries, 1, 10),
        ("max_parallel_fetches", config.max_parallel_fetches, 1, 50),
    ]
    for name, value, low, high in checks:
        if not (low <= value <= high):
            raise ValueError(
                f"Invalid {name} {value!r}: must be between {low} and {high}"
            )

    if not config.index_display_name.strip():
        raise ValueError("File Search store name cannot be empty.")

    if not config.google_api_key:
        logger.warning(
            "GOOGLE_API_KEY not set: pages will be mirrored locally only"
        )


def get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _number_setting(
    env_key: str,
    cast: Callable[[str], Any],
    fallbacks: dict,
    fb_key: str,
    default: Any,
) -> Any:
    """Numeric field: env > YAML > default."""
    raw = os.getenv(env_key)
    if raw is not None:
        try:
            return cast(raw)
        except ValueError:
            raise ValueError(
                f"Invalid {env_key} '{raw}': must be a number"
            ) from None
    if fallbacks.get(fb_key) is not None:
        return cast(fallbacks[fb_key])
    return default


def load_config(
    base_url: str | None = None,
    email: str | None = None,
    api_token: str | None = None,
    space_keys: str | list[str] | None = None,
    google_api_key: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        base_url: Override Confluence URL.
        email: Override account email.
        api_token: Override API token.
        space_keys: Override space keys (list or comma-separated).
        google_api_key: Override Gemini API key.
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of ``Config`` field values from the YAML
            config file. Used when CLI arg and env var are both unset.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If required config (URL, email, API token) is missing
            after checking all sources, or a value is invalid.
    """
    fb = yaml_fallbacks or {}

    # --- Required strings: CLI > env > YAML > error ---

    url = (
        base_url
        or os.getenv("CONFLUENCE_BASE_URL")
        or fb.get("confluence_base_url")
    )
    if not url:
        raise ValueError(
            "Confluence URL not found. Set CONFLUENCE_BASE_URL environment "
            "variable, pass --url CLI argument, or add 'base_url' to "
            "config.yml."
        )

    user_email = (
        email or os.getenv("CONFLUENCE_EMAIL") or fb.get("confluence_email")
    )
    if not user_email:
        raise ValueError(
            "Confluence email not found. Set CONFLUENCE_EMAIL environment "
            "variable, pass --email CLI argument, or add 'email' to "
            "config.yml."
        )

    token = (
        api_token
        or os.getenv("CONFLUENCE_API_TOKEN")
        or fb.get("confluence_api_token")
    )
    if not token:
        raise ValueError(
            "Confluence API token not found. Set CONFLUENCE_API_TOKEN "
            "environment variable or add 'api_token' to config.yml."
        )

    # --- Optional strings: CLI > env > YAML > default ---

    keys = parse_space_keys(
        space_keys
        or os.getenv("CONFLUENCE_SPACE_KEYS")
        or fb.get("space_keys")
    )
    gemini_key = (
        google_api_key
        or os.getenv("GOOGLE_API_KEY")
        or fb.get("google_api_key")
    )
    index_name = (
        os.getenv("FILE_SEARCH_STORE_NAME")
        or fb.get("index_display_name")
        or DEFAULT_INDEX_DISPLAY_NAME
    )
    state_path = (
        os.getenv("DB_PATH") or fb.get("state_path") or DEFAULT_STATE_PATH
    )
    content_dir = (
        os.getenv("CONTENT_DIR")
        or fb.get("content_dir")
        or DEFAULT_CONTENT_DIR
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    env_archived = get_bool_env("EXCLUDE_ARCHIVED")
    if env_archived is not None:
        exclude_archived = env_archived
    else:
        exclude_archived = bool(fb.get("exclude_archived", True))

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("CONFLUENCE_SYNC_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    config = Config(
        confluence_base_url=url.strip(),
        confluence_email=user_email.strip(),
        confluence_api_token=token.strip(),
        space_keys=keys,
        google_api_key=gemini_key.strip() if gemini_key else None,
        index_display_name=index_name.strip(),
        max_items_per_run=_number_setting(
            "MAX_PAGES_PER_SYNC", int, fb, "max_items_per_run", 500
        ),
        exclude_archived=exclude_archived,
        poll_interval=_number_setting(
            "OPERATION_POLL_INTERVAL", float, fb, "poll_interval", 2.0
        ),
        poll_timeout=_number_setting(
            "OPERATION_POLL_TIMEOUT", float, fb, "poll_timeout", 300.0
        ),
        upload_max_retries=_number_setting(
            "UPLOAD_MAX_RETRIES", int, fb, "upload_max_retries", 3
        ),
        max_parallel_fetches=_number_setting(
            "MAX_PARALLEL_FETCHES", int, fb, "max_parallel_fetches", 5
        ),
        state_path=state_path,
        content_dir=content_dir,
        debug=final_debug,
    )

    validate_config(config)

    return config
