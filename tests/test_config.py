"""Tests for confluence_sync.config: env-var config loading and validation.

NOT to be confused with test_config_loader.py (hierarchical YAML config)
or test_config_schema.py (Pydantic models). This tests the runtime
bootstrap path: validate_config() and load_config().
"""

import logging

import pytest

from confluence_sync.config import (
    DEFAULT_INDEX_DISPLAY_NAME,
    Config,
    get_bool_env,
    load_config,
    parse_space_keys,
    validate_config,
)

ENV_VARS = (
    "CONFLUENCE_BASE_URL",
    "CONFLUENCE_EMAIL",
    "CONFLUENCE_API_TOKEN",
    "CONFLUENCE_SPACE_KEYS",
    "GOOGLE_API_KEY",
    "FILE_SEARCH_STORE_NAME",
    "MAX_PAGES_PER_SYNC",
    "EXCLUDE_ARCHIVED",
    "OPERATION_POLL_INTERVAL",
    "OPERATION_POLL_TIMEOUT",
    "UPLOAD_MAX_RETRIES",
    "MAX_PARALLEL_FETCHES",
    "DB_PATH",
    "CONTENT_DIR",
    "CONFLUENCE_SYNC_DEBUG",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove every variable load_config() reads."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def required_env(monkeypatch):
    monkeypatch.setenv("CONFLUENCE_BASE_URL", "https://example.atlassian.net")
    monkeypatch.setenv("CONFLUENCE_EMAIL", "bot@example.com")
    monkeypatch.setenv("CONFLUENCE_API_TOKEN", "token")


def _config(**overrides) -> Config:
    values = {
        "confluence_base_url": "https://example.atlassian.net",
        "confluence_email": "bot@example.com",
        "confluence_api_token": "token",
        "google_api_key": "g-key",
    }
    values.update(overrides)
    return Config(**values)


# -------------------------------------------------------------------------
# parse_space_keys() / get_bool_env()
# -------------------------------------------------------------------------


class TestParseSpaceKeys:
    def test_comma_separated(self):
        assert parse_space_keys("DEV, OPS,,DOC") == ["DEV", "OPS", "DOC"]

    def test_duplicates_dropped(self):
        assert parse_space_keys("DEV,DEV,OPS") == ["DEV", "OPS"]

    def test_list_input(self):
        assert parse_space_keys([" DEV", "OPS "]) == ["DEV", "OPS"]

    def test_empty(self):
        assert parse_space_keys(None) == []
        assert parse_space_keys("") == []


class TestGetBoolEnv:
    @pytest.mark.parametrize("raw", ["true", "1", "YES", "on"])
    def test_truthy(self, monkeypatch, raw):
        monkeypatch.setenv("FLAG", raw)
        assert get_bool_env("FLAG") is True

    def test_falsy(self, monkeypatch):
        monkeypatch.setenv("FLAG", "no")
        assert get_bool_env("FLAG") is False

    def test_unset(self, monkeypatch):
        monkeypatch.delenv("FLAG", raising=False)
        assert get_bool_env("FLAG") is None


# -------------------------------------------------------------------------
# validate_config()
# -------------------------------------------------------------------------


class TestValidateConfig:
    """Tests for validate_config(): URL, credential and range checks."""

    def test_valid_config(self):
        validate_config(_config())

    def test_trailing_slash_removed(self):
        config = _config(confluence_base_url=" https://x.atlassian.net/ ")
        validate_config(config)
        assert config.confluence_base_url == "https://x.atlassian.net"

    def test_invalid_url_no_scheme(self):
        with pytest.raises(
            ValueError, match="must start with http:// or https://"
        ):
            validate_config(_config(confluence_base_url="example.com"))

    def test_invalid_url_no_host(self):
        with pytest.raises(ValueError, match="hostname"):
            validate_config(_config(confluence_base_url="https://"))

    def test_empty_email(self):
        with pytest.raises(ValueError, match="email cannot be empty"):
            validate_config(_config(confluence_email="  "))

    def test_empty_token(self):
        with pytest.raises(ValueError, match="API token cannot be empty"):
            validate_config(_config(confluence_api_token=""))

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_items_per_run", 0),
            ("poll_interval", 0.0),
            ("poll_timeout", 7200.0),
            ("upload_max_retries", 11),
            ("max_parallel_fetches", 0),
        ],
    )
    def test_out_of_range(self, field, value):
        with pytest.raises(ValueError, match=f"Invalid {field}"):
            validate_config(_config(**{field: value}))

    def test_empty_index_name(self):
        with pytest.raises(ValueError, match="store name"):
            validate_config(_config(index_display_name=" "))

    def test_missing_gemini_key_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            validate_config(_config(google_api_key=None))
        assert "mirrored locally only" in caplog.text


# -------------------------------------------------------------------------
# load_config()
# -------------------------------------------------------------------------


class TestLoadConfig:
    def test_from_env(self, required_env, monkeypatch):
        monkeypatch.setenv("CONFLUENCE_SPACE_KEYS", "DEV,OPS")
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        config = load_config()

        assert config.confluence_base_url == "https://example.atlassian.net"
        assert config.confluence_email == "bot@example.com"
        assert config.space_keys == ["DEV", "OPS"]
        assert config.google_api_key == "g-key"
        assert config.index_display_name == DEFAULT_INDEX_DISPLAY_NAME
        assert config.max_items_per_run == 500
        assert config.exclude_archived is True
        assert config.debug is False

    def test_missing_url(self, monkeypatch):
        with pytest.raises(ValueError, match="Confluence URL not found"):
            load_config()

    def test_missing_email(self, monkeypatch):
        monkeypatch.setenv("CONFLUENCE_BASE_URL", "https://x.atlassian.net")
        with pytest.raises(ValueError, match="email not found"):
            load_config()

    def test_missing_token(self, monkeypatch):
        monkeypatch.setenv("CONFLUENCE_BASE_URL", "https://x.atlassian.net")
        monkeypatch.setenv("CONFLUENCE_EMAIL", "a@b.c")
        with pytest.raises(ValueError, match="API token not found"):
            load_config()

    def test_cli_overrides_env(self, required_env):
        config = load_config(
            base_url="https://cli.atlassian.net",
            email="cli@example.com",
            space_keys=["CLI"],
            debug=True,
        )
        assert config.confluence_base_url == "https://cli.atlassian.net"
        assert config.confluence_email == "cli@example.com"
        assert config.space_keys == ["CLI"]
        assert config.debug is True

    def test_env_overrides_yaml(self, required_env, monkeypatch):
        monkeypatch.setenv("MAX_PAGES_PER_SYNC", "50")
        config = load_config(
            yaml_fallbacks={"max_items_per_run": 10, "poll_timeout": 60}
        )
        assert config.max_items_per_run == 50
        assert config.poll_timeout == 60.0

    def test_yaml_supplies_required_values(self):
        config = load_config(
            yaml_fallbacks={
                "confluence_base_url": "https://yaml.atlassian.net",
                "confluence_email": "yaml@example.com",
                "confluence_api_token": "yaml-token",
                "space_keys": ["DOC"],
                "exclude_archived": False,
                "state_path": "/tmp/state.json",
            }
        )
        assert config.confluence_base_url == "https://yaml.atlassian.net"
        assert config.space_keys == ["DOC"]
        assert config.exclude_archived is False
        assert config.state_path == "/tmp/state.json"

    def test_numeric_env_parsed(self, required_env, monkeypatch):
        monkeypatch.setenv("OPERATION_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("UPLOAD_MAX_RETRIES", "5")
        monkeypatch.setenv("MAX_PARALLEL_FETCHES", "2")
        config = load_config()
        assert config.poll_interval == 0.5
        assert config.upload_max_retries == 5
        assert config.max_parallel_fetches == 2

    def test_non_numeric_env_rejected(self, required_env, monkeypatch):
        monkeypatch.setenv("MAX_PAGES_PER_SYNC", "lots")
        with pytest.raises(ValueError, match="must be a number"):
            load_config()

    def test_out_of_range_env_rejected(self, required_env, monkeypatch):
        monkeypatch.setenv("UPLOAD_MAX_RETRIES", "99")
        with pytest.raises(ValueError, match="upload_max_retries"):
            load_config()

    def test_bool_env(self, required_env, monkeypatch):
        monkeypatch.setenv("EXCLUDE_ARCHIVED", "false")
        monkeypatch.setenv("CONFLUENCE_SYNC_DEBUG", "1")
        config = load_config()
        assert config.exclude_archived is False
        assert config.debug is True

    def test_storage_env(self, required_env, monkeypatch):
        monkeypatch.setenv("DB_PATH", "/var/lib/cs/state.json")
        monkeypatch.setenv("CONTENT_DIR", "/var/lib/cs/content")
        monkeypatch.setenv("FILE_SEARCH_STORE_NAME", "team-kb")
        config = load_config()
        assert config.state_path == "/var/lib/cs/state.json"
        assert config.content_dir == "/var/lib/cs/content"
        assert config.index_display_name == "team-kb"

    def test_gemini_key_optional(self, required_env):
        assert load_config().google_api_key is None
