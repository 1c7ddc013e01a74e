"""Shared pytest fixtures for confluence-sync tests."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from dotenv import load_dotenv

from confluence_sync.config import Config
from confluence_sync.errors import ConversionError, RemoteSourceError
from confluence_sync.sync.artifacts import ArtifactStore
from confluence_sync.sync.models import RemoteItem, SyncedRecord
from confluence_sync.sync.state import RecordStore

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require live Confluence / Gemini services",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring live services"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config(tmp_path):
    """Create a Config instance pointing at a temporary mirror."""
    return Config(
        confluence_base_url="https://example.atlassian.net",
        confluence_email="bot@example.com",
        confluence_api_token="token",
        space_keys=["DEV", "OPS"],
        state_path=str(tmp_path / "state.json"),
        content_dir=str(tmp_path / "content"),
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path):
    """An opened, empty record store."""
    return RecordStore(tmp_path / "state.json").open()


@pytest.fixture
def artifacts(tmp_path):
    """An artifact store over an empty content directory."""
    return ArtifactStore(tmp_path / "content")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_item():
    """Factory fixture for RemoteItem instances."""

    def _make(
        item_id: str,
        collection_key: str = "DEV",
        version: int = 1,
        title: str | None = None,
        raw_content: str = "<p>Body</p>",
        **extra,
    ) -> RemoteItem:
        return RemoteItem(
            id=item_id,
            collection_key=collection_key,
            title=title or f"Page {item_id}",
            version_number=version,
            raw_content=raw_content,
            **extra,
        )

    return _make


@pytest.fixture
def make_record():
    """Factory fixture for SyncedRecord instances."""

    def _make(
        item_id: str,
        collection_key: str = "DEV",
        version: int = 1,
        title: str | None = None,
        **extra,
    ) -> SyncedRecord:
        return SyncedRecord(
            id=item_id,
            collection_key=collection_key,
            title=title or f"Page {item_id}",
            version_number=version,
            last_synced_at="2024-01-01T00:00:00+00:00",
            **extra,
        )

    return _make


@pytest.fixture
def make_page():
    """Factory fixture for Confluence REST ``content`` payloads."""

    def _make(
        page_id: str = "123",
        title: str = "Getting Started",
        space_key: str = "DEV",
        version: int = 3,
        body: str = "<p>Hello</p>",
    ) -> dict:
        return {
            "id": page_id,
            "type": "page",
            "title": title,
            "space": {"key": space_key, "name": "Development"},
            "version": {"number": version, "when": "2024-05-01T10:00:00Z"},
            "body": {"storage": {"value": body}},
            "ancestors": [{"title": "Home"}, {"title": "Guides"}],
            "history": {"lastUpdated": {"when": "2024-05-02T10:00:00Z"}},
            "_links": {"webui": f"/spaces/{space_key}/pages/{page_id}"},
        }

    return _make


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------


class FakeSource:
    """In-memory content source keyed by collection."""

    def __init__(self, collections=None, failing=(), truncated=()):
        self.collections = dict(collections or {})
        self.failing = set(failing)
        self.truncated = set(truncated)
        self.calls: list[str] = []

    def list_items(self, collection_key):
        self.calls.append(collection_key)
        if collection_key in self.failing:
            raise RemoteSourceError(f"HTTP 503 for {collection_key}")
        return list(self.collections.get(collection_key, []))

    def was_truncated(self, collection_key):
        return collection_key in self.truncated


class FakeConverter:
    """Converter producing a short document, failing for chosen ids."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.converted: list[str] = []

    def convert(self, raw_content, metadata):
        if metadata.id in self.failing:
            raise ConversionError(f"Cannot parse page {metadata.id}")
        self.converted.append(metadata.id)
        return f"# {metadata.title}\n\nv{metadata.version_number}\n"


@pytest.fixture
def fake_source():
    """Factory fixture for FakeSource."""
    return FakeSource


@pytest.fixture
def fake_converter():
    """Factory fixture for FakeConverter."""
    return FakeConverter


def make_operation(done=True, error=None, document_name="docs/doc-1"):
    """Mimic a google-genai long-running upload operation."""
    response = (
        SimpleNamespace(document_name=document_name) if document_name else None
    )
    return SimpleNamespace(
        name="operations/op-1", done=done, error=error, response=response
    )


@pytest.fixture
def operation_factory():
    """Factory fixture for fake long-running operations."""
    return make_operation


@pytest.fixture
def mock_genai_client():
    """A ``genai.Client`` double whose uploads finish immediately."""
    client = MagicMock()
    client.file_search_stores.create.return_value = SimpleNamespace(
        name="fileSearchStores/store-1", display_name="kb"
    )
    client.file_search_stores.upload_to_file_search_store.return_value = (
        make_operation(done=True)
    )
    client.operations.get.side_effect = lambda op: op
    return client
