"""Format conversion from Confluence storage format to Markdown."""

from .common import ConversionResult, confluence_to_markdown_lang
from .storage_to_markdown import (
    ConfluenceConverter,
    StorageParser,
    build_metadata_header,
    clean_markdown,
    storage_to_markdown,
)

__all__ = [
    "ConfluenceConverter",
    "ConversionResult",
    "StorageParser",
    "build_metadata_header",
    "clean_markdown",
    "confluence_to_markdown_lang",
    "storage_to_markdown",
]
