"""Clients for the remote wiki and the external search index."""

from .async_utils import run_sync
from .client import ConfluenceClient
from .index import GeminiIndexClient

__all__ = ["ConfluenceClient", "GeminiIndexClient", "run_sync"]
