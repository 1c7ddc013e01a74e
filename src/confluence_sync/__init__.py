"""Mirror Confluence spaces locally and project them into a search index."""

__version__ = "0.1.0"
