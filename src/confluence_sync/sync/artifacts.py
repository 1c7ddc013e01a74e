"""Artifact store: converted Markdown pages on the local filesystem.

Locations are path strings under the content directory.  The core
treats them as opaque and only ever hands them back to this store or
to the uploader.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from confluence_sync.errors import ArtifactError

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".md"
MAX_TITLE_LENGTH = 100


def sanitize_filename(name: str) -> str:
    """Reduce *name* to a safe, lowercase filename fragment.

    Whitespace runs become hyphens, characters outside
    ``[A-Za-z0-9_-]`` are dropped, repeated hyphens collapse and
    leading/trailing hyphens are trimmed.  The result is truncated to
    100 characters.
    """
    text = re.sub(r"\s+", "-", name)
    text = re.sub(r"[^a-zA-Z0-9_-]", "", text)
    text = re.sub(r"-+", "-", text)
    text = text.strip("-")
    return text.lower()[:MAX_TITLE_LENGTH]


class ArtifactStore:
    """Save, delete and enumerate Markdown artifacts.

    Args:
        content_dir: Directory holding the artifacts.  Created on first
            save.
    """

    def __init__(self, content_dir: Path) -> None:
        self.content_dir = Path(content_dir)

    def filename_for(
        self, item_id: str, collection_key: str, title: str
    ) -> str:
        """Return ``{space}_{id}_{title}.md`` for an item.

        The page id keeps names unique when titles collide or change.
        """
        stem = f"{collection_key.lower()}_{item_id}_{sanitize_filename(title)}"
        return f"{stem}{ARTIFACT_SUFFIX}"

    def location_for(
        self, item_id: str, collection_key: str, title: str
    ) -> str:
        return str(
            self.content_dir
            / self.filename_for(item_id, collection_key, title)
        )

    def save(
        self, item_id: str, collection_key: str, title: str, content: str
    ) -> str:
        """Write *content* for an item and return its location.

        Raises:
            ArtifactError: If the file cannot be written.
        """
        location = self.location_for(item_id, collection_key, title)
        path = Path(location)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content.encode("utf-8"))
        except OSError as exc:
            raise ArtifactError(
                f"Cannot write artifact for page {item_id}: {exc}"
            ) from exc
        logger.debug("Saved artifact %s", location)
        return location

    def delete(self, location: str) -> bool:
        """Delete the artifact at *location*.

        Returns:
            ``True`` if a file was removed, ``False`` if none existed.

        Raises:
            ArtifactError: If the file exists but cannot be removed.
        """
        path = Path(location)
        if not path.is_file():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ArtifactError(
                f"Cannot delete artifact {location}: {exc}"
            ) from exc
        logger.debug("Deleted artifact %s", location)
        return True

    def exists(self, location: str | None) -> bool:
        return bool(location) and Path(location).is_file()

    def list(self) -> list[str]:
        """Return every artifact location under the content directory."""
        if not self.content_dir.is_dir():
            return []
        return sorted(
            str(p)
            for p in self.content_dir.rglob(f"*{ARTIFACT_SUFFIX}")
            if p.is_file()
        )

    def stats(self) -> dict:
        """Summarise artifact count and size."""
        locations = self.list()
        total = sum(Path(loc).stat().st_size for loc in locations)
        return {
            "total_files": len(locations),
            "total_size_bytes": total,
            "total_size_mb": round(total / (1024 * 1024), 2),
            "content_dir": str(self.content_dir),
        }
