import logging
import threading
from typing import Any

import requests

from ..config import Config
from ..errors import RemoteItemError, RemoteSourceError
from ..sync.models import RemoteItem

logger = logging.getLogger(__name__)

PAGE_EXPAND = "body.storage,version,space,history.lastUpdated,ancestors"


class ConfluenceClient:
    def __init__(self, config: Config, page_size: int = 100):
        self.config = config
        self.page_size = page_size
        self._thread_local = threading.local()
        self._truncated: set[str] = set()
        self.api_url = self._get_api_url()

    @property
    def session(self) -> requests.Session:
        """Accessor for the current thread's session."""
        return self._get_session()

    def _get_api_url(self) -> str:
        return f"{self.config.confluence_base_url.rstrip('/')}/wiki/rest/api"

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.auth = (
            self.config.confluence_email,
            self.config.confluence_api_token,
        )
        session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        return session

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET a REST resource and return the decoded JSON body.
        """
        try:
            response = self._get_session().get(
                f"{self.api_url}{path}",
                params=params,
                timeout=(10, 30),
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise RemoteSourceError(f"GET {path} failed: {e}") from e
        except ValueError as e:
            raise RemoteSourceError(
                f"GET {path} returned invalid JSON: {e}"
            ) from e

    def _listing_params(
        self, collection_key: str, start: int, limit: int
    ) -> dict[str, Any]:
        return {
            "spaceKey": collection_key,
            "type": "page",
            "status": "current" if self.config.exclude_archived else "any",
            "limit": limit,
            "start": start,
        }

    @staticmethod
    def _has_next(data: dict[str, Any], results: list[Any]) -> bool:
        """
        Decide whether another page of results may follow.

        The server may return fewer rows than requested, so a short page
        says nothing.  The ``_links.next`` link is authoritative when the
        response carries ``_links``; otherwise paging stops on an empty
        page.
        """
        if not results:
            return False
        links = data.get("_links")
        if isinstance(links, dict):
            return "next" in links
        return True

    def list_items(self, collection_key: str) -> list[RemoteItem]:
        """
        Fetch every current page of a space, up to max_items_per_run.

        Pages are requested with limit/start pagination, advancing by the
        number of rows actually returned.  Each payload is validated into
        a RemoteItem here, so the rest of the system never sees raw dicts.

        Raises:
            RemoteSourceError: If a request fails or a page payload is
                malformed.  A partial listing is never returned.
        """
        limit_total = self.config.max_items_per_run
        items: list[RemoteItem] = []
        start = 0
        has_more = True
        self._truncated.discard(collection_key)

        logger.info("Fetching pages from space: %s", collection_key)
        while has_more and len(items) < limit_total:
            params = self._listing_params(
                collection_key, start, self.page_size
            )
            params["expand"] = PAGE_EXPAND
            data = self._get("/content", params=params)
            results = data.get("results") or []
            for page in results:
                try:
                    items.append(
                        RemoteItem.from_confluence_page(
                            page, self.config.confluence_base_url
                        )
                    )
                except RemoteItemError as e:
                    raise RemoteSourceError(
                        f"Space {collection_key}: {e}"
                    ) from e

            start += len(results)
            has_more = self._has_next(data, results)
            logger.debug("  Fetched %d pages so far...", len(items))

        truncated = len(items) > limit_total or (
            has_more and self._has_pages_from(collection_key, start)
        )
        if truncated:
            logger.warning(
                "Space %s has more than %d pages; listing truncated",
                collection_key,
                limit_total,
            )
            self._truncated.add(collection_key)
            items = items[:limit_total]

        logger.info(
            "Total pages fetched from %s: %d", collection_key, len(items)
        )
        return items

    def _has_pages_from(self, collection_key: str, start: int) -> bool:
        """
        Ask for one page at offset *start* to see if the space goes on.
        """
        data = self._get(
            "/content",
            params=self._listing_params(collection_key, start, 1),
        )
        return bool(data.get("results"))

    def was_truncated(self, collection_key: str) -> bool:
        """
        True if the last listing of the space hit max_items_per_run.

        A truncated listing is not a complete snapshot, so it must not be
        used to decide which pages were deleted.
        """
        return collection_key in self._truncated

    def get_item(self, item_id: str) -> RemoteItem:
        """
        Fetch a single page by id.
        """
        page = self._get(
            f"/content/{item_id}", params={"expand": PAGE_EXPAND}
        )
        try:
            return RemoteItem.from_confluence_page(
                page, self.config.confluence_base_url
            )
        except RemoteItemError as e:
            raise RemoteSourceError(str(e)) from e

    def list_collections(self) -> list[dict[str, Any]]:
        """
        List spaces visible to the configured user.
        """
        data = self._get(
            "/space", params={"limit": 100, "expand": "description.plain"}
        )
        return data.get("results") or []

    def test_connection(self) -> bool:
        """
        Return True if the space listing endpoint answers.
        """
        try:
            self._get("/space", params={"limit": 1})
            return True
        except RemoteSourceError as e:
            logger.error("Connection test failed: %s", e)
            return False
