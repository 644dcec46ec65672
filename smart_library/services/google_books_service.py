import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from smart_library.config import settings
from smart_library.services.http_client import get_http_client

logger = logging.getLogger(__name__)

DEFAULT_SEED_CATEGORIES = [
    "programming",
    "javascript",
    "python",
    "react",
    "nodejs",
    "artificial intelligence",
    "data science",
    "web development",
    "algorithms",
    "databases",
]


@dataclass
class GoogleBookData:
    """One volume from the Google Books API, reduced to catalog fields"""
    title: str
    authors: List[str] = field(default_factory=list)
    category: str = ""
    description: str = ""
    thumbnail_url: str = ""

    @property
    def author(self) -> str:
        return ", ".join(self.authors) if self.authors else "Unknown Author"

    @staticmethod
    def from_volume(item: Dict[str, Any], fallback_category: str) -> "GoogleBookData":
        info = item.get("volumeInfo", {}) or {}
        thumbnail = (info.get("imageLinks") or {}).get("thumbnail", "") or ""
        if thumbnail.startswith("http://"):
            # avoid mixed content in the browser
            thumbnail = "https://" + thumbnail[len("http://"):]
        categories = info.get("categories") or []
        return GoogleBookData(
            title=info.get("title") or "Unknown Title",
            authors=list(info.get("authors") or []),
            category=categories[0] if categories else fallback_category,
            description=info.get("description") or "No description available.",
            thumbnail_url=thumbnail,
        )


class GoogleBooksService:
    """Fetches seed data for the catalog from Google Books"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.google_books_api_key
        self.base_url = "https://www.googleapis.com/books/v1"
        self.timeout = settings.google_books_timeout

    async def fetch_category(self, category: str, max_results: int = 10) -> List[GoogleBookData]:
        """Return up to ``max_results`` volumes for a subject; empty on any failure."""
        params: Dict[str, Any] = {"q": category, "maxResults": max_results, "orderBy": "relevance"}
        if self.api_key:
            params["key"] = self.api_key

        client = await get_http_client()
        response = await client.get_with_retry(
            f"{self.base_url}/volumes", params=params, timeout=self.timeout
        )
        if response is None:
            logger.error(f"Google Books unreachable for category '{category}'")
            return []
        if response.status_code != 200:
            logger.error(f"Google Books request failed for '{category}': {response.status_code}")
            return []

        items = response.json().get("items") or []
        return [GoogleBookData.from_volume(item, category) for item in items]


def random_copy_count(rng: Optional[random.Random] = None) -> int:
    """Seeded books get between 3 and 7 copies."""
    return (rng or random).randint(3, 7)
