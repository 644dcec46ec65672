import asyncio
import random

import httpx
import pytest

from smart_library.services import google_books_service
from smart_library.services.google_books_service import GoogleBookData, GoogleBooksService, random_copy_count


class FakeClient:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def get_with_retry(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.response


@pytest.fixture
def fake_client(monkeypatch):
    def install(response):
        client = FakeClient(response)

        async def get_client():
            return client

        monkeypatch.setattr(google_books_service, "get_http_client", get_client)
        return client

    return install


def test_from_volume_maps_fields():
    item = {
        "volumeInfo": {
            "title": "Fluent Python",
            "authors": ["Luciano Ramalho"],
            "categories": ["Computers"],
            "description": "Clear, concise and effective programming.",
            "imageLinks": {"thumbnail": "http://books.google.com/cover.jpg"},
        }
    }
    book = GoogleBookData.from_volume(item, "python")
    assert book.title == "Fluent Python"
    assert book.author == "Luciano Ramalho"
    assert book.category == "Computers"
    assert book.thumbnail_url == "https://books.google.com/cover.jpg"


def test_from_volume_defaults():
    book = GoogleBookData.from_volume({"volumeInfo": {}}, "databases")
    assert book.title == "Unknown Title"
    assert book.author == "Unknown Author"
    assert book.category == "databases"
    assert book.description == "No description available."
    assert book.thumbnail_url == ""


def test_fetch_category(fake_client):
    client = fake_client(httpx.Response(200, json={"items": [{"volumeInfo": {"title": "A"}}]}))
    books = asyncio.run(GoogleBooksService(api_key="k").fetch_category("python", max_results=3))

    assert [b.title for b in books] == ["A"]
    url, kwargs = client.calls[0]
    assert url.endswith("/volumes")
    assert kwargs["params"] == {"q": "python", "maxResults": 3, "orderBy": "relevance", "key": "k"}


@pytest.mark.parametrize("response", [None, httpx.Response(500), httpx.Response(200, json={})])
def test_fetch_category_failures_yield_nothing(fake_client, response):
    fake_client(response)
    assert asyncio.run(GoogleBooksService().fetch_category("python")) == []


def test_random_copy_count_range():
    rng = random.Random(7)
    counts = {random_copy_count(rng) for _ in range(200)}
    assert counts == {3, 4, 5, 6, 7}
