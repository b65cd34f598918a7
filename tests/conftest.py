import asyncio
import io
import re
from collections import Counter

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from manga_dl import main
from manga_dl.auth import AuthError, VerifiedToken
from manga_dl.db import Account, Chapter, Content
from manga_dl.fetcher import ImageFetcher
from manga_dl.ledger import MemoryGuestCounter, UsageLedger

IMAGE_HOST = "https://img.example.test"


def png_bytes(width: int, height: int, color=(200, 30, 30), mode: str = "RGB") -> bytes:
    """Encode a solid-color test image."""
    img = Image.new(mode, (width, height), color)
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def page_sizes(pdf: bytes) -> list[tuple[int, int]]:
    """MediaBox sizes of the pages in a generated PDF, in file order."""
    return [
        (int(w), int(h))
        for w, h in re.findall(rb"/Type /Page /Parent 2 0 R /MediaBox \[0 0 (\d+) (\d+)\]", pdf)
    ]


def page_count(pdf: bytes) -> int:
    match = re.search(rb"/Type /Pages /Kids \[[^\]]*\] /Count (\d+)", pdf)
    assert match, "no page tree in document"
    return int(match.group(1))


class ImageHost:
    """Fake upstream image host for httpx.MockTransport.

    ``pages`` maps a path to image bytes, an int status code, or an exception
    instance to raise.
    """

    def __init__(self):
        self.pages: dict[str, bytes | int | Exception] = {}
        self.requests: list[httpx.Request] = []

    def add(self, path: str, payload: bytes | int | Exception) -> str:
        self.pages[path] = payload
        return f"{IMAGE_HOST}{path}"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = self.pages.get(request.url.path, 404)
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, int):
            return httpx.Response(payload)
        return httpx.Response(200, content=payload, headers={"Content-Type": "image/png"})


class FakeStore:
    """In-memory stand-in for manga_dl.db.Database."""

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.contents: dict[str, Content] = {}
        self.chapters: dict[tuple[int, str], Chapter] = {}
        self.content_downloads: Counter[int] = Counter()
        self.views: Counter[int] = Counter()
        self.metadata: dict[int, dict] = {}
        self.fail_writes = False
        self.fail_reads = False

    # Accounts

    async def get_account(self, identity_id):
        if self.fail_reads:
            raise RuntimeError("database unavailable")
        return self.accounts.get(identity_id)

    async def upsert_account(self, identity_id, email, display_name):
        if identity_id not in self.accounts:
            self.accounts[identity_id] = Account(identity_id, email, display_name or "User")
        return self.accounts[identity_id]

    async def increment_daily_downloads(self, identity_id):
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        self.accounts[identity_id].daily_download_count += 1

    async def set_premium_by_email(self, email):
        matched = False
        for account in self.accounts.values():
            if account.email and account.email.lower() == email.lower():
                account.is_premium = True
                matched = True
        return matched

    async def ping(self):
        return True

    # Catalog

    async def find_content(self, slug):
        if self.fail_reads:
            raise RuntimeError("database unavailable")
        return self.contents.get(slug)

    async def find_chapter(self, manga_id, chapter_slug):
        if self.fail_reads:
            raise RuntimeError("database unavailable")
        return self.chapters.get((manga_id, chapter_slug))

    async def increment_content_downloads(self, manga_id):
        if self.fail_writes:
            raise RuntimeError("database unavailable")
        self.content_downloads[manga_id] += 1

    async def count_contents(self, title_query=None, *, status_is=None, type_is=None):
        return len(self._matching(title_query, status_is, type_is))

    async def list_contents(
        self, *, sort="recent", offset=0, limit=24, title_query=None, type_contains=None,
        status_is=None, type_is=None,
    ):
        items = self._matching(title_query, status_is, type_is)
        if sort == "title":
            items.sort(key=lambda c: c.title)
        return [
            {"id": c.id, "slug": c.slug, "title": c.title, "chapter_count": self._chapter_count(c.id)}
            for c in items[offset:offset + limit]
        ]

    async def view_content(self, slug):
        content = self.contents.get(slug)
        if content is None:
            return None
        self.views[content.id] += 1
        return {"id": content.id, "slug": content.slug, "title": content.title, "views": self.views[content.id]}

    async def list_chapters(self, manga_id):
        chapters = [c for (mid, _), c in self.chapters.items() if mid == manga_id]
        chapters.sort(key=lambda c: c.chapter_index, reverse=True)
        return [{"slug": c.slug, "title": c.title, "chapter_index": str(c.chapter_index)} for c in chapters]

    async def adjacent_chapters(self, manga_id, chapter_index):
        chapters = sorted(
            (c for (mid, _), c in self.chapters.items() if mid == manga_id),
            key=lambda c: c.chapter_index,
        )
        later = [c.slug for c in chapters if c.chapter_index > chapter_index]
        earlier = [c.slug for c in chapters if c.chapter_index < chapter_index]
        return (later[0] if later else None, earlier[-1] if earlier else None)

    # Helpers

    def add_content(self, slug, title, status=None, type=None):
        content = Content(id=len(self.contents) + 1, slug=slug, title=title)
        self.contents[slug] = content
        self.metadata[content.id] = {"status": status, "type": type}
        return content

    def add_chapter(self, content, slug, chapter_index, images):
        chapter = Chapter(
            id=len(self.chapters) + 1,
            manga_id=content.id,
            slug=slug,
            chapter_index=chapter_index,
            title=f"Chapter {chapter_index}",
            images=list(images),
        )
        self.chapters[(content.id, slug)] = chapter
        return chapter

    def _matching(self, title_query, status_is=None, type_is=None):
        items = list(self.contents.values())
        if title_query:
            items = [c for c in items if title_query.lower() in c.title.lower()]
        for key, wanted in (("status", status_is), ("type", type_is)):
            if wanted:
                items = [
                    c for c in items
                    if (self.metadata[c.id][key] or "").lower() == wanted.lower()
                ]
        return items

    def _chapter_count(self, manga_id):
        return sum(1 for (mid, _) in self.chapters if mid == manga_id)


class FakeVerifier:
    """Token verifier backed by a dict of token -> claims."""

    def __init__(self, tokens: dict[str, VerifiedToken]):
        self.tokens = tokens

    async def verify(self, token):
        if token not in self.tokens:
            raise AuthError("invalid token")
        return self.tokens[token]


def seed_guest(guests: MemoryGuestCounter, address: str, count: int) -> None:
    async def _seed():
        for _ in range(count):
            await guests.increment(address)

    asyncio.run(_seed())


@pytest.fixture
def image_host():
    return ImageHost()


@pytest.fixture
def fetcher(image_host):
    return ImageFetcher(httpx.AsyncClient(transport=httpx.MockTransport(image_host)))


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def guests():
    return MemoryGuestCounter()


@pytest.fixture
def ledger(store, guests):
    return UsageLedger(store, guests)


@pytest.fixture
def chapter_urls(image_host):
    """Three page images of distinct sizes so page order is observable."""
    return [
        image_host.add("/ch1/01.png", png_bytes(40, 60)),
        image_host.add("/ch1/02.png", png_bytes(41, 61)),
        image_host.add("/ch1/03.png", png_bytes(42, 62)),
    ]


@pytest.fixture
def manga(store, chapter_urls):
    content = store.add_content("test-manga", "Test Manga: Vol/1")
    store.add_chapter(content, "chapter-1", 1, chapter_urls)
    return content


@pytest.fixture
def verifier():
    return FakeVerifier(
        {
            "token-user": VerifiedToken("user-1", "reader@example.com", "Reader"),
            "token-premium": VerifiedToken("user-2", "patron@example.com", "Patron"),
        }
    )


@pytest.fixture
def client(monkeypatch, store, ledger, fetcher, verifier):
    """TestClient wired to in-memory storage and a fake image host."""
    monkeypatch.setattr(main, "_db", store)
    monkeypatch.setattr(main, "_ledger", ledger)
    monkeypatch.setattr(main, "_fetcher", fetcher)
    monkeypatch.setattr(main, "_verifier", verifier)
    return TestClient(main.app)
