"""Chapter PDF pipeline: ordering, partial failures, and the deferred commit."""

import asyncio
import io
import logging

import httpx
import pytest

from manga_dl.db import Account
from manga_dl.fetcher import ImageFetcher
from manga_dl.pipeline import (
    DocumentDeadlineExceeded,
    DownloadSession,
    InvalidTransition,
    StreamState,
    commit_download,
    iter_page_images,
    pdf_filename,
    stream_chapter_pdf,
    write_chapter_pdf,
)
from manga_dl.quota import Allowed, Bucket

from conftest import IMAGE_HOST, page_count, page_sizes, png_bytes

GUEST = Allowed(Bucket.GUEST, client_address="203.0.113.5")


def numbered_pages(image_host, count, failing=()):
    """URLs whose images are sized (20+i, 30+i); indexes in ``failing`` are broken."""
    urls = []
    for i in range(count):
        path = f"/p/{i:02d}.png"
        if i in failing:
            # Alternate between missing and undecodable images
            payload = 404 if i % 2 else b"this is not an image"
        else:
            payload = png_bytes(20 + i, 30 + i)
        urls.append(image_host.add(path, payload))
    return urls


async def collect(agen) -> bytes:
    chunks = [chunk async for chunk in agen]
    return b"".join(chunks)


def stream(session, urls, fetcher, **kwargs) -> bytes:
    return asyncio.run(collect(stream_chapter_pdf(session, urls, fetcher, **kwargs)))


def test_filename_sanitization():
    assert pdf_filename("Test Manga: Vol/1", "12") == "Test-Manga--Vol-1-Ch12.pdf"
    assert pdf_filename("Ōkami", "3.5") == "-kami-Ch3.5.pdf"


@pytest.mark.parametrize("concurrency", [1, 4])
def test_failed_images_are_skipped_in_order(image_host, fetcher, concurrency):
    urls = numbered_pages(image_host, 8, failing={1, 4, 5})
    session = DownloadSession(GUEST, content_id=1)

    pdf = stream(session, urls, fetcher, concurrency=concurrency)

    survivors = [i for i in range(8) if i not in {1, 4, 5}]
    assert page_sizes(pdf) == [(20 + i, 30 + i) for i in survivors]
    assert page_count(pdf) == 5
    assert (session.pages, session.skipped) == (5, 3)
    assert session.state is StreamState.COMPLETED


def test_sequential_mode_fetches_in_source_order(image_host, fetcher):
    urls = numbered_pages(image_host, 5)
    stream(DownloadSession(GUEST, 1), urls, fetcher)
    assert [str(r.url) for r in image_host.requests] == urls


def test_all_images_failing_gives_empty_document(image_host, fetcher):
    # Accepted behavior: the PDF is still finalized, with zero pages.
    urls = numbered_pages(image_host, 3, failing={0, 1, 2})
    session = DownloadSession(GUEST, 1)
    pdf = stream(session, urls, fetcher)
    assert page_count(pdf) == 0
    assert session.state is StreamState.COMPLETED


def test_first_chunk_is_sent_before_images_are_fetched(image_host, fetcher):
    urls = numbered_pages(image_host, 3)

    async def first_chunk():
        agen = stream_chapter_pdf(DownloadSession(GUEST, 1), urls, fetcher)
        chunk = await agen.__anext__()
        requests_so_far = len(image_host.requests)
        await agen.aclose()
        return chunk, requests_so_far

    chunk, requests_so_far = asyncio.run(first_chunk())
    assert chunk.startswith(b"%PDF")
    assert requests_so_far == 0


def test_client_disconnect_abandons_and_skips_commit(image_host, fetcher, store, ledger):
    content = store.add_content("m", "M")
    urls = numbered_pages(image_host, 4)
    session = DownloadSession(GUEST, content.id)

    async def read_two_then_disconnect():
        agen = stream_chapter_pdf(session, urls, fetcher)
        await agen.__anext__()  # header
        await agen.__anext__()  # first page
        await agen.aclose()
        return await commit_download(session, ledger, store)

    assert asyncio.run(read_two_then_disconnect()) is False
    assert session.state is StreamState.ABANDONED
    assert len(image_host.requests) == 1
    assert asyncio.run(ledger.guest_usage("203.0.113.5")) == 0
    assert store.content_downloads[content.id] == 0


def test_cancellation_during_fetch_abandons():
    async def never_responds(request):
        await asyncio.sleep(3600)

    fetcher = ImageFetcher(httpx.AsyncClient(transport=httpx.MockTransport(never_responds)))
    session = DownloadSession(GUEST, 1)

    async def run():
        agen = stream_chapter_pdf(session, [f"{IMAGE_HOST}/a.png"], fetcher)
        await agen.__anext__()  # header

        async def next_chunk():
            return await agen.__anext__()

        task = asyncio.create_task(next_chunk())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert session.state is StreamState.ABANDONED


def test_deadline_aborts_stream(image_host, fetcher):
    urls = numbered_pages(image_host, 3)
    session = DownloadSession(GUEST, 1)

    async def run():
        async for _ in stream_chapter_pdf(session, urls, fetcher, deadline=1e-9):
            await asyncio.sleep(0.01)

    with pytest.raises(DocumentDeadlineExceeded):
        asyncio.run(run())
    assert session.state is StreamState.ABANDONED


class TestCommit:
    def completed(self, admission, content_id, image_host, fetcher):
        session = DownloadSession(admission, content_id)
        stream(session, numbered_pages(image_host, 1), fetcher)
        return session

    def test_guest_commit_once(self, image_host, fetcher, store, ledger):
        content = store.add_content("m", "M")
        session = self.completed(GUEST, content.id, image_host, fetcher)

        assert asyncio.run(commit_download(session, ledger, store)) is True
        assert asyncio.run(commit_download(session, ledger, store)) is False

        assert session.state is StreamState.COMMITTED
        assert asyncio.run(ledger.guest_usage("203.0.113.5")) == 1
        assert store.content_downloads[content.id] == 1

    def test_registered_commit(self, image_host, fetcher, store, ledger):
        content = store.add_content("m", "M")
        store.accounts["u1"] = Account("u1", daily_download_count=49)
        admission = Allowed(Bucket.REGISTERED, identity_id="u1")
        session = self.completed(admission, content.id, image_host, fetcher)

        asyncio.run(commit_download(session, ledger, store))

        assert store.accounts["u1"].daily_download_count == 50
        assert store.content_downloads[content.id] == 1

    def test_premium_commit_only_counts_popularity(self, image_host, fetcher, store, ledger):
        content = store.add_content("m", "M")
        store.accounts["p1"] = Account("p1", is_premium=True, daily_download_count=7)
        session = self.completed(Allowed(Bucket.PREMIUM), content.id, image_host, fetcher)

        asyncio.run(commit_download(session, ledger, store))

        assert store.accounts["p1"].daily_download_count == 7
        assert store.content_downloads[content.id] == 1

    def test_commit_failure_is_logged_not_raised(self, image_host, fetcher, store, ledger, caplog):
        content = store.add_content("m", "M")
        store.accounts["u1"] = Account("u1")
        store.fail_writes = True
        session = self.completed(
            Allowed(Bucket.REGISTERED, identity_id="u1"), content.id, image_host, fetcher
        )

        with caplog.at_level(logging.ERROR, logger="manga_dl.pipeline"):
            assert asyncio.run(commit_download(session, ledger, store)) is True

        assert session.state is StreamState.COMMITTED
        assert "Failed to record usage" in caplog.text

    def test_no_commit_before_stream_finishes(self, store, ledger):
        session = DownloadSession(GUEST, 1)
        assert asyncio.run(commit_download(session, ledger, store)) is False
        assert session.state is StreamState.ADMITTED


class TestSessionStates:
    def test_happy_path(self):
        session = DownloadSession(GUEST, 1)
        session.start()
        session.complete()
        session.mark_committed()
        assert session.state is StreamState.COMMITTED

    def test_cannot_commit_abandoned(self):
        session = DownloadSession(GUEST, 1)
        session.start()
        session.abandon()
        with pytest.raises(InvalidTransition):
            session.mark_committed()

    def test_abandon_after_complete_is_ignored(self):
        session = DownloadSession(GUEST, 1)
        session.start()
        session.complete()
        session.abandon()
        assert session.state is StreamState.COMPLETED

    def test_cannot_start_twice(self):
        session = DownloadSession(GUEST, 1)
        session.start()
        with pytest.raises(InvalidTransition):
            session.start()


def test_write_chapter_pdf_to_file_sink(image_host, fetcher):
    urls = numbered_pages(image_host, 4, failing={2}) + [f"{IMAGE_HOST}/nope.png"]
    sink = io.BytesIO()
    pages, skipped = asyncio.run(write_chapter_pdf(sink, urls, fetcher, title="T - Chapter 1"))
    assert (pages, skipped) == (3, 2)
    assert page_sizes(sink.getvalue()) == [(20, 30), (21, 31), (23, 33)]


def test_malformed_url_is_skipped_between_good_pages(image_host, fetcher):
    first, last = numbered_pages(image_host, 2)
    session = DownloadSession(GUEST, 1)

    pdf = stream(session, [first, f"{IMAGE_HOST}/b\x00.png", last], fetcher)

    assert page_sizes(pdf) == [(20, 30), (21, 31)]
    assert (session.pages, session.skipped) == (2, 1)
    assert session.state is StreamState.COMPLETED


def test_zero_deadline_is_enforced(image_host, fetcher):
    urls = numbered_pages(image_host, 2)
    session = DownloadSession(GUEST, 1)
    with pytest.raises(DocumentDeadlineExceeded):
        stream(session, urls, fetcher, deadline=0)
    assert session.state is StreamState.ABANDONED


def test_closing_window_reaps_prefetched_tasks(image_host):
    first = image_host.add("/p/00.png", png_bytes(20, 30))
    slow = [f"{IMAGE_HOST}/slow/{i}.png" for i in range(3)]

    async def handler(request):
        if request.url.path.startswith("/slow/"):
            await asyncio.sleep(3600)
        return image_host(request)

    fetcher = ImageFetcher(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    async def run():
        pages = iter_page_images([first, *slow], fetcher, concurrency=4)
        image = await pages.__anext__()
        await pages.aclose()
        leftover = asyncio.all_tasks() - {asyncio.current_task()}
        return image, leftover

    image, leftover = asyncio.run(run())
    assert (image.width, image.height) == (20, 30)
    assert leftover == set()
