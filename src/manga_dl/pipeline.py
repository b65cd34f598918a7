"""Chapter-to-PDF pipeline with deferred usage commit.

Images are fetched and transcoded in source order, by default one at a time
so a single image is in memory per request. With ``concurrency > 1`` a window
of that many images is prepared ahead, but results are still consumed in
index order, so page order always matches the chapter's image order.

Images that fail to download or decode are logged and skipped; no
placeholder page is inserted.

Usage is recorded only after the whole PDF has been delivered. A
``DownloadSession`` tracks each request through

    ADMITTED -> STREAMING -> COMPLETED -> COMMITTED
    ADMITTED | STREAMING -> ABANDONED

and ``commit_download`` only acts on a session that reached COMPLETED.
"""

import asyncio
import logging
import re
from collections import deque
from collections.abc import AsyncIterator, Iterable
from enum import Enum
from typing import Protocol

from .fetcher import AssetFetchError, ImageFetcher
from .ledger import UsageLedger
from .pdfstream import ChunkBuffer, DocumentAssemblyError, PdfStreamWriter, Sink
from .quota import Allowed, Bucket
from .transcode import DEFAULT_QUALITY, NormalizedImage, TranscodeError, transcode_async

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    ADMITTED = "admitted"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    COMMITTED = "committed"


_TRANSITIONS = {
    StreamState.ADMITTED: {StreamState.STREAMING, StreamState.ABANDONED},
    StreamState.STREAMING: {StreamState.COMPLETED, StreamState.ABANDONED},
    StreamState.COMPLETED: {StreamState.COMMITTED},
    StreamState.ABANDONED: set(),
    StreamState.COMMITTED: set(),
}


class InvalidTransition(Exception):
    """A download session was moved to a state it cannot reach."""


class DocumentDeadlineExceeded(DocumentAssemblyError):
    """The whole document took longer than the configured limit."""


class DownloadSession:
    """One admitted download: what to bill, and how far delivery got."""

    def __init__(self, admission: Allowed, content_id: int, label: str = ""):
        self.admission = admission
        self.content_id = content_id
        self.label = label
        self.state = StreamState.ADMITTED
        self.pages = 0
        self.skipped = 0

    def _move(self, new_state: StreamState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug("Download %s: %s -> %s", self.label, self.state.value, new_state.value)
        self.state = new_state

    def start(self) -> None:
        self._move(StreamState.STREAMING)

    def complete(self) -> None:
        self._move(StreamState.COMPLETED)

    def abandon(self) -> None:
        if self.state in (StreamState.ADMITTED, StreamState.STREAMING):
            self._move(StreamState.ABANDONED)

    def mark_committed(self) -> None:
        self._move(StreamState.COMMITTED)


class ContentStats(Protocol):
    async def increment_content_downloads(self, manga_id: int) -> None: ...


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9]")


def pdf_filename(title: str, chapter_index: str) -> str:
    """Build the attachment filename, e.g. ``My-Title-Ch12.pdf``."""
    return f"{_UNSAFE_FILENAME_CHARS.sub('-', title)}-Ch{chapter_index}.pdf"


async def _load_page(
    fetcher: ImageFetcher, url: str, index: int, quality: int
) -> NormalizedImage | None:
    try:
        raw = await fetcher.fetch(url)
        return await transcode_async(raw, quality)
    except AssetFetchError as exc:
        logger.warning("Skipping image %d (%s): fetch failed: %s", index, url, exc.cause)
    except TranscodeError as exc:
        logger.warning("Skipping image %d (%s): transcode failed: %s", index, url, exc)
    return None


async def iter_page_images(
    urls: Iterable[str],
    fetcher: ImageFetcher,
    *,
    quality: int = DEFAULT_QUALITY,
    concurrency: int = 1,
) -> AsyncIterator[NormalizedImage | None]:
    """Yield one result per URL, in URL order; None marks a skipped image."""
    pending: deque[asyncio.Task] = deque()
    remaining = iter(enumerate(urls))

    def fill_window() -> None:
        while len(pending) < concurrency:
            item = next(remaining, None)
            if item is None:
                return
            index, url = item
            pending.append(asyncio.create_task(_load_page(fetcher, url, index, quality)))

    try:
        while True:
            fill_window()
            if not pending:
                break
            yield await pending.popleft()
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def write_chapter_pdf(
    sink: Sink,
    urls: list[str],
    fetcher: ImageFetcher,
    *,
    title: str | None = None,
    quality: int = DEFAULT_QUALITY,
    concurrency: int = 1,
) -> tuple[int, int]:
    """Build a complete chapter PDF into ``sink``. Returns (pages, skipped)."""
    writer = PdfStreamWriter(sink, title=title)
    writer.begin()
    skipped = 0
    async for image in iter_page_images(urls, fetcher, quality=quality, concurrency=concurrency):
        if image is None:
            skipped += 1
            continue
        writer.add_page(image)
    writer.close()
    return writer.page_count, skipped


async def stream_chapter_pdf(
    session: DownloadSession,
    urls: list[str],
    fetcher: ImageFetcher,
    *,
    title: str | None = None,
    quality: int = DEFAULT_QUALITY,
    concurrency: int = 1,
    deadline: float | None = None,
) -> AsyncIterator[bytes]:
    """Stream a chapter PDF, one chunk per page.

    The session reaches COMPLETED only when the consumer resumes the generator
    after the final chunk, i.e. once every byte has been handed to the
    transport. Disconnects (cancellation or ``aclose``) and errors mark the
    session ABANDONED.
    """
    buffer = ChunkBuffer()
    writer = PdfStreamWriter(buffer, title=title)
    loop = asyncio.get_running_loop()
    expires_at = loop.time() + deadline if deadline is not None else None

    session.start()
    try:
        writer.begin()
        yield buffer.drain()

        pages = iter_page_images(urls, fetcher, quality=quality, concurrency=concurrency)
        try:
            async for image in pages:
                if expires_at is not None and loop.time() > expires_at:
                    raise DocumentDeadlineExceeded(
                        f"Document not finished within {deadline:.0f}s "
                        f"({writer.page_count} pages written)"
                    )
                if image is None:
                    session.skipped += 1
                    continue
                writer.add_page(image)
                session.pages = writer.page_count
                yield buffer.drain()
        finally:
            await pages.aclose()

        writer.close()
        yield buffer.drain()
    except BaseException as exc:
        session.abandon()
        if isinstance(exc, (asyncio.CancelledError, GeneratorExit)):
            logger.warning(
                "Download %s abandoned by client after %d pages", session.label, session.pages
            )
        else:
            logger.error("Download %s aborted: %s", session.label, exc)
        raise

    session.complete()
    if session.pages == 0:
        logger.warning("Download %s produced an empty document", session.label)
    logger.info(
        "Download %s delivered: %d pages, %d skipped, %d bytes",
        session.label,
        session.pages,
        session.skipped,
        writer.bytes_written,
    )


async def commit_download(
    session: DownloadSession, ledger: UsageLedger, stats: ContentStats
) -> bool:
    """Record usage for a delivered download. Returns True if anything was recorded.

    Runs at most once per session and only after COMPLETED. Failures are
    logged and never retried; the client already has the PDF.
    """
    if session.state is not StreamState.COMPLETED:
        logger.info(
            "Not recording usage for download %s (state=%s)", session.label, session.state.value
        )
        return False
    session.mark_committed()

    admission = session.admission
    try:
        if admission.bucket is Bucket.REGISTERED and admission.identity_id:
            await ledger.record_registered(admission.identity_id)
        elif admission.bucket is Bucket.GUEST and admission.client_address:
            await ledger.record_guest(admission.client_address)
    except Exception:
        logger.exception("Failed to record usage for download %s", session.label)

    try:
        await stats.increment_content_downloads(session.content_id)
    except Exception:
        logger.exception("Failed to update download count for content %s", session.content_id)

    return True
