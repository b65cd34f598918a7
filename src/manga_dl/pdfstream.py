"""Incremental PDF writer for image-per-page documents.

Pages are serialized to the sink as soon as they are added, so the first
bytes reach the client before later images have even been fetched. The page
tree, catalog and cross-reference table are written when the document is
closed; PDF allows objects in any order, so the page count never has to be
known up front.

Each page is exactly the size of its image (one pixel = one point) with the
JPEG embedded as-is through the DCTDecode filter.

Object numbers 1 and 2 are reserved for the catalog and the page tree; all
other objects are numbered in the order they are written.
"""

import logging
from typing import Protocol

from .transcode import NormalizedImage

logger = logging.getLogger(__name__)

_HEADER = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n"
_CATALOG_ID = 1
_PAGES_ID = 2


class Sink(Protocol):
    def write(self, data: bytes, /) -> object: ...


class DocumentAssemblyError(Exception):
    """The document could not be written."""


def pdf_text(value: str) -> bytes:
    """Encode a text string as a UTF-16BE hex string object."""
    return b"<FEFF" + value.encode("utf-16-be").hex().upper().encode("ascii") + b">"


class PdfStreamWriter:
    """Writes a PDF to ``sink`` one page at a time."""

    def __init__(self, sink: Sink, *, title: str | None = None, producer: str = "manga-dl"):
        self._sink = sink
        self._title = title
        self._producer = producer
        self._offset = 0
        self._offsets: dict[int, int] = {}
        self._next_id = _PAGES_ID + 1
        self._page_ids: list[int] = []
        self._started = False
        self._closed = False

    @property
    def page_count(self) -> int:
        return len(self._page_ids)

    @property
    def bytes_written(self) -> int:
        return self._offset

    def _write(self, data: bytes) -> None:
        try:
            self._sink.write(data)
        except Exception as exc:
            raise DocumentAssemblyError(f"Sink write failed: {exc}") from exc
        self._offset += len(data)

    def _allocate(self) -> int:
        obj_id = self._next_id
        self._next_id += 1
        return obj_id

    def _write_object(self, obj_id: int, body: bytes, stream: bytes | None = None) -> None:
        self._offsets[obj_id] = self._offset
        parts = [f"{obj_id} 0 obj\n".encode("ascii"), body]
        if stream is not None:
            parts += [b"\nstream\n", stream, b"\nendstream"]
        parts.append(b"\nendobj\n")
        self._write(b"".join(parts))

    def begin(self) -> None:
        """Write the file header."""
        if self._started:
            raise DocumentAssemblyError("Document already started")
        self._started = True
        self._write(_HEADER)

    def add_page(self, image: NormalizedImage) -> None:
        """Append one page showing ``image`` at the page origin."""
        if not self._started:
            self.begin()
        if self._closed:
            raise DocumentAssemblyError("Cannot add a page to a closed document")

        width, height = image.width, image.height
        image_id = self._allocate()
        content_id = self._allocate()
        page_id = self._allocate()

        self._write_object(
            image_id,
            (
                f"<< /Type /XObject /Subtype /Image /Width {width} /Height {height} "
                f"/ColorSpace /DeviceRGB /BitsPerComponent 8 /Filter /DCTDecode "
                f"/Length {len(image.data)} >>"
            ).encode("ascii"),
            image.data,
        )

        content = f"q {width} 0 0 {height} 0 0 cm /Im0 Do Q".encode("ascii")
        self._write_object(
            content_id, f"<< /Length {len(content)} >>".encode("ascii"), content
        )

        self._write_object(
            page_id,
            (
                f"<< /Type /Page /Parent {_PAGES_ID} 0 R /MediaBox [0 0 {width} {height}] "
                f"/Resources << /XObject << /Im0 {image_id} 0 R >> >> "
                f"/Contents {content_id} 0 R >>"
            ).encode("ascii"),
        )
        self._page_ids.append(page_id)

    def close(self) -> None:
        """Write the page tree, catalog, info dictionary and trailer."""
        if self._closed:
            return
        if not self._started:
            self.begin()

        kids = " ".join(f"{page_id} 0 R" for page_id in self._page_ids)
        self._write_object(
            _PAGES_ID,
            f"<< /Type /Pages /Kids [{kids}] /Count {len(self._page_ids)} >>".encode("ascii"),
        )
        self._write_object(
            _CATALOG_ID, f"<< /Type /Catalog /Pages {_PAGES_ID} 0 R >>".encode("ascii")
        )

        info_id = self._allocate()
        info = b"<< /Producer " + pdf_text(self._producer)
        if self._title:
            info += b" /Title " + pdf_text(self._title)
        self._write_object(info_id, info + b" >>")

        size = self._next_id
        xref_offset = self._offset
        lines = [f"xref\n0 {size}\n".encode("ascii"), b"0000000000 65535 f \n"]
        for obj_id in range(1, size):
            lines.append(f"{self._offsets[obj_id]:010d} 00000 n \n".encode("ascii"))
        lines.append(
            (
                f"trailer\n<< /Size {size} /Root {_CATALOG_ID} 0 R /Info {info_id} 0 R >>\n"
                f"startxref\n{xref_offset}\n%%EOF\n"
            ).encode("ascii")
        )
        self._write(b"".join(lines))
        self._closed = True
        logger.debug("Closed PDF with %d pages (%d bytes)", self.page_count, self._offset)


class ChunkBuffer:
    """In-memory sink drained by a streaming response between pages."""

    def __init__(self):
        self._chunks: list[bytes] = []

    def write(self, data: bytes) -> int:
        self._chunks.append(data)
        return len(data)

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data
