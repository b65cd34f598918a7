"""Image normalization to JPEG.

Every page image is re-encoded as baseline RGB JPEG at a fixed quality
(80 by default) to keep generated PDFs small. The encoder settings are fixed,
so the same input always produces the same output for a given Pillow build.
"""

import asyncio
import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

DEFAULT_QUALITY = 80

# Flatten transparency onto white rather than JPEG's implicit black
_BACKGROUND = (255, 255, 255)


@dataclass(frozen=True)
class NormalizedImage:
    """A JPEG-encoded page image with its pixel dimensions."""

    data: bytes
    width: int
    height: int


class TranscodeError(Exception):
    """Input bytes could not be decoded or re-encoded as an image."""


def _to_rgb(img: Image.Image) -> Image.Image:
    if img.mode == "RGB":
        return img
    if img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        background = Image.new("RGB", img.size, _BACKGROUND)
        background.paste(img, mask=img.getchannel("A"))
        return background
    return img.convert("RGB")


def transcode(raw: bytes, quality: int = DEFAULT_QUALITY) -> NormalizedImage:
    """Decode any Pillow-readable image and re-encode it as JPEG."""
    try:
        with Image.open(io.BytesIO(raw)) as img:
            img.load()
            rgb = _to_rgb(img)
            width, height = rgb.size
            out = io.BytesIO()
            rgb.save(out, format="JPEG", quality=quality)
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise TranscodeError(str(exc)) from exc
    except (OSError, ValueError, SyntaxError, EOFError) as exc:
        # Pillow reports truncated or corrupt data through several types
        raise TranscodeError(f"Invalid image data: {exc}") from exc

    if width <= 0 or height <= 0:
        raise TranscodeError(f"Invalid image size {width}x{height}")

    return NormalizedImage(data=out.getvalue(), width=width, height=height)


async def transcode_async(raw: bytes, quality: int = DEFAULT_QUALITY) -> NormalizedImage:
    """Run ``transcode`` in a worker thread so the event loop keeps serving."""
    return await asyncio.to_thread(transcode, raw, quality)
