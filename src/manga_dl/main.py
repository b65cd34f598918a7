"""Manga catalog and chapter download service.

A FastAPI service that serves the manga catalog and renders chapters to PDF
on demand, with download quotas for guests, registered users and premium
members.
"""

import logging
import math
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from .auth import Identity, TokenVerifier, resolve_identity
from .config import Settings, get_settings
from .db import Database, format_chapter_index
from .fetcher import ImageFetcher
from .ledger import DatabaseGuestCounter, MemoryGuestCounter, UsageLedger
from .pipeline import DownloadSession, commit_download, pdf_filename, stream_chapter_pdf
from .quota import Denied, QuotaPolicy, classify, usage_stats

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# Global state (initialized in lifespan)
_db: Database | None = None
_fetcher: ImageFetcher | None = None
_ledger: UsageLedger | None = None
_verifier: TokenVerifier | None = None


@lru_cache
def get_cached_settings() -> Settings:
    """Get cached settings instance."""
    return get_settings()


def get_policy() -> QuotaPolicy:
    settings = get_cached_settings()
    return QuotaPolicy(
        registered_daily_limit=settings.registered_daily_limit,
        guest_limit=settings.guest_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application resources."""
    global _db, _fetcher, _ledger, _verifier

    settings = get_cached_settings()

    if not settings.database_url:
        raise RuntimeError("MANGA_DL_DATABASE_URL is required for server mode")

    _db = Database(settings.database_url)
    await _db.connect()

    if settings.guest_counter_backend == "database":
        guests = DatabaseGuestCounter(_db)
    else:
        guests = MemoryGuestCounter()
    _ledger = UsageLedger(_db, guests)
    logger.info(
        "Quota policy: registered=%d/day, guest=%d (counter=%s)",
        settings.registered_daily_limit,
        settings.guest_limit,
        settings.guest_counter_backend,
    )

    _fetcher = ImageFetcher.create(
        timeout=settings.image_timeout,
        user_agent=settings.image_user_agent,
        referer=settings.image_referer,
    )

    if settings.auth_userinfo_url:
        _verifier = TokenVerifier.create(settings.auth_userinfo_url, settings.auth_timeout)
        logger.info("Verifying bearer tokens via %s", settings.auth_userinfo_url)
    else:
        logger.warning("MANGA_DL_AUTH_USERINFO_URL not set, all requests are guests")

    yield

    # Cleanup
    if _verifier:
        await _verifier.close()
    if _fetcher:
        await _fetcher.close()
        logger.info("Closed image fetcher")
    if _db:
        await _db.close()


app = FastAPI(
    title="Manga Download Service",
    description="Manga catalog with on-demand chapter PDFs and download quotas",
    version=VERSION,
    lifespan=lifespan,
)


# Request/Response models


class CatalogFilter(BaseModel):
    type: str
    value: str


class Pagination(BaseModel):
    currentPage: int
    totalPages: int
    totalItems: int
    perPage: int
    filter: CatalogFilter | None = None


class StatsResponse(BaseModel):
    """Caller's quota bucket and usage."""

    type: str  # "guest", "user" or "premium"
    usage: int
    limit: int | str  # "∞" for premium


class TrakteerWebhook(BaseModel):
    """Payment notification from Trakteer (only the fields we use)."""

    supporter_email: str | None = None
    status: str | None = None


class ComponentHealth(BaseModel):
    """Health status of a single component."""

    status: str  # "ok" or "unavailable"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str  # "ok" or "degraded"
    version: str
    components: dict[str, ComponentHealth] = {}


# Response helpers
def success_response(data, pagination: Pagination | None = None) -> dict:
    return {
        "success": True,
        "data": data,
        "pagination": pagination.model_dump(exclude_none=True) if pagination else None,
    }


def error_response(status_code: int, message: str) -> JSONResponse:
    """Create a JSON error body in the {success: false, message} shape."""
    if status_code >= 500:
        logger.error("API error %d: %s", status_code, message)
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def page_params(page: int, limit: int) -> tuple[int, int, int]:
    """Clamp page/limit to >= 1 and return (page, limit, offset)."""
    page = max(1, page)
    limit = max(1, limit)
    return page, limit, (page - 1) * limit


def make_pagination(
    page: int, limit: int, total: int, catalog_filter: CatalogFilter | None = None
) -> Pagination:
    return Pagination(
        currentPage=page,
        totalPages=math.ceil(total / limit),
        totalItems=total,
        perPage=limit,
        filter=catalog_filter,
    )


async def get_identity(request: Request) -> Identity:
    """Resolve the requester (verified account or guest by address)."""
    return await resolve_identity(request, _verifier, _db)


# Endpoints


@app.get("/health", response_model=HealthResponse)
@app.get("/healthz", response_model=HealthResponse, include_in_schema=False)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Returns "degraded" if PostgreSQL is unreachable.
    """
    components: dict[str, ComponentHealth] = {}

    db_ok = _db is not None and await _db.ping()
    components["db"] = ComponentHealth(status="ok" if db_ok else "unavailable")

    degraded = any(c.status != "ok" for c in components.values())

    return HealthResponse(
        status="degraded" if degraded else "ok",
        version=VERSION,
        components=components,
    )


@app.get("/stats", response_model=StatsResponse)
async def get_stats(identity: Identity = Depends(get_identity)) -> StatsResponse:
    """Report the caller's quota bucket, usage and limit.

    Never fails: any internal error is reported as a fresh guest.
    """
    policy = get_policy()
    try:
        if _ledger is None:
            raise RuntimeError("Usage ledger not initialized")
        stats = await usage_stats(identity, _ledger, policy)
    except Exception as exc:
        logger.warning("Stats lookup failed, reporting guest defaults: %s", exc)
        return StatsResponse(type="guest", usage=0, limit=policy.guest_limit)
    return StatsResponse(type=stats.type, usage=stats.usage, limit=stats.limit)


@app.get("/download/{slug}/{chapter_slug}", response_model=None)
async def download_chapter(
    slug: str,
    chapter_slug: str,
    identity: Identity = Depends(get_identity),
) -> StreamingResponse | JSONResponse:
    """Render a chapter to PDF and stream it.

    The quota is checked before any image is fetched. Usage is recorded after
    the PDF has been fully sent; interrupted downloads are not counted.
    """
    if _db is None or _ledger is None or _fetcher is None:
        return error_response(503, "Service not initialized")

    settings = get_cached_settings()

    try:
        admission = await classify(identity, _ledger, get_policy())
    except Exception:
        logger.exception("Quota check failed for %s", identity)
        return error_response(500, "Server error checking limit")

    if isinstance(admission, Denied):
        logger.info("Download denied for %s: %s", identity, admission.reason)
        return error_response(admission.status_code, admission.reason)

    try:
        content = await _db.find_content(slug)
        if content is None:
            return error_response(404, "Manga not found")
        chapter = await _db.find_chapter(content.id, chapter_slug)
    except Exception:
        logger.exception("Chapter lookup failed for %s/%s", slug, chapter_slug)
        return error_response(500, "Error generating PDF")

    if chapter is None or not chapter.images:
        return error_response(404, "Images not found")

    index = format_chapter_index(chapter.chapter_index)
    filename = pdf_filename(content.title, index)
    session = DownloadSession(admission, content.id, label=f"{slug}/{chapter_slug}")
    logger.info(
        "Starting download %s (%d images, bucket=%s)",
        session.label,
        len(chapter.images),
        admission.bucket.value,
    )

    body = stream_chapter_pdf(
        session,
        list(chapter.images),
        _fetcher,
        title=f"{content.title} - Chapter {index}",
        quality=settings.jpeg_quality,
        concurrency=settings.image_concurrency,
        deadline=settings.document_timeout,
    )
    return StreamingResponse(
        body,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        background=BackgroundTask(commit_download, session, _ledger, _db),
    )


@app.post("/webhook/trakteer")
async def trakteer_webhook(
    payload: TrakteerWebhook,
    x_webhook_token: str | None = Header(None, alias="X-Webhook-Token"),
) -> JSONResponse:
    """Upgrade the supporter's account to premium on a successful payment."""
    if _db is None:
        return error_response(503, "Service not initialized")

    expected = get_cached_settings().webhook_token
    if expected and x_webhook_token != expected:
        return error_response(401, "Invalid webhook token")

    if payload.status == "Success" and payload.supporter_email:
        try:
            matched = await _db.set_premium_by_email(payload.supporter_email)
        except Exception:
            logger.exception("Premium upgrade failed for %s", payload.supporter_email)
            return error_response(500, "Webhook processing failed")
        if matched:
            logger.info("Premium upgrade: %s", payload.supporter_email)
        else:
            logger.warning("Premium payment for unknown account: %s", payload.supporter_email)

    return JSONResponse(content={"success": True})


# =============================================================================
# Catalog Endpoints
# =============================================================================


@app.get("/home", tags=["Catalog"])
async def home(page: int = Query(1), limit: int = Query(24)):
    """Recently updated titles (paginated), plus trending and manhwa shelves."""
    if _db is None:
        return error_response(503, "Service not initialized")

    page, limit, offset = page_params(page, limit)
    try:
        total = await _db.count_contents()
        recents = await _db.list_contents(sort="recent", offset=offset, limit=limit)
        trending = await _db.list_contents(sort="popular", limit=10)
        manhwas = await _db.list_contents(sort="recent", limit=10, type_contains="manhwa")
    except Exception as exc:
        return error_response(500, str(exc))

    return success_response(
        {"recents": recents, "trending": trending, "manhwas": manhwas},
        make_pagination(page, limit, total),
    )


@app.get("/manga-list", tags=["Catalog"])
async def manga_list(page: int = Query(1), limit: int = Query(24)):
    """All titles, A to Z."""
    if _db is None:
        return error_response(503, "Service not initialized")

    page, limit, offset = page_params(page, limit)
    try:
        total = await _db.count_contents()
        mangas = await _db.list_contents(sort="title", offset=offset, limit=limit)
    except Exception as exc:
        return error_response(500, str(exc))

    return success_response(mangas, make_pagination(page, limit, total))


@app.get("/manga/{slug}", tags=["Catalog"])
async def manga_detail(slug: str):
    """Title details and its chapter list (newest first). Counts as a view."""
    if _db is None:
        return error_response(503, "Service not initialized")

    try:
        info = await _db.view_content(slug)
        if info is None:
            return error_response(404, "Manga not found")
        chapters = await _db.list_chapters(info["id"])
    except Exception as exc:
        return error_response(500, str(exc))

    info["chapter_count"] = len(chapters)
    return success_response({"info": info, "chapters": chapters})


@app.get("/read/{slug}/{chapter_slug}", tags=["Catalog"])
async def read_chapter(slug: str, chapter_slug: str):
    """Chapter images with next/previous chapter slugs."""
    if _db is None:
        return error_response(503, "Service not initialized")

    try:
        content = await _db.find_content(slug)
        if content is None:
            return error_response(404, "Manga not found")
        chapter = await _db.find_chapter(content.id, chapter_slug)
        if chapter is None:
            return error_response(404, "Chapter not found")
        next_slug, prev_slug = await _db.adjacent_chapters(content.id, chapter.chapter_index)
    except Exception as exc:
        return error_response(500, str(exc))

    return success_response(
        {
            "chapter": {
                "slug": chapter.slug,
                "title": chapter.title,
                "chapter_index": format_chapter_index(chapter.chapter_index),
                "images": chapter.images,
            },
            "manga": {"id": content.id, "slug": content.slug, "title": content.title},
            "navigation": {"next": next_slug, "prev": prev_slug},
        }
    )


@app.get("/search", tags=["Catalog"])
async def search(
    q: str | None = Query(None, description="Title keyword"),
    page: int = Query(1),
    limit: int = Query(24),
):
    """Case-insensitive title search."""
    if _db is None:
        return error_response(503, "Service not initialized")
    if not q:
        return error_response(400, 'Query parameter "q" required')

    page, limit, offset = page_params(page, limit)
    try:
        total = await _db.count_contents(title_query=q)
        mangas = await _db.list_contents(sort="title", offset=offset, limit=limit, title_query=q)
    except Exception as exc:
        return error_response(500, str(exc))

    return success_response(mangas, make_pagination(page, limit, total))


@app.get("/filter/{filter_type}/{value}", tags=["Catalog"])
async def filter_catalog(
    filter_type: str,
    value: str,
    page: int = Query(1),
    limit: int = Query(24),
):
    """Titles whose status or type equals ``value`` (case-insensitive), newest first.

    Genre filtering is not offered; the catalog keeps no genre taxonomy.
    """
    if _db is None:
        return error_response(503, "Service not initialized")
    if filter_type not in ("status", "type"):
        return error_response(400, "Invalid filter type. Use: status or type.")

    criteria = {f"{filter_type}_is": value}
    page, limit, offset = page_params(page, limit)
    try:
        total = await _db.count_contents(**criteria)
        mangas = await _db.list_contents(sort="recent", offset=offset, limit=limit, **criteria)
    except Exception as exc:
        return error_response(500, str(exc))

    return success_response(
        mangas,
        make_pagination(page, limit, total, CatalogFilter(type=filter_type, value=value)),
    )


def main():
    """Run the service with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "manga_dl.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
