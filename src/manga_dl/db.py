"""PostgreSQL storage for accounts, the manga catalog and guest usage.

Accounts are keyed by the identity provider's subject. Counters are always
bumped with a single UPDATE (or an upsert for guest usage) so concurrent
downloads never lose increments to a read-modify-write race.

All queries use asyncpg prepared statements ($1, $2, ...); values are never
string-interpolated into SQL.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS accounts (
    identity_id          TEXT PRIMARY KEY,
    email                TEXT,
    display_name         TEXT NOT NULL DEFAULT 'User',
    is_premium           BOOLEAN NOT NULL DEFAULT FALSE,
    daily_download_count INTEGER NOT NULL DEFAULT 0 CHECK (daily_download_count >= 0),
    last_download_at     TIMESTAMPTZ,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS accounts_email_idx ON accounts (lower(email));

CREATE TABLE IF NOT EXISTS mangas (
    id             BIGSERIAL PRIMARY KEY,
    slug           TEXT NOT NULL UNIQUE,
    title          TEXT NOT NULL,
    thumb          TEXT,
    type           TEXT,
    status         TEXT,
    rating         TEXT,
    tags           TEXT[] NOT NULL DEFAULT '{}',
    views          BIGINT NOT NULL DEFAULT 0,
    download_count BIGINT NOT NULL DEFAULT 0,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS chapters (
    id            BIGSERIAL PRIMARY KEY,
    manga_id      BIGINT NOT NULL REFERENCES mangas (id) ON DELETE CASCADE,
    slug          TEXT NOT NULL,
    title         TEXT,
    chapter_index NUMERIC NOT NULL,
    images        TEXT[] NOT NULL DEFAULT '{}',
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (manga_id, slug)
);
CREATE INDEX IF NOT EXISTS chapters_manga_index_idx ON chapters (manga_id, chapter_index);

CREATE TABLE IF NOT EXISTS guest_usage (
    address TEXT PRIMARY KEY,
    count   INTEGER NOT NULL DEFAULT 0
);
"""

# Listing columns shared by every catalog query; chapter_count is a correlated
# subquery so a page of results costs one round trip.
_LIST_COLUMNS = """\
m.id, m.slug, m.title, m.thumb, m.type, m.status, m.rating, m.views,
m.created_at, m.updated_at,
(SELECT count(*) FROM chapters c WHERE c.manga_id = m.id) AS chapter_count
"""

_SORTS = {
    "recent": "m.updated_at DESC, m.id DESC",
    "popular": "m.views DESC, m.id",
    "title": "m.title ASC, m.id",
}


@dataclass
class Account:
    """A registered user as seen by the quota subsystem."""

    identity_id: str
    email: str | None = None
    display_name: str = "User"
    is_premium: bool = False
    daily_download_count: int = 0


@dataclass
class Content:
    """A catalog entry (manga / doujinshi)."""

    id: int
    slug: str
    title: str


@dataclass
class Chapter:
    """One chapter of a content unit, with its ordered page image URLs."""

    id: int
    manga_id: int
    slug: str
    chapter_index: Decimal | float | int
    title: str | None = None
    images: list[str] = field(default_factory=list)


def format_chapter_index(value: Decimal | float | int) -> str:
    """Render a chapter index without trailing zeros ("12", "12.5")."""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return str(number)


def _listing(record: asyncpg.Record) -> dict:
    item = dict(record)
    for key in ("created_at", "updated_at"):
        if item.get(key) is not None:
            item[key] = item[key].isoformat()
    return item


def _catalog_where(
    *,
    title_query: str | None = None,
    type_contains: str | None = None,
    status_is: str | None = None,
    type_is: str | None = None,
) -> tuple[str, list]:
    """Build a WHERE clause over ``mangas m`` and its positional arguments."""
    conditions = []
    args: list = []
    if title_query:
        args.append(title_query)
        conditions.append(f"m.title ILIKE '%' || ${len(args)} || '%'")
    if type_contains:
        args.append(type_contains)
        conditions.append(f"m.type ILIKE '%' || ${len(args)} || '%'")
    if status_is:
        args.append(status_is)
        conditions.append(f"lower(m.status) = lower(${len(args)})")
    if type_is:
        args.append(type_is)
        conditions.append(f"lower(m.type) = lower(${len(args)})")
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    return where, args


class Database:
    """Thin async wrapper around the PostgreSQL pool."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        self._pool = await asyncpg.create_pool(self._dsn, min_size=1, max_size=8)
        logger.info("Connected to PostgreSQL")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Closed PostgreSQL connection pool")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database is not connected")
        return self._pool

    async def ping(self) -> bool:
        """Check if the database is reachable."""
        if not self._pool:
            return False
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema is up to date")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, identity_id: str) -> Account | None:
        row = await self.pool.fetchrow(
            "SELECT identity_id, email, display_name, is_premium, daily_download_count "
            "FROM accounts WHERE identity_id = $1",
            identity_id,
        )
        return Account(**dict(row)) if row else None

    async def upsert_account(
        self, identity_id: str, email: str | None, display_name: str | None
    ) -> Account:
        """Create the account on first sight; existing rows are left untouched."""
        row = await self.pool.fetchrow(
            """\
INSERT INTO accounts (identity_id, email, display_name)
VALUES ($1, $2, $3)
ON CONFLICT (identity_id) DO UPDATE SET email = COALESCE(accounts.email, EXCLUDED.email)
RETURNING identity_id, email, display_name, is_premium, daily_download_count
""",
            identity_id,
            email,
            display_name or "User",
        )
        return Account(**dict(row))

    async def increment_daily_downloads(self, identity_id: str) -> None:
        await self.pool.execute(
            "UPDATE accounts SET daily_download_count = daily_download_count + 1, "
            "last_download_at = now() WHERE identity_id = $1",
            identity_id,
        )

    async def set_premium_by_email(self, email: str) -> bool:
        """Mark the account(s) with this email as premium. Returns True if any matched."""
        status = await self.pool.execute(
            "UPDATE accounts SET is_premium = TRUE WHERE lower(email) = lower($1)",
            email,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return not status.endswith(" 0")

    async def reset_daily_downloads(self) -> int:
        status = await self.pool.execute(
            "UPDATE accounts SET daily_download_count = 0 WHERE daily_download_count <> 0"
        )
        return int(status.split()[-1])

    # ------------------------------------------------------------------
    # Guest usage (shared counter backend)
    # ------------------------------------------------------------------

    async def get_guest_usage(self, address: str) -> int:
        count = await self.pool.fetchval(
            "SELECT count FROM guest_usage WHERE address = $1", address
        )
        return count or 0

    async def increment_guest_usage(self, address: str) -> int:
        return await self.pool.fetchval(
            """\
INSERT INTO guest_usage (address, count) VALUES ($1, 1)
ON CONFLICT (address) DO UPDATE SET count = guest_usage.count + 1
RETURNING count
""",
            address,
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def find_content(self, slug: str) -> Content | None:
        row = await self.pool.fetchrow(
            "SELECT id, slug, title FROM mangas WHERE slug = $1", slug
        )
        return Content(**dict(row)) if row else None

    async def find_chapter(self, manga_id: int, chapter_slug: str) -> Chapter | None:
        row = await self.pool.fetchrow(
            "SELECT id, manga_id, slug, title, chapter_index, images "
            "FROM chapters WHERE manga_id = $1 AND slug = $2",
            manga_id,
            chapter_slug,
        )
        return Chapter(**dict(row)) if row else None

    async def increment_content_downloads(self, manga_id: int) -> None:
        await self.pool.execute(
            "UPDATE mangas SET download_count = download_count + 1 WHERE id = $1",
            manga_id,
        )

    async def count_contents(
        self,
        title_query: str | None = None,
        *,
        status_is: str | None = None,
        type_is: str | None = None,
    ) -> int:
        where, args = _catalog_where(
            title_query=title_query, status_is=status_is, type_is=type_is
        )
        return await self.pool.fetchval(f"SELECT count(*) FROM mangas m {where}", *args)

    async def list_contents(
        self,
        *,
        sort: str = "recent",
        offset: int = 0,
        limit: int = 24,
        title_query: str | None = None,
        type_contains: str | None = None,
        status_is: str | None = None,
        type_is: str | None = None,
    ) -> list[dict]:
        """List catalog entries with their chapter counts."""
        order = _SORTS[sort]
        where, args = _catalog_where(
            title_query=title_query,
            type_contains=type_contains,
            status_is=status_is,
            type_is=type_is,
        )
        args.extend([offset, limit])
        query = (
            f"SELECT {_LIST_COLUMNS} FROM mangas m {where} ORDER BY {order} "
            f"OFFSET ${len(args) - 1} LIMIT ${len(args)}"
        )
        rows = await self.pool.fetch(query, *args)
        return [_listing(r) for r in rows]

    async def view_content(self, slug: str) -> dict | None:
        """Fetch a catalog entry and bump its view counter."""
        row = await self.pool.fetchrow(
            "UPDATE mangas SET views = views + 1 WHERE slug = $1 "
            "RETURNING id, slug, title, thumb, type, status, rating, tags, views, "
            "download_count, created_at, updated_at",
            slug,
        )
        return _listing(row) if row else None

    async def list_chapters(self, manga_id: int) -> list[dict]:
        rows = await self.pool.fetch(
            "SELECT slug, title, chapter_index, created_at FROM chapters "
            "WHERE manga_id = $1 ORDER BY chapter_index DESC",
            manga_id,
        )
        chapters = []
        for row in rows:
            item = _listing(row)
            item["chapter_index"] = format_chapter_index(row["chapter_index"])
            chapters.append(item)
        return chapters

    async def adjacent_chapters(
        self, manga_id: int, chapter_index: Decimal | float | int
    ) -> tuple[str | None, str | None]:
        """Return (next_slug, prev_slug) around a chapter index."""
        async with self.pool.acquire() as conn:
            next_slug = await conn.fetchval(
                "SELECT slug FROM chapters WHERE manga_id = $1 AND chapter_index > $2 "
                "ORDER BY chapter_index ASC LIMIT 1",
                manga_id,
                chapter_index,
            )
            prev_slug = await conn.fetchval(
                "SELECT slug FROM chapters WHERE manga_id = $1 AND chapter_index < $2 "
                "ORDER BY chapter_index DESC LIMIT 1",
                manga_id,
                chapter_index,
            )
        return next_slug, prev_slug
