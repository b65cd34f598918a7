"""Operator CLI for the manga download service."""

import argparse
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


async def _connect(database_url: str):
    from .db import Database

    db = Database(database_url)
    await db.connect()
    return db


async def init_db(database_url: str) -> None:
    """Create tables if they do not exist."""
    db = await _connect(database_url)
    try:
        await db.init_schema()
        print("✓ Schema ready")
    finally:
        await db.close()


async def reset_usage(database_url: str) -> None:
    """Reset every account's daily download counter to zero.

    Nothing resets the counters automatically; schedule this (e.g. from cron
    at midnight) to make the registered limit a true daily limit.
    """
    db = await _connect(database_url)
    try:
        count = await db.reset_daily_downloads()
        print(f"✓ Reset daily downloads for {count} account(s)")
    finally:
        await db.close()


async def grant_premium(database_url: str, email: str) -> None:
    """Mark an account as premium by email."""
    db = await _connect(database_url)
    try:
        if await db.set_premium_by_email(email):
            print(f"✓ {email} is now premium")
        else:
            print(f"✗ No account with email {email}")
            sys.exit(1)
    finally:
        await db.close()


async def render_chapter(database_url: str, slug: str, chapter_slug: str, output: str | None) -> None:
    """Render a chapter PDF to a local file (no quota accounting)."""
    from .config import get_settings
    from .db import format_chapter_index
    from .fetcher import ImageFetcher
    from .pipeline import pdf_filename, write_chapter_pdf

    settings = get_settings()
    db = await _connect(database_url)
    fetcher = ImageFetcher.create(
        timeout=settings.image_timeout,
        user_agent=settings.image_user_agent,
        referer=settings.image_referer,
    )

    try:
        content = await db.find_content(slug)
        if content is None:
            print(f"✗ Manga not found: {slug}")
            sys.exit(1)
        chapter = await db.find_chapter(content.id, chapter_slug)
        if chapter is None or not chapter.images:
            print(f"✗ Images not found: {slug}/{chapter_slug}")
            sys.exit(1)

        index = format_chapter_index(chapter.chapter_index)
        filename = output or pdf_filename(content.title, index)
        print(f"Rendering {content.title} chapter {index} ({len(chapter.images)} images)")

        with open(filename, "wb") as f:
            pages, skipped = await write_chapter_pdf(
                f,
                list(chapter.images),
                fetcher,
                title=f"{content.title} - Chapter {index}",
                quality=settings.jpeg_quality,
                concurrency=settings.image_concurrency,
            )
        print(f"✓ {pages} pages ({skipped} skipped)")
        print(f"  Saved: {filename}")

    finally:
        await fetcher.close()
        await db.close()


def main():
    parser = argparse.ArgumentParser(
        description="Manga download service CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  manga-dl init-db
  manga-dl reset-usage
  manga-dl grant-premium reader@example.com
  manga-dl render one-piece chapter-1100 -o op-1100.pdf
  manga-dl serve
""",
    )
    parser.add_argument(
        "command", choices=["init-db", "reset-usage", "grant-premium", "render", "serve"]
    )
    parser.add_argument("args", nargs="*", help="EMAIL for grant-premium; SLUG CHAPTER for render")
    parser.add_argument("--output", "-o", help="Output file for render")
    parser.add_argument("--database-url", "-d", help="PostgreSQL DSN (or set MANGA_DL_DATABASE_URL)")

    args = parser.parse_args()

    # Load settings (reads .env file)
    from .config import get_settings
    settings = get_settings()

    if args.command == "serve":
        from .main import main as serve_main
        serve_main()
        return

    database_url = args.database_url or settings.database_url
    if not database_url:
        print("Error: --database-url or MANGA_DL_DATABASE_URL required")
        sys.exit(1)

    if args.command == "init-db":
        asyncio.run(init_db(database_url))

    elif args.command == "reset-usage":
        asyncio.run(reset_usage(database_url))

    elif args.command == "grant-premium":
        if len(args.args) != 1:
            print("Usage: manga-dl grant-premium EMAIL")
            sys.exit(1)
        asyncio.run(grant_premium(database_url, args.args[0]))

    elif args.command == "render":
        if len(args.args) != 2:
            print("Usage: manga-dl render SLUG CHAPTER [-o FILE]")
            sys.exit(1)
        asyncio.run(render_chapter(database_url, args.args[0], args.args[1], args.output))


if __name__ == "__main__":
    main()
