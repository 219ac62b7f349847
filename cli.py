"""
CLI utility for running source stages by hand.

Usage:
    python cli.py search <source.json> <key> [--page N]     # Search a source
    python cli.py explore <source.json> [url] [--page N]    # List a catalog page
    python cli.py info <source.json> <book_url>             # Read a book's details
    python cli.py toc <source.json> <book_url>              # Read a book's chapters
    python cli.py content <source.json> <book_url> [--chapter N]
                                                            # Read one chapter

A source file holds one source object or a list of them (pick one with
--index). --debug prints the trace lines of the run.
"""
import argparse
import asyncio
import json
import logging
import sys

from config import settings
from models import Book
from schemas import BookSource
from webbook.debug import debug
from webbook.errors import WebBookError
from webbook.web_book import WebBook, shutdown_io_executor

logger = logging.getLogger(__name__)


def load_source(path: str, index: int = 0) -> BookSource:
    """Load a source from a JSON file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, list):
        if not data:
            raise ValueError(f"{path} contains no sources")
        data = data[index]

    return BookSource.model_validate(data)


async def _info(web_book: WebBook, book_url: str) -> Book:
    book = Book(book_url=book_url, origin=web_book.source_url)
    return await web_book.get_book_info_await(book)


async def cmd_search(web_book: WebBook, args):
    """Search a source for a key."""
    books = await web_book.search_book_await(args.key, args.page)

    print(f"\n{'#':<4} {'Name':<30} {'Author':<20} {'URL':<50}")
    print("-" * 104)
    for i, book in enumerate(books, 1):
        name = book.name[:27] + "..." if len(book.name) > 30 else book.name
        print(f"{i:<4} {name:<30} {book.author[:20]:<20} {book.book_url:<50}")
    print(f"\nTotal: {len(books)} results")


async def cmd_explore(web_book: WebBook, args):
    """List a catalog page, or the catalog index when no url is given."""
    if not args.url:
        for kind in web_book.book_source.explore_kinds():
            print(f"{kind.title:<20} {kind.url}")
        return

    books = await web_book.explore_book_await(args.url, args.page)
    for i, book in enumerate(books, 1):
        print(f"{i:<4} {book.name:<30} {book.book_url}")
    print(f"\nTotal: {len(books)} results")


async def cmd_info(web_book: WebBook, args):
    """Show a book's details."""
    book = await _info(web_book, args.book_url)
    for field in ("name", "author", "kind", "word_count", "last_chapter", "cover_url", "toc_url"):
        print(f"{field:<14} {getattr(book, field)}")
    print(f"\n{book.intro}")


async def cmd_toc(web_book: WebBook, args):
    """List a book's chapters."""
    book = await _info(web_book, args.book_url)
    chapters = await web_book.get_chapter_list_await(book)

    for chapter in chapters:
        marker = "#" if chapter.is_volume else " "
        print(f"{chapter.index:<6}{marker} {chapter.title:<40} {chapter.url}")
    print(f"\nTotal: {len(chapters)} chapters")


async def cmd_content(web_book: WebBook, args):
    """Print one chapter's text."""
    book = await _info(web_book, args.book_url)
    chapters = await web_book.get_chapter_list_await(book)
    if not chapters:
        print("Error: book has no chapters")
        sys.exit(1)

    index = min(max(args.chapter, 0), len(chapters) - 1)
    next_url = chapters[index + 1].url if index + 1 < len(chapters) else None
    content = await web_book.get_content_await(book, chapters[index], next_url)

    print(f"\n{chapters[index].title}\n")
    print(content)


COMMANDS = {
    "search": cmd_search,
    "explore": cmd_explore,
    "info": cmd_info,
    "toc": cmd_toc,
    "content": cmd_content,
}


async def run(args) -> int:
    source = load_source(args.source, args.index)
    web_book = WebBook(source)

    unsubscribe = None
    if args.debug:
        unsubscribe = debug.subscribe(lambda source_url, line: print(f"  {line}", file=sys.stderr))

    try:
        await COMMANDS[args.command](web_book, args)
    except WebBookError as e:
        print(f"✗ {e.kind} error: {e}")
        return 1
    finally:
        if unsubscribe:
            unsubscribe()
    return 0


def main():
    """Main CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="WebBook source runner")
    parser.add_argument("--debug", action="store_true", help="Print trace lines of the run")
    parser.add_argument("--index", type=int, default=0, help="Source to use when the file holds a list")

    subparsers = parser.add_subparsers(dest="command", help="Stage to run")

    search_parser = subparsers.add_parser("search", help="Search a source")
    search_parser.add_argument("source", help="Source JSON file")
    search_parser.add_argument("key", help="Search key")
    search_parser.add_argument("--page", type=int, default=1, help="Result page")

    explore_parser = subparsers.add_parser("explore", help="List a catalog page")
    explore_parser.add_argument("source", help="Source JSON file")
    explore_parser.add_argument("url", nargs="?", help="Catalog URL; omit to list the catalog index")
    explore_parser.add_argument("--page", type=int, default=1, help="Catalog page")

    for name, help_text in (("info", "Show a book's details"), ("toc", "List a book's chapters")):
        stage_parser = subparsers.add_parser(name, help=help_text)
        stage_parser.add_argument("source", help="Source JSON file")
        stage_parser.add_argument("book_url", help="Book detail page URL")

    content_parser = subparsers.add_parser("content", help="Print one chapter")
    content_parser.add_argument("source", help="Source JSON file")
    content_parser.add_argument("book_url", help="Book detail page URL")
    content_parser.add_argument("--chapter", type=int, default=0, help="Chapter index")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        code = asyncio.run(run(args))
    finally:
        shutdown_io_executor()
    sys.exit(code)


if __name__ == "__main__":
    main()
