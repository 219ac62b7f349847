"""Item-info extractor: fills a book from its detail page."""
import logging
from typing import Any, Dict, Optional

from models import Book
from normalizer import BookFieldNormalizer
from schemas import BookSource
from webbook.extractors.base import BaseExtractor, Trace, book_bindings

logger = logging.getLogger(__name__)


class BookInfoExtractor(BaseExtractor):
    stage = "book_info"

    def analyze(self, body: str, source: BookSource, book: Book, base_url: str) -> Dict[str, Any]:
        """
        Extract detail fields for a book.

        Args:
            body: Detail page, already transformed
            source: Source whose info rules apply
            book: Snapshot of the book; never modified here
            base_url: Final URL of the detail page

        Returns:
            Changes for Book.apply(). Empty extractions are left out so they
            never overwrite what the book already has.
        """
        rule = source.rule_book_info
        analyzer = self.analyzer(body, base_url, book_bindings(book, base_url))

        if rule.init:
            self.trace("┌ init")
            elements = self.read_elements(analyzer, "init", rule.init)
            if elements:
                analyzer = analyzer.with_content(elements[0])
            else:
                self.trace("└ init matched nothing, using the whole page")

        changes: Dict[str, Any] = {}

        name = BookFieldNormalizer.format_name(self.read_string(analyzer, "name", rule.name, verbose=True))
        if name:
            changes["name"] = name
        author = BookFieldNormalizer.format_author(self.read_string(analyzer, "author", rule.author, verbose=True))
        if author:
            changes["author"] = author
        kind = BookFieldNormalizer.normalize_kinds(self.read_list(analyzer, "kind", rule.kind, verbose=True))
        if kind:
            changes["kind"] = kind

        for field, value in (
            ("word_count", self.read_string(analyzer, "word_count", rule.word_count, verbose=True)),
            ("last_chapter", self.read_string(analyzer, "last_chapter", rule.last_chapter, verbose=True)),
            ("update_time", self.read_string(analyzer, "update_time", rule.update_time, verbose=True)),
            ("intro", self.read_string(analyzer, "intro", rule.intro, verbose=True)),
            ("cover_url", self.read_url(analyzer, "cover_url", rule.cover_url, verbose=True)),
        ):
            if value:
                changes[field] = value

        book_url = book.book_url or base_url
        toc_url = self.read_url(analyzer, "toc_url", rule.toc_url, verbose=True) or book_url
        changes["toc_url"] = toc_url
        # Same physical page: the TOC stage can reuse this body
        changes["toc_html"] = body if toc_url == book_url else None

        logger.debug(f"Extracted {len(changes)} info fields from {base_url}")
        return changes


def analyze_book_info(
    body: str,
    source: BookSource,
    book: Book,
    *,
    base_url: str,
    script_engine=None,
    trace: Optional[Trace] = None,
) -> Dict[str, Any]:
    return BookInfoExtractor(trace, script_engine).analyze(body, source, book, base_url)
