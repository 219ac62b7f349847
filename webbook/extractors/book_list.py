"""Search-result and catalog extractor."""
import logging
import re
from typing import List, Optional

from models import Book, SearchBook
from normalizer import BookFieldNormalizer
from schemas import BookSource, SearchRule
from webbook.extractors.base import BaseExtractor, Trace, split_list_rule
from webbook.extractors.book_info import BookInfoExtractor

logger = logging.getLogger(__name__)


class BookListExtractor(BaseExtractor):
    """
    Extract result entries from a search or explore page.

    Both modes share the same structural extraction; is_search only picks
    the rule set and the trace labels. A page that turns out to be a single
    book's detail page yields one entry built with the info rules.
    """

    stage = "book_list"

    def analyze(
        self,
        body: str,
        source: BookSource,
        base_url: str,
        is_search: bool = True,
        key: Optional[str] = None,
    ) -> List[SearchBook]:
        rule = source.rule_search if is_search else source.get_explore_rule()
        label = "search" if is_search else "explore"
        bindings = {"baseUrl": base_url, "key": key}
        analyzer = self.analyzer(body, base_url, bindings)

        if source.book_url_pattern and self._matches(source.book_url_pattern, base_url):
            self.trace(f"≡ {base_url} matches the book url pattern, reading a detail page")
            return self._detail_page(body, source, base_url)

        list_rule, reverse = split_list_rule(rule.book_list)
        self.trace(f"┌ {label} list")
        elements = self.read_elements(analyzer, "book_list", list_rule)

        if not elements and not source.book_url_pattern and source.rule_book_info.name:
            self.trace("└ list is empty, trying the page as a detail page")
            return self._detail_page(body, source, base_url)

        self.trace(f"└ {len(elements)} entries")
        books = [
            self._entry(analyzer.with_content(element), rule, source, base_url, verbose=(index == 0))
            for index, element in enumerate(elements)
        ]
        if reverse:
            books.reverse()
        return books

    @staticmethod
    def _matches(pattern: str, url: str) -> bool:
        try:
            return re.fullmatch(pattern, url) is not None
        except re.error as e:
            logger.warning(f"Invalid book url pattern {pattern!r}: {e}")
            return False

    def _entry(self, analyzer, rule: SearchRule, source: BookSource, base_url: str, verbose: bool) -> SearchBook:
        name = BookFieldNormalizer.format_name(self.read_string(analyzer, "name", rule.name, verbose))
        author = BookFieldNormalizer.format_author(self.read_string(analyzer, "author", rule.author, verbose))
        kind = BookFieldNormalizer.normalize_kinds(self.read_list(analyzer, "kind", rule.kind, verbose))
        book_url = self.read_url(analyzer, "book_url", rule.book_url, verbose) or base_url

        return SearchBook(
            name=name,
            author=author,
            kind=kind,
            word_count=self.read_string(analyzer, "word_count", rule.word_count, verbose),
            last_chapter=self.read_string(analyzer, "last_chapter", rule.last_chapter, verbose),
            update_time=self.read_string(analyzer, "update_time", rule.update_time, verbose),
            intro=self.read_string(analyzer, "intro", rule.intro, verbose),
            cover_url=self.read_url(analyzer, "cover_url", rule.cover_url, verbose),
            book_url=book_url,
            origin=source.book_source_url,
            origin_name=source.book_source_name,
            type=source.book_source_type,
        )

    def _detail_page(self, body: str, source: BookSource, base_url: str) -> List[SearchBook]:
        book = Book(book_url=base_url, origin=source.book_source_url, type=source.book_source_type)
        changes = BookInfoExtractor(self.trace, self.script_engine).analyze(body, source, book, base_url)
        if not changes.get("name"):
            self.trace("└ detail page has no name, no result")
            return []

        book.apply(**changes)
        return [SearchBook(
            name=book.name,
            author=book.author,
            kind=book.kind,
            word_count=book.word_count,
            last_chapter=book.last_chapter,
            update_time=book.update_time,
            intro=book.intro,
            cover_url=book.cover_url,
            book_url=base_url,
            toc_url=book.toc_url,
            origin=source.book_source_url,
            origin_name=source.book_source_name,
            type=source.book_source_type,
            info_html=body,
        )]


def analyze_book_list(
    body: str,
    source: BookSource,
    *,
    base_url: str,
    is_search: bool = True,
    key: Optional[str] = None,
    script_engine=None,
    trace: Optional[Trace] = None,
) -> List[SearchBook]:
    return BookListExtractor(trace, script_engine).analyze(body, source, base_url, is_search, key)
