"""Table-of-contents extractor."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from models import Book, BookChapter
from schemas import BookSource
from webbook.extractors.base import BaseExtractor, Trace, book_bindings, is_truthy, split_list_rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NextPage:
    """
    A further TOC page to read.

    reuse_parent_body means the page is the book page itself and its cached
    body should be used instead of a fetch.
    """
    url: str
    reuse_parent_body: bool = False


@dataclass
class ChapterListPage:
    chapters: List[BookChapter] = field(default_factory=list)
    next_pages: List[NextPage] = field(default_factory=list)
    reverse: bool = False


class ChapterListExtractor(BaseExtractor):
    stage = "chapter_list"

    def analyze(self, body: str, source: BookSource, book: Book, base_url: str, verbose: bool = True) -> ChapterListPage:
        """
        Extract the chapters of one TOC page.

        Chapters come back in document order; the caller applies the reverse
        flag once every page has been read. Index numbers are assigned by the
        caller as well.
        """
        rule = source.rule_toc
        analyzer = self.analyzer(body, base_url, book_bindings(book, base_url))
        list_rule, reverse = split_list_rule(rule.chapter_list)

        if verbose:
            self.trace("┌ chapter list")
        elements = self.read_elements(analyzer, "chapter_list", list_rule)
        if verbose:
            self.trace(f"└ {len(elements)} chapters")

        chapters = []
        for index, element in enumerate(elements):
            entry = analyzer.with_content(element)
            first = verbose and index == 0
            title = self.read_string(entry, "chapter_name", rule.chapter_name, first)
            is_volume = is_truthy(self.read_string(entry, "is_volume", rule.is_volume, first))
            url = self.read_url(entry, "chapter_url", rule.chapter_url, first)
            if not url:
                url = f"{title}{index}" if is_volume else base_url
            chapters.append(BookChapter(
                url=url,
                title=title,
                book_url=book.book_url,
                is_volume=is_volume,
                is_vip=is_truthy(self.read_string(entry, "is_vip", rule.is_vip, first)),
                tag=self.read_string(entry, "update_time", rule.update_time, first),
            ))

        next_pages = []
        for url in self.read_urls(analyzer, "next_toc_url", rule.next_toc_url, verbose):
            if url == base_url:
                continue
            reuse = url == book.book_url and bool(book.toc_html)
            next_pages.append(NextPage(url=url, reuse_parent_body=reuse))

        return ChapterListPage(chapters=chapters, next_pages=next_pages, reverse=reverse)


def analyze_chapter_list(
    body: str,
    source: BookSource,
    book: Book,
    *,
    base_url: str,
    script_engine=None,
    trace: Optional[Trace] = None,
    verbose: bool = True,
) -> ChapterListPage:
    return ChapterListExtractor(trace, script_engine).analyze(body, source, book, base_url, verbose)
