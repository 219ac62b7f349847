"""Content-body extractor."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from models import Book, BookChapter
from normalizer import ContentCleaner
from schemas import BookSource
from webbook.extractors.base import BaseExtractor, Trace, book_bindings

logger = logging.getLogger(__name__)


@dataclass
class ContentPage:
    content: str = ""
    next_urls: List[str] = field(default_factory=list)


class ContentExtractor(BaseExtractor):
    stage = "content"

    def __init__(self, trace: Optional[Trace] = None, script_engine=None, cleaner: Optional[ContentCleaner] = None):
        super().__init__(trace, script_engine)
        self.cleaner = cleaner or ContentCleaner()

    def _bindings(self, book: Book, chapter: BookChapter, base_url: str) -> dict:
        bindings = book_bindings(book, base_url)
        bindings["chapter"] = chapter.model_dump(mode="json")
        return bindings

    def analyze(
        self,
        body: str,
        source: BookSource,
        book: Book,
        chapter: BookChapter,
        base_url: str,
        next_chapter_url: Optional[str] = None,
        verbose: bool = True,
    ) -> ContentPage:
        """Extract and format the text of one content page."""
        rule = source.rule_content
        analyzer = self.analyzer(body, base_url, self._bindings(book, chapter, base_url))

        if verbose:
            self.trace("┌ content")
        raw = self.read_string(analyzer, "content", rule.content)
        content = self.cleaner.format_content(raw)
        if verbose:
            self.trace(f"└ {content[:200]}")

        next_urls = []
        for url in self.read_urls(analyzer, "next_content_url", rule.next_content_url, verbose):
            # The next chapter is not a continuation of this one
            if url == base_url or (next_chapter_url and url == next_chapter_url):
                continue
            if url not in next_urls:
                next_urls.append(url)

        return ContentPage(content=content, next_urls=next_urls)

    def finish(self, content: str, source: BookSource, book: Book, chapter: BookChapter, base_url: str) -> str:
        """Apply the source's replace rule to the joined text of every page."""
        replace_rule = source.rule_content.replace_regex
        if not replace_rule or not content:
            return content

        analyzer = self.analyzer(content, base_url, self._bindings(book, chapter, base_url))
        self.trace("┌ replace regex")
        replaced = self._read(analyzer, "get_string", "replace_regex", replace_rule, False, None)
        if replaced is None:
            self.trace("└ replace regex failed, keeping the text as extracted")
            return content
        return self.cleaner.normalize_lines(replaced)


def analyze_content(
    body: str,
    source: BookSource,
    book: Book,
    chapter: BookChapter,
    *,
    base_url: str,
    next_chapter_url: Optional[str] = None,
    script_engine=None,
    trace: Optional[Trace] = None,
    verbose: bool = True,
) -> ContentPage:
    return ContentExtractor(trace, script_engine).analyze(
        body, source, book, chapter, base_url, next_chapter_url, verbose
    )


def finish_content(
    content: str,
    source: BookSource,
    book: Book,
    chapter: BookChapter,
    *,
    base_url: str,
    script_engine=None,
    trace: Optional[Trace] = None,
) -> str:
    return ContentExtractor(trace, script_engine).finish(content, source, book, chapter, base_url)
