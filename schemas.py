"""Pydantic schemas for source profiles and API request/response validation."""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from models import Book, BookChapter, SearchBook, SourceType

logger = logging.getLogger(__name__)


# Rule Schemas
class RuleModel(BaseModel):
    """Base for rule sets: camelCase JSON, immutable once loaded."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class SearchRule(RuleModel):
    """Rules for a search result page."""
    book_list: Optional[str] = None
    name: Optional[str] = None
    author: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = None
    update_time: Optional[str] = None
    book_url: Optional[str] = None
    cover_url: Optional[str] = None
    word_count: Optional[str] = None


class ExploreRule(SearchRule):
    """Rules for a catalog (explore) page; same shape as search."""


class BookInfoRule(RuleModel):
    """Rules for a book detail page."""
    init: Optional[str] = None
    name: Optional[str] = None
    author: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = None
    update_time: Optional[str] = None
    cover_url: Optional[str] = None
    toc_url: Optional[str] = None
    word_count: Optional[str] = None


class TocRule(RuleModel):
    """Rules for a table-of-contents page."""
    chapter_list: Optional[str] = None
    chapter_name: Optional[str] = None
    chapter_url: Optional[str] = None
    is_volume: Optional[str] = None
    is_vip: Optional[str] = None
    update_time: Optional[str] = None
    next_toc_url: Optional[str] = None


class ContentRule(RuleModel):
    """Rules for a chapter body page."""
    content: Optional[str] = None
    next_content_url: Optional[str] = None
    web_js: Optional[str] = None
    source_regex: Optional[str] = None
    replace_regex: Optional[str] = None


class ExploreKind(BaseModel):
    """One catalog entry of a source; an empty url marks a heading."""
    title: str
    url: str = ""


class BookSource(RuleModel):
    """
    Declarative description of one content source.

    Deserializes the common exported JSON format (bookSourceUrl, searchUrl,
    ruleSearch, ...). Shared read-only by every stage call.
    """
    book_source_url: str
    book_source_name: str = ""
    book_source_group: Optional[str] = None
    book_source_type: SourceType = SourceType.TEXT
    book_url_pattern: Optional[str] = None
    enabled: bool = True
    header: Optional[Union[str, Dict[str, Any]]] = None
    search_url: Optional[str] = None
    explore_url: Optional[str] = None
    rule_search: SearchRule = Field(default_factory=SearchRule)
    rule_explore: ExploreRule = Field(default_factory=ExploreRule)
    rule_book_info: BookInfoRule = Field(default_factory=BookInfoRule)
    rule_toc: TocRule = Field(default_factory=TocRule)
    rule_content: ContentRule = Field(default_factory=ContentRule)

    @field_validator("book_source_type", mode="before")
    @classmethod
    def coerce_type(cls, value):
        return SourceType.coerce(value)

    @field_validator("rule_search", "rule_explore", "rule_book_info", "rule_toc", "rule_content", mode="before")
    @classmethod
    def null_rule(cls, value):
        # Exported files write missing rule sets as null
        return {} if value is None else value

    def get_header_map(self) -> Dict[str, str]:
        """
        Return the source's custom request headers.

        The header field is a JSON object, either inline or as a string.
        """
        if not self.header:
            return {}
        if isinstance(self.header, dict):
            return {str(k): str(v) for k, v in self.header.items()}

        try:
            data = json.loads(self.header)
        except ValueError:
            logger.warning(f"Ignoring malformed header of {self.book_source_url}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object header of {self.book_source_url}")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def get_explore_rule(self) -> SearchRule:
        """Catalog pages fall back to the search rules when they define no list."""
        if self.rule_explore.book_list:
            return self.rule_explore
        return self.rule_search

    def explore_kinds(self) -> List[ExploreKind]:
        """
        Parse the catalog index.

        Supports a JSON array of {"title", "url"} objects or the line format
        "title::url", entries separated by newlines or "&&".
        """
        raw = (self.explore_url or "").strip()
        if not raw:
            return []

        if raw.startswith("["):
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning(f"Malformed explore JSON of {self.book_source_url}")
                return []
            return [
                ExploreKind(title=str(entry.get("title", "")), url=str(entry.get("url") or ""))
                for entry in data
                if isinstance(entry, dict)
            ]

        kinds = []
        for entry in re.split(r"(?:&&|\n)+", raw):
            entry = entry.strip()
            if not entry:
                continue
            title, _, url = entry.partition("::")
            kinds.append(ExploreKind(title=title.strip(), url=url.strip()))
        return kinds


# API Schemas
class SearchRequest(BaseModel):
    """Run the search stage of a source."""
    source: BookSource
    key: str = Field(..., min_length=1, description="Free-text query")
    page: int = Field(1, ge=1)


class ExploreRequest(BaseModel):
    """Run the explore stage of a source."""
    source: BookSource
    url: str = Field(..., description="Catalog URL template")
    page: int = Field(1, ge=1)


class BookRequest(BaseModel):
    """Run the info or TOC stage for a book."""
    source: BookSource
    book: Book


class ContentRequest(BaseModel):
    """Run the content stage for one chapter."""
    source: BookSource
    book: Book
    chapter: BookChapter
    next_chapter_url: Optional[str] = None


class ContentResponse(BaseModel):
    """Chapter body text."""
    content: str


class DebugLogResponse(BaseModel):
    """Trace lines recorded for a source."""
    source_url: str
    lines: List[str]


class ErrorResponse(BaseModel):
    """Stage failure payload."""
    kind: str
    message: str
    url: Optional[str] = None


class SearchResponse(BaseModel):
    """Search or explore result list."""
    items: List[SearchBook]
    total: int
