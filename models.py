"""In-memory entities produced and mutated by the pipeline."""
import enum
import threading
from typing import Any, Optional

from pydantic import BaseModel, PrivateAttr, field_validator


class SourceType(str, enum.Enum):
    """Kind of content a source serves."""
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    FILE = "file"

    @classmethod
    def coerce(cls, value: Any) -> "SourceType":
        """Accept the numeric codes used by exported source files (0..3)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            members = list(cls)
            return members[value] if 0 <= value < len(members) else cls.TEXT
        if isinstance(value, str) and value.strip().isdigit():
            return cls.coerce(int(value.strip()))
        return cls(str(value).lower())


class SearchBook(BaseModel):
    """One entry of a search or explore result list."""
    name: str = ""
    author: str = ""
    kind: str = ""
    cover_url: str = ""
    book_url: str = ""
    intro: str = ""
    last_chapter: str = ""
    update_time: str = ""
    word_count: str = ""
    toc_url: str = ""
    origin: str = ""
    origin_name: str = ""
    type: SourceType = SourceType.TEXT
    info_html: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, value):
        return SourceType.coerce(value)

    def to_book(self) -> "Book":
        """Turn a result into a Book, keeping the detail page if one was captured."""
        return Book(
            book_url=self.book_url,
            toc_url=self.toc_url,
            origin=self.origin,
            origin_name=self.origin_name,
            name=self.name,
            author=self.author,
            kind=self.kind,
            cover_url=self.cover_url,
            intro=self.intro,
            last_chapter=self.last_chapter,
            update_time=self.update_time,
            word_count=self.word_count,
            type=self.type,
            info_html=self.info_html,
        )


class BookChapter(BaseModel):
    """A table-of-contents entry."""
    url: str = ""
    title: str = ""
    index: int = 0
    book_url: str = ""
    is_volume: bool = False
    is_vip: bool = False
    tag: str = ""


class Book(BaseModel):
    """
    A book owned by the caller and passed to the pipeline by reference.

    info_html and toc_html cache raw pages: when set, the matching stage
    skips its network fetch. Stages read through snapshot() and write
    through apply(), both under the book's lock, so a Book shared by
    concurrent stage calls is never observed half-updated.
    """
    book_url: str = ""
    toc_url: str = ""
    origin: str = ""
    origin_name: str = ""
    name: str = ""
    author: str = ""
    kind: str = ""
    cover_url: str = ""
    intro: str = ""
    last_chapter: str = ""
    update_time: str = ""
    word_count: str = ""
    total_chapter_num: int = 0
    type: SourceType = SourceType.TEXT
    info_html: Optional[str] = None
    toc_html: Optional[str] = None

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, value):
        return SourceType.coerce(value)

    def snapshot(self) -> "Book":
        """Return a consistent copy with its own lock."""
        with self._lock:
            return Book(**self.model_dump())

    def apply(self, **changes: Any) -> None:
        """Write several fields as one atomic update."""
        with self._lock:
            for name, value in changes.items():
                if name not in Book.model_fields:
                    raise AttributeError(f"Book has no field {name!r}")
                setattr(self, name, value)
