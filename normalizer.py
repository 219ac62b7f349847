"""Content normalization and cleaning utilities."""
import re
from bs4 import BeautifulSoup
import bleach
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class ContentCleaner:
    """
    Clean and normalize chapter bodies extracted by content rules.

    Removes scripts, ads and navigation junk, then flattens the remaining
    markup to reader-friendly plain text, one paragraph per line.
    """

    # Allowed HTML tags for chapter content
    ALLOWED_TAGS = [
        'p', 'br', 'em', 'strong', 'b', 'i', 'u',
        'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
        'blockquote', 'ol', 'ul', 'li',
        'hr', 'span', 'div', 'img'
    ]

    # Allowed attributes
    ALLOWED_ATTRIBUTES = {
        '*': ['class'],
        'img': ['src', 'alt'],
    }

    # Common ad/navigation class patterns, matched at the start of a class token
    JUNK_PATTERNS = [
        r'ads?[-_]',
        r'advertisement',
        r'banner',
        r'sidebar',
        r'navigation',
        r'nav[-_]',
        r'menu',
        r'footer',
        r'social',
        r'share',
        r'comment',
        r'popup',
        r'modal',
    ]

    BLOCK_TAGS = ['p', 'div', 'li', 'blockquote', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6']

    def __init__(self):
        self.junk_pattern = re.compile(
            r'(?:^|[\s_-])(?:' + '|'.join(self.JUNK_PATTERNS) + ')',
            re.IGNORECASE,
        )

    def clean_html(self, html: str) -> str:
        """
        Clean HTML content.

        Args:
            html: Raw HTML string

        Returns:
            Cleaned HTML string
        """
        if not html:
            return ""

        soup = BeautifulSoup(html, 'lxml')

        # Remove script and style tags
        for tag in soup(['script', 'style', 'iframe', 'noscript']):
            tag.decompose()

        # The containers the content rule selected are kept whatever their names
        body = soup.body or soup
        roots = {id(element) for element in body.find_all(recursive=False)}

        # Remove elements with junk classes/ids
        for element in soup.find_all(class_=True):
            if element.decomposed or id(element) in roots:
                continue
            classes = ' '.join(element.get('class', []))
            if self.junk_pattern.search(classes):
                element.decompose()

        for element in soup.find_all(id=True):
            if element.decomposed or id(element) in roots:
                continue
            if self.junk_pattern.search(element.get('id', '')):
                element.decompose()

        clean_html = bleach.clean(
            str(soup),
            tags=self.ALLOWED_TAGS,
            attributes=self.ALLOWED_ATTRIBUTES,
            strip=True,
        )
        return clean_html.strip()

    def to_text(self, html: str) -> str:
        """Flatten markup to text, keeping line breaks and paragraphs."""
        soup = BeautifulSoup(html, 'lxml')
        for br in soup.find_all('br'):
            br.replace_with('\n')
        for block in soup.find_all(self.BLOCK_TAGS):
            block.insert_after('\n')
        # Images stay visible as their tag
        for img in soup.find_all('img'):
            src = img.get('src')
            img.replace_with(f'\n<img src="{src}">\n' if src else '')
        return self.normalize_lines(soup.get_text())

    @staticmethod
    def normalize_lines(text: str) -> str:
        """Strip every line and drop the blank ones."""
        lines = (line.strip() for line in text.splitlines())
        return '\n'.join(line for line in lines if line)

    def format_content(self, content: str) -> str:
        """
        Turn an extracted chapter body into plain text.

        Markup goes through clean_html first; plain text only has its lines
        normalized.
        """
        if not content:
            return ""
        if '<' in content and '>' in content:
            return self.to_text(self.clean_html(content))
        return self.normalize_lines(content)


class BookFieldNormalizer:
    """Tidy metadata fields the way sources commonly decorate them."""

    NAME_SUFFIX = re.compile(r'\s+作\s*者.*|\s+\S+\s+著$')
    AUTHOR_DECORATION = re.compile(r'^\s*作\s*者[:：\s]+|\s+著$')
    KIND_SEPARATORS = re.compile(r'[,，、/|\n]+')

    @classmethod
    def format_name(cls, name: str) -> str:
        if not name:
            return ""
        return cls.NAME_SUFFIX.sub('', name).strip()

    @classmethod
    def format_author(cls, author: str) -> str:
        if not author:
            return ""
        return cls.AUTHOR_DECORATION.sub('', author).strip()

    @classmethod
    def normalize_kinds(cls, raw_kinds: Optional[List[str]]) -> str:
        """
        Join category labels into one comma separated string.

        Args:
            raw_kinds: Category strings from a source, possibly containing
                several labels each

        Returns:
            Deduplicated labels in first-seen order
        """
        if not raw_kinds:
            return ""

        seen = []
        for raw in raw_kinds:
            for kind in cls.KIND_SEPARATORS.split(raw or ''):
                kind = ' '.join(kind.split())
                if kind and kind not in seen:
                    seen.append(kind)

        return ','.join(seen)
