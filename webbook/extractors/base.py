"""Shared pieces of the stage extractors."""
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from webbook.analyze_rule import AnalyzeRule
from webbook.errors import ExtractionFieldError

logger = logging.getLogger(__name__)

Trace = Callable[[str], None]

FALSE_WORDS = {"", "false", "no", "not", "0", "null", "none"}


def split_list_rule(rule: Optional[str]) -> Tuple[str, bool]:
    """
    Strip the order prefix of a list rule.

    Returns:
        (rule, reverse): "-" asks for the list reversed, "+" is accepted and
        ignored.
    """
    rule = (rule or "").strip()
    if rule.startswith("-"):
        return rule[1:].strip(), True
    if rule.startswith("+"):
        return rule[1:].strip(), False
    return rule, False


def is_truthy(value: str) -> bool:
    return value.strip().lower() not in FALSE_WORDS


def book_bindings(book, base_url: str) -> Dict[str, Any]:
    """Values visible to rule scripts and {{name}} templates."""
    bindings: Dict[str, Any] = {"baseUrl": base_url}
    if book is not None:
        bindings["book"] = book.model_dump(mode="json", exclude={"info_html", "toc_html"})
    return bindings


class BaseExtractor:
    """
    Base for the stage extractors.

    Field reads never raise: a failing rule leaves its field at the zero value
    and is reported to the trace. Only the first list entry traces its values,
    which keeps the trace readable for long lists.
    """

    stage: str = "base"

    def __init__(self, trace: Optional[Trace] = None, script_engine=None):
        self.trace = trace or (lambda message: None)
        self.script_engine = script_engine

    def analyzer(self, content: Any, base_url: str, bindings: Optional[Dict[str, Any]] = None) -> AnalyzeRule:
        return AnalyzeRule(content, base_url, script_engine=self.script_engine, bindings=bindings)

    def _read(self, analyzer: AnalyzeRule, method: str, field: str, rule: Optional[str], verbose: bool, default):
        if not rule or not rule.strip():
            return default
        try:
            value = getattr(analyzer, method)(rule)
        except ExtractionFieldError as e:
            e.field = field
            self.trace(f"✗ {field}: {e}")
            logger.debug(f"{self.stage} field {field} failed: {e}")
            return default
        except Exception as e:
            self.trace(f"✗ {field}: {type(e).__name__}: {e}")
            logger.warning(f"{self.stage} field {field} failed unexpectedly: {e}")
            return default

        if verbose:
            self.trace(f"└ {field}: {value}")
        return value

    def read_string(self, analyzer: AnalyzeRule, field: str, rule: Optional[str], verbose: bool = False) -> str:
        return self._read(analyzer, "get_string", field, rule, verbose, "")

    def read_list(self, analyzer: AnalyzeRule, field: str, rule: Optional[str], verbose: bool = False) -> List[str]:
        return self._read(analyzer, "get_string_list", field, rule, verbose, [])

    def read_url(self, analyzer: AnalyzeRule, field: str, rule: Optional[str], verbose: bool = False) -> str:
        return self._read(analyzer, "get_url", field, rule, verbose, "")

    def read_urls(self, analyzer: AnalyzeRule, field: str, rule: Optional[str], verbose: bool = False) -> List[str]:
        return self._read(analyzer, "get_url_list", field, rule, verbose, [])

    def read_elements(self, analyzer: AnalyzeRule, field: str, rule: Optional[str]) -> List[Any]:
        return self._read(analyzer, "get_elements", field, rule, False, [])
