"""
Rule interpreter for source extraction rules.

A rule string compiles into a closed set of tagged steps (CSS, XPath,
JSONPath, regex, regex replace, script) that one dispatcher evaluates left to
right, each step's output feeding the next.

Syntax:
    a || b              first alternative with a non-empty result
    a && b              concatenation of both results
    @css:div.title@text CSS selector (the default), optional trailing @attr
    @xpath://a/@href    XPath, also any rule starting with "/"
    @json:$.data.name   JSONPath, also any rule starting with "$." or "$["
    @regex:id=(\\d+)    all matches, group 1 when the pattern has groups
    rule##pat##repl     regex replace on the result; "###" at the end keeps
                        only the expanded replacement of the first match
    rule@js:code        script step, also <js>code</js> blocks
    /book/{{$.id}}/     template whose {{...}} parts are bindings or rules
"""
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

from jsonpath_ng.ext import parse as jsonpath_parse
from scrapy.selector import Selector

from webbook.errors import ExtractionFieldError, ScriptError

logger = logging.getLogger(__name__)

JS_BLOCK = re.compile(r"<js>(.*?)</js>", re.S | re.I)
TEMPLATE_PART = re.compile(r"\{\{(.+?)\}\}", re.S)
JAVA_GROUP_REF = re.compile(r"\$(\d+)")


class StepKind(str, Enum):
    DEFAULT = "default"
    CSS = "css"
    XPATH = "xpath"
    JSON = "json"
    REGEX = "regex"
    REPLACE = "replace"
    SCRIPT = "script"


@dataclass(frozen=True)
class RuleStep:
    kind: StepKind
    expr: str
    replacement: str = ""
    first_only: bool = False


Chain = Tuple[RuleStep, ...]


@dataclass(frozen=True)
class CompiledRule:
    """OR of AND of step chains, or a template when template_parts is set."""
    source: str
    alternatives: Tuple[Tuple[Chain, ...], ...] = ()
    template_parts: Optional[Tuple[Tuple[bool, str], ...]] = None


def sniff_format(text: str) -> str:
    """Guess a body's format from its first non-whitespace character."""
    stripped = text.lstrip() if isinstance(text, str) else ""
    if stripped[:1] in ("{", "["):
        return "json"
    if stripped[:1] == "<":
        return "html"
    return "text"


def _split_top(rule: str, op: str) -> List[str]:
    """Split on op outside <js> blocks, {{}} templates and @js: tails."""
    parts = []
    start = 0
    i = 0
    lower = rule.lower()
    while i < len(rule):
        if lower.startswith("<js>", i):
            end = lower.find("</js>", i)
            i = len(rule) if end < 0 else end + 5
            continue
        if rule.startswith("{{", i):
            end = rule.find("}}", i)
            i = len(rule) if end < 0 else end + 2
            continue
        if lower.startswith("@js:", i):
            break
        if rule.startswith(op, i):
            parts.append(rule[start:i])
            i += len(op)
            start = i
            continue
        i += 1
    parts.append(rule[start:])
    return parts


def _selector_step(selector: str) -> List[RuleStep]:
    s = selector.strip()
    if not s:
        return []
    lower = s.lower()
    for prefix, kind in (
        ("@css:", StepKind.CSS),
        ("@xpath:", StepKind.XPATH),
        ("@json:", StepKind.JSON),
        ("@regex:", StepKind.REGEX),
    ):
        if lower.startswith(prefix):
            return [RuleStep(kind, s[len(prefix):].strip())]
    if s.startswith("/") or s.startswith("./"):
        return [RuleStep(StepKind.XPATH, s)]
    if s.startswith("$.") or s.startswith("$["):
        return [RuleStep(StepKind.JSON, s)]
    return [RuleStep(StepKind.DEFAULT, s)]


def _segment_steps(segment: str) -> List[RuleStep]:
    """Steps of a segment that contains no <js> block."""
    seg = segment.strip()
    if not seg:
        return []
    if seg.lower().startswith("@js:"):
        return [RuleStep(StepKind.SCRIPT, seg[4:])]

    script = None
    js_at = seg.lower().find("@js:")
    if js_at > 0:
        script = seg[js_at + 4:]
        seg = seg[:js_at]

    steps = []
    if "##" in seg:
        first_only = seg.endswith("###")
        if first_only:
            seg = seg[:-3]
        pieces = seg.split("##", 2)
        steps.extend(_selector_step(pieces[0]))
        replacement = pieces[2] if len(pieces) > 2 else ""
        steps.append(RuleStep(
            StepKind.REPLACE,
            pieces[1],
            replacement=JAVA_GROUP_REF.sub(r"\\g<\1>", replacement),
            first_only=first_only,
        ))
    else:
        steps.extend(_selector_step(seg))

    if script is not None:
        steps.append(RuleStep(StepKind.SCRIPT, script))
    return steps


def _chain(term: str) -> Chain:
    steps = []
    pos = 0
    for match in JS_BLOCK.finditer(term):
        steps.extend(_segment_steps(term[pos:match.start()]))
        steps.append(RuleStep(StepKind.SCRIPT, match.group(1)))
        pos = match.end()
    steps.extend(_segment_steps(term[pos:]))
    return tuple(steps)


@lru_cache(maxsize=1024)
def compile_rule(rule: str) -> CompiledRule:
    """Compile a rule string. Results are cached; rules are immutable."""
    text = rule.strip()
    is_script = text.lower().startswith("@js:") or text.lower().startswith("<js>")
    if "{{" in text and "}}" in text and not is_script:
        parts = []
        pos = 0
        for match in TEMPLATE_PART.finditer(text):
            if match.start() > pos:
                parts.append((False, text[pos:match.start()]))
            parts.append((True, match.group(1).strip()))
            pos = match.end()
        if pos < len(text):
            parts.append((False, text[pos:]))
        return CompiledRule(source=rule, template_parts=tuple(parts))

    alternatives = tuple(
        tuple(_chain(term) for term in _split_top(alternative, "&&"))
        for alternative in _split_top(text, "||")
    )
    return CompiledRule(source=rule, alternatives=alternatives)


@lru_cache(maxsize=512)
def _jsonpath(expr: str):
    return jsonpath_parse(expr)


def _normalize_space(text: str) -> str:
    return " ".join(text.split())


def _split_css_output(expr: str) -> Tuple[str, Optional[str]]:
    """Split 'div.title@text' into ('div.title', 'text')."""
    at = expr.rfind("@")
    if at < 0:
        return expr, None
    name = expr[at + 1:]
    head = expr[:at]
    if not re.fullmatch(r"[A-Za-z][\w:-]*", name) or head.count("[") != head.count("]"):
        return expr, None
    return head.strip(), name


class AnalyzeRule:
    """
    Evaluate rules against one context.

    Args:
        content: Raw body text, a Selector node or a parsed JSON value.
        base_url: URL that relative links resolve against (the final URL
            of the response, after redirects).
        script_engine: Runs script steps; script steps fail without one.
        bindings: Values visible to scripts and {{name}} templates.
    """

    def __init__(
        self,
        content: Any,
        base_url: str = "",
        script_engine=None,
        bindings: Optional[Dict[str, Any]] = None,
    ):
        self.content = content
        self.base_url = base_url
        self.script_engine = script_engine
        self.bindings = dict(bindings or {})

    def with_content(self, content: Any) -> "AnalyzeRule":
        """Same base URL, engine and bindings over another context."""
        return AnalyzeRule(content, self.base_url, self.script_engine, self.bindings)

    # Public API

    def get_elements(self, rule: str) -> List[Any]:
        """Evaluate a list rule; returns nodes usable as contexts."""
        if not rule or not rule.strip():
            return []
        return self._guard(rule, self._elements, rule)

    def get_string(self, rule: Optional[str]) -> str:
        if not rule or not rule.strip():
            return ""
        return self._guard(rule, self._string, rule)

    def get_string_list(self, rule: Optional[str]) -> List[str]:
        if not rule or not rule.strip():
            return []
        return self._guard(rule, self._string_list, rule)

    def get_url(self, rule: Optional[str]) -> str:
        """Evaluate a rule and resolve the result against the base URL."""
        value = self.get_string(rule)
        if not value:
            return ""
        return urljoin(self.base_url, value.strip())

    def get_url_list(self, rule: Optional[str]) -> List[str]:
        return [urljoin(self.base_url, value.strip()) for value in self.get_string_list(rule) if value.strip()]

    # Evaluation

    def _guard(self, rule: str, func, *args):
        try:
            return func(*args)
        except ExtractionFieldError:
            raise
        except Exception as e:
            raise ExtractionFieldError(f"{type(e).__name__}: {e}", rule=rule) from e

    def _elements(self, rule: str) -> List[Any]:
        compiled = compile_rule(rule)
        if compiled.template_parts is not None:
            return [self._render(compiled)]
        for alternative in compiled.alternatives:
            items = []
            for chain in alternative:
                items.extend(self._flatten(self._run_chain(chain, self.content)))
            if items:
                return items
        return []

    def _string_list(self, rule: str) -> List[str]:
        compiled = compile_rule(rule)
        if compiled.template_parts is not None:
            value = self._render(compiled)
            return [value] if value else []
        for alternative in compiled.alternatives:
            values = []
            for chain in alternative:
                for item in self._flatten(self._run_chain(chain, self.content)):
                    text = self._to_text(item).strip()
                    if text:
                        values.append(text)
            if values:
                return values
        return []

    def _string(self, rule: str) -> str:
        compiled = compile_rule(rule)
        if compiled.template_parts is not None:
            return self._render(compiled)
        for alternative in compiled.alternatives:
            pieces = []
            for chain in alternative:
                texts = [self._to_text(item) for item in self._flatten(self._run_chain(chain, self.content))]
                pieces.append("\n".join(text for text in texts if text))
            result = "".join(pieces).strip()
            if result:
                return result
        return ""

    def _render(self, compiled: CompiledRule) -> str:
        out = []
        for is_rule, text in compiled.template_parts:
            if not is_rule:
                out.append(text)
            elif text in self.bindings:
                out.append(self._to_text(self.bindings[text]))
            else:
                out.append(self._string(text))
        return "".join(out).strip()

    def _run_chain(self, chain: Chain, value: Any) -> List[Any]:
        items = [value]
        for step in chain:
            items = self._apply(step, items)
        return items

    def _apply(self, step: RuleStep, items: List[Any]) -> List[Any]:
        kind = step.kind
        if kind is StepKind.DEFAULT:
            is_json = bool(items) and all(self._is_json_context(item) for item in items)
            kind = StepKind.JSON if is_json else StepKind.CSS

        out: List[Any] = []
        if kind is StepKind.CSS:
            for item in items:
                out.extend(self._css(self._as_selector(item), step.expr))
        elif kind is StepKind.XPATH:
            for item in items:
                out.extend(self._as_selector(item).xpath(step.expr))
        elif kind is StepKind.JSON:
            path = _jsonpath(step.expr)
            for item in items:
                out.extend(match.value for match in path.find(self._as_json(item)))
        elif kind is StepKind.REGEX:
            for item in items:
                for match in re.finditer(step.expr, self._to_text(item), re.S):
                    out.append(match.group(1) if match.groups() else match.group(0))
        elif kind is StepKind.REPLACE:
            for item in items:
                out.append(self._replace(step, self._to_text(item)))
        elif kind is StepKind.SCRIPT:
            out.extend(self._script(step.expr, items))
        return out

    def _css(self, selector: Selector, expr: str) -> List[Any]:
        css, output = _split_css_output(expr)
        nodes = selector.css(css) if css else [selector]
        if output is None:
            return list(nodes)
        return [self._element_value(node, output) for node in nodes]

    @staticmethod
    def _element_value(node: Selector, output: str) -> str:
        if isinstance(node.root, str):
            return node.root
        key = output.lower()
        if key == "text":
            return _normalize_space("".join(node.xpath(".//text()").getall()))
        if key == "textnodes":
            lines = (text.strip() for text in node.xpath("./text()").getall())
            return "\n".join(line for line in lines if line)
        if key == "owntext":
            return _normalize_space(" ".join(node.xpath("./text()").getall()))
        if key in ("html", "all"):
            return node.get()
        return node.attrib.get(output, "")

    @staticmethod
    def _replace(step: RuleStep, text: str) -> str:
        if step.first_only:
            match = re.search(step.expr, text, re.S)
            return match.expand(step.replacement) if match else ""
        return re.sub(step.expr, step.replacement, text, flags=re.S)

    def _script(self, script: str, items: List[Any]) -> List[Any]:
        if self.script_engine is None:
            raise ExtractionFieldError("No script engine configured", rule=script)
        if len(items) == 1:
            value = items[0] if self._is_plain_json(items[0]) else self._to_text(items[0])
        else:
            value = [self._to_text(item) for item in items]

        bindings = dict(self.bindings)
        bindings.setdefault("baseUrl", self.base_url)
        try:
            result = self.script_engine.evaluate(script, value, bindings)
        except ScriptError as e:
            raise ExtractionFieldError(f"Script step failed: {e}", rule=script) from e

        if sniff_format(result) == "json":
            try:
                return [json.loads(result)]
            except ValueError:
                pass
        return [result]

    # Context conversion

    @staticmethod
    def _is_plain_json(value: Any) -> bool:
        return isinstance(value, (dict, list, int, float, bool)) or value is None

    def _is_json_context(self, value: Any) -> bool:
        if isinstance(value, Selector):
            return False
        if isinstance(value, str):
            return sniff_format(value) == "json"
        return True

    @staticmethod
    def _as_selector(value: Any) -> Selector:
        if isinstance(value, Selector):
            return value
        if not isinstance(value, str):
            value = json.dumps(value, ensure_ascii=False)
        return Selector(text=value or "<html></html>", type="html")

    @staticmethod
    def _as_json(value: Any) -> Any:
        if isinstance(value, Selector):
            value = value.get()
        if isinstance(value, str):
            return json.loads(value)
        return value

    @staticmethod
    def _flatten(items: List[Any]) -> List[Any]:
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    @staticmethod
    def _to_text(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, Selector):
            if isinstance(value.root, str):
                return value.root
            return _normalize_space("".join(value.xpath(".//text()").getall()))
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return json.dumps(value, ensure_ascii=False)
