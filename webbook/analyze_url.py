"""
Request building and execution.

A URL rule is a template: optional script blocks, an optional page list
``<first,second,...>``, ``{{name}}``/``{name}`` placeholders and an optional
``,{json options}`` tail carrying method, body, headers and charset.
"""
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote_plus, urljoin

import httpx

from config import settings
from webbook.debug import DebugTracer, debug
from webbook.errors import NetworkError, TemplateError
from webbook.transform import ContentTransformer

logger = logging.getLogger(__name__)

JS_BLOCK = re.compile(r"<js>(.*?)</js>", re.S | re.I)
PAGE_LIST = re.compile(r"<([^<>]*)>")
OPTIONS_SPLIT = re.compile(r"\s*,\s*(?=\{\s*[\"}])")
PLACEHOLDER = re.compile(r"\{\{(.*?)\}\}|\{([A-Za-z_][\w.]*)\}", re.S)
PLAIN_NAME = re.compile(r"[A-Za-z_]\w*(?:\.\w+)?")
CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

KEY_NAMES = ("key", "searchKey")


@dataclass(frozen=True)
class ResolvedRequest:
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    charset: Optional[str] = None


@dataclass
class StrResponse:
    """Decoded (and transformed) body plus the final URL after redirects."""
    body: str
    url: str
    status_code: int = 200
    request: Optional[ResolvedRequest] = None


def merge_headers(*layers: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Merge header maps left to right; later layers win per key, ignoring case."""
    merged: Dict[str, str] = {}
    names: Dict[str, str] = {}
    for layer in layers:
        for name, value in (layer or {}).items():
            lowered = name.lower()
            if lowered in names:
                merged.pop(names[lowered])
            names[lowered] = name
            merged[name] = str(value)
    return merged


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def _bindings(key, page, base_url, book) -> Dict[str, Any]:
    book_data = None
    if book is not None:
        book_data = book.model_dump(mode="json", exclude={"info_html", "toc_html"})
    return {
        "key": key,
        "searchKey": key,
        "page": page,
        "searchPage": page,
        "baseUrl": base_url,
        "book": book_data,
    }


def _lookup(name: str, bindings: Dict[str, Any]) -> Any:
    if name.startswith("book."):
        book = bindings.get("book")
        if not book:
            raise TemplateError(f"Placeholder {name!r} needs a book")
        attr = name[5:]
        snake = CAMEL_BOUNDARY.sub("_", attr).lower()
        for candidate in (attr, snake):
            if candidate in book:
                return book[candidate]
        raise TemplateError(f"Unknown book field in placeholder {name!r}")

    if name not in bindings:
        raise TemplateError(f"Unknown placeholder {name!r}")
    value = bindings[name]
    if value is None:
        raise TemplateError(f"Missing value for placeholder {name!r}")
    return value


def _evaluate(script_engine, script: str, value: str, bindings: Dict[str, Any]) -> str:
    if script_engine is None:
        raise TemplateError("URL template needs a script engine")
    return script_engine.evaluate(script, value, bindings)


def _substitute(
    text: str,
    bindings: Dict[str, Any],
    script_engine,
    encode: Callable[[str, Any], str],
) -> str:
    def render(match: re.Match) -> str:
        expr = (match.group(1) if match.group(1) is not None else match.group(2)).strip()
        if PLAIN_NAME.fullmatch(expr):
            return encode(expr, _lookup(expr, bindings))
        return _evaluate(script_engine, expr, "", bindings)

    return PLACEHOLDER.sub(render, text)


def _check_balanced(text: str) -> None:
    rest = PLACEHOLDER.sub("", text)
    if "{" in rest or "}" in rest:
        raise TemplateError(f"Unbalanced placeholder in {text!r}")


def _run_scripts(template: str, bindings: Dict[str, Any], script_engine) -> str:
    if template.lower().startswith("@js:"):
        return _evaluate(script_engine, template[4:], "", bindings).strip()

    while True:
        match = JS_BLOCK.search(template)
        if match is None:
            return template
        head = template[:match.start()]
        result = _evaluate(script_engine, match.group(1), head, bindings)
        template = result + template[match.end():]


def _select_page(template: str, page: Optional[int]) -> str:
    match = PAGE_LIST.search(template)
    if match is None:
        return template
    pages = match.group(1).split(",")
    index = min(max(page or 1, 1), len(pages)) - 1
    return template[:match.start()] + pages[index].strip() + template[match.end():]


def _split_options(template: str) -> Tuple[str, Dict[str, Any]]:
    match = OPTIONS_SPLIT.search(template)
    if match is None:
        return template, {}

    url, tail = template[:match.start()], template[match.end():]
    try:
        options = json.loads(tail)
    except ValueError as e:
        raise TemplateError(f"Malformed request options {tail!r}: {e}") from e
    if not isinstance(options, dict):
        raise TemplateError(f"Request options must be an object: {tail!r}")
    return url, options


def _fill_json(value: Any, bindings: Dict[str, Any], script_engine) -> Any:
    if isinstance(value, str):
        return _substitute(value, bindings, script_engine, lambda name, v: str(v))
    if isinstance(value, list):
        return [_fill_json(item, bindings, script_engine) for item in value]
    if isinstance(value, dict):
        return {k: _fill_json(v, bindings, script_engine) for k, v in value.items()}
    return value


def build_request(
    rule_url: str,
    *,
    base_url: str = "",
    key: Optional[str] = None,
    page: Optional[int] = None,
    book=None,
    header_map: Optional[Dict[str, str]] = None,
    script_engine=None,
) -> ResolvedRequest:
    """
    Resolve a URL rule into a concrete request.

    Raises:
        TemplateError: if a placeholder is missing, unknown or unbalanced,
            or the options tail is not a JSON object.
    """
    template = (rule_url or "").strip()
    if not template:
        raise TemplateError("Empty URL template")

    bindings = _bindings(key, page, base_url, book)
    template = _run_scripts(template, bindings, script_engine)
    template = _select_page(template, page)
    url_template, options = _split_options(template)

    charset = options.get("charset") or None
    try:
        "".encode(charset or "utf-8")
    except LookupError as e:
        raise TemplateError(f"Unknown charset {charset!r}") from e

    def url_encode(name: str, value: Any) -> str:
        if name in KEY_NAMES:
            return quote_plus(str(value), encoding=charset or "utf-8")
        return str(value)

    _check_balanced(url_template)
    url = _substitute(url_template, bindings, script_engine, url_encode).strip()
    if base_url:
        url = urljoin(base_url, url)

    option_headers = options.get("headers") or {}
    if not isinstance(option_headers, dict):
        raise TemplateError("Request option 'headers' must be an object")
    option_headers = {
        name: _substitute(str(value), bindings, script_engine, lambda n, v: str(v))
        for name, value in option_headers.items()
    }
    headers = merge_headers(settings.default_headers(), header_map, option_headers)

    body = None
    raw_body = options.get("body")
    if isinstance(raw_body, (dict, list)):
        body = json.dumps(_fill_json(raw_body, bindings, script_engine), ensure_ascii=False)
        content_type = "application/json"
    elif raw_body is not None:
        raw_body = str(raw_body)
        if raw_body.lstrip()[:1] in ("{", "["):
            body = _substitute(raw_body, bindings, script_engine, lambda n, v: json.dumps(str(v))[1:-1])
            content_type = "application/json"
        else:
            body = _substitute(raw_body, bindings, script_engine, url_encode)
            content_type = "application/x-www-form-urlencoded"
    if body is not None and not _has_header(headers, "Content-Type"):
        headers["Content-Type"] = content_type

    method = str(options.get("method") or ("POST" if body is not None else "GET")).upper()
    return ResolvedRequest(url=url, method=method, headers=headers, body=body, charset=charset)


class HttpFetcher:
    """
    Execute resolved requests with httpx and run the content transformer.

    Args:
        transport: httpx transport; tests pass an httpx.MockTransport.
        transformer: ContentTransformer for the script and source regex.
        tracer: DebugTracer that receives the request line.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        transformer: Optional[ContentTransformer] = None,
        tracer: Optional[DebugTracer] = None,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
    ):
        self.transport = transport
        self.transformer = transformer or ContentTransformer()
        self.tracer = tracer or debug
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.max_redirects = max_redirects if max_redirects is not None else settings.max_redirects

    def _trace(self, trace, source_origin: str, request: ResolvedRequest, url: str, outcome, started: float) -> None:
        """Report one line per execution, whatever its outcome."""
        elapsed = int((time.monotonic() - started) * 1000)
        message = f"≡ {request.method} {url} -> {outcome} ({elapsed} ms)"
        if trace is not None:
            trace(message)
        else:
            self.tracer.log(source_origin, message)

    async def execute(
        self,
        request: ResolvedRequest,
        source_origin: str,
        *,
        script: Optional[str] = None,
        source_regex: Optional[str] = None,
        bindings: Optional[Dict[str, Any]] = None,
        trace: Optional[Callable[[str], None]] = None,
    ) -> StrResponse:
        """Fetch, decode and transform. Never retries."""
        started = time.monotonic()
        content = None
        if request.body is not None:
            content = request.body.encode(request.charset or "utf-8")

        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=self.timeout,
                follow_redirects=True,
                max_redirects=self.max_redirects,
            ) as client:
                response = await client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=content,
                )
        except httpx.TimeoutException as e:
            self._trace(trace, source_origin, request, request.url, "timed out", started)
            raise NetworkError(f"Request timed out: {e}", url=request.url) from e
        except httpx.HTTPError as e:
            self._trace(trace, source_origin, request, request.url, f"failed: {e}", started)
            raise NetworkError(f"Request failed: {e}", url=request.url) from e
        except httpx.InvalidURL as e:
            self._trace(trace, source_origin, request, request.url, "invalid url", started)
            raise TemplateError(f"Invalid URL: {e}", url=request.url) from e

        final_url = str(response.url)
        self._trace(trace, source_origin, request, final_url, response.status_code, started)
        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP {response.status_code}",
                url=final_url,
                status_code=response.status_code,
            )

        if request.charset:
            body = response.content.decode(request.charset, errors="replace")
        else:
            body = response.text

        body = await self.transformer.apply(
            body,
            script=script,
            source_regex=source_regex,
            bindings=bindings,
        )
        return StrResponse(body=body, url=final_url, status_code=response.status_code, request=request)
