"""Shared fixtures: a fake site over httpx.MockTransport and a Python script harness."""
import sys
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from schemas import BookSource
from webbook.analyze_url import HttpFetcher
from webbook.debug import DebugTracer
from webbook.script import ScriptEngine
from webbook.transform import ContentTransformer
from webbook.web_book import WebBook

# Runs scripts with the context keys as globals; the script sets `result`.
PYTHON_HARNESS = (
    "import json, sys\n"
    "ns = json.load(sys.stdin)\n"
    "exec(__SCRIPT__, ns)\n"
    "out = ns.get('result')\n"
    "sys.stdout.write(out if isinstance(out, str) else json.dumps(out))\n"
)

SOURCE_URL = "http://fixture"

SOURCE = {
    "bookSourceUrl": SOURCE_URL,
    "bookSourceName": "Fixture",
    "bookSourceType": 0,
    "header": '{"Referer": "http://fixture/"}',
    "searchUrl": "http://fixture/search?q={key}&p={page}",
    "exploreUrl": "Fantasy::/cat/fantasy/{{page}}\nScience Fiction::/cat/sf/{{page}}",
    "ruleSearch": {
        "bookList": "div.result",
        "name": "h3 a@text",
        "author": ".author@text",
        "kind": ".tags span@text",
        "intro": "p.intro@text",
        "bookUrl": "h3 a@href",
        "coverUrl": "img@src",
    },
    "ruleBookInfo": {
        "name": "h1@text",
        "author": ".meta .author@text",
        "kind": ".meta .kind@text",
        "intro": "#intro@text",
        "coverUrl": ".cover img@src",
        "tocUrl": "a.toc@href",
    },
    "ruleToc": {
        "chapterList": "ul.chapters li a",
        "chapterName": "@text",
        "chapterUrl": "@href",
        "nextTocUrl": "a.next@href",
    },
    "ruleContent": {
        "content": "#content@html",
        "nextContentUrl": "a.next-page@href",
    },
}


class FakeSite:
    """
    In-memory web site.

    Routes map a full URL to a body, a (status, body) pair, a
    (status, body, headers) triple or a callable taking the httpx.Request.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        if isinstance(route, str):
            return httpx.Response(200, text=route, headers={"Content-Type": "text/html; charset=utf-8"})
        status, body, *rest = route
        headers = rest[0] if rest else {}
        return httpx.Response(status, text=body, headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def urls(self):
        return [str(request.url) for request in self.requests]


@pytest.fixture
def source_data():
    return {key: (dict(value) if isinstance(value, dict) else value) for key, value in SOURCE.items()}


@pytest.fixture
def source(source_data):
    return BookSource.model_validate(source_data)


@pytest.fixture
def script_engine():
    return ScriptEngine(command=[sys.executable, "-c"], harness=PYTHON_HARNESS, timeout=10)


@pytest.fixture
def tracer():
    return DebugTracer(max_lines=1000)


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="test-io")
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def make_web_book(site, script_engine, tracer, executor):
    def factory(book_source):
        fetcher = HttpFetcher(
            transport=site.transport(),
            transformer=ContentTransformer(script_engine),
            tracer=tracer,
        )
        return WebBook(
            book_source,
            fetcher=fetcher,
            script_engine=script_engine,
            tracer=tracer,
            executor=executor,
        )

    return factory
