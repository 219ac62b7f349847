import json
from urllib.parse import quote_plus

import httpx
import pytest

from models import Book
from webbook.analyze_url import HttpFetcher, ResolvedRequest, build_request, merge_headers
from webbook.debug import DebugTracer
from webbook.errors import NetworkError, NoContentError, TemplateError
from webbook.transform import ContentTransformer

from conftest import FakeSite


def test_search_template_resolves_key_and_page():
    request = build_request("http://fixture/search?q={key}&p={page}", base_url="http://fixture", key="dune", page=1)
    assert request.url == "http://fixture/search?q=dune&p=1"
    assert request.method == "GET"
    assert request.body is None


def test_double_brace_placeholders_and_relative_url():
    request = build_request("/search/{{key}}/{{page}}.html", base_url="http://fixture/", key="dune", page=3)
    assert request.url == "http://fixture/search/dune/3.html"


def test_key_is_percent_encoded_with_charset():
    request = build_request("http://x/s?q={{key}},{\"charset\": \"gbk\"}", key="沙丘", page=1)
    assert request.url == "http://x/s?q=" + quote_plus("沙丘", encoding="gbk")
    assert request.charset == "gbk"


def test_key_with_spaces_is_encoded():
    request = build_request("http://x/s?q={{key}}", key="a b&c")
    assert request.url == "http://x/s?q=a+b%26c"


def test_page_list_selects_by_page_and_clamps():
    template = "http://x/list<,_2,_3>.html"
    assert build_request(template, page=1).url == "http://x/list.html"
    assert build_request(template, page=2).url == "http://x/list_2.html"
    assert build_request(template, page=9).url == "http://x/list_3.html"


def test_form_body_options():
    template = 'http://x/search,{"method": "POST", "body": "kw={{key}}&type=1"}'
    request = build_request(template, key="a b")
    assert request.method == "POST"
    assert request.body == "kw=a+b&type=1"
    assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"


def test_json_body_escapes_key():
    template = 'http://x/api,{"method": "POST", "body": {"q": "{{key}}", "page": 1}}'
    request = build_request(template, key='say "hi"')
    assert json.loads(request.body) == {"q": 'say "hi"', "page": 1}
    assert request.headers["Content-Type"] == "application/json"


def test_body_without_method_defaults_to_post():
    request = build_request('http://x/api,{"body": "a=1"}')
    assert request.method == "POST"


def test_headers_merge_case_insensitively():
    request = build_request(
        'http://x/a,{"headers": {"referer": "http://opt/"}}',
        header_map={"User-Agent": "profile-agent", "Referer": "http://profile/"},
    )
    lowered = {k.lower(): v for k, v in request.headers.items()}
    assert lowered["user-agent"] == "profile-agent"
    assert lowered["referer"] == "http://opt/"
    assert len([k for k in request.headers if k.lower() == "referer"]) == 1


def test_merge_headers_later_layer_wins():
    merged = merge_headers({"Accept": "a"}, None, {"ACCEPT": "b"})
    assert merged == {"ACCEPT": "b"}


def test_book_placeholders_accept_camel_and_snake_case():
    book = Book(book_url="http://x/book/1", toc_url="http://x/toc/1", name="Dune")
    assert build_request("{{book.tocUrl}}?n={{book.name}}", book=book).url == "http://x/toc/1?n=Dune"
    assert build_request("{book.book_url}", book=book).url == "http://x/book/1"


@pytest.mark.parametrize("template, kwargs", [
    ("http://x/s?q={{key}}", {}),
    ("http://x/s?q={{nope}}", {"key": "a"}),
    ("http://x/s?q={{key}", {"key": "a"}),
    ("{{book.name}}", {}),
    ('http://x/s,{"method": "POST", broken}', {}),
    ("", {}),
])
def test_unresolvable_templates_raise_template_error(template, kwargs):
    with pytest.raises(TemplateError):
        build_request(template, **kwargs)


def test_expression_placeholder_uses_script_engine(script_engine):
    request = build_request("http://x/list/{{result = str(page * 20)}}", page=2, script_engine=script_engine)
    assert request.url == "http://x/list/40"


def test_js_url_template(script_engine):
    request = build_request("@js:result = baseUrl + '/s?q=' + key", base_url="http://x", key="dune", script_engine=script_engine)
    assert request.url == "http://x/s?q=dune"


def test_expression_without_engine_is_template_error():
    with pytest.raises(TemplateError):
        build_request("http://x/{{page + 1}}", page=1)


def _fetcher(site, **kwargs):
    return HttpFetcher(transport=site.transport(), tracer=DebugTracer(), **kwargs)


@pytest.mark.asyncio
async def test_execute_follows_redirects_and_reports_final_url():
    site = FakeSite({
        "http://a/x": (302, "", {"Location": "http://b/y"}),
        "http://b/y": "<html>moved</html>",
    })
    fetcher = _fetcher(site)
    lines = []
    response = await fetcher.execute(ResolvedRequest(url="http://a/x"), "src", trace=lines.append)

    assert response.url == "http://b/y"
    assert response.body == "<html>moved</html>"
    assert len(lines) == 1
    assert "http://b/y" in lines[0] and "ms" in lines[0]


@pytest.mark.asyncio
async def test_execute_sends_method_headers_and_body():
    site = FakeSite({"http://x/api": lambda request: httpx.Response(200, text=request.content.decode())})
    fetcher = _fetcher(site)
    request = build_request('http://x/api,{"method": "POST", "body": "q={{key}}"}', key="dune")

    response = await fetcher.execute(request, "src")

    assert response.body == "q=dune"
    assert site.requests[0].method == "POST"
    assert site.requests[0].headers["content-type"] == "application/x-www-form-urlencoded"


@pytest.mark.asyncio
async def test_execute_decodes_with_request_charset():
    site = FakeSite({"http://x/gbk": lambda request: httpx.Response(200, content="沙丘".encode("gbk"))})
    response = await _fetcher(site).execute(ResolvedRequest(url="http://x/gbk", charset="gbk"), "src")
    assert response.body == "沙丘"


@pytest.mark.asyncio
async def test_error_status_raises_network_error():
    site = FakeSite()
    with pytest.raises(NetworkError) as exc_info:
        await _fetcher(site).execute(ResolvedRequest(url="http://x/missing"), "src")
    assert exc_info.value.status_code == 404
    assert len(site.requests) == 1


@pytest.mark.asyncio
async def test_connection_error_raises_network_error():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    fetcher = HttpFetcher(transport=httpx.MockTransport(refuse), tracer=DebugTracer())
    with pytest.raises(NetworkError):
        await fetcher.execute(ResolvedRequest(url="http://x/"), "src")


@pytest.mark.asyncio
async def test_source_regex_lifts_embedded_fragment():
    site = FakeSite({"http://x/wrapped": "<script>var data = {\"a\": 1};</script>"})
    response = await _fetcher(site).execute(
        ResolvedRequest(url="http://x/wrapped"),
        "src",
        source_regex=r"var data = (\{.*?\});",
    )
    assert response.body == '{"a": 1}'


@pytest.mark.asyncio
async def test_source_regex_without_match_raises_no_content():
    site = FakeSite({"http://x/page": "<p>nothing here</p>"})
    with pytest.raises(NoContentError):
        await _fetcher(site).execute(ResolvedRequest(url="http://x/page"), "src", source_regex=r"data=(\d+)")


@pytest.mark.asyncio
async def test_script_runs_before_source_regex(script_engine):
    site = FakeSite({"http://x/page": "abc"})
    fetcher = _fetcher(site, transformer=ContentTransformer(script_engine))
    response = await fetcher.execute(
        ResolvedRequest(url="http://x/page"),
        "src",
        script="result = result.upper() + '-123'",
        source_regex=r"-(\d+)",
    )
    assert response.body == "123"


@pytest.mark.asyncio
async def test_error_status_is_traced():
    site = FakeSite()
    lines = []
    with pytest.raises(NetworkError):
        await _fetcher(site).execute(ResolvedRequest(url="http://x/missing"), "src", trace=lines.append)
    assert len(lines) == 1
    assert "http://x/missing -> 404" in lines[0]


@pytest.mark.asyncio
async def test_transport_failure_is_traced():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    fetcher = HttpFetcher(transport=httpx.MockTransport(refuse), tracer=DebugTracer())
    lines = []
    with pytest.raises(NetworkError):
        await fetcher.execute(ResolvedRequest(url="http://x/"), "src", trace=lines.append)
    assert len(lines) == 1
    assert "http://x/ -> failed: refused" in lines[0]
