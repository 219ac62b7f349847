import pytest
from fastapi.testclient import TestClient

from main import app, get_fetcher, get_script_engine
from webbook.analyze_url import HttpFetcher
from webbook.transform import ContentTransformer

from conftest import SOURCE, SOURCE_URL

SEARCH_PAGE = '<html><body><div class="result"><h3><a href="/book/1">Dune</a></h3></div></body></html>'
DETAIL_PAGE = '<html><body><h1>Dune</h1><a class="toc" href="/book/1/toc">Contents</a></body></html>'
TOC_PAGE = '<html><body><ul class="chapters"><li><a href="/c/1">One</a></li></ul></body></html>'
CONTENT_PAGE = '<html><body><div id="content"><p>Hello there.</p></div></body></html>'


@pytest.fixture
def client(site, script_engine):
    site.routes.update({
        "http://fixture/search?q=dune&p=1": SEARCH_PAGE,
        "http://fixture/book/1": DETAIL_PAGE,
        "http://fixture/book/1/toc": TOC_PAGE,
        "http://fixture/c/1": CONTENT_PAGE,
    })
    app.dependency_overrides[get_fetcher] = lambda: HttpFetcher(
        transport=site.transport(),
        transformer=ContentTransformer(script_engine),
    )
    app.dependency_overrides[get_script_engine] = lambda: script_engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "webbook"}


def test_search(client):
    response = client.post("/search", json={"source": SOURCE, "key": "dune"})
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["name"] == "Dune"
    assert data["items"][0]["book_url"] == "http://fixture/book/1"


def test_search_requires_a_key(client):
    response = client.post("/search", json={"source": SOURCE, "key": ""})
    assert response.status_code == 422


def test_broken_template_is_unprocessable(client):
    source = dict(SOURCE, searchUrl="http://fixture/s?q={{missing}}")
    response = client.post("/search", json={"source": source, "key": "dune"})
    assert response.status_code == 422
    assert response.json()["kind"] == "template"


def test_source_failure_is_bad_gateway(client, site):
    site.routes["http://fixture/search?q=dune&p=1"] = (503, "down")
    response = client.post("/search", json={"source": SOURCE, "key": "dune"})
    assert response.status_code == 502
    body = response.json()
    assert body["kind"] == "network"
    assert body["url"] == "http://fixture/search?q=dune&p=1"


def test_book_info_and_toc(client):
    response = client.post("/book/info", json={"source": SOURCE, "book": {"book_url": "http://fixture/book/1"}})
    assert response.status_code == 200
    book = response.json()
    assert book["name"] == "Dune"
    assert book["toc_url"] == "http://fixture/book/1/toc"

    response = client.post("/book/toc", json={"source": SOURCE, "book": book})
    assert response.status_code == 200
    assert [c["title"] for c in response.json()] == ["One"]


def test_book_content(client):
    response = client.post("/book/content", json={
        "source": SOURCE,
        "book": {"book_url": "http://fixture/book/1", "toc_url": "http://fixture/book/1/toc"},
        "chapter": {"url": "http://fixture/c/1", "title": "One"},
    })
    assert response.status_code == 200
    assert response.json() == {"content": "Hello there."}


def test_explore_kinds(client):
    response = client.post("/explore/kinds", json=SOURCE)
    assert response.status_code == 200
    assert response.json() == [
        {"title": "Fantasy", "url": "/cat/fantasy/{{page}}"},
        {"title": "Science Fiction", "url": "/cat/sf/{{page}}"},
    ]


def test_debug_log_collects_run_lines(client):
    client.post("/search", json={"source": SOURCE, "key": "dune"})
    response = client.get("/debug", params={"source_url": SOURCE_URL})
    assert response.status_code == 200
    lines = response.json()["lines"]
    assert any("start search" in line for line in lines)
