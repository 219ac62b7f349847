import asyncio

import httpx
import pytest

from models import Book, BookChapter, SourceType
from schemas import BookSource
from webbook.errors import NetworkError, TemplateError
from webbook.scope import TaskScope
from webbook.web_book import io_executor, shutdown_io_executor

from conftest import SOURCE_URL

SEARCH_PAGE = """
<html><body>
  <div class="result"><h3><a href="/book/1">Dune</a></h3><span class="author">Frank Herbert</span></div>
  <div class="result"><h3><a href="/book/2">Emma</a></h3><span class="author">Jane Austen</span></div>
</body></html>
"""

DETAIL_PAGE = """
<html><body>
  <h1>Dune</h1>
  <div class="meta"><span class="author">Frank Herbert</span></div>
  <div id="intro">A desert planet.</div>
  <a class="toc" href="/book/1/toc">Contents</a>
</body></html>
"""

TOC_PAGE = """
<html><body>
  <ul class="chapters"><li><a href="/c/1">One</a></li><li><a href="/c/2">Two</a></li></ul>
  <a class="next" href="/book/1/toc?p=2">Next</a>
</body></html>
"""

TOC_PAGE_2 = """
<html><body>
  <ul class="chapters"><li><a href="/c/3">Three</a></li></ul>
  <a class="next" href="/book/1/toc">Back</a>
</body></html>
"""

CONTENT_PAGE = """
<html><body>
  <div id="content"><p>First paragraph.</p><p>Second paragraph.</p></div>
  <a class="next-page" href="/c/1_2">more</a>
  <a class="next-page" href="/c/2">next chapter</a>
</body></html>
"""

CONTENT_PAGE_2 = '<html><body><div id="content"><p>Third paragraph.</p></div></body></html>'

ROUTES = {
    "http://fixture/search?q=dune&p=1": SEARCH_PAGE,
    "http://fixture/cat/fantasy/2": SEARCH_PAGE,
    "http://fixture/book/1": DETAIL_PAGE,
    "http://fixture/book/1/toc": TOC_PAGE,
    "http://fixture/book/1/toc?p=2": TOC_PAGE_2,
    "http://fixture/c/1": CONTENT_PAGE,
    "http://fixture/c/1_2": CONTENT_PAGE_2,
}


@pytest.fixture
def web_book(site, source, make_web_book):
    site.routes.update(ROUTES)
    return make_web_book(source)


def run_lines(tracer):
    return tracer.lines(SOURCE_URL)


# Search and explore

@pytest.mark.asyncio
async def test_search_end_to_end(web_book, site, tracer):
    books = await web_book.search_book_await("dune", 1)

    assert site.urls == ["http://fixture/search?q=dune&p=1"]
    assert [b.name for b in books] == ["Dune", "Emma"]
    assert [b.book_url for b in books] == ["http://fixture/book/1", "http://fixture/book/2"]
    lines = run_lines(tracer)
    assert "start search" in lines[0]
    assert "search completed" in lines[-1]


@pytest.mark.asyncio
async def test_search_is_idempotent(web_book):
    first = await web_book.search_book_await("dune", 1)
    second = await web_book.search_book_await("dune", 1)
    assert first == second


@pytest.mark.asyncio
async def test_empty_search_url_disables_search(source_data, make_web_book, site):
    source_data["searchUrl"] = ""
    web_book = make_web_book(BookSource.model_validate(source_data))
    assert await web_book.search_book_await("dune") == []
    assert site.requests == []


@pytest.mark.asyncio
async def test_profile_headers_are_sent(web_book, site):
    await web_book.search_book_await("dune", 1)
    assert site.requests[0].headers["referer"] == "http://fixture/"
    assert site.requests[0].headers["user-agent"]


@pytest.mark.asyncio
async def test_explore_uses_search_rules_as_fallback(web_book, site):
    books = await web_book.explore_book_await("/cat/fantasy/{{page}}", 2)
    assert site.urls == ["http://fixture/cat/fantasy/2"]
    assert [b.name for b in books] == ["Dune", "Emma"]


@pytest.mark.asyncio
async def test_explore_with_empty_url_is_empty(web_book, site):
    assert await web_book.explore_book_await("") == []
    assert site.requests == []


@pytest.mark.asyncio
async def test_relative_links_resolve_against_redirect_target(source_data, make_web_book, site):
    source_data["searchUrl"] = "http://a/x"
    site.routes.update({
        "http://a/x": (302, "", {"Location": "http://b/y"}),
        "http://b/y": '<div class="result"><h3><a href="z">Moved</a></h3></div>',
    })
    web_book = make_web_book(BookSource.model_validate(source_data))

    (book,) = await web_book.search_book_await("dune")

    assert book.book_url == "http://b/z"


@pytest.mark.asyncio
async def test_malformed_entry_among_ten(source_data, make_web_book, site):
    entries = [f'<div class="result"><h3><a href="/b/{i}">Book {i}</a></h3></div>' for i in range(10)]
    entries[2] = '<div class="result"><p>no title here</p></div>'
    site.routes["http://fixture/search?q=dune&p=1"] = "<html><body>" + "".join(entries) + "</body></html>"
    web_book = make_web_book(BookSource.model_validate(source_data))

    books = await web_book.search_book_await("dune", 1)

    assert len(books) == 10
    assert books[2].name == ""
    assert books[3].name == "Book 3"


@pytest.mark.asyncio
async def test_network_failure_surfaces_as_error(web_book, site, tracer):
    site.routes["http://fixture/search?q=dune&p=1"] = (500, "boom")
    with pytest.raises(NetworkError):
        await web_book.search_book_await("dune", 1)
    lines = run_lines(tracer)
    assert "search failed" in lines[-1]
    assert not any("completed" in line for line in lines)


@pytest.mark.asyncio
async def test_template_failure_surfaces_as_error(source_data, make_web_book, site):
    source_data["searchUrl"] = "http://fixture/s?q={{missing}}"
    web_book = make_web_book(BookSource.model_validate(source_data))
    with pytest.raises(TemplateError):
        await web_book.search_book_await("dune")
    assert site.requests == []


# Book info

@pytest.mark.asyncio
async def test_book_info_mutates_and_returns_the_book(web_book, source_data):
    book = Book(book_url="http://fixture/book/1", type=SourceType.AUDIO)

    result = await web_book.get_book_info_await(book)

    assert result is book
    assert book.name == "Dune"
    assert book.author == "Frank Herbert"
    assert book.toc_url == "http://fixture/book/1/toc"
    assert book.origin == SOURCE_URL
    assert book.type is SourceType.TEXT


@pytest.mark.asyncio
async def test_book_info_uses_cached_detail_page(web_book, site):
    book = Book(book_url="http://fixture/book/1", info_html=DETAIL_PAGE.replace("Dune", "Cached"))
    await web_book.get_book_info_await(book)
    assert book.name == "Cached"
    assert site.requests == []


@pytest.mark.asyncio
async def test_book_info_without_url_is_unchanged(web_book, site):
    book = Book(name="Nameless")
    assert await web_book.get_book_info_await(book) is book
    assert book.name == "Nameless"
    assert site.requests == []


# Table of contents

@pytest.mark.asyncio
async def test_toc_follows_next_pages_and_indexes(web_book, site):
    book = Book(book_url="http://fixture/book/1", toc_url="http://fixture/book/1/toc")

    chapters = await web_book.get_chapter_list_await(book)

    assert [c.title for c in chapters] == ["One", "Two", "Three"]
    assert [c.index for c in chapters] == [0, 1, 2]
    assert all(c.book_url == "http://fixture/book/1" for c in chapters)
    assert site.urls == ["http://fixture/book/1/toc", "http://fixture/book/1/toc?p=2"]
    assert book.total_chapter_num == 3
    assert book.last_chapter == "Three"


@pytest.mark.asyncio
async def test_toc_reuses_cached_body_when_toc_is_book_page(web_book, site):
    book = Book(book_url="http://fixture/book/1", toc_url="http://fixture/book/1", toc_html=TOC_PAGE_2.replace("/book/1/toc", "/book/1"))

    chapters = await web_book.get_chapter_list_await(book)

    assert [c.title for c in chapters] == ["Three"]
    assert site.requests == []


@pytest.mark.asyncio
async def test_toc_fetches_when_toc_url_differs(web_book, site):
    book = Book(book_url="http://fixture/book/1", toc_url="http://fixture/book/1/toc", toc_html="<html>stale</html>")
    chapters = await web_book.get_chapter_list_await(book)
    assert len(chapters) == 3
    assert site.urls[0] == "http://fixture/book/1/toc"


@pytest.mark.asyncio
async def test_toc_without_url_is_empty(web_book, site):
    assert await web_book.get_chapter_list_await(Book(book_url="http://fixture/book/1")) == []
    assert site.requests == []


@pytest.mark.asyncio
async def test_info_then_toc_share_book_page(source_data, make_web_book, site):
    source_data["ruleBookInfo"]["tocUrl"] = ""
    site.routes["http://fixture/book/1"] = (
        "<html><body><h1>Dune</h1>"
        '<ul class="chapters"><li><a href="/c/3">Three</a></li></ul>'
        "</body></html>"
    )
    web_book = make_web_book(BookSource.model_validate(source_data))
    book = Book(book_url="http://fixture/book/1")

    await web_book.get_book_info_await(book)
    chapters = await web_book.get_chapter_list_await(book)

    assert book.toc_url == "http://fixture/book/1"
    assert [c.title for c in chapters] == ["Three"]
    assert site.urls == ["http://fixture/book/1"]


@pytest.mark.asyncio
async def test_concurrent_info_and_toc_on_one_book(web_book):
    book = Book(book_url="http://fixture/book/1", toc_url="http://fixture/book/1/toc")
    _, chapters = await asyncio.gather(
        web_book.get_book_info_await(book),
        web_book.get_chapter_list_await(book),
    )
    assert book.name == "Dune"
    assert book.total_chapter_num == len(chapters) == 3


# Content

@pytest.mark.asyncio
async def test_empty_content_rule_returns_chapter_url(source_data, make_web_book, site, tracer):
    source_data["ruleContent"]["content"] = ""
    web_book = make_web_book(BookSource.model_validate(source_data))
    chapter = BookChapter(url="http://fixture/files/1.mp3", title="One")

    content = await web_book.get_content_await(Book(book_url="http://fixture/book/1"), chapter)

    assert content == "http://fixture/files/1.mp3"
    assert site.requests == []
    assert any("content rule is empty" in line for line in run_lines(tracer))


@pytest.mark.asyncio
async def test_content_reuses_toc_body_when_chapter_is_book_page(web_book, site):
    book = Book(book_url="http://fixture/book/1", toc_html=CONTENT_PAGE_2)
    chapter = BookChapter(url="http://fixture/book/1", title="Only")

    content = await web_book.get_content_await(book, chapter)

    assert content == "Third paragraph."
    assert site.requests == []


@pytest.mark.asyncio
async def test_content_follows_pages_but_not_next_chapter(web_book, site):
    book = Book(book_url="http://fixture/book/1", toc_url="http://fixture/book/1/toc")
    chapter = BookChapter(url="http://fixture/c/1", title="One")

    content = await web_book.get_content_await(book, chapter, "http://fixture/c/2")

    assert content == "First paragraph.\nSecond paragraph.\nThird paragraph."
    assert site.urls == ["http://fixture/c/1", "http://fixture/c/1_2"]


@pytest.mark.asyncio
async def test_content_script_and_source_regex(source_data, make_web_book, site):
    source_data["ruleContent"] = {
        "content": "#content@html",
        "webJs": "result = result.replace('SECRET', 'content')",
        "sourceRegex": "<main>(.*)</main>",
    }
    site.routes["http://fixture/c/9"] = '<main><div id="content">Real SECRET</div></main><footer>junk</footer>'
    web_book = make_web_book(BookSource.model_validate(source_data))

    content = await web_book.get_content_await(Book(book_url="http://fixture/book/1"), BookChapter(url="http://fixture/c/9"))

    assert content == "Real content"


def test_blocking_content(web_book, site):
    book = Book(book_url="http://fixture/book/1")
    content = web_book.get_content_blocking(book, BookChapter(url="http://fixture/c/1_2"))
    assert content == "Third paragraph."


@pytest.mark.asyncio
async def test_blocking_content_refuses_running_loop(web_book):
    with pytest.raises(RuntimeError):
        web_book.get_content_blocking(Book(), BookChapter(url="http://fixture/c/1"))


def test_blocking_content_refuses_io_pool_thread(web_book):
    try:
        future = io_executor().submit(web_book.get_content_blocking, Book(), BookChapter(url="http://fixture/c/1"))
        with pytest.raises(RuntimeError):
            future.result(timeout=10)
    finally:
        shutdown_io_executor()


# Cancellation

@pytest.mark.asyncio
async def test_cancelled_search_reports_only_cancellation(web_book, site, tracer):
    started = asyncio.Event()

    async def hang(request):
        started.set()
        await asyncio.sleep(30)
        return httpx.Response(200, text=SEARCH_PAGE)

    site.routes["http://fixture/search?q=dune&p=1"] = hang
    scope = TaskScope("test")

    task = web_book.search_book("dune", 1, scope=scope)
    await asyncio.wait_for(started.wait(), timeout=5)
    assert scope.active == 1
    assert scope.cancel() == 1

    with pytest.raises(asyncio.CancelledError):
        await task
    assert task.cancelled()

    lines = run_lines(tracer)
    assert "search cancelled" in lines[-1]
    assert not any("completed" in line or "failed" in line for line in lines)


@pytest.mark.asyncio
async def test_launcher_returns_task_with_result(web_book):
    task = web_book.search_book("dune", 1)
    assert isinstance(task, asyncio.Task)
    books = await task
    assert len(books) == 2


@pytest.mark.asyncio
async def test_content_survives_broken_replace_regex(source_data, make_web_book, site):
    source_data["ruleContent"] = {"content": "#content@html", "replaceRegex": "##([unclosed##"}
    site.routes["http://fixture/c/5"] = '<html><body><div id="content"><p>Body text.</p></div></body></html>'
    web_book = make_web_book(BookSource.model_validate(source_data))

    content = await web_book.get_content_await(Book(book_url="http://fixture/book/1"), BookChapter(url="http://fixture/c/5"))

    assert content == "Body text."
