"""
Pipeline orchestrator.

WebBook sequences request building, fetching, body transformation and
extraction for one source. Every stage is a coroutine (``*_await``) with a
launcher that runs it as a task in a TaskScope, plus a blocking variant of
the content stage.

Network calls and scripts are awaited on the event loop, so cancelling a
stage task cancels them. Rule evaluation and request building are
synchronous CPU work and run on a bounded thread pool instead.
"""
import asyncio
import functools
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Awaitable, Callable, List, Optional, TypeVar

from config import settings
from models import Book, BookChapter, SearchBook
from schemas import BookSource
from webbook.analyze_url import HttpFetcher, StrResponse, build_request
from webbook.debug import DebugRun, DebugTracer, debug
from webbook.extractors.base import book_bindings
from webbook.extractors.book_content import analyze_content, finish_content
from webbook.extractors.book_info import analyze_book_info
from webbook.extractors.book_list import analyze_book_list
from webbook.extractors.chapter_list import analyze_chapter_list
from webbook.scope import DEFAULT_SCOPE, TaskScope
from webbook.script import ScriptEngine
from webbook.transform import ContentTransformer

logger = logging.getLogger(__name__)

T = TypeVar("T")

IO_THREAD_PREFIX = "webbook-io"

_io_executor: Optional[ThreadPoolExecutor] = None
_io_executor_lock = threading.Lock()
_io_local = threading.local()


def io_executor() -> ThreadPoolExecutor:
    """Shared pool for extraction work, created on first use."""
    global _io_executor
    with _io_executor_lock:
        if _io_executor is None:
            _io_executor = ThreadPoolExecutor(
                max_workers=settings.io_workers,
                thread_name_prefix=IO_THREAD_PREFIX,
            )
        return _io_executor


def shutdown_io_executor() -> None:
    global _io_executor
    with _io_executor_lock:
        if _io_executor is not None:
            _io_executor.shutdown(wait=False, cancel_futures=True)
            _io_executor = None


def on_io_thread() -> bool:
    """True while the current thread is running pool work."""
    return getattr(_io_local, "active", False) or threading.current_thread().name.startswith(IO_THREAD_PREFIX)


def _run_marked(func: Callable[..., T]) -> T:
    _io_local.active = True
    try:
        return func()
    finally:
        _io_local.active = False


class WebBook:
    """
    Run the stages of one book source.

    Args:
        book_source: Source profile; shared read-only by every call.
        fetcher: Executes requests. Defaults to an HttpFetcher whose
            transformer uses script_engine.
        script_engine: Runs rule, URL and content scripts.
        tracer: Receives the debug trace. Defaults to the process-wide sink.
        executor: Pool for extraction work. Defaults to io_executor().
        scope: Scope the launchers start tasks in. Defaults to DEFAULT_SCOPE.
    """

    def __init__(
        self,
        book_source: BookSource,
        *,
        fetcher: Optional[HttpFetcher] = None,
        script_engine: Optional[ScriptEngine] = None,
        tracer: Optional[DebugTracer] = None,
        executor: Optional[Executor] = None,
        scope: Optional[TaskScope] = None,
    ):
        self.book_source = book_source
        self.source_url = book_source.book_source_url
        self.tracer = tracer or debug
        self.script_engine = script_engine or ScriptEngine()
        self.fetcher = fetcher or HttpFetcher(
            transformer=ContentTransformer(self.script_engine),
            tracer=self.tracer,
        )
        self.header_map = book_source.get_header_map()
        self.scope = scope or DEFAULT_SCOPE
        self._executor = executor

    @property
    def executor(self) -> Executor:
        return self._executor or io_executor()

    # Plumbing

    async def _in_pool(self, func: Callable[..., T], *args, **kwargs) -> T:
        loop = asyncio.get_running_loop()
        call = functools.partial(func, *args, **kwargs)
        return await loop.run_in_executor(self.executor, _run_marked, call)

    async def _run_stage(self, stage: str, work: Callable[[DebugRun], Awaitable[T]]) -> T:
        run = self.tracer.start_run(self.source_url, stage)
        try:
            result = await work(run)
        except asyncio.CancelledError:
            run.cancel()
            raise
        except Exception as e:
            run.fail(e)
            logger.info(f"{stage} failed for {self.source_url}: {e}")
            raise
        run.complete()
        return result

    async def _fetch(
        self,
        run: DebugRun,
        rule_url: str,
        *,
        base_url: str,
        key: Optional[str] = None,
        page: Optional[int] = None,
        book: Optional[Book] = None,
        script: Optional[str] = None,
        source_regex: Optional[str] = None,
        bindings: Optional[dict] = None,
    ) -> StrResponse:
        request = await self._in_pool(
            build_request,
            rule_url,
            base_url=base_url,
            key=key,
            page=page,
            book=book,
            header_map=self.header_map,
            script_engine=self.script_engine,
        )
        return await self.fetcher.execute(
            request,
            self.source_url,
            script=script,
            source_regex=source_regex,
            bindings=bindings,
            trace=run.log,
        )

    # Search and explore

    async def search_book_await(self, key: str, page: int = 1) -> List[SearchBook]:
        async def work(run: DebugRun) -> List[SearchBook]:
            search_url = self.book_source.search_url
            if not search_url or not search_url.strip():
                run.log("⇒ search url is empty, nothing to search")
                return []

            response = await self._fetch(run, search_url, base_url=self.source_url, key=key, page=page)
            return await self._in_pool(
                analyze_book_list,
                response.body,
                self.book_source,
                base_url=response.url,
                is_search=True,
                key=key,
                script_engine=self.script_engine,
                trace=run.log,
            )

        return await self._run_stage("search", work)

    async def explore_book_await(self, url: str, page: int = 1) -> List[SearchBook]:
        async def work(run: DebugRun) -> List[SearchBook]:
            if not url or not url.strip():
                run.log("⇒ explore url is empty, nothing to explore")
                return []

            response = await self._fetch(run, url, base_url=self.source_url, page=page)
            return await self._in_pool(
                analyze_book_list,
                response.body,
                self.book_source,
                base_url=response.url,
                is_search=False,
                script_engine=self.script_engine,
                trace=run.log,
            )

        return await self._run_stage("explore", work)

    # Book info

    async def get_book_info_await(self, book: Book) -> Book:
        """Fill book in place from its detail page and return it."""
        async def work(run: DebugRun) -> Book:
            book.apply(type=self.book_source.book_source_type)
            snapshot = book.snapshot()

            if snapshot.info_html:
                run.log("≡ using the cached detail page")
                body, base_url = snapshot.info_html, snapshot.book_url
            elif not snapshot.book_url:
                run.log("⇒ book url is empty, nothing to fetch")
                return book
            else:
                response = await self._fetch(run, snapshot.book_url, base_url=snapshot.book_url, book=snapshot)
                body, base_url = response.body, response.url

            changes = await self._in_pool(
                analyze_book_info,
                body,
                self.book_source,
                snapshot,
                base_url=base_url,
                script_engine=self.script_engine,
                trace=run.log,
            )
            if not snapshot.origin:
                changes["origin"] = self.source_url
                changes["origin_name"] = self.book_source.book_source_name
            book.apply(**changes)
            return book

        return await self._run_stage("book_info", work)

    # Table of contents

    async def get_chapter_list_await(self, book: Book) -> List[BookChapter]:
        async def work(run: DebugRun) -> List[BookChapter]:
            book.apply(type=self.book_source.book_source_type)
            snapshot = book.snapshot()
            toc_url = snapshot.toc_url

            if not toc_url:
                run.log("⇒ toc url is empty, no chapters")
                return []

            if snapshot.book_url == toc_url and snapshot.toc_html:
                run.log("≡ using the cached toc page")
                body, base_url = snapshot.toc_html, toc_url
            else:
                response = await self._fetch(run, toc_url, base_url=snapshot.book_url, book=snapshot)
                body, base_url = response.body, response.url

            page = await self._in_pool(
                analyze_chapter_list,
                body,
                self.book_source,
                snapshot,
                base_url=base_url,
                script_engine=self.script_engine,
                trace=run.log,
            )
            chapters = list(page.chapters)
            pending = list(page.next_pages)
            visited = {toc_url, base_url}
            followed = 0

            while pending:
                next_page = pending.pop(0)
                if next_page.url in visited:
                    continue
                if followed >= settings.max_next_pages:
                    run.log(f"⇒ stopped after {followed} extra toc pages")
                    break
                visited.add(next_page.url)
                followed += 1

                if next_page.reuse_parent_body and snapshot.toc_html:
                    body, base_url = snapshot.toc_html, next_page.url
                else:
                    response = await self._fetch(run, next_page.url, base_url=snapshot.book_url, book=snapshot)
                    body, base_url = response.body, response.url

                extra = await self._in_pool(
                    analyze_chapter_list,
                    body,
                    self.book_source,
                    snapshot,
                    base_url=base_url,
                    script_engine=self.script_engine,
                    trace=run.log,
                    verbose=False,
                )
                chapters.extend(extra.chapters)
                pending.extend(extra.next_pages)

            if page.reverse:
                chapters.reverse()
            chapters = [
                chapter.model_copy(update={"index": index, "book_url": snapshot.book_url})
                for index, chapter in enumerate(chapters)
            ]
            if chapters:
                book.apply(total_chapter_num=len(chapters), last_chapter=chapters[-1].title)
            run.log(f"└ {len(chapters)} chapters in total")
            return chapters

        return await self._run_stage("toc", work)

    # Content

    async def get_content_await(
        self,
        book: Book,
        chapter: BookChapter,
        next_chapter_url: Optional[str] = None,
    ) -> str:
        async def work(run: DebugRun) -> str:
            rule = self.book_source.rule_content
            if not rule.content or not rule.content.strip():
                run.log("⇒ content rule is empty, the chapter url is the content")
                return chapter.url

            snapshot = book.snapshot()
            bindings = book_bindings(snapshot, snapshot.toc_url or snapshot.book_url)
            bindings["chapter"] = chapter.model_dump(mode="json")

            if chapter.url == snapshot.book_url and snapshot.toc_html:
                run.log("≡ chapter is the book page, using the cached toc page")
                body, base_url = snapshot.toc_html, chapter.url
            elif not chapter.url:
                run.log("⇒ chapter url is empty, no content")
                return ""
            else:
                response = await self._fetch(
                    run,
                    chapter.url,
                    base_url=snapshot.toc_url or snapshot.book_url,
                    book=snapshot,
                    script=rule.web_js,
                    source_regex=rule.source_regex,
                    bindings=bindings,
                )
                body, base_url = response.body, response.url

            page = await self._in_pool(
                analyze_content,
                body,
                self.book_source,
                snapshot,
                chapter,
                base_url=base_url,
                next_chapter_url=next_chapter_url,
                script_engine=self.script_engine,
                trace=run.log,
            )
            contents = [page.content]
            pending = list(page.next_urls)
            visited = {chapter.url, base_url}
            followed = 0

            while pending:
                url = pending.pop(0)
                if url in visited:
                    continue
                if followed >= settings.max_next_pages:
                    run.log(f"⇒ stopped after {followed} extra content pages")
                    break
                visited.add(url)
                followed += 1

                response = await self._fetch(
                    run,
                    url,
                    base_url=base_url,
                    book=snapshot,
                    script=rule.web_js,
                    source_regex=rule.source_regex,
                    bindings=bindings,
                )
                extra = await self._in_pool(
                    analyze_content,
                    response.body,
                    self.book_source,
                    snapshot,
                    chapter,
                    base_url=response.url,
                    next_chapter_url=next_chapter_url,
                    script_engine=self.script_engine,
                    trace=run.log,
                    verbose=False,
                )
                contents.append(extra.content)
                pending.extend(extra.next_urls)

            content = "\n".join(text for text in contents if text)
            return await self._in_pool(
                finish_content,
                content,
                self.book_source,
                snapshot,
                chapter,
                base_url=base_url,
                script_engine=self.script_engine,
                trace=run.log,
            )

        return await self._run_stage("content", work)

    def get_content_blocking(
        self,
        book: Book,
        chapter: BookChapter,
        next_chapter_url: Optional[str] = None,
    ) -> str:
        """
        Run the content stage to completion on a private event loop.

        Raises:
            RuntimeError: when called from a pool thread or from a thread that
                is already running an event loop.
        """
        if on_io_thread():
            raise RuntimeError("get_content_blocking must not be called from an I/O pool thread")
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise RuntimeError("get_content_blocking called inside a running event loop; await get_content_await")

        return asyncio.run(self.get_content_await(book, chapter, next_chapter_url))

    # Launchers

    def _launch(self, coro, scope: Optional[TaskScope]) -> asyncio.Task:
        return (scope or self.scope).launch(coro)

    def search_book(self, key: str, page: int = 1, scope: Optional[TaskScope] = None) -> asyncio.Task:
        return self._launch(self.search_book_await(key, page), scope)

    def explore_book(self, url: str, page: int = 1, scope: Optional[TaskScope] = None) -> asyncio.Task:
        return self._launch(self.explore_book_await(url, page), scope)

    def get_book_info(self, book: Book, scope: Optional[TaskScope] = None) -> asyncio.Task:
        return self._launch(self.get_book_info_await(book), scope)

    def get_chapter_list(self, book: Book, scope: Optional[TaskScope] = None) -> asyncio.Task:
        return self._launch(self.get_chapter_list_await(book), scope)

    def get_content(
        self,
        book: Book,
        chapter: BookChapter,
        next_chapter_url: Optional[str] = None,
        scope: Optional[TaskScope] = None,
    ) -> asyncio.Task:
        return self._launch(self.get_content_await(book, chapter, next_chapter_url), scope)
