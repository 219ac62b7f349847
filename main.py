"""FastAPI application - main entry point."""
from contextlib import asynccontextmanager
from typing import List, Optional
import logging

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from config import settings
from models import Book, BookChapter
from schemas import (
    BookRequest, BookSource, ContentRequest, ContentResponse, DebugLogResponse,
    ErrorResponse, ExploreKind, ExploreRequest, SearchRequest, SearchResponse,
)
from webbook.analyze_url import HttpFetcher
from webbook.debug import debug
from webbook.errors import TemplateError, WebBookError
from webbook.script import ScriptEngine
from webbook.web_book import WebBook, shutdown_io_executor

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown_io_executor()


# Create FastAPI app
app = FastAPI(
    title="WebBook API",
    description="Run rule-driven search, info, TOC and content stages against book sources",
    version="1.0.0",
    lifespan=lifespan,
)


# ============================================================================
# Dependencies
# ============================================================================

def get_fetcher() -> Optional[HttpFetcher]:
    """HTTP fetcher for pipeline runs; None lets WebBook build its own."""
    return None


def get_script_engine() -> ScriptEngine:
    return ScriptEngine()


def make_web_book(source: BookSource, fetcher: Optional[HttpFetcher], script_engine: ScriptEngine) -> WebBook:
    return WebBook(source, fetcher=fetcher, script_engine=script_engine)


@app.exception_handler(WebBookError)
async def web_book_error_handler(request: Request, exc: WebBookError):
    """Stage failures: broken templates are the client's fault, the rest the source's."""
    status_code = 422 if isinstance(exc, TemplateError) else 502
    logger.warning(f"{request.url.path} failed with {exc.kind}: {exc}")
    payload = ErrorResponse(kind=exc.kind, message=exc.message, url=exc.url)
    return JSONResponse(status_code=status_code, content=payload.model_dump())


# ============================================================================
# Search Endpoints
# ============================================================================

@app.post("/search", response_model=SearchResponse, tags=["Search"])
async def search(
    request: SearchRequest,
    fetcher: Optional[HttpFetcher] = Depends(get_fetcher),
    script_engine: ScriptEngine = Depends(get_script_engine),
):
    """Search a source for a key; results keep document order."""
    web_book = make_web_book(request.source, fetcher, script_engine)
    items = await web_book.search_book_await(request.key, request.page)
    return SearchResponse(items=items, total=len(items))


@app.post("/explore", response_model=SearchResponse, tags=["Search"])
async def explore(
    request: ExploreRequest,
    fetcher: Optional[HttpFetcher] = Depends(get_fetcher),
    script_engine: ScriptEngine = Depends(get_script_engine),
):
    """List one catalog page of a source."""
    web_book = make_web_book(request.source, fetcher, script_engine)
    items = await web_book.explore_book_await(request.url, request.page)
    return SearchResponse(items=items, total=len(items))


@app.post("/explore/kinds", response_model=List[ExploreKind], tags=["Search"])
async def explore_kinds(source: BookSource):
    """Catalog entries a source declares."""
    return source.explore_kinds()


# ============================================================================
# Book Endpoints
# ============================================================================

@app.post("/book/info", response_model=Book, tags=["Books"])
async def book_info(
    request: BookRequest,
    fetcher: Optional[HttpFetcher] = Depends(get_fetcher),
    script_engine: ScriptEngine = Depends(get_script_engine),
):
    """Fill a book from its detail page."""
    web_book = make_web_book(request.source, fetcher, script_engine)
    return await web_book.get_book_info_await(request.book)


@app.post("/book/toc", response_model=List[BookChapter], tags=["Books"])
async def book_toc(
    request: BookRequest,
    fetcher: Optional[HttpFetcher] = Depends(get_fetcher),
    script_engine: ScriptEngine = Depends(get_script_engine),
):
    """Read the table of contents of a book."""
    web_book = make_web_book(request.source, fetcher, script_engine)
    return await web_book.get_chapter_list_await(request.book)


@app.post("/book/content", response_model=ContentResponse, tags=["Books"])
async def book_content(
    request: ContentRequest,
    fetcher: Optional[HttpFetcher] = Depends(get_fetcher),
    script_engine: ScriptEngine = Depends(get_script_engine),
):
    """Read the text of one chapter."""
    web_book = make_web_book(request.source, fetcher, script_engine)
    content = await web_book.get_content_await(request.book, request.chapter, request.next_chapter_url)
    return ContentResponse(content=content)


# ============================================================================
# Debug & Health
# ============================================================================

@app.get("/debug", response_model=DebugLogResponse, tags=["System"])
async def debug_log(source_url: str = Query(..., description="bookSourceUrl of the source")):
    """Trace lines recorded for a source by earlier runs."""
    return DebugLogResponse(source_url=source_url, lines=debug.lines(source_url))


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "webbook"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
    )
