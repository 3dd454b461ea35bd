"""
Session orchestration: crawl a site into a store, analyze stored pages, and
the processors that let both run as queue jobs.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from .analysis import PageAnalyzer
from .batch import ProgressCallback, RollingBatchScheduler, TaskRunner, maybe_await
from .config import AnalysisConfig, HttpConfig
from .crawl import Crawler, PageCallback
from .fetch import Fetcher
from .models import (
    AnalysisJob,
    AnalysisTask,
    BatchProgress,
    BatchResult,
    BatchStatus,
    CrawlDecision,
    CrawlRequest,
    CrawlResult,
    ImageExtractionJob,
    Job,
    PageRecord,
    SessionStatus,
    WebScrapeJob,
)
from .queue_manager import QueueManager
from .store import PageStore

logger = logging.getLogger(__name__)

# statuses an operator sets to halt a running session
STOP_STATUSES = frozenset({SessionStatus.FAILED, SessionStatus.STOPPED})


@dataclass
class CrawlSessionResult:
    session_id: int
    status: SessionStatus
    crawl: CrawlResult
    pages_saved: int
    pages_ok: int


@dataclass
class AnalysisSessionResult:
    session_id: int
    status: SessionStatus
    batch: BatchResult


async def _operator_stopped(store: PageStore, session_id: int) -> bool:
    return await store.get_session_status(session_id) in STOP_STATUSES


async def crawl_site(
    store: PageStore,
    request: CrawlRequest,
    session_id: Optional[int] = None,
    http_config: HttpConfig | None = None,
    fetcher: Fetcher | None = None,
    on_page: Optional[PageCallback] = None,
) -> CrawlSessionResult:
    """Crawl ``request.base_url`` and save every emitted page under one session.

    The session goes pending -> running -> completed (at least one page fetched)
    or failed (none). An operator can halt the crawl by setting the session to
    failed or stopped; that status is then kept.
    """
    if session_id is None:
        session_id = await store.create_session(request.base_url, kind="crawl")
    await store.update_session_status(session_id, SessionStatus.RUNNING)
    counts = {"saved": 0, "ok": 0}
    halted = False

    async def handle_page(page: PageRecord) -> Optional[CrawlDecision]:
        nonlocal halted
        await store.save_page(session_id, page)
        counts["saved"] += 1
        if page.ok:
            counts["ok"] += 1
        if await _operator_stopped(store, session_id):
            logger.warning("Crawl session %s stopped by operator", session_id)
            halted = True
            return CrawlDecision.STOP
        if on_page is not None:
            return await maybe_await(on_page(page))
        return None

    try:
        crawler = Crawler.from_request(request, http_config=http_config, fetcher=fetcher)
        result = await crawler.crawl(handle_page)
    except Exception as e:
        logger.exception("Crawl session %s failed", session_id)
        await store.update_session_status(session_id, SessionStatus.FAILED, error=str(e), pages_count=counts["saved"])
        raise

    if halted:
        status = await store.get_session_status(session_id) or SessionStatus.STOPPED
    else:
        status = SessionStatus.COMPLETED if counts["ok"] else SessionStatus.FAILED
    await store.update_session_status(
        session_id, status, pages_count=counts["saved"], succeeded=counts["ok"], failed=counts["saved"] - counts["ok"]
    )
    logger.info("Crawl session %s %s: %d page(s) saved, %d ok", session_id, status.value, counts["saved"], counts["ok"])
    return CrawlSessionResult(session_id, status, result, counts["saved"], counts["ok"])


async def analyze_pages(
    store: PageStore,
    tasks: Iterable[AnalysisTask],
    session_id: Optional[int] = None,
    runner: Optional[TaskRunner] = None,
    concurrency_limit: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> AnalysisSessionResult:
    """Run analysis tasks as a rolling batch under an analysis session.

    Progress counts are written to the session after every settlement. The
    final status is failed only when no task succeeded.
    """
    tasks = list(tasks)
    if session_id is None:
        session_id = await store.create_session("", kind="analysis")
    await store.update_session_status(session_id, SessionStatus.RUNNING)
    runner = runner or PageAnalyzer(store)
    limit = concurrency_limit or AnalysisConfig().concurrency_limit

    async def report(progress: BatchProgress) -> None:
        await store.update_session_counts(
            session_id, pages_count=progress.total_count, succeeded=progress.succeeded, failed=progress.failed,
        )
        if on_progress is not None:
            await maybe_await(on_progress(progress))

    async def should_cancel() -> bool:
        return await _operator_stopped(store, session_id)

    scheduler = RollingBatchScheduler(runner, limit, should_cancel=should_cancel, on_progress=report)
    batch = await scheduler.run(tasks)

    if batch.cancelled:
        status = await store.get_session_status(session_id) or SessionStatus.STOPPED
    else:
        status = SessionStatus.COMPLETED if batch.status is BatchStatus.COMPLETED else SessionStatus.FAILED
    error = "; ".join(f"{f.task_id}: {f.reason}" for f in batch.failures[:10]) or None
    await store.update_session_status(
        session_id, status, error=error, pages_count=batch.total, succeeded=batch.succeeded, failed=batch.failed
    )
    logger.info("Analysis session %s %s: %d succeeded, %d failed", session_id, status.value, batch.succeeded, batch.failed)
    return AnalysisSessionResult(session_id, status, batch)


# ------------------ queue-backed work ------------------

def queued_analyzer(manager: QueueManager, queue_name: str = "content-analysis") -> TaskRunner:
    """Task runner that submits each task as an AnalysisJob and waits for its outcome.

    Admission errors and dead-lettered jobs surface as exceptions, so the
    rolling batch records them as task failures.
    """
    async def run(task: AnalysisTask) -> Any:
        job = await manager.add_job(queue_name, AnalysisJob(task=task))
        return await manager.wait_for(job)
    return run


def analysis_job_processor(analyzer: PageAnalyzer) -> Callable[[Job], Awaitable[Dict[str, Any]]]:
    async def process(job: Job) -> Dict[str, Any]:
        payload: AnalysisJob = job.payload
        return await analyzer(payload.task)
    return process


def web_scrape_processor(
    store: PageStore,
    http_config: HttpConfig | None = None,
    fetcher_factory: Optional[Callable[[], Fetcher]] = None,
) -> Callable[[Job], Awaitable[Dict[str, Any]]]:
    async def process(job: Job) -> Dict[str, Any]:
        payload: WebScrapeJob = job.payload
        request = CrawlRequest(base_url=payload.base_url, max_pages=payload.max_pages, max_depth=payload.max_depth)
        outcome = await crawl_site(
            store, request, session_id=payload.session_id, http_config=http_config,
            fetcher=fetcher_factory() if fetcher_factory else None,
        )
        return {
            "session_id": outcome.session_id,
            "status": outcome.status.value,
            "pages_visited": outcome.crawl.pages_visited,
            "termination_reason": outcome.crawl.termination_reason.value,
        }
    return process


def image_extraction_processor(fetcher: Fetcher) -> Callable[[Job], Awaitable[Dict[str, Any]]]:
    """Collect image URLs for a page, fetching it when the job carries none."""
    async def process(job: Job) -> Dict[str, Any]:
        payload: ImageExtractionJob = job.payload
        images = list(payload.image_urls)
        if not images:
            page = await fetcher.fetch(payload.page_url)
            if not page.ok:
                raise RuntimeError(page.error or f"HTTP {page.status_code}")
            images = list(page.images)
        return {"page_url": payload.page_url, "images": images}
    return process


async def create_default_queues(
    manager: QueueManager,
    store: PageStore,
    analyzer: PageAnalyzer | None = None,
    http_config: HttpConfig | None = None,
    fetcher: Fetcher | None = None,
) -> None:
    """Register the web-scraping, image-extraction and content-analysis queues with their processors."""
    analyzer = analyzer or PageAnalyzer(store)
    await manager.create_queue("web-scraping", web_scrape_processor(store, http_config), payload_type=WebScrapeJob)
    await manager.create_queue("content-analysis", analysis_job_processor(analyzer), payload_type=AnalysisJob)
    await manager.create_queue(
        "image-extraction", image_extraction_processor(fetcher or Fetcher(http_config)), payload_type=ImageExtractionJob
    )
