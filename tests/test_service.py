import asyncio
import pytest
from auditcrawler.analysis import PageAnalyzer
from auditcrawler.errors import JobProcessingError
from auditcrawler.models import (
    AnalysisJob,
    AnalysisTask,
    CrawlDecision,
    CrawlRequest,
    ImageExtractionJob,
    PageRecord,
    SessionStatus,
    TerminationReason,
    WebScrapeJob,
)
from auditcrawler.service import (
    analysis_job_processor,
    analyze_pages,
    crawl_site,
    image_extraction_processor,
    queued_analyzer,
    web_scrape_processor,
)
from conftest import FakeFetcher, page


async def stored_pages(store, *records):
    sid = await store.create_session("https://example.com/")
    return [await store.save_page(sid, r) for r in records]


class TestCrawlSite:
    @pytest.mark.asyncio
    async def test_completed_session(self, store, example_site, http_config):
        outcome = await crawl_site(store, CrawlRequest(base_url="https://example.com/"), http_config=http_config,
                                   fetcher=example_site)

        assert outcome.status is SessionStatus.COMPLETED
        assert outcome.pages_saved == 3
        assert outcome.pages_ok == 3
        session = await store.get_session(outcome.session_id)
        assert session["status"] is SessionStatus.COMPLETED
        assert session["pages_count"] == 3
        assert len(await store.list_page_ids(outcome.session_id)) == 3

    @pytest.mark.asyncio
    async def test_no_successful_page_fails_session(self, store, http_config):
        site = FakeFetcher({"https://example.com/": PageRecord.failure("https://example.com/", "connection refused")})
        outcome = await crawl_site(store, CrawlRequest(base_url="https://example.com/"), http_config=http_config,
                                   fetcher=site)

        assert outcome.status is SessionStatus.FAILED
        assert outcome.pages_saved == 1
        assert (await store.get_session(outcome.session_id))["failed"] == 1

    @pytest.mark.asyncio
    async def test_operator_stop_is_kept(self, store, example_site, http_config):
        sid = await store.create_session("https://example.com/")

        async def on_page(record):
            await store.update_session_status(sid, SessionStatus.STOPPED)

        outcome = await crawl_site(store, CrawlRequest(base_url="https://example.com/"), session_id=sid,
                                   http_config=http_config, fetcher=example_site, on_page=on_page)

        # the stop is seen when the next page is saved
        assert outcome.status is SessionStatus.STOPPED
        assert outcome.crawl.termination_reason is TerminationReason.CANCELLED
        assert outcome.pages_saved == 2
        assert await store.get_session_status(sid) is SessionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_callback_can_stop(self, store, example_site, http_config):
        outcome = await crawl_site(store, CrawlRequest(base_url="https://example.com/"), http_config=http_config,
                                   fetcher=example_site, on_page=lambda record: CrawlDecision.STOP)

        assert outcome.pages_saved == 1
        assert outcome.status is SessionStatus.COMPLETED


class TestAnalyzePages:
    @pytest.mark.asyncio
    async def test_partial_failure_is_completed(self, store):
        ids = await stored_pages(store, page("https://example.com/"), page("https://example.com/a"),
                                 PageRecord.failure("https://example.com/b", "timed out"))
        seen = []

        outcome = await analyze_pages(store, [AnalysisTask(i) for i in ids], concurrency_limit=2,
                                      on_progress=seen.append)

        assert outcome.status is SessionStatus.COMPLETED
        assert outcome.batch.succeeded == 2
        assert outcome.batch.failed == 1
        assert sorted(p.completed_count for p in seen) == [1, 2, 3]
        session = await store.get_session(outcome.session_id)
        assert session["kind"] == "analysis"
        assert session["succeeded"] == 2
        assert "timed out" in session["error"]

    @pytest.mark.asyncio
    async def test_all_failures_fail_session(self, store):
        outcome = await analyze_pages(store, [AnalysisTask(998), AnalysisTask(999)])

        assert outcome.status is SessionStatus.FAILED
        assert outcome.batch.failed == 2

    @pytest.mark.asyncio
    async def test_empty_batch_is_completed(self, store):
        outcome = await analyze_pages(store, [])
        assert outcome.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_operator_stop_cancels_remaining(self, store):
        ids = await stored_pages(store, *[page(f"https://example.com/p{i}") for i in range(6)])
        sid = await store.create_session("", kind="analysis")

        async def runner(task):
            if task.page_id == ids[1]:
                await store.update_session_status(sid, SessionStatus.FAILED)
            return {}

        outcome = await analyze_pages(store, [AnalysisTask(i) for i in ids], session_id=sid, runner=runner,
                                      concurrency_limit=1)

        assert outcome.status is SessionStatus.FAILED
        assert outcome.batch.cancelled
        assert outcome.batch.succeeded == 2
        assert len(outcome.batch.not_run) == 4


class TestQueueBackedWork:
    @pytest.mark.asyncio
    async def test_queued_analyzer(self, store, manager):
        ids = await stored_pages(store, page("https://example.com/", title="Home"),
                                 PageRecord.failure("https://example.com/x", "timed out"))
        await manager.create_queue("content-analysis", analysis_job_processor(PageAnalyzer(store)),
                                   payload_type=AnalysisJob)

        runner = queued_analyzer(manager)
        result = await runner(AnalysisTask(ids[0]))
        assert result["summary"]["title"] == "Home"
        with pytest.raises(JobProcessingError):
            await runner(AnalysisTask(ids[1]))

    @pytest.mark.asyncio
    async def test_analyze_pages_through_queue(self, store, manager):
        ids = await stored_pages(store, page("https://example.com/"), page("https://example.com/a"))
        await manager.create_queue("content-analysis", analysis_job_processor(PageAnalyzer(store)),
                                   payload_type=AnalysisJob)

        outcome = await analyze_pages(store, [AnalysisTask(i) for i in ids], runner=queued_analyzer(manager))

        assert outcome.status is SessionStatus.COMPLETED
        assert outcome.batch.succeeded == 2
        assert manager.get_stats("content-analysis").completed == 2

    @pytest.mark.asyncio
    async def test_web_scrape_job(self, store, manager, example_site, http_config):
        await manager.create_queue("web-scraping", web_scrape_processor(store, http_config, lambda: example_site),
                                   payload_type=WebScrapeJob)

        job = await manager.add_job("web-scraping", WebScrapeJob(base_url="https://example.com/", max_pages=2))
        result = await asyncio.wait_for(manager.wait_for(job), timeout=5)

        assert result["status"] == "completed"
        assert result["pages_visited"] == 2
        assert result["termination_reason"] == "max_pages"
        assert len(await store.list_page_ids(result["session_id"])) == 2

    @pytest.mark.asyncio
    async def test_image_extraction_job(self, manager):
        site = FakeFetcher({
            "https://example.com/": PageRecord(url="https://example.com/", status_code=200,
                                               images=("https://example.com/logo.png",)),
        })
        await manager.create_queue("image-extraction", image_extraction_processor(site),
                                   payload_type=ImageExtractionJob)

        fetched = await manager.wait_for(await manager.add_job("image-extraction",
                                                               ImageExtractionJob("https://example.com/")))
        given = await manager.wait_for(await manager.add_job(
            "image-extraction", ImageExtractionJob("https://example.com/a", ("https://example.com/b.png",))))

        assert fetched["images"] == ["https://example.com/logo.png"]
        assert given["images"] == ["https://example.com/b.png"]
        assert site.fetched == ["https://example.com/"]
