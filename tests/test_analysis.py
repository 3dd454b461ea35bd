import pytest
from auditcrawler.analysis import PageAnalyzer, link_profile, summarize_page
from auditcrawler.errors import AnalysisError
from auditcrawler.models import AnalysisTask, PageRecord

HOME = PageRecord(
    url="https://example.com/",
    title="Home",
    text_content="Welcome to the example shop",
    status_code=200,
    outgoing_links=("https://example.com/a", "https://other.org/x", "https://example.com/b"),
    images=("https://example.com/logo.png",),
    meta_tags={"description": "An example"},
)


class TestAnalyzers:
    def test_summary(self):
        summary = summarize_page(HOME)
        assert summary["title_length"] == 4
        assert summary["word_count"] == 5
        assert summary["link_count"] == 3
        assert summary["image_count"] == 1
        assert summary["meta_description"] == "An example"

    def test_link_profile(self):
        profile = link_profile(HOME)
        assert profile["internal"] == 2
        assert profile["external"] == 1
        assert profile["internal_links"] == ["https://example.com/a", "https://example.com/b"]


class TestPageAnalyzer:
    @pytest.mark.asyncio
    async def test_runs_requested_kinds_and_caches(self, store):
        sid = await store.create_session("https://example.com/")
        page_id = await store.save_page(sid, HOME)
        analyzer = PageAnalyzer(store)

        result = await analyzer(AnalysisTask(page_id, frozenset({"summary", "links"})))
        assert set(result) == {"summary", "links"}
        assert await store.get_analysis(page_id, "links") == result["links"]

    @pytest.mark.asyncio
    async def test_cache_versus_force_refresh(self, store):
        sid = await store.create_session("https://example.com/")
        page_id = await store.save_page(sid, HOME)
        calls = []

        def counting(page):
            calls.append(page.url)
            return {"n": len(calls)}

        analyzer = PageAnalyzer(store, {"count": counting})
        task = AnalysisTask(page_id, frozenset({"count"}))

        assert await analyzer(task) == {"count": {"n": 1}}
        assert await analyzer(task) == {"count": {"n": 1}}
        refreshed = await analyzer(AnalysisTask(page_id, frozenset({"count"}), force_refresh=True))
        assert refreshed == {"count": {"n": 2}}
        uncached = await analyzer(AnalysisTask(page_id, frozenset({"count"}), use_cache=False))
        assert uncached == {"count": {"n": 3}}

    @pytest.mark.asyncio
    async def test_async_analyzer(self, store):
        sid = await store.create_session("https://example.com/")
        page_id = await store.save_page(sid, HOME)

        async def titled(page):
            return {"title": page.title}

        analyzer = PageAnalyzer(store)
        analyzer.register("title", titled)
        assert await analyzer(AnalysisTask(page_id, frozenset({"title"}))) == {"title": {"title": "Home"}}

    @pytest.mark.asyncio
    async def test_errors(self, store):
        sid = await store.create_session("https://example.com/")
        page_id = await store.save_page(sid, HOME)
        broken_id = await store.save_page(sid, PageRecord.failure("https://example.com/x", "timed out"))
        analyzer = PageAnalyzer(store)

        with pytest.raises(AnalysisError, match="Unknown"):
            await analyzer(AnalysisTask(page_id, frozenset({"nope"})))
        with pytest.raises(AnalysisError, match="not found"):
            await analyzer(AnalysisTask(999))
        with pytest.raises(AnalysisError, match="timed out"):
            await analyzer(AnalysisTask(broken_id))
