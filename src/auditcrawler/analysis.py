"""
Per-page analysis tasks run by the rolling-batch scheduler.

An analyzer is a callable taking a PageRecord and returning a JSON-able dict
(sync or async). Analyzers are registered by kind; an AnalysisTask names the
kinds to run for one stored page.
"""
from __future__ import annotations
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from .errors import AnalysisError
from .models import AnalysisTask, PageRecord
from .store import PageStore
from .urls import host_of

logger = logging.getLogger(__name__)

Analyzer = Callable[[PageRecord], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]

_WORD = re.compile(r"\w+", re.UNICODE)


def summarize_page(page: PageRecord) -> Dict[str, Any]:
    words = _WORD.findall(page.text_content)
    return {
        "url": page.url,
        "status_code": page.status_code,
        "title": page.title,
        "title_length": len(page.title),
        "meta_description": page.meta_tags.get("description", ""),
        "word_count": len(words),
        "link_count": len(page.outgoing_links),
        "image_count": len(page.images),
    }


def link_profile(page: PageRecord) -> Dict[str, Any]:
    host = host_of(page.final_url or page.url)
    internal = [link for link in page.outgoing_links if host_of(link) == host]
    return {
        "internal": len(internal),
        "external": len(page.outgoing_links) - len(internal),
        "internal_links": internal,
    }


DEFAULT_ANALYZERS: Dict[str, Analyzer] = {
    "summary": summarize_page,
    "links": link_profile,
}


class PageAnalyzer:
    """Task runner for ``RollingBatchScheduler``: loads a page, runs the requested analyzers.

    Results are cached in the store per (page, kind). A cached result is reused
    when the task has ``use_cache`` set and ``force_refresh`` unset.
    """

    def __init__(self, store: PageStore, analyzers: Optional[Dict[str, Analyzer]] = None):
        self.store = store
        self.analyzers = dict(DEFAULT_ANALYZERS if analyzers is None else analyzers)

    def register(self, kind: str, analyzer: Analyzer) -> None:
        self.analyzers[kind] = analyzer

    @property
    def kinds(self) -> Iterable[str]:
        return self.analyzers.keys()

    async def _run_kind(self, kind: str, page: PageRecord) -> Dict[str, Any]:
        result = self.analyzers[kind](page)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def __call__(self, task: AnalysisTask) -> Dict[str, Dict[str, Any]]:
        unknown = sorted(k for k in task.analysis_kinds if k not in self.analyzers)
        if unknown:
            raise AnalysisError(f"Unknown analysis kind(s): {', '.join(unknown)}")

        page = await self.store.get_page(task.page_id)
        if page is None:
            raise AnalysisError(f"Page {task.page_id} not found")
        if not page.ok:
            raise AnalysisError(f"Page {page.url} was not fetched: {page.error or page.status_code}")

        results: Dict[str, Dict[str, Any]] = {}
        for kind in sorted(task.analysis_kinds):
            if task.use_cache and not task.force_refresh:
                cached = await self.store.get_analysis(task.page_id, kind)
                if cached is not None:
                    logger.debug("Using cached %s analysis for page %s", kind, task.page_id)
                    results[kind] = cached
                    continue
            results[kind] = await self._run_kind(kind, page)
            await self.store.save_analysis(task.page_id, kind, results[kind])
        return results
