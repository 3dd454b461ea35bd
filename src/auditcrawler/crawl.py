from __future__ import annotations
import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Union

from .config import HttpConfig, CrawlLimits
from .fetch import Fetcher
from .models import CrawlDecision, CrawlRequest, CrawlResult, CrawlState, PageRecord, TerminationReason
from .urls import Frontier, host_of, is_asset_url, normalize_url, url_depth

logger = logging.getLogger(__name__)

PageCallback = Callable[[PageRecord], Union[Optional[CrawlDecision], Awaitable[Optional[CrawlDecision]]]]


# Per-host delay tracking for adaptive politeness
class HostDelayTracker:
    def __init__(self, http_config: HttpConfig):
        self.http_config = http_config
        self.host_delays: Dict[str, float] = {}  # host -> current delay
        self.host_last_request: Dict[str, float] = {}  # host -> monotonic time of last request
        self.host_response_counts: Dict[str, Dict[int, int]] = {}  # host -> {status_code: count}

    def get_delay_for_host(self, host: str) -> float:
        return self.host_delays.get(host, self.http_config.delay_between_requests)

    def update_delay_for_host(self, host: str, status_code: int):
        """Update delay for a host based on response status."""
        cfg = self.http_config
        self.host_delays.setdefault(host, cfg.delay_between_requests)
        counts = self.host_response_counts.setdefault(host, {})
        counts[status_code] = counts.get(status_code, 0) + 1

        current_delay = self.host_delays[host]
        base = max(cfg.delay_between_requests, 0.1)
        if status_code in (429, 503, 502, 504):  # Rate limiting or server errors
            new_delay = min(max(current_delay, base) * cfg.delay_increase_factor * 2, cfg.max_delay)
        elif status_code in (0, 408, 420, 423):  # Timeout or temporary issues
            new_delay = min(max(current_delay, base) * cfg.delay_increase_factor, cfg.max_delay)
        elif 200 <= status_code < 400 and current_delay > cfg.delay_between_requests:
            new_delay = max(current_delay * cfg.delay_decrease_factor, cfg.delay_between_requests)
        else:
            return
        if new_delay != current_delay:
            self.host_delays[host] = new_delay
            logger.info("Delay for %s now %.2fs (status: %s)", host, new_delay, status_code)

    async def wait_for_host(self, host: str):
        """Wait for the appropriate delay before making a request to a host."""
        if not self.http_config.enable_adaptive_delay:
            if self.http_config.delay_between_requests > 0:
                await asyncio.sleep(self.http_config.delay_between_requests)
            return

        last_request_time = self.host_last_request.get(host)
        if last_request_time is not None:
            wait_time = self.get_delay_for_host(host) - (time.monotonic() - last_request_time)
            if wait_time > 0:
                await asyncio.sleep(wait_time)
        self.host_last_request[host] = time.monotonic()

    def get_stats(self) -> Dict[str, Dict]:
        """Get delay statistics for all hosts."""
        return {
            host: {
                "current_delay": delay,
                "response_counts": self.host_response_counts.get(host, {}),
            }
            for host, delay in self.host_delays.items()
        }


class Crawler:
    """Bounded breadth-first crawl of one site.

    State machine: IDLE -> RUNNING -> COMPLETED | CANCELLED | EXHAUSTED.

    Each fetched page (including failed fetches) is handed to the ``on_page``
    callback. Returning ``CrawlDecision.STOP`` halts the crawl immediately
    without draining the pending queue; ``None`` or ``CONTINUE`` keeps going.
    An exception raised by the callback is logged and treated as STOP.
    Links of a page are only followed once the callback has let it through.

    ``limits.max_pages`` bounds fetch attempts (failed pages count too);
    0 means no limit. ``limits.max_depth`` is an optional path-depth bound.
    """

    def __init__(
        self,
        base_url: str,
        limits: CrawlLimits | None = None,
        http_config: HttpConfig | None = None,
        fetcher: Fetcher | None = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = normalize_url(base_url)
        self.base_host = host_of(self.base_url)
        if not self.base_host:
            raise ValueError(f"Not an absolute http(s) URL: {base_url}")
        self.limits = limits or CrawlLimits()
        self.http_config = http_config or HttpConfig()
        self.user_agent = user_agent or self.http_config.user_agent
        self.timeout = timeout if timeout is not None else self.http_config.timeout
        self._fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self.delay_tracker = HostDelayTracker(self.http_config)
        self.frontier = Frontier([self.base_url])
        self.state = CrawlState.IDLE

    @classmethod
    def from_request(cls, request: CrawlRequest, http_config: HttpConfig | None = None, fetcher: Fetcher | None = None) -> "Crawler":
        limits = CrawlLimits(max_pages=request.max_pages, max_depth=request.max_depth, skip_assets=request.skip_assets)
        return cls(
            request.base_url,
            limits=limits,
            http_config=http_config,
            fetcher=fetcher,
            user_agent=request.user_agent,
            timeout=request.timeout,
        )

    def _budget_left(self) -> bool:
        max_pages = self.limits.max_pages
        return max_pages <= 0 or self.frontier.visited_count < max_pages

    def should_follow(self, url: str) -> bool:
        if host_of(url) != self.base_host:
            return False
        if self.limits.skip_assets and is_asset_url(url):
            return False
        if self.limits.max_depth is not None and url_depth(url, self.base_url) > self.limits.max_depth:
            return False
        return True

    def _offer_links(self, page: PageRecord) -> int:
        added = 0
        for link in page.outgoing_links:
            if self.should_follow(link) and self.frontier.offer(link):
                added += 1
        return added

    async def _fetch(self, fetcher: Fetcher, url: str) -> PageRecord:
        host = host_of(url)
        await self.delay_tracker.wait_for_host(host)
        try:
            page = await fetcher.fetch(url, timeout=self.timeout, user_agent=self.user_agent)
        except Exception as e:
            logger.exception("Unexpected error fetching %s", url)
            page = PageRecord.failure(url, f"{type(e).__name__}: {e}")
        self.delay_tracker.update_delay_for_host(host, page.status_code)
        return page

    @staticmethod
    async def _notify(on_page: Optional[PageCallback], page: PageRecord) -> CrawlDecision:
        if on_page is None:
            return CrawlDecision.CONTINUE
        try:
            decision = on_page(page)
            if inspect.isawaitable(decision):
                decision = await decision
        except Exception:
            logger.exception("Page callback failed for %s, stopping crawl", page.url)
            return CrawlDecision.STOP
        return CrawlDecision.STOP if decision is CrawlDecision.STOP else CrawlDecision.CONTINUE

    async def crawl(self, on_page: Optional[PageCallback] = None) -> CrawlResult:
        if self.state is not CrawlState.IDLE:
            raise RuntimeError(f"Crawler already used (state: {self.state.value})")
        self.state = CrawlState.RUNNING
        logger.info("Crawl started: %s (max_pages=%s, max_depth=%s)", self.base_url, self.limits.max_pages, self.limits.max_depth)

        fetcher = self._fetcher or Fetcher(self.http_config)
        reason: Optional[TerminationReason] = None
        try:
            while self._budget_left():
                url = self.frontier.take()
                if url is None:
                    break
                page = await self._fetch(fetcher, url)
                logger.info("[%d] %s -> %s", self.frontier.visited_count, url, page.status_code)

                if await self._notify(on_page, page) is CrawlDecision.STOP:
                    reason = TerminationReason.CANCELLED
                    break
                self._offer_links(page)
        finally:
            if self._owns_fetcher:
                await fetcher.aclose()

        if reason is TerminationReason.CANCELLED:
            self.state = CrawlState.CANCELLED
        elif self.frontier.has_pending():
            reason = TerminationReason.MAX_PAGES
            self.state = CrawlState.EXHAUSTED
        else:
            reason = TerminationReason.QUEUE_EMPTY
            self.state = CrawlState.COMPLETED

        logger.info("Crawl finished: %s, %d page(s), %s", self.base_url, self.frontier.visited_count, reason.value)
        return CrawlResult(
            pages_visited=self.frontier.visited_count,
            termination_reason=reason,
            state=self.state,
            visited=self.frontier.visited(),
            pending=self.frontier.pending(),
        )


async def crawl(request: CrawlRequest, on_page: Optional[PageCallback] = None, http_config: HttpConfig | None = None, fetcher: Fetcher | None = None) -> CrawlResult:
    """Run one crawl described by ``request``; see ``Crawler``."""
    return await Crawler.from_request(request, http_config=http_config, fetcher=fetcher).crawl(on_page)
