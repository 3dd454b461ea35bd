import pytest
import pytest_asyncio
import os
import sys

# Add src to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from auditcrawler.config import HttpConfig, CrawlLimits, QueueConfig, QueueConfigStore
from auditcrawler.models import PageRecord
from auditcrawler.queue_manager import QueueManager
from auditcrawler.store import MemoryStore


class FakeFetcher:
    """Serves canned PageRecords keyed by canonical URL and records every fetch."""

    def __init__(self, site: dict):
        self.site = site
        self.fetched = []

    async def fetch(self, url, timeout=None, user_agent=None):
        self.fetched.append(url)
        page = self.site.get(url)
        if page is None:
            return PageRecord(url=url, status_code=404)
        return page

    async def aclose(self):
        pass


def page(url, *links, status=200, title=""):
    return PageRecord(url=url, title=title, text_content=f"content of {url}", status_code=status,
                      outgoing_links=tuple(links))


@pytest.fixture
def http_config():
    return HttpConfig(
        user_agent="TestBot/1.0",
        timeout=10,
        delay_between_requests=0.0,
        enable_adaptive_delay=False,
    )


@pytest.fixture
def crawl_limits():
    return CrawlLimits(
        max_pages=10,
        max_depth=None,
    )


@pytest.fixture
def example_site():
    return FakeFetcher({
        "https://example.com/": page("https://example.com/", "https://example.com/a"),
        "https://example.com/a": page("https://example.com/a", "https://example.com/b", "https://example.com/"),
        "https://example.com/b": page("https://example.com/b"),
    })


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def queue_configs():
    """Fast queue policies: no admission delay, no rate limit, no backoff."""
    store = QueueConfigStore()
    for name in ("jobs", "web-scraping", "image-extraction", "content-analysis", "seo-analysis", "performance-analysis",
                 "enterprise-queue", "pro-queue", "free-queue"):
        store.set(QueueConfig(queue_name=name, max_workers=0, max_queue_size=100, concurrency=2,
                              delay_between_jobs=0.0, retry_attempts=3, retry_delay=0.0))
    return store


@pytest_asyncio.fixture
async def manager(queue_configs):
    manager = QueueManager(queue_configs)
    yield manager
    await manager.close_all()
