"""Bounded site crawler, rolling-batch page analysis and in-process job queues."""

from .batch import RollingBatchScheduler, run_batch
from .crawl import Crawler, crawl
from .errors import (
    AnalysisError,
    AuditCrawlerError,
    FetchError,
    JobProcessingError,
    QueueFullError,
    QueueNotFoundError,
)
from .fetch import Fetcher
from .memory_monitor import MemoryMonitor
from .models import AnalysisTask, CrawlDecision, CrawlRequest, CrawlResult, PageRecord
from .queue_manager import QueueManager
from .urls import Frontier, normalize_url

__version__ = "0.1.0"

__all__ = [
    "AnalysisError",
    "AnalysisTask",
    "AuditCrawlerError",
    "CrawlDecision",
    "CrawlRequest",
    "CrawlResult",
    "Crawler",
    "FetchError",
    "Fetcher",
    "Frontier",
    "JobProcessingError",
    "MemoryMonitor",
    "PageRecord",
    "QueueFullError",
    "QueueManager",
    "QueueNotFoundError",
    "RollingBatchScheduler",
    "crawl",
    "normalize_url",
    "run_batch",
]
