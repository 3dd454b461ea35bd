"""
Exception taxonomy for the crawler, scheduler and queue manager.
"""
from __future__ import annotations
from typing import Optional


class AuditCrawlerError(Exception):
    """Base class for all errors raised by auditcrawler."""


class FetchError(AuditCrawlerError):
    """Network-layer failure for one URL. Never escapes the Fetcher."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.message = message


class QueueNotFoundError(AuditCrawlerError):
    def __init__(self, queue_name: str):
        super().__init__(f"Queue '{queue_name}' not found")
        self.queue_name = queue_name


class QueueFullError(AuditCrawlerError):
    def __init__(self, queue_name: str, max_queue_size: int):
        super().__init__(f"Queue '{queue_name}' is full ({max_queue_size} jobs)")
        self.queue_name = queue_name
        self.max_queue_size = max_queue_size


class JobProcessingError(AuditCrawlerError):
    """A job exhausted its attempts (or was removed) without producing a result."""

    def __init__(self, job_id: str, queue_name: str, attempts: int, reason: Optional[str]):
        super().__init__(f"Job {job_id} in queue '{queue_name}' failed after {attempts} attempt(s): {reason}")
        self.job_id = job_id
        self.queue_name = queue_name
        self.attempts = attempts
        self.reason = reason


class AnalysisError(AuditCrawlerError):
    """Raised by an analysis task; converted into a TaskFailure by the scheduler."""
