"""
Data records shared by the crawler, the rolling-batch scheduler and the queue manager.
"""
from __future__ import annotations
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union


# ------------------ crawl ------------------

@dataclass(frozen=True)
class PageRecord:
    url: str
    title: str = ""
    text_content: str = ""
    raw_document: str = ""
    status_code: int = 0
    outgoing_links: tuple[str, ...] = ()
    images: tuple[str, ...] = ()
    meta_tags: Dict[str, str] = field(default_factory=dict)
    final_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code != 0 and self.error is None

    @classmethod
    def failure(cls, url: str, error: str) -> "PageRecord":
        return cls(url=url, status_code=0, error=error)


class CrawlDecision(Enum):
    CONTINUE = "continue"
    STOP = "stop"


class CrawlState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


class TerminationReason(Enum):
    QUEUE_EMPTY = "queue_empty"
    MAX_PAGES = "max_pages"
    CANCELLED = "cancelled"


@dataclass
class CrawlRequest:
    base_url: str
    max_pages: int = 50
    max_depth: Optional[int] = None
    user_agent: Optional[str] = None
    timeout: Optional[float] = None  # seconds
    skip_assets: bool = True


@dataclass
class CrawlResult:
    pages_visited: int
    termination_reason: TerminationReason
    state: CrawlState
    visited: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


# ------------------ analysis ------------------

@dataclass(frozen=True)
class AnalysisTask:
    page_id: Any
    analysis_kinds: FrozenSet[str] = frozenset({"summary"})
    use_cache: bool = True
    force_refresh: bool = False

    @property
    def task_id(self) -> str:
        return str(self.page_id)


@dataclass(frozen=True)
class TaskFailure:
    task_id: str
    reason: str


class BatchStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BatchResult:
    total: int
    succeeded: int = 0
    failed: int = 0
    failures: List[TaskFailure] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    not_run: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def completed_count(self) -> int:
        return self.succeeded + self.failed

    @property
    def status(self) -> BatchStatus:
        # failed is reserved for "no progress at all"
        if self.total and self.succeeded == 0:
            return BatchStatus.FAILED
        return BatchStatus.COMPLETED


@dataclass(frozen=True)
class BatchProgress:
    completed_count: int
    total_count: int
    succeeded: int
    failed: int


# ------------------ queue ------------------

class JobState(str, Enum):
    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass(frozen=True)
class WebScrapeJob:
    base_url: str
    max_pages: int = 50
    max_depth: Optional[int] = None
    session_id: Optional[Any] = None


@dataclass(frozen=True)
class AnalysisJob:
    task: AnalysisTask
    session_id: Optional[Any] = None


@dataclass(frozen=True)
class ImageExtractionJob:
    page_url: str
    image_urls: tuple[str, ...] = ()


JobPayload = Union[WebScrapeJob, AnalysisJob, ImageExtractionJob]


@dataclass(eq=False)
class Job:
    queue_name: str
    payload: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempt: int = 0
    max_attempts: int = 1
    state: JobState = JobState.WAITING
    result: Any = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()


@dataclass(frozen=True)
class QueueStats:
    queue_name: str
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool = False
    workers: int = 0  # configured worker slots
    concurrency: int = 0  # slots currently allowed to run

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


# ------------------ memory ------------------

class ThresholdLevel(Enum):
    OK = 0
    WARNING = 1
    CRITICAL = 2
    EMERGENCY = 3


@dataclass(frozen=True)
class MemorySnapshot:
    per_queue_estimate_mb: Dict[str, int]
    total_estimate_mb: int
    threshold_level: ThresholdLevel
    taken_at: float = field(default_factory=time.time)
