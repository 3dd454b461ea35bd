from __future__ import annotations
import json
import logging
import os
import random
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else None


@dataclass
class HttpConfig:
    user_agent: str = os.getenv("AUDITCRAWLER_UA", "WebAuditBot/1.0")
    timeout: float = _env_float("AUDITCRAWLER_TIMEOUT", 30.0)
    http_backend: str = os.getenv("AUDITCRAWLER_HTTP_BACKEND", "auto")
    enable_http2: bool = os.getenv("AUDITCRAWLER_HTTP2", "1") == "1"
    max_redirects: int = _env_int("AUDITCRAWLER_MAX_REDIRECTS", 5)
    # Politeness and rate limiting configuration
    delay_between_requests: float = _env_float("AUDITCRAWLER_DELAY", 0.2)
    enable_adaptive_delay: bool = os.getenv("AUDITCRAWLER_ADAPTIVE_DELAY", "1") == "1"
    max_delay: float = _env_float("AUDITCRAWLER_MAX_DELAY", 10.0)
    delay_increase_factor: float = _env_float("AUDITCRAWLER_DELAY_INCREASE", 1.5)
    delay_decrease_factor: float = _env_float("AUDITCRAWLER_DELAY_DECREASE", 0.9)

    def __post_init__(self):
        self.http_backend = (self.http_backend or "auto").lower()


@dataclass
class CrawlLimits:
    max_pages: int = _env_int("AUDITCRAWLER_MAX_PAGES", 50)
    max_depth: Optional[int] = _env_optional_int("AUDITCRAWLER_MAX_DEPTH")  # None = no depth bound
    skip_assets: bool = os.getenv("AUDITCRAWLER_SKIP_ASSETS", "1") == "1"


@dataclass
class AnalysisConfig:
    concurrency_limit: int = _env_int("AUDITCRAWLER_ANALYSIS_CONCURRENCY", 5)


# Queue names ordered from highest to lowest priority
DEFAULT_QUEUE_PRIORITY = [
    "web-scraping",
    "image-extraction",
    "content-analysis",
    "seo-analysis",
    "performance-analysis",
]


@dataclass
class MonitorConfig:
    interval: float = _env_float("AUDITCRAWLER_MONITOR_INTERVAL", 30.0)
    # Thresholds in MB, sized for an 8GB host
    warning_mb: int = _env_int("AUDITCRAWLER_MEMORY_WARNING_MB", 6144)
    critical_mb: int = _env_int("AUDITCRAWLER_MEMORY_CRITICAL_MB", 7168)
    emergency_mb: int = _env_int("AUDITCRAWLER_MEMORY_EMERGENCY_MB", 7680)
    priority: list[str] = field(default_factory=lambda: list(DEFAULT_QUEUE_PRIORITY))


@dataclass
class QueueConfig:
    """Per-queue worker, admission and retry policy.

    ``concurrency`` is the number of worker slots executing jobs at once.
    ``max_workers`` caps how many jobs may start per rate-limit window (one
    minute by default); the two knobs are independent.
    """
    queue_name: str
    max_workers: int = 5
    max_queue_size: int = 1000
    concurrency: int = 3
    delay_between_jobs: float = 0.0  # seconds a new job is held before it becomes waiting
    retry_attempts: int = 3  # total processor attempts before dead-lettering
    retry_delay: float = 5.0  # base of the exponential backoff, seconds
    is_active: bool = True
    description: str = ""


DEFAULT_QUEUE_CONFIGS: Dict[str, QueueConfig] = {
    "web-scraping": QueueConfig(
        queue_name="web-scraping",
        max_workers=5,
        max_queue_size=1000,
        concurrency=3,
        delay_between_jobs=1.0,
        retry_attempts=3,
        retry_delay=5.0,
        description="Queue for web scraping operations",
    ),
    "image-extraction": QueueConfig(
        queue_name="image-extraction",
        max_workers=3,
        max_queue_size=500,
        concurrency=2,
        delay_between_jobs=2.0,
        retry_attempts=2,
        retry_delay=3.0,
        description="Queue for image extraction and analysis",
    ),
    "content-analysis": QueueConfig(
        queue_name="content-analysis",
        max_workers=2,
        max_queue_size=300,
        concurrency=1,
        delay_between_jobs=3.0,
        retry_attempts=3,
        retry_delay=5.0,
        description="Queue for content analysis operations",
    ),
    "seo-analysis": QueueConfig(
        queue_name="seo-analysis",
        max_workers=2,
        max_queue_size=200,
        concurrency=1,
        delay_between_jobs=2.0,
        retry_attempts=2,
        retry_delay=4.0,
        description="Queue for SEO analysis operations",
    ),
    "performance-analysis": QueueConfig(
        queue_name="performance-analysis",
        max_workers=1,
        max_queue_size=100,
        concurrency=1,
        delay_between_jobs=5.0,
        retry_attempts=2,
        retry_delay=6.0,
        description="Queue for performance analysis operations",
    ),
}

_QUEUE_CONFIG_KEYS = {
    # camelCase keys used by the external configuration table
    "maxWorkers": "max_workers",
    "maxQueueSize": "max_queue_size",
    "delayBetweenJobs": "delay_between_jobs",
    "retryAttempts": "retry_attempts",
    "retryDelay": "retry_delay",
    "isActive": "is_active",
}


# Plan tiers from highest to lowest priority; each tier has its own queue
PLAN_TIERS = ["enterprise", "pro", "free"]
TIER_CONCURRENCY = {"enterprise": 5, "pro": 3, "free": 1}


def tier_for_plan(plan: Optional[str]) -> str:
    """Map a plan name such as ``pro_monthly`` to its tier; unknown plans are free."""
    normalized = (plan or "").lower()
    for tier in PLAN_TIERS:
        if tier in normalized:
            return tier
    return "free"


def tier_queue_name(tier: str) -> str:
    return f"{tier}-queue"


def default_queue_config(queue_name: str) -> QueueConfig:
    """Hardcoded default for a queue; unknown queues borrow the web-scraping policy."""
    base = DEFAULT_QUEUE_CONFIGS.get(queue_name) or DEFAULT_QUEUE_CONFIGS["web-scraping"]
    return replace(base, queue_name=queue_name)


def queue_config_from_dict(queue_name: str, data: dict) -> QueueConfig:
    values = asdict(default_queue_config(queue_name))
    for key, value in data.items():
        key = _QUEUE_CONFIG_KEYS.get(key, key)
        if key in values and key != "queue_name":
            values[key] = value
    return QueueConfig(**values)


class QueueConfigStore:
    """External, read-mostly source of queue configuration.

    The queue manager reads from here before every admission decision. When no
    override exists for a queue the hardcoded default is returned.
    """

    def __init__(self, overrides: Optional[Dict[str, QueueConfig]] = None):
        self._overrides: Dict[str, QueueConfig] = dict(overrides or {})

    def get(self, queue_name: str) -> QueueConfig:
        config = self._overrides.get(queue_name)
        if config is None:
            return default_queue_config(queue_name)
        return config

    def set(self, config: QueueConfig) -> None:
        self._overrides[config.queue_name] = config

    def update(self, queue_name: str, **changes) -> QueueConfig:
        """Apply a partial update, mirroring edits made by an operator."""
        config = replace(self.get(queue_name), **changes)
        self._overrides[queue_name] = config
        logger.info("Queue config updated for %s", queue_name)
        return config

    def all(self) -> list[QueueConfig]:
        names = sorted(set(DEFAULT_QUEUE_CONFIGS) | set(self._overrides))
        return [self.get(name) for name in names]


def load_queue_configs(path: Optional[str] = None) -> QueueConfigStore:
    """Build a QueueConfigStore from a JSON file of ``{queue_name: {...}}``.

    Falls back to the defaults when the file is missing or unreadable.
    """
    path = path or os.getenv("AUDITCRAWLER_QUEUE_CONFIG", "")
    if not path:
        return QueueConfigStore()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Queue config %s unavailable (%s), using defaults", path, e)
        return QueueConfigStore()
    return QueueConfigStore({name: queue_config_from_dict(name, data) for name, data in raw.items()})


# User agent strings for different scenarios
USER_AGENTS = {
    "default": "WebAuditBot/1.0",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "firefox": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "safari": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "mobile": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
}


def get_user_agent(ua_type: str = "default") -> str:
    """Get a user agent string by type or return a random one if 'random' is specified."""
    if ua_type == "random":
        return random.choice(list(USER_AGENTS.values()))
    return USER_AGENTS.get(ua_type, USER_AGENTS["default"])
