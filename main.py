import argparse, asyncio, logging, os, sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from auditcrawler.analysis import PageAnalyzer
from auditcrawler.config import AnalysisConfig, CrawlLimits, HttpConfig, MonitorConfig, get_user_agent, load_queue_configs
from auditcrawler.fetch import Fetcher
from auditcrawler.memory_monitor import MemoryMonitor
from auditcrawler.models import AnalysisTask, CrawlRequest
from auditcrawler.queue_manager import QueueManager
from auditcrawler.service import analyze_pages, crawl_site, create_default_queues, queued_analyzer
from auditcrawler.store import SQLiteStore


async def run(args, http_config: HttpConfig, request: CrawlRequest) -> int:
    store = SQLiteStore(args.db)
    await store.init()

    async with Fetcher(http_config) as fetcher:
        outcome = await crawl_site(store, request, http_config=http_config, fetcher=fetcher)
    crawl = outcome.crawl
    print(f"\nCrawl session {outcome.session_id}: {outcome.status.value}")
    print(f"  Pages visited: {crawl.pages_visited} ({outcome.pages_ok} ok)")
    print(f"  Termination: {crawl.termination_reason.value}")
    print(f"  Still pending: {len(crawl.pending)}")

    if not args.analyze:
        return 0 if outcome.pages_ok else 1

    kinds = frozenset(k.strip() for k in args.analysis_kinds.split(",") if k.strip())
    page_ids = await store.list_page_ids(outcome.session_id)
    tasks = [AnalysisTask(page_id=pid, analysis_kinds=kinds, force_refresh=args.force_refresh) for pid in page_ids]

    def show_progress(progress):
        if args.verbose:
            print(f"  analyzed {progress.completed_count}/{progress.total_count} ({progress.failed} failed)")

    manager = monitor = None
    runner = PageAnalyzer(store)
    if args.via_queue:
        manager = QueueManager(load_queue_configs())
        await create_default_queues(manager, store, analyzer=runner, http_config=http_config)
        monitor = MemoryMonitor(manager, MonitorConfig())
        monitor.start()
        runner = queued_analyzer(manager)
    try:
        analysis = await analyze_pages(
            store, tasks, runner=runner,
            concurrency_limit=args.analysis_concurrency, on_progress=show_progress,
        )
    finally:
        if monitor is not None:
            await monitor.stop()
        if manager is not None:
            await manager.close_all()

    batch = analysis.batch
    print(f"\nAnalysis session {analysis.session_id}: {analysis.status.value}")
    print(f"  Succeeded: {batch.succeeded}")
    print(f"  Failed: {batch.failed}")
    for failure in batch.failures[:10]:
        print(f"    page {failure.task_id}: {failure.reason}")
    if batch.not_run:
        print(f"  Not run: {len(batch.not_run)}")
    return 0 if batch.succeeded or not batch.total else 1


if __name__ == "__main__":
    p = argparse.ArgumentParser(
        description="Bounded site crawler with rolling-batch page analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s https://example.com
  %(prog)s https://example.com --max-pages 20 --analyze
  %(prog)s https://example.com --user-agent chrome --delay 0.5
  %(prog)s https://example.com --analyze --via-queue --analysis-kinds summary,links
        """
    )

    p.add_argument("start", help="Base URL to crawl")

    # Crawling behavior
    p.add_argument("--max-pages", type=int, default=None,
                   help="Maximum pages to fetch, failed fetches included (default: 50, 0 = no limit)")
    p.add_argument("--max-depth", type=int, default=None,
                   help="Maximum path depth relative to the base URL (default: no limit)")
    p.add_argument("--include-assets", action="store_true",
                   help="Follow links to images, documents and other non-HTML assets")

    # User agent options
    p.add_argument("--user-agent", choices=["default", "chrome", "firefox", "safari", "mobile", "random"],
                   default="default", help="User agent type to use (default: default)")
    p.add_argument("--custom-ua", type=str,
                   help="Custom user agent string (overrides --user-agent)")

    # HTTP configuration
    p.add_argument("--timeout", type=float, default=None,
                   help="Request timeout in seconds (default: 30)")
    p.add_argument("--delay", type=float, default=None,
                   help="Delay between requests in seconds (default: 0.2)")
    p.add_argument("--no-adaptive-delay", action="store_true",
                   help="Disable adaptive delay (use fixed delay only)")
    p.add_argument("--no-http2", action="store_true",
                   help="Disable HTTP/2 support (use HTTP/1.1)")
    p.add_argument("--http-backend", choices=["auto", "httpx", "aiohttp"], default=None,
                   help="HTTP client backend (default: auto = httpx)")

    # Analysis
    p.add_argument("--analyze", action="store_true",
                   help="Analyze the crawled pages once the crawl finishes")
    p.add_argument("--analysis-kinds", type=str, default="summary",
                   help="Comma-separated analysis kinds (default: summary; available: summary, links)")
    p.add_argument("--analysis-concurrency", type=int, default=None,
                   help="Analysis tasks in flight at once (default: 5)")
    p.add_argument("--force-refresh", action="store_true",
                   help="Ignore cached analysis results")
    p.add_argument("--via-queue", action="store_true",
                   help="Run analysis tasks as jobs on the content-analysis queue, with memory monitoring")

    # Storage and output
    p.add_argument("--db", type=str, default="auditcrawler.db",
                   help="SQLite database file (default: auditcrawler.db)")
    p.add_argument("--verbose", "-v", action="store_true",
                   help="Enable verbose output")

    args = p.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    default_http_cfg = HttpConfig()
    http_config = HttpConfig(
        user_agent=args.custom_ua if args.custom_ua else get_user_agent(args.user_agent),
        timeout=args.timeout if args.timeout is not None else default_http_cfg.timeout,
        http_backend=args.http_backend or default_http_cfg.http_backend,
        enable_http2=not args.no_http2,
        delay_between_requests=args.delay if args.delay is not None else default_http_cfg.delay_between_requests,
        enable_adaptive_delay=not args.no_adaptive_delay,
    )
    limits = CrawlLimits(
        max_pages=args.max_pages if args.max_pages is not None else CrawlLimits().max_pages,
        max_depth=args.max_depth,
        skip_assets=not args.include_assets,
    )
    request = CrawlRequest(
        base_url=args.start,
        max_pages=limits.max_pages,
        max_depth=limits.max_depth,
        user_agent=http_config.user_agent,
        timeout=http_config.timeout,
        skip_assets=limits.skip_assets,
    )
    if args.analysis_concurrency is None:
        args.analysis_concurrency = AnalysisConfig().concurrency_limit

    if args.verbose:
        print(f"Starting crawl with configuration:")
        print(f"  Start URL: {args.start}")
        print(f"  SQLite Database: {args.db}")
        print(f"  User Agent: {http_config.user_agent}")
        print(f"  Max Pages: {limits.max_pages}")
        print(f"  Max Depth: {limits.max_depth}")
        print(f"  Timeout: {http_config.timeout}s")
        print(f"  Delay: {http_config.delay_between_requests}s")
        print(f"  HTTP Backend: {http_config.http_backend}")
        print(f"  HTTP/2 Support: {http_config.enable_http2}")
        print(f"  Adaptive Delay: {http_config.enable_adaptive_delay}")
        print(f"  Analyze: {args.analyze} (concurrency {args.analysis_concurrency}, via queue: {args.via_queue})")
        print()

    sys.exit(asyncio.run(run(args, http_config, request)))
