#!/usr/bin/env python3
"""
Product Crawler CLI
===================
Crawl one or more shops for product-page URLs, one session per domain.

All configuration flows through ``CrawlerRunConfig``: defaults, then
``PRODUCT_CRAWLER_*`` environment variables (a ``.env`` file is loaded
first), then command-line flags.

Run with: python -m product_crawler westside.com virgio.com
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .errors import SessionExistsError
from .events import LoggingEventSink
from .registry import CrawlRegistry
from .result_store import CrawlResult, ResultStore
from .run_config import CrawlerRunConfig
from .site_profiles import supported_domains

logger = logging.getLogger(__name__)


def _load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / '.env'
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()  # tries CWD


def print_summary(domain: str, result: Optional[CrawlResult]):
    """Print one domain's crawl summary."""
    print("\n" + "=" * 65)
    print(f"CRAWL {result.status.upper() if result else 'NOT STARTED'}: {domain}")
    print("=" * 65)
    if result is None:
        print("  No result was persisted.")
        print("=" * 65)
        return
    stats = result.stats
    print(f"  Pages visited:       {stats.pages_visited}")
    print(f"  Products found:      {result.total_links}")
    if result.failed_urls:
        print(f"  Failed pages:        {len(result.failed_urls)}")
    print(f"  Total time:          {stats.duration_seconds:.1f}s")
    if stats.duration_seconds > 0:
        print(f"  Speed:               {stats.pages_visited / stats.duration_seconds:.2f} pages/sec")
    print(f"  Completed:           {'yes' if stats.completed else 'no'}")
    print(f"  Stop reason:         {result.stop_reason or result.status}")
    print("=" * 65)


async def run_crawl(cfg: CrawlerRunConfig) -> Dict[str, Optional[CrawlResult]]:
    """Crawl every configured domain; Ctrl-C stops all sessions gracefully."""
    registry = CrawlRegistry(
        driver_factory=cfg.driver_factory(),
        result_store=ResultStore(cfg.output_dir),
        options=cfg.to_registry_options(),
        session_options=cfg.to_session_options(),
        event_sink=LoggingEventSink(),
    )

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def _on_signal():
        if stop_requested.is_set():
            return
        print("\nStop requested, saving partial results...")
        stop_requested.set()
        asyncio.ensure_future(registry.stop_all())

    try:
        loop.add_signal_handler(signal.SIGINT, _on_signal)
    except NotImplementedError:
        # Windows event loops: KeyboardInterrupt still ends the run
        pass

    results: Dict[str, Optional[CrawlResult]] = {}
    async with registry:
        handles = {}
        for domain in cfg.domains:
            try:
                handle = await registry.start_session(domain)
            except SessionExistsError as e:
                logger.warning(f"Skipping {domain}: {e}")
                continue
            handles[handle.domain] = handle
        for domain, handle in handles.items():
            results[domain] = await handle.wait()
    return results


def run_cli_with_args(argv=None) -> int:
    """Parse argv, build CrawlerRunConfig, run."""
    parser = argparse.ArgumentParser(
        prog='product_crawler',
        description='Discover product-page URLs on e-commerce sites',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m product_crawler westside.com
  python -m product_crawler --all --pages 200
  python -m product_crawler nykaafashion.com --indefinite --no-new-limit 30
  python -m product_crawler shop.example.com --static --output-dir out
        """
    )
    parser.add_argument('domains', nargs='*', help='Domains to crawl (e.g. westside.com)')
    parser.add_argument('--all', action='store_true', help='Crawl every built-in shop profile')
    parser.add_argument('--pages', type=int, help='Maximum pages per domain (default: 500)')
    parser.add_argument('--indefinite', action='store_true',
                        help='Ignore --pages; stop when no new products are found')
    parser.add_argument('--no-new-limit', type=int,
                        help='Pages without new products before an indefinite crawl stops (default: 20)')
    parser.add_argument('--timeout', type=int, help='Navigation timeout in ms (default: 30000)')
    parser.add_argument('--max-duration', type=float, help='Wall-clock budget per domain in seconds')
    parser.add_argument('--depth', type=int, help='Maximum link depth from the starting pages')
    parser.add_argument('--visit-products', action='store_true',
                        help='Also visit product pages to follow their links')
    parser.add_argument('--concurrency', type=int, help='Domains crawled in parallel (default: 2)')
    parser.add_argument('--output-dir', type=str, help='Result directory (default: crawled-data)')
    parser.add_argument('--static', action='store_true',
                        help='Use requests + BeautifulSoup instead of a browser')
    parser.add_argument('--headed', action='store_true', help='Show the browser window')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.all:
        args.domains = list(dict.fromkeys(list(args.domains) + supported_domains()))
    if not args.domains:
        parser.print_usage()
        print(f"\nKnown shops: {', '.join(supported_domains())}")
        return 2

    cfg = CrawlerRunConfig.from_cli_args(args)
    cfg.log_summary()

    results = asyncio.run(run_crawl(cfg))
    for domain, result in results.items():
        print_summary(domain, result)

    failed = [d for d, r in results.items() if r is None or r.status == 'failed']
    return 1 if failed else 0


def main():
    _load_env()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )
    sys.exit(run_cli_with_args())


if __name__ == '__main__':
    main()
