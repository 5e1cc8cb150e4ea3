"""Render winery pages in a shared Crawl4AI browser and return clean text."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from crawl4ai import AsyncWebCrawler, BrowserConfig, CacheMode, CrawlerRunConfig

from harvester.config import settings
from harvester.errors import NetworkFailure
from harvester.normalize import extract_image_urls, html_to_text
from harvester.rate_limit import ConcurrencyGovernor
from harvester.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

# Waits for client-side rendering, then clicks one "load more" style control.
EXPAND_SCRIPT = """
await new Promise((r) => setTimeout(r, %(settle_ms)d));
const labels = ["load more", "show all", "view all", "show more"];
const control = Array.from(document.querySelectorAll("button, a")).find(
  (el) => labels.includes((el.textContent || "").trim().toLowerCase())
);
if (control) { control.click(); }
"""


@dataclass
class RenderedPage:
    url: str
    html: str
    status_code: int | None = None


@dataclass
class CrawlResult:
    url: str
    text: str = ""
    image_urls: list[str] = field(default_factory=list)
    success: bool = False
    error: str | None = None


class BrowserPool:
    """
    One headless browser shared by every crawl in the run.

    The browser starts on first :meth:`acquire` and is started again if a
    previous :meth:`shutdown` closed it.
    """

    def __init__(self, browser_config: BrowserConfig | None = None) -> None:
        self._config = browser_config or BrowserConfig(
            headless=True,
            extra_args=["--disable-blink-features=AutomationControlled"],
        )
        self._crawler: AsyncWebCrawler | None = None
        self._start_lock = asyncio.Lock()
        self.active = 0

    async def acquire(self) -> AsyncWebCrawler:
        async with self._start_lock:
            if self._crawler is None:
                logger.info("Starting browser")
                crawler = AsyncWebCrawler(config=self._config)
                await crawler.start()
                self._crawler = crawler
        self.active += 1
        return self._crawler

    def release(self) -> None:
        self.active = max(0, self.active - 1)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncWebCrawler]:
        crawler = await self.acquire()
        try:
            yield crawler
        finally:
            self.release()

    async def shutdown(self) -> None:
        async with self._start_lock:
            if self._crawler is not None:
                if self.active:
                    logger.warning("Closing browser with %d page loads in flight", self.active)
                    self.active = 0
                logger.info("Closing browser")
                await self._crawler.close()
                self._crawler = None


class PageFetcher:
    """Governed, retried page loads returning normalized text."""

    def __init__(
        self,
        pool: BrowserPool,
        governor: ConcurrencyGovernor,
        policy: RetryPolicy,
        *,
        max_chars: int = settings.max_text_chars,
        page_timeout_ms: int = settings.page_timeout_ms,
        settle_ms: int = settings.settle_ms,
        expand_wait_ms: int = settings.expand_wait_ms,
    ) -> None:
        self.pool = pool
        self.governor = governor
        self.policy = policy
        self.max_chars = max_chars
        self._run_config = CrawlerRunConfig(
            cache_mode=CacheMode.BYPASS,
            wait_until="domcontentloaded",
            page_timeout=page_timeout_ms,
            js_code=[EXPAND_SCRIPT % {"settle_ms": settle_ms}],
            delay_before_return_html=expand_wait_ms / 1000,
        )

    async def render(self, url: str) -> RenderedPage:
        """
        Load *url* once in the shared browser.

        Does not take a governor slot; callers that already hold the
        origin's slot (the URL mapper) call this directly.

        Raises:
            NetworkFailure: on timeout, browser error, or HTTP status >= 400.
        """
        async with self.pool.session() as crawler:
            try:
                result = await crawler.arun(url=url, config=self._run_config)
            except Exception as e:
                raise NetworkFailure(f"Crawl failed for {url}: {e}", url) from e

        if not result.success:
            raise NetworkFailure(
                f"Crawl failed for {url}: {result.error_message}", url, result.status_code
            )
        if result.status_code is not None and result.status_code >= 400:
            raise NetworkFailure(
                f"Crawl failed for {url}: HTTP {result.status_code}", url, result.status_code
            )
        return RenderedPage(url=url, html=result.html or "", status_code=result.status_code)

    async def render_with_retry(self, url: str) -> RenderedPage:
        return await retry_async(
            lambda: self.render(url), label=f"crawl {url}", policy=self.policy
        )

    async def fetch(self, url: str) -> CrawlResult:
        """
        Crawl *url* under the governor and return its text and images.

        Exhausted retries are reported in the result rather than raised.
        """
        try:
            async with self.governor.slot(url):
                page = await self.render_with_retry(url)
        except NetworkFailure as e:
            logger.warning("Giving up on %s: %s", url, e)
            return CrawlResult(url=url, success=False, error=e.message)

        return CrawlResult(
            url=url,
            text=html_to_text(page.html, self.max_chars),
            image_urls=extract_image_urls(page.html, url),
            success=True,
        )


async def main() -> None:
    """CLI: crawl a URL and print the normalized text."""
    if len(sys.argv) < 2:
        print("Usage: python -m harvester.scraper <url>")
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    pool = BrowserPool()
    governor = ConcurrencyGovernor(
        settings.max_concurrent_browsers,
        settings.min_delay_between_requests,
        settings.max_delay_between_requests,
    )
    fetcher = PageFetcher(pool, governor, RetryPolicy.from_settings())
    try:
        result = await fetcher.fetch(sys.argv[1])
    finally:
        await pool.shutdown()

    if not result.success:
        print(f"Crawl failed: {result.error}")
        sys.exit(1)

    print("\n" + "=" * 60)
    print("CRAWL RESULT")
    print("=" * 60)
    print(result.text[:3000])
    if len(result.text) > 3000:
        print(f"\n... ({len(result.text)} chars total, truncated)")
    print(f"\n{len(result.image_urls)} images")


if __name__ == "__main__":
    asyncio.run(main())
