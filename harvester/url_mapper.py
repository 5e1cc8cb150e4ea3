"""Discover wine, tasting and about page URLs for each winery."""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from harvester.config import CATEGORY_PATTERNS, Category, settings
from harvester.errors import FatalStartupError, NetworkFailure
from harvester.models import MappingStatus, Target, UrlMap
from harvester.rate_limit import ConcurrencyGovernor
from harvester.registry import load_targets, load_url_map, save_url_map
from harvester.retry import RetryPolicy
from harvester.scraper import BrowserPool, PageFetcher

logger = logging.getLogger(__name__)

NAV_SELECTORS = (
    "nav a",
    "header a",
    '[role="navigation"] a',
    ".nav a",
    ".menu a",
    ".navbar a",
    "#menu a",
)
MAX_FALLBACK_TEXT = 50


@dataclass
class NavLink:
    text: str
    href: str


def _origin(url: str) -> str:
    parts = urlparse(url)
    return f"{parts.scheme}://{parts.netloc}"


def collect_nav_links(html: str, page_url: str) -> list[NavLink]:
    """
    Anchors from navigation regions, or all short same-origin anchors if
    the page has no recognizable navigation.
    """
    soup = BeautifulSoup(html, "html.parser")
    origin = _origin(page_url)
    seen: set[str] = set()
    links: list[NavLink] = []

    for selector in NAV_SELECTORS:
        for a in soup.select(selector):
            href = a.get("href")
            text = a.get_text(" ", strip=True)
            if not href or not text:
                continue
            href = urljoin(page_url, href)
            if href not in seen:
                seen.add(href)
                links.append(NavLink(text=text, href=href))

    if links:
        return links

    for a in soup.find_all("a", href=True):
        text = a.get_text(" ", strip=True)
        href = urljoin(page_url, a["href"])
        if (
            text
            and len(text) < MAX_FALLBACK_TEXT
            and href not in seen
            and href.startswith(origin)
        ):
            seen.add(href)
            links.append(NavLink(text=text, href=href))
    return links


def match_links(links: list[NavLink], base_url: str) -> dict[Category, str | None]:
    """First same-origin, non-homepage link matching each category's patterns."""
    result: dict[Category, str | None] = {c: None for c in Category}
    origin = _origin(base_url)

    for category, patterns in CATEGORY_PATTERNS.items():
        for link in links:
            if not link.href.startswith(origin):
                continue
            path = urlparse(link.href).path
            if path in ("", "/"):
                continue
            if patterns.matches(link.text, path):
                result[category] = link.href
                break
    return result


class UrlMapper:
    def __init__(
        self,
        fetcher: PageFetcher,
        governor: ConcurrencyGovernor,
        client: httpx.AsyncClient,
        *,
        probe_timeout: float = settings.probe_timeout,
    ) -> None:
        self.fetcher = fetcher
        self.governor = governor
        self.client = client
        self.probe_timeout = probe_timeout

    async def probe(self, base_url: str, category: Category) -> str | None:
        """HEAD the category's conventional paths; first 2xx wins."""
        origin = _origin(base_url)
        for path in CATEGORY_PATTERNS[category].probe_paths:
            url = f"{origin}{path}"
            try:
                resp = await self.client.head(
                    url, follow_redirects=True, timeout=self.probe_timeout
                )
            except httpx.HTTPError:
                continue
            if resp.is_success:
                return url
        return None

    async def map_target(self, target: Target) -> UrlMap:
        """
        Resolve category URLs for one target.

        Network failures degrade to ``needs-manual-review``; nothing is raised.
        """
        root = target.website_url
        if not root:
            return UrlMap(status=MappingStatus.NEEDS_REVIEW)

        logger.info("[%s] Mapping %s", target.name, root)
        try:
            async with self.governor.slot(root):
                page = await self.fetcher.render_with_retry(root)
                links = collect_nav_links(page.html, root)
                matched = match_links(links, root)
                for category in Category:
                    if matched[category] is None:
                        matched[category] = await self.probe(root, category)
        except NetworkFailure as e:
            logger.warning("[%s] Mapping failed: %s", target.name, e)
            return UrlMap(website_url=root, status=MappingStatus.NEEDS_REVIEW)

        status = (
            MappingStatus.MAPPED
            if any(matched.values())
            else MappingStatus.NEEDS_REVIEW
        )
        return UrlMap(
            website_url=root,
            offerings_url=matched[Category.OFFERINGS],
            experiences_url=matched[Category.EXPERIENCES],
            profile_url=matched[Category.PROFILE],
            status=status,
        )

    async def map_all(self, targets: list[Target]) -> dict[str, UrlMap]:
        results = await asyncio.gather(*(self.map_target(t) for t in targets))
        return {t.slug: urls for t, urls in zip(targets, results)}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def select_targets(
    targets: list[Target],
    url_map: dict[str, UrlMap],
    winery: str | None = None,
    limit: int | None = None,
) -> list[Target]:
    """Targets to map: the named one, else those not yet mapped."""
    if winery:
        selected = [t for t in targets if t.slug == winery]
    else:
        selected = [
            t
            for t in targets
            if t.slug not in url_map or url_map[t.slug].status == MappingStatus.NEEDS_REVIEW
        ]
    if limit:
        selected = selected[:limit]
    return selected


async def main() -> None:
    parser = argparse.ArgumentParser(description="Map winery website sub-pages.")
    parser.add_argument("--winery", help="Only map this slug")
    parser.add_argument("--limit", type=int)
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        targets = load_targets(settings.targets_path)
        url_map = load_url_map(settings.url_map_path)
    except FatalStartupError as e:
        print(f"ERROR: {e.message}")
        sys.exit(1)

    to_map = select_targets(targets, url_map, args.winery, args.limit)
    if args.winery and not to_map:
        print(f'Winery "{args.winery}" not found in targets.')
        sys.exit(1)

    print(f"Mapping URLs for {len(to_map)} wineries...\n")

    pool = BrowserPool()
    governor = ConcurrencyGovernor(
        settings.max_concurrent_browsers,
        settings.min_delay_between_requests,
        settings.max_delay_between_requests,
    )
    fetcher = PageFetcher(pool, governor, RetryPolicy.from_settings())
    try:
        async with httpx.AsyncClient() as client:
            mapper = UrlMapper(fetcher, governor, client)
            results = await mapper.map_all(to_map)
    finally:
        await pool.shutdown()

    url_map.update(results)
    save_url_map(url_map, settings.url_map_path)

    needs_review = [s for s, u in results.items() if u.status == MappingStatus.NEEDS_REVIEW]
    print("\nURL mapping complete:")
    print(f"  Mapped: {len(results) - len(needs_review)}/{len(results)}")
    print(f"  Needs manual review: {len(needs_review)}/{len(results)}")
    print(f"\nOutput: {settings.url_map_path}")
    for slug in needs_review:
        print(f"  - {slug}: {results[slug].website_url}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
