"""Full harvest pipeline: crawl wineries, extract via LLM, validate, save to MongoDB."""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from harvester.config import settings
from harvester.db import MongoStore, close_db
from harvester.errors import ExtractionError, FatalStartupError, HarvestError
from harvester.extractor import Extractor
from harvester.llm import LLMClient, UsageTracker
from harvester.models import (
    ExtractionResult,
    MappingStatus,
    RunStatus,
    Target,
    UrlMap,
    empty_profile,
)
from harvester.rate_limit import ConcurrencyGovernor
from harvester.registry import attach_url_maps, load_targets, load_url_map
from harvester.retry import RetryPolicy
from harvester.scraper import BrowserPool, CrawlResult, PageFetcher
from harvester.validate import run_status, validate_coordinates, validate_extraction
from harvester.writer import IngestionWriter

logger = logging.getLogger(__name__)


@dataclass
class PipelineOptions:
    winery: str | None = None
    limit: int | None = None
    dry_run: bool = False
    force: bool = False
    batch_size: int = settings.batch_size
    only_unscraped: bool = False


@dataclass
class TargetOutcome:
    slug: str
    status: RunStatus
    offerings: int = 0
    experiences: int = 0
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Crawl + extract
# ---------------------------------------------------------------------------


class PageCache:
    """Crawl results for one target, so the homepage is loaded at most once."""

    def __init__(self, fetcher: PageFetcher) -> None:
        self.fetcher = fetcher
        self._pages: dict[str, CrawlResult] = {}

    async def get(self, url: str) -> CrawlResult:
        if url not in self._pages:
            self._pages[url] = await self.fetcher.fetch(url)
        return self._pages[url]

    def image_urls(self) -> list[str]:
        seen: dict[str, None] = {}
        for page in self._pages.values():
            for url in page.image_urls:
                seen.setdefault(url, None)
        return list(seen)


async def extract_target(
    target: Target, fetcher: PageFetcher, extractor: Extractor
) -> ExtractionResult:
    """
    Crawl a winery's mapped pages and run the three extractions.

    - Wines come from the offerings page, or the homepage when unmapped.
    - Tastings come from the experiences page.
    - Winery info comes from the profile page plus the homepage.

    Crawl and extraction failures are collected in ``errors``; nothing here
    raises for a single bad page.
    """
    urls = target.urls or UrlMap(website_url=target.website_url)
    home = urls.website_url or target.website_url
    pages = PageCache(fetcher)
    result = ExtractionResult(slug=target.slug)

    logger.info("--- Extracting: %s (%s) ---", target.name, target.slug)

    offerings_text = ""
    if urls.offerings_url:
        crawl = await pages.get(urls.offerings_url)
        if crawl.success:
            offerings_text = crawl.text
            result.offerings_url = urls.offerings_url
        else:
            result.errors.append(f"Failed to crawl wines page: {crawl.error}")
    elif home:
        logger.info("[%s] No wines URL, crawling homepage: %s", target.name, home)
        crawl = await pages.get(home)
        if crawl.success:
            offerings_text = crawl.text
            result.offerings_url = home

    experiences_text = ""
    if urls.experiences_url:
        crawl = await pages.get(urls.experiences_url)
        if crawl.success:
            experiences_text = crawl.text
            result.experiences_url = urls.experiences_url
        else:
            result.errors.append(f"Failed to crawl tastings page: {crawl.error}")

    profile_parts: list[str] = []
    if urls.profile_url:
        crawl = await pages.get(urls.profile_url)
        if crawl.success:
            profile_parts.append(crawl.text)
            result.profile_url = urls.profile_url
    if home and home != urls.profile_url:
        crawl = await pages.get(home)
        if crawl.success:
            profile_parts.append(crawl.text)
    profile_text = "\n\n---\n\n".join(profile_parts)

    result.image_urls = pages.image_urls()

    offerings, experiences, profile = await asyncio.gather(
        _guarded("Wine", extractor.extract_offerings(target.name, offerings_text), result),
        _guarded("Tasting", extractor.extract_experiences(target.name, experiences_text), result),
        _guarded("Info", extractor.extract_profile(target.name, profile_text), result),
    )
    result.offerings = offerings or []
    result.experiences = experiences or []
    result.profile = profile or empty_profile()

    logger.info(
        "[%s] Found %d wines, %d tastings",
        target.name,
        len(result.offerings),
        len(result.experiences),
    )
    return result


async def _guarded(label: str, call, result: ExtractionResult):
    try:
        return await call
    except ExtractionError as e:
        result.errors.append(f"{label} extraction failed: {e.message}")
        return None


async def process_target(
    target: Target,
    fetcher: PageFetcher,
    extractor: Extractor,
    writer: IngestionWriter | None,
    options: PipelineOptions,
) -> TargetOutcome:
    """Extract, validate and write one target; its failures end up in the outcome."""
    try:
        extraction = await extract_target(target, fetcher, extractor)
    except Exception as e:
        logger.exception("[%s] Unexpected error during extraction", target.name)
        extraction = ExtractionResult(slug=target.slug, errors=[f"Unexpected error: {e}"])

    validation = validate_extraction(extraction)
    for warning in validation.warnings:
        logger.warning("[%s] %s", target.name, warning)
    if not validate_coordinates(target.lat, target.lng):
        logger.warning("[%s] Coordinates outside region: %s, %s", target.name, target.lat, target.lng)

    status = run_status(extraction, validation)
    errors = extraction.errors + validation.errors

    if options.dry_run:
        logger.info(
            "[%s] [DRY RUN] Would write: %d wines, %d tastings",
            target.name,
            len(validation.offerings),
            len(validation.experiences),
        )
    elif writer is not None:
        try:
            log = await writer.write(target, extraction, validation, status, force=options.force)
        except HarvestError as e:
            logger.error("[%s] %s", target.name, e.message)
            status = RunStatus.FAILED
            errors.append(e.message)
        else:
            status = log.status
            if status == RunStatus.FAILED and log.error_message:
                errors = [log.error_message]

    return TargetOutcome(
        slug=target.slug,
        status=status,
        offerings=len(validation.offerings),
        experiences=len(validation.experiences),
        errors=errors,
    )


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------


def filter_targets(
    targets: list[Target],
    options: PipelineOptions,
    scraped: set[str] | None = None,
) -> list[Target]:
    """
    Targets to process, in rank order.

    Only targets with a URL mapping are kept. ``scraped`` holds slugs to skip
    for ``--only-unscraped``; ``--force`` disables that filter.
    """
    selected = targets
    if options.winery:
        selected = [t for t in selected if t.slug == options.winery]
    if options.limit:
        selected = selected[: options.limit]
    selected = [t for t in selected if t.urls is not None]
    if options.only_unscraped and scraped and not options.force:
        before = len(selected)
        selected = [t for t in selected if t.slug not in scraped]
        logger.info(
            "--only-unscraped: filtered %d -> %d (skipped %d already-scraped)",
            before,
            len(selected),
            before - len(selected),
        )
    return selected


async def run_pipeline(
    targets: list[Target],
    fetcher: PageFetcher,
    extractor: Extractor,
    writer: IngestionWriter | None,
    options: PipelineOptions,
) -> list[TargetOutcome]:
    """Process *targets* in batches; targets in a batch run concurrently."""
    outcomes: list[TargetOutcome] = []
    batch_size = max(1, options.batch_size)

    for start in range(0, len(targets), batch_size):
        batch = targets[start : start + batch_size]
        logger.info("=== Batch %d (%d wineries) ===", start // batch_size + 1, len(batch))
        results = await asyncio.gather(
            *(process_target(t, fetcher, extractor, writer, options) for t in batch),
            return_exceptions=True,
        )
        for target, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error("[%s] ERROR: %s", target.name, result)
                result = TargetOutcome(target.slug, RunStatus.FAILED, errors=[str(result)])
            outcomes.append(result)

    return outcomes


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def show_status() -> None:
    print("=== Harvester Status ===\n")

    targets_path = Path(settings.targets_path)
    if targets_path.exists():
        targets = load_targets(targets_path)
        print(f"Winery targets: {len(targets)}")
        print(f"  Top 5: {', '.join(t.name for t in targets[:5])}")
    else:
        print("Winery targets: NOT BUILT (run harvester-registry first)")

    if Path(settings.url_map_path).exists():
        entries = list(load_url_map(settings.url_map_path).values())
        mapped = sum(1 for u in entries if u.status == MappingStatus.MAPPED)
        print(f"\nURL mapping: {len(entries)} total")
        print(f"  Mapped: {mapped}")
        print(f"  Needs review: {len(entries) - mapped}")
    else:
        print("\nURL mapping: NOT DONE (run harvester-map first)")


def print_summary(outcomes: list[TargetOutcome], usage: UsageTracker) -> None:
    print("\n=== Pipeline Summary ===")
    print(f"Total processed: {len(outcomes)}")
    for status in RunStatus:
        count = sum(1 for o in outcomes if o.status == status)
        print(f"  {status.value.capitalize()}: {count}")
    print(f"  Total wines: {sum(o.offerings for o in outcomes)}")
    print(f"  Total tastings: {sum(o.experiences for o in outcomes)}")
    print(
        f"\nLLM usage: {usage.input_tokens} in / {usage.output_tokens} out "
        f"({usage.calls} calls) - ${usage.estimated_cost_usd}"
    )

    failed = [o for o in outcomes if o.status == RunStatus.FAILED]
    if failed:
        print("\nFailed wineries:")
        for o in failed:
            print(f"  {o.slug}: {', '.join(o.errors)}")


def parse_args(argv: list[str] | None = None) -> tuple[PipelineOptions, bool]:
    parser = argparse.ArgumentParser(description="Crawl wineries and extract wines and tastings.")
    parser.add_argument("--winery", help="Only process this slug")
    parser.add_argument("--limit", type=int, help="Process at most N wineries")
    parser.add_argument("--dry-run", action="store_true", help="Extract without writing")
    parser.add_argument("--force", action="store_true", help="Re-scrape even if unchanged")
    parser.add_argument("--batch-size", type=int, default=settings.batch_size)
    parser.add_argument("--only-unscraped", action="store_true")
    parser.add_argument("--status", action="store_true", help="Show harvest status and exit")
    args = parser.parse_args(argv)

    options = PipelineOptions(
        winery=args.winery,
        limit=args.limit,
        dry_run=args.dry_run,
        force=args.force,
        batch_size=args.batch_size,
        only_unscraped=args.only_unscraped,
    )
    return options, args.status


async def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    options, status_only = parse_args(argv)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        if status_only:
            show_status()
            return
        targets = load_targets(settings.targets_path)
        url_map = load_url_map(settings.url_map_path)
    except FatalStartupError as e:
        print(f"ERROR: {e.message}")
        sys.exit(1)

    attach_url_maps(targets, url_map)
    if options.winery and not any(t.slug == options.winery for t in targets):
        print(f'Winery "{options.winery}" not found.')
        sys.exit(1)

    store = None if options.dry_run else MongoStore.from_settings()
    scraped = await store.scraped_slugs() if store and options.only_unscraped else None
    to_process = filter_targets(targets, options, scraped)

    print(f"Processing {len(to_process)} wineries{' (DRY RUN)' if options.dry_run else ''}...\n")

    pool = BrowserPool()
    governor = ConcurrencyGovernor(
        settings.max_concurrent_browsers,
        settings.min_delay_between_requests,
        settings.max_delay_between_requests,
    )
    fetcher = PageFetcher(pool, governor, RetryPolicy.from_settings())
    usage = UsageTracker()
    writer = IngestionWriter(store) if store else None

    try:
        async with httpx.AsyncClient() as client:
            extractor = Extractor(LLMClient(client, usage))
            outcomes = await run_pipeline(to_process, fetcher, extractor, writer, options)
    finally:
        await pool.shutdown()
        await close_db()

    print_summary(outcomes, usage)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
