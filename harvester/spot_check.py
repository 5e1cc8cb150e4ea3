"""
Spot-check stored winery data.

Re-crawls and re-extracts a handful of scraped wineries and prints the
fresh results next to what MongoDB holds. Nothing is written.
"""

import argparse
import asyncio
import logging
import random
import sys
from dataclasses import dataclass, field
from typing import Any

import httpx
from pymongo.errors import PyMongoError

from harvester.config import settings
from harvester.db import ChildKind, MongoStore, close_db
from harvester.errors import FatalStartupError, HarvestError
from harvester.extractor import Extractor
from harvester.llm import LLMClient, UsageTracker
from harvester.models import ExtractedExperience, ExtractedOffering, Target
from harvester.pipeline import extract_target
from harvester.rate_limit import ConcurrencyGovernor
from harvester.registry import attach_url_maps, load_targets, load_url_map
from harvester.retry import RetryPolicy
from harvester.scraper import BrowserPool, PageFetcher

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE = 5

# Lower bounds of the wine-count buckets sampled round-robin
WINE_COUNT_BUCKETS = (10, 3, 1, 0)


@dataclass
class SpotCheckReport:
    slug: str
    name: str
    stored_offerings: list[dict] = field(default_factory=list)
    fresh_offerings: list[ExtractedOffering] = field(default_factory=list)
    stored_experiences: list[dict] = field(default_factory=list)
    fresh_experiences: list[ExtractedExperience] = field(default_factory=list)
    # (label, stored, fresh)
    info: list[tuple[str, Any, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def offerings_match(self) -> bool:
        return len(self.stored_offerings) == len(self.fresh_offerings)

    @property
    def experiences_match(self) -> bool:
        return len(self.stored_experiences) == len(self.fresh_experiences)


def pick_diverse(
    wine_counts: dict[str, int], count: int, rng: random.Random | None = None
) -> list[str]:
    """Pick up to *count* slugs spread across high, mid, low and zero wine counts."""
    rng = rng or random.Random()
    buckets: list[list[str]] = [[] for _ in WINE_COUNT_BUCKETS]
    for slug, wines in wine_counts.items():
        for i, floor in enumerate(WINE_COUNT_BUCKETS):
            if wines >= floor:
                buckets[i].append(slug)
                break
    for bucket in buckets:
        rng.shuffle(bucket)

    picks: list[str] = []
    while len(picks) < count and any(buckets):
        for bucket in buckets:
            if bucket and len(picks) < count:
                picks.append(bucket.pop(0))
    return picks


async def scraped_wine_counts(store: MongoStore) -> dict[str, int]:
    counts: dict[str, int] = {}
    for slug in sorted(await store.scraped_slugs()):
        venue = await store.find_venue(slug)
        if venue is not None:
            counts[slug] = await store.count_children(ChildKind.OFFERINGS, venue["_id"])
    return counts


def _hours_summary(hours: dict | None) -> str | None:
    if not hours:
        return None
    return ", ".join(v for v in hours.values() if v)[:40] or None


async def spot_check_target(
    target: Target, store: MongoStore, fetcher: PageFetcher, extractor: Extractor
) -> SpotCheckReport | None:
    """Compare a fresh extraction of *target* with its stored rows; None if unmapped or unstored."""
    if target.urls is None:
        logger.info('SKIP: No URL mapping for "%s"', target.slug)
        return None
    venue = await store.find_venue(target.slug)
    if venue is None:
        logger.info('SKIP: Winery "%s" not found in DB', target.slug)
        return None

    report = SpotCheckReport(slug=target.slug, name=venue.get("name", target.name))
    report.stored_offerings = await store.find_children(ChildKind.OFFERINGS, venue["_id"])
    report.stored_experiences = await store.find_children(ChildKind.EXPERIENCES, venue["_id"])

    logger.info("Re-crawling %s...", report.name)
    fresh = await extract_target(target, fetcher, extractor)
    report.fresh_offerings = fresh.offerings
    report.fresh_experiences = fresh.experiences
    report.errors = fresh.errors

    profile = fresh.profile
    report.info = [
        ("Phone", venue.get("phone"), profile.phone),
        ("Reservation", venue.get("reservation_required"), profile.reservation_required),
        ("Dog-friendly", venue.get("dog_friendly"), profile.dog_friendly),
        (
            "Hours",
            _hours_summary(venue.get("hours")),
            _hours_summary(profile.hours.model_dump() if profile.hours else None),
        ),
        ("Description", bool(venue.get("description")), bool(profile.description)),
    ]
    return report


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _price(price: float | None) -> str:
    return f"${price:g}" if price is not None else "N/A"


def _side_by_side(stored: list[str], fresh: list[str]) -> None:
    print(f"  {'DB':<35} | {'Fresh':<35}")
    for i in range(max(len(stored), len(fresh))):
        left = stored[i] if i < len(stored) else "(none)"
        right = fresh[i] if i < len(fresh) else "(none)"
        print(f"  {left:<35} | {right:<35}")


def print_report(report: SpotCheckReport) -> None:
    print("\n" + "=" * 70)
    print(f"  {report.name} ({report.slug})")
    print("=" * 70)

    match = "MATCH" if report.offerings_match else "DIFF"
    print(f"\n  WINES: DB={len(report.stored_offerings)}  Fresh={len(report.fresh_offerings)}  [{match}]")
    if report.stored_offerings or report.fresh_offerings:
        _side_by_side(
            [f"{w['name'][:22]:<22} {_price(w.get('price')):>7} {w.get('offering_type', '')[:4]}"
             for w in report.stored_offerings],
            [f"{w.name[:22]:<22} {_price(w.price):>7} {w.offering_type[:4]}"
             for w in report.fresh_offerings],
        )

    match = "MATCH" if report.experiences_match else "DIFF"
    print(f"\n  TASTINGS: DB={len(report.stored_experiences)}  Fresh={len(report.fresh_experiences)}  [{match}]")
    if report.stored_experiences or report.fresh_experiences:
        _side_by_side(
            [f"{t['name'][:25]:<25} {_price(t.get('price')):>7}" for t in report.stored_experiences],
            [f"{t.name[:25]:<25} {_price(t.price):>7}" for t in report.fresh_experiences],
        )

    print("\n  INFO:")
    for label, stored, fresh in report.info:
        marker = "  " if stored == fresh else "!="
        print(f"  {marker} {label + ':':<14} DB={stored if stored is not None else 'N/A'}  "
              f"Fresh={fresh if fresh is not None else 'N/A'}")

    for error in report.errors:
        print(f"  ! {error}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Re-extract a few wineries and diff against MongoDB.")
    parser.add_argument("--winery", help="Check this slug only")
    parser.add_argument("--count", type=int, default=DEFAULT_SAMPLE, help="Wineries to sample")
    args = parser.parse_args(argv)

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
    attach_url_maps(targets, url_map)
    by_slug = {t.slug: t for t in targets}

    store = MongoStore.from_settings()
    slugs = [args.winery] if args.winery else pick_diverse(await scraped_wine_counts(store), args.count)
    if not slugs:
        print("No scraped wineries found in DB.")
        await close_db()
        sys.exit(1)

    print(f"\nSpot-checking {len(slugs)} wineries: {', '.join(slugs)}\n")

    pool = BrowserPool()
    governor = ConcurrencyGovernor(
        settings.max_concurrent_browsers,
        settings.min_delay_between_requests,
        settings.max_delay_between_requests,
    )
    fetcher = PageFetcher(pool, governor, RetryPolicy.from_settings())
    usage = UsageTracker()

    try:
        async with httpx.AsyncClient() as client:
            extractor = Extractor(LLMClient(client, usage))
            for slug in slugs:
                target = by_slug.get(slug)
                if target is None:
                    print(f'\n  SKIP: "{slug}" is not in the target list')
                    continue
                try:
                    report = await spot_check_target(target, store, fetcher, extractor)
                except (HarvestError, PyMongoError) as e:
                    print(f"\n  ERROR checking {slug}: {e}")
                    continue
                if report is not None:
                    print_report(report)
    finally:
        await pool.shutdown()
        await close_db()

    print(
        f"\n\nLLM cost: {usage.input_tokens} in / {usage.output_tokens} out "
        f"- ${usage.estimated_cost_usd}"
    )


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
