"""
Merge duplicate winery records.

Curated wineries use short slugs ("baldacci-family") while scrapes created
rows under longer ones ("baldacci-family-vineyards"). Each (keep, drop)
pair is merged in its own transaction, so one bad pair never blocks the
others.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from harvester.config import settings
from harvester.db import USER_KINDS, ChildKind, MongoStore, close_db
from harvester.errors import FatalStartupError, MergeFailure
from harvester.writer import PROFILE_POLICY, FieldPolicy

logger = logging.getLogger(__name__)

KNOWN_DUPLICATES: list[tuple[str, str]] = [
    ("baldacci-family", "baldacci-family-vineyards"),
    ("benziger-family", "benziger-family-winery"),
    ("charles-krug", "charles-krug-winery"),
    ("chimney-rock", "chimney-rock-winery"),
    ("cliff-lede", "cliff-lede-vineyards"),
    ("cline-cellars", "cline-family-cellars"),
    ("francis-ford-coppola", "francis-ford-coppola-winery"),
    ("frogs-leap", "frogs-leap-winery"),
    ("imagery-estate", "imagery-estate-winery"),
    ("iron-horse", "iron-horse-vineyards"),
    ("jordan-winery", "jordan-vineyard-winery"),
    ("matanzas-creek", "matanzas-creek-winery"),
    ("rams-gate", "rams-gate-winery"),
    ("rutherford-hill", "rutherford-hill-winery"),
    ("seghesio-family", "seghesio-family-vineyards"),
    ("silver-oak-alexander", "silver-oak-alexander-valley"),
    ("v-sattui", "v-sattui-winery"),
    ("opus-one", "opus-one-winery"),
    ("gloria-ferrer", "gloria-ferrer-wines"),
    ("ridge-lytton-springs", "ridge-vineyards-lytton-springs"),
    ("artesa-vineyards", "artesa-vineyards-winery"),
    ("far-niente", "far-niente-winery"),
    ("ferrari-carano", "ferrari-carano-vineyards-and-winery"),
    ("gary-farrell", "gary-farrell-vineyards-winery"),
    ("gundlach-bundschu", "gundlach-bundschu-winery"),
    ("lynmar-estate", "lynmar-estate-winery"),
    ("plumpjack", "plumpjack-estate-winery"),
]

# Child rows moved wholesale from drop to keep
MOVED_KINDS = (ChildKind.RUN_LOGS, ChildKind.PHOTOS)


@dataclass
class MergeSummary:
    merged: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[str] = field(default_factory=list)


class Reconciler:
    def __init__(self, store: MongoStore, *, policy: FieldPolicy = PROFILE_POLICY) -> None:
        self.store = store
        self.policy = policy

    async def merge_pair(self, keep: str, drop: str) -> bool:
        """
        Fold winery *drop* into winery *keep* and delete *drop*.

        Returns False when either slug is missing. All steps run in one
        transaction; on error it is rolled back and :class:`MergeFailure`
        is raised.
        """
        try:
            async with self.store.transaction() as session:
                keep_doc = await self.store.find_venue(keep, session=session)
                drop_doc = await self.store.find_venue(drop, session=session)
                if keep_doc is None or drop_doc is None:
                    missing = keep if keep_doc is None else drop
                    logger.info('SKIP %s: "%s" not found', keep, missing)
                    return False

                keep_id, drop_id = keep_doc["_id"], drop_doc["_id"]
                logger.info('Merging "%s" (%s) -> "%s" (%s)', drop, drop_id, keep, keep_id)

                # 1. Wines and tastings: drop's set replaces keep's only if it has one
                for kind in (ChildKind.OFFERINGS, ChildKind.EXPERIENCES):
                    if await self.store.count_children(kind, drop_id, session=session) > 0:
                        await self.store.delete_children(kind, keep_id, session=session)
                        await self.store.reassign_children(kind, drop_id, keep_id, session=session)

                # 2. User rows, keep wins per user
                for kind in USER_KINDS:
                    await self._move_keep_wins(kind, "user_id", keep_id, drop_id, session)

                # 3. Profile fields
                updates = self.policy.merge(keep_doc, drop_doc)
                await self.store.update_venue(keep_id, updates, session=session)

                # 4. Scrape log and photos
                for kind in MOVED_KINDS:
                    await self.store.reassign_children(kind, drop_id, keep_id, session=session)

                # 5. Ratings, keep wins per provider
                await self._move_keep_wins(ChildKind.RATINGS, "provider", keep_id, drop_id, session)

                # 6. Drop record
                await self.store.delete_venue(drop_id, session=session)
        except Exception as e:
            raise MergeFailure(f"Merge {drop} -> {keep} failed: {e}", keep, drop) from e
        return True

    async def _move_keep_wins(
        self, kind: ChildKind, key: str, keep_id: Any, drop_id: Any, session
    ) -> None:
        kept = await self.store.find_children(kind, keep_id, session=session)
        taken = {row[key] for row in kept}
        if taken:
            await self.store.delete_children(
                kind, drop_id, key=key, values=taken, session=session
            )
        await self.store.reassign_children(kind, drop_id, keep_id, session=session)

    async def preview_pair(self, keep: str, drop: str) -> dict | None:
        """Counts a merge would move, or None if a slug is missing."""
        keep_doc = await self.store.find_venue(keep)
        drop_doc = await self.store.find_venue(drop)
        if keep_doc is None or drop_doc is None:
            return None
        preview = {}
        for kind in ChildKind:
            preview[kind.value] = await self.store.count_children(kind, drop_doc["_id"])
        preview["fields"] = sorted(self.policy.merge(keep_doc, drop_doc))
        return preview

    async def merge_all(
        self, pairs: list[tuple[str, str]], *, dry_run: bool = False
    ) -> MergeSummary:
        summary = MergeSummary()
        for keep, drop in pairs:
            if dry_run:
                preview = await self.preview_pair(keep, drop)
                if preview is None:
                    summary.skipped += 1
                else:
                    logger.info("[DRY RUN] %s <- %s: %s", keep, drop, preview)
                    summary.merged += 1
                continue

            try:
                merged = await self.merge_pair(keep, drop)
            except MergeFailure as e:
                logger.error("FAILED for %s: %s", keep, e.message)
                summary.failed += 1
                summary.failures.append(keep)
                continue
            if merged:
                summary.merged += 1
            else:
                summary.skipped += 1
        return summary


def load_pairs(path: str | Path) -> list[tuple[str, str]]:
    """Read a JSON list of ``[keep, drop]`` slug pairs."""
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise FatalStartupError(f"Cannot read pair list {path}: {e}") from e

    pairs: list[tuple[str, str]] = []
    for item in raw if isinstance(raw, list) else [None]:
        if not (
            isinstance(item, list)
            and len(item) == 2
            and all(isinstance(s, str) and s for s in item)
        ):
            raise FatalStartupError(f"{path}: expected a list of [keep, drop] slug pairs")
        pairs.append((item[0], item[1]))
    return pairs


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def main() -> None:
    parser = argparse.ArgumentParser(description="Merge duplicate winery records.")
    parser.add_argument("--pairs", help="JSON file of [keep, drop] slug pairs")
    parser.add_argument("--dry-run", action="store_true", help="Report without writing")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )

    try:
        pairs = load_pairs(args.pairs) if args.pairs else KNOWN_DUPLICATES
    except FatalStartupError as e:
        print(f"ERROR: {e.message}")
        sys.exit(1)

    store = MongoStore.from_settings()
    before = await store.count_venues()
    print(f"Wineries before: {before}")

    summary = await Reconciler(store).merge_all(pairs, dry_run=args.dry_run)
    after = await store.count_venues()
    await close_db()

    label = "Would merge" if args.dry_run else "Merged"
    print(f"\nDone. {label}: {summary.merged}, Skipped: {summary.skipped}, Failed: {summary.failed}")
    print(f"Wineries: {before} -> {after}")
    for slug in summary.failures:
        print(f"  - {slug}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
