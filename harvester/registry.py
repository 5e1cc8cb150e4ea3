"""Load the ranked target roster and the persisted URL map."""

import argparse
import json
import logging
import re
import sys
from pathlib import Path
from typing import Any, Iterable

from pydantic import ValidationError

from harvester.config import settings
from harvester.errors import FatalStartupError
from harvester.models import Target, UrlMap
from harvester.validate import validate_coordinates

logger = logging.getLogger(__name__)

DEFAULT_TARGET_COUNT = 200

# (sub-region slug, valley, cities). First city found in the address wins.
SUB_REGIONS: list[tuple[str, str, tuple[str, ...]]] = [
    ("calistoga", "napa", ("Calistoga",)),
    ("st-helena", "napa", ("St. Helena", "Saint Helena", "St Helena")),
    ("rutherford", "napa", ("Rutherford",)),
    ("oakville", "napa", ("Oakville",)),
    ("yountville", "napa", ("Yountville",)),
    ("stags-leap-district", "napa", ("Napa",)),
    ("atlas-peak", "napa", ("Napa",)),
    ("mount-veeder", "napa", ("Napa",)),
    ("carneros-napa", "napa", ("Napa", "American Canyon")),
    ("howell-mountain", "napa", ("Angwin", "St. Helena")),
    ("sonoma-valley", "sonoma", ("Sonoma", "Glen Ellen", "Kenwood")),
    ("russian-river-valley", "sonoma", ("Healdsburg", "Forestville", "Sebastopol", "Guerneville", "Windsor")),
    ("dry-creek-valley", "sonoma", ("Healdsburg", "Geyserville")),
    ("alexander-valley", "sonoma", ("Healdsburg", "Geyserville", "Cloverdale")),
    ("carneros-sonoma", "sonoma", ("Sonoma", "Schellville")),
    ("bennett-valley", "sonoma", ("Santa Rosa", "Glen Ellen")),
    ("petaluma-gap", "sonoma", ("Petaluma", "Penngrove")),
]

# Napa lies east of this meridian, Sonoma west
VALLEY_SPLIT_LNG = -122.5


def slugify(name: str) -> str:
    """Lowercase, drop apostrophes, and join alphanumeric runs with hyphens."""
    slug = re.sub(r"['’]", "", name.lower())
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    return slug.strip("-")


def load_targets(path: str | Path) -> list[Target]:
    """
    Read the target list written by the catalog search step.

    Raises:
        FatalStartupError: when the file is missing, not a JSON array, holds
            an invalid entry, or repeats a slug.
    """
    path = Path(path)
    if not path.exists():
        raise FatalStartupError(f"Missing target list {path}. Build it first.")

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise FatalStartupError(f"Target list {path} is not valid JSON: {e}") from e

    if not isinstance(raw, list):
        raise FatalStartupError(f"Target list {path} must be a JSON array")

    targets: list[Target] = []
    seen: set[str] = set()
    for i, item in enumerate(raw):
        try:
            target = Target.model_validate(item)
        except ValidationError as e:
            raise FatalStartupError(f"Invalid target at index {i}: {e}") from e
        if target.slug in seen:
            raise FatalStartupError(f"Duplicate target slug: {target.slug}")
        seen.add(target.slug)
        targets.append(target)

    targets.sort(key=lambda t: t.rank)
    logger.info("Loaded %d targets from %s", len(targets), path)
    return targets


def place_to_target(place: dict[str, Any]) -> Target:
    """Convert a Places API (new) search result into a target."""
    loc = place.get("location", {})
    name = place.get("displayName", {}).get("text", "Unknown")
    address = place.get("formattedAddress") or None
    lng = loc.get("longitude", 0)
    valley, sub_region = classify_region(address, lng)
    return Target(
        name=name,
        slug=slugify(name),
        place_id=place.get("id"),
        website_url=place.get("websiteUri"),
        lat=loc.get("latitude", 0),
        lng=lng,
        address=address,
        city=_extract_city(address),
        valley=valley,
        sub_region=sub_region,
        phone=place.get("nationalPhoneNumber"),
        rating=place.get("rating"),
        review_count=place.get("userRatingCount", 0),
    )


def _extract_city(address: str | None) -> str | None:
    # City sits third from the end: "..., Calistoga, CA 94515, USA"
    if not address:
        return None
    parts = [p.strip() for p in address.split(",")]
    return parts[-3] if len(parts) >= 3 else None


def classify_region(address: str | None, lng: float) -> tuple[str, str | None]:
    """
    Guess ``(valley, sub_region)`` for a winery.

    Cities named in the address pick the sub-region; otherwise only the
    valley is guessed from the longitude.
    """
    addr = (address or "").lower()
    for slug, valley, cities in SUB_REGIONS:
        if any(city.lower() in addr for city in cities):
            return valley, slug
    return ("napa" if lng > VALLEY_SPLIT_LNG else "sonoma"), None


def _in_bounds(place: dict[str, Any]) -> bool:
    loc = place.get("location")
    if not loc:
        return True
    return validate_coordinates(loc.get("latitude", 0), loc.get("longitude", 0))


def build_targets(
    places: Iterable[dict[str, Any]], limit: int = DEFAULT_TARGET_COUNT
) -> list[Target]:
    """
    Rank catalog search results by review count and keep the top *limit*.

    Places outside the search bounds are dropped, as are repeated place ids.
    """
    seen_ids: set[str] = set()
    targets: list[Target] = []
    for place in places:
        if not _in_bounds(place):
            logger.debug("Out of bounds: %s", place.get("displayName", {}).get("text"))
            continue
        pid = place.get("id")
        if pid:
            if pid in seen_ids:
                continue
            seen_ids.add(pid)
        targets.append(place_to_target(place))

    targets.sort(key=lambda t: t.review_count, reverse=True)
    top = targets[:limit]
    for rank, target in enumerate(top, 1):
        target.rank = rank
    return top


def save_targets(targets: list[Target], path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = [t.model_dump(mode="json", exclude={"urls"}) for t in targets]
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


# ---------------------------------------------------------------------------
# URL map
# ---------------------------------------------------------------------------


def load_url_map(path: str | Path) -> dict[str, UrlMap]:
    """Read the slug -> UrlMap file; a missing file is an empty map."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise FatalStartupError(f"URL map {path} is not valid JSON: {e}") from e
    return {slug: UrlMap.model_validate(entry) for slug, entry in raw.items()}


def save_url_map(url_map: dict[str, UrlMap], path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {slug: urls.model_dump(mode="json") for slug, urls in url_map.items()}
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def attach_url_maps(targets: list[Target], url_map: dict[str, UrlMap]) -> None:
    for target in targets:
        if target.slug in url_map:
            target.urls = url_map[target.slug]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main() -> None:
    """CLI: turn saved catalog search results into the ranked target list."""
    parser = argparse.ArgumentParser(description=main.__doc__)
    parser.add_argument("places_file", help="JSON array of Places API results")
    parser.add_argument("--limit", type=int, default=DEFAULT_TARGET_COUNT)
    parser.add_argument("--out", default=settings.targets_path)
    args = parser.parse_args()

    places_path = Path(args.places_file)
    if not places_path.exists():
        print(f"File not found: {places_path}")
        sys.exit(1)

    places = json.loads(places_path.read_text(encoding="utf-8"))
    targets = build_targets(places, limit=args.limit)
    save_targets(targets, args.out)

    print(f"Wrote {len(targets)} wineries to {args.out}")
    print("Top 10 by review count:")
    for t in targets[:10]:
        print(f"  {t.rank}. {t.name} ({t.review_count} reviews, {t.rating or 'N/A'})")


if __name__ == "__main__":
    main()
