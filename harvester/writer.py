"""Upsert scraped wineries into MongoDB and append the scrape log."""

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pymongo.errors import PyMongoError

from harvester.config import settings
from harvester.db import ChildKind, MongoStore
from harvester.errors import WriteFailure
from harvester.models import (
    ExtractionResult,
    RunLog,
    RunStatus,
    Target,
    ValidationResult,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Field policy
# ---------------------------------------------------------------------------


class FieldPolicy:
    """
    Which winery fields a fresher value may replace.

    ``overwrite`` fields always take a non-null incoming value. Every other
    field in ``fields`` only fills a stored value that is missing or null,
    so curated data survives a scrape.
    """

    def __init__(self, fields: tuple[str, ...], overwrite: frozenset[str]) -> None:
        self.fields = fields
        self.overwrite = overwrite

    def merge(self, current: dict | None, incoming: dict) -> dict:
        """Return the ``$set`` document that applies *incoming* onto *current*."""
        current = current or {}
        updates: dict[str, Any] = {}
        for field in self.fields:
            value = incoming.get(field)
            if value is None:
                continue
            if field in self.overwrite or current.get(field) is None:
                updates[field] = value
        return updates


METADATA_FIELDS = (
    "description",
    "short_description",
    "hero_image_url",
    "address",
    "city",
    "state",
    "valley",
    "sub_region",
    "lat",
    "lng",
    "phone",
    "email",
    "website_url",
    "hours",
    "reservation_required",
    "dog_friendly",
    "picnic_friendly",
    "data_source",
    "last_scraped_at",
    "place_id",
    "review_count",
    "rating",
)

PROFILE_POLICY = FieldPolicy(
    METADATA_FIELDS,
    overwrite=frozenset(
        {
            "description",
            "hours",
            "data_source",
            "last_scraped_at",
            "place_id",
            "review_count",
            "rating",
        }
    ),
)

# Always written from the target, regardless of policy
IDENTITY_FIELDS = ("slug", "name")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def content_hash(validation: ValidationResult) -> str:
    """SHA-256 of the accepted wines and tastings, stable across key order."""
    payload = {
        "offerings": [o.model_dump() for o in validation.offerings],
        "experiences": [e.model_dump() for e in validation.experiences],
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def identity(target: Target) -> dict:
    return {field: getattr(target, field) for field in IDENTITY_FIELDS}


def target_fields(target: Target) -> dict:
    return {
        "address": target.address,
        "city": target.city,
        "state": "CA",
        "valley": target.valley,
        "sub_region": target.sub_region,
        "lat": target.lat,
        "lng": target.lng,
        "phone": target.phone,
        "website_url": target.website_url,
        "place_id": target.place_id,
        "review_count": target.review_count or None,
        "rating": target.rating,
    }


def scraped_fields(
    target: Target, extraction: ExtractionResult, now: datetime
) -> dict:
    profile = extraction.profile
    fields = target_fields(target)
    fields.update(
        {
            "description": profile.description,
            "short_description": profile.short_description,
            "hero_image_url": extraction.image_urls[0] if extraction.image_urls else None,
            "phone": profile.phone or target.phone,
            "email": profile.email,
            "hours": profile.hours.model_dump() if profile.hours else None,
            "reservation_required": profile.reservation_required,
            "dog_friendly": profile.dog_friendly,
            "picnic_friendly": profile.picnic_friendly,
            "data_source": "scraped",
            "last_scraped_at": now,
        }
    )
    return fields


class IdCache:
    """
    Slug to winery ``_id`` lookups for one writer.

    Loaded from the store on first use. Entries are added only after the
    transaction that created the winery has committed.
    """

    def __init__(self, store: MongoStore) -> None:
        self._store = store
        self._ids: dict[str, Any] | None = None
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        async with self._lock:
            if self._ids is None:
                self._ids = await self._store.venue_ids()
                logger.debug("Loaded %d winery ids", len(self._ids))

    async def get(self, slug: str) -> Any | None:
        await self.load()
        return self._ids.get(slug)

    def put(self, slug: str, venue_id: Any) -> None:
        if self._ids is not None:
            self._ids[slug] = venue_id


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class IngestionWriter:
    def __init__(
        self,
        store: MongoStore,
        *,
        policy: FieldPolicy = PROFILE_POLICY,
        max_photos: int = settings.max_photos,
    ) -> None:
        self.store = store
        self.policy = policy
        self.max_photos = max_photos
        self.ids = IdCache(store)

    async def write(
        self,
        target: Target,
        extraction: ExtractionResult,
        validation: ValidationResult,
        status: RunStatus,
        *,
        force: bool = False,
    ) -> RunLog:
        """
        Persist one pipeline attempt and return its scrape log row.

        Valid extractions upsert the winery, replace wines and tastings
        with the accepted sets, and refresh website photos, all in one
        transaction. Invalid extractions only make sure the winery exists.
        A log row is appended afterwards whatever happened.
        """
        errors = extraction.errors + validation.errors
        log = RunLog(
            slug=target.slug,
            status=status,
            offerings_found=len(validation.offerings),
            experiences_found=len(validation.experiences),
            content_hash=content_hash(validation) if validation.valid else None,
            error_message="; ".join(errors) or None,
        )

        venue_id = await self.ids.get(target.slug)
        try:
            if validation.valid:
                venue_id = await self._write_scraped(target, extraction, validation, log, force)
            else:
                venue_id = await self._ensure_venue(venue_id, target)
        except WriteFailure as e:
            logger.error("[%s] DB write failed: %s", target.name, e.message)
            log.status = RunStatus.FAILED
            log.content_hash = None
            log.error_message = "; ".join(errors + [f"DB write failed: {e.message}"])

        await self._append_log(venue_id, log)
        return log

    async def _ensure_venue(self, venue_id: Any | None, target: Target) -> Any:
        """Insert a bare winery for *target* if it has never been stored."""
        if venue_id is not None:
            return venue_id
        doc = identity(target)
        doc.update({k: v for k, v in target_fields(target).items() if v is not None})
        doc["created_at"] = datetime.now(timezone.utc)
        try:
            venue_id = await self.store.insert_venue(doc)
        except PyMongoError as e:
            raise WriteFailure(str(e), target.slug) from e
        self.ids.put(target.slug, venue_id)
        return venue_id

    async def _write_scraped(
        self,
        target: Target,
        extraction: ExtractionResult,
        validation: ValidationResult,
        log: RunLog,
        force: bool,
    ) -> Any:
        now = datetime.now(timezone.utc)
        incoming = scraped_fields(target, extraction, now)
        created = False

        try:
            async with self.store.transaction() as session:
                current = await self.store.find_venue(target.slug, session=session)
                if current is None:
                    doc = {**identity(target), "created_at": now}
                    doc.update(self.policy.merge(None, incoming))
                    doc["updated_at"] = now
                    venue_id = await self.store.insert_venue(doc, session=session)
                    created = True
                else:
                    venue_id = current["_id"]
                    updates = self.policy.merge(current, incoming)
                    updates.update({**identity(target), "updated_at": now})
                    await self.store.update_venue(venue_id, updates, session=session)

                previous = await self.store.last_content_hash(venue_id, session=session)
                if force or previous != log.content_hash:
                    await self._replace_children(venue_id, extraction, validation, now, session)
                else:
                    logger.info("[%s] Content unchanged, keeping stored wines/tastings", target.name)

                if extraction.image_urls:
                    await self._replace_photos(venue_id, extraction.image_urls, session)
        except PyMongoError as e:
            raise WriteFailure(str(e), target.slug) from e

        if created:
            self.ids.put(target.slug, venue_id)
        logger.info(
            "[%s] DB: %d wines, %d tastings",
            target.name,
            len(validation.offerings),
            len(validation.experiences),
        )
        return venue_id

    async def _replace_children(
        self,
        venue_id: Any,
        extraction: ExtractionResult,
        validation: ValidationResult,
        now: datetime,
        session,
    ) -> None:
        # An empty accepted set means extraction failed, not that the
        # winery stopped selling wine: leave stored rows alone.
        if validation.offerings:
            await self.store.delete_children(ChildKind.OFFERINGS, venue_id, session=session)
            await self.store.insert_children(
                ChildKind.OFFERINGS,
                [
                    {
                        "venue_id": venue_id,
                        **o.model_dump(),
                        "source_url": extraction.offerings_url,
                        "updated_at": now,
                    }
                    for o in validation.offerings
                ],
                session=session,
            )
        if validation.experiences:
            await self.store.delete_children(ChildKind.EXPERIENCES, venue_id, session=session)
            await self.store.insert_children(
                ChildKind.EXPERIENCES,
                [
                    {
                        "venue_id": venue_id,
                        **e.model_dump(),
                        "source_url": extraction.experiences_url,
                        "updated_at": now,
                    }
                    for e in validation.experiences
                ],
                session=session,
            )

    async def _replace_photos(self, venue_id: Any, image_urls: list[str], session) -> None:
        await self.store.delete_children(
            ChildKind.PHOTOS, venue_id, match={"source": "website"}, session=session
        )
        await self.store.insert_children(
            ChildKind.PHOTOS,
            [
                {"venue_id": venue_id, "url": url, "source": "website"}
                for url in image_urls[: self.max_photos]
            ],
            session=session,
        )

    async def _append_log(self, venue_id: Any | None, log: RunLog) -> None:
        doc = {"venue_id": venue_id, **log.model_dump(), "status": log.status.value}
        try:
            await self.store.insert_children(ChildKind.RUN_LOGS, [doc])
        except PyMongoError as e:
            raise WriteFailure(f"Failed to append scrape log: {e}", log.slug) from e
