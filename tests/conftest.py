import copy
from contextlib import asynccontextmanager
from typing import Any, Callable

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from harvester.db import COMMITTED_STATUSES, USER_KINDS, ChildKind
from harvester.models import (
    ExtractedExperience,
    ExtractedOffering,
    Target,
    UrlMap,
    MappingStatus,
)


class InMemoryStore:
    """
    Dict-backed stand-in for MongoStore.

    ``transaction()`` snapshots all data and restores it if the block
    raises. ``fail_hook(method, args)`` may return an exception to raise
    from any store call, to simulate server errors.
    """

    def __init__(self) -> None:
        self.venues: list[dict] = []
        self.children: dict[ChildKind, list[dict]] = {kind: [] for kind in ChildKind}
        self.fail_hook: Callable[[str, tuple], Exception | None] | None = None
        self.committed = 0
        self.rolled_back = 0

    def _check(self, method: str, *args: Any) -> None:
        if self.fail_hook:
            error = self.fail_hook(method, args)
            if error is not None:
                raise error

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy((self.venues, self.children))
        try:
            yield object()
        except BaseException:
            self.venues, self.children = snapshot
            self.rolled_back += 1
            raise
        self.committed += 1

    # -- wineries

    async def find_venue(self, slug, session=None):
        self._check("find_venue", slug)
        for doc in self.venues:
            if doc["slug"] == slug:
                return copy.deepcopy(doc)
        return None

    async def venue_ids(self):
        return {doc["slug"]: doc["_id"] for doc in self.venues}

    async def scraped_slugs(self):
        return {doc["slug"] for doc in self.venues if doc.get("data_source") == "scraped"}

    async def count_venues(self):
        return len(self.venues)

    async def insert_venue(self, doc, session=None):
        self._check("insert_venue", doc)
        if any(v["slug"] == doc["slug"] for v in self.venues):
            raise DuplicateKeyError(f"duplicate slug {doc['slug']}")
        doc = {"_id": ObjectId(), **copy.deepcopy(doc)}
        self.venues.append(doc)
        return doc["_id"]

    async def update_venue(self, venue_id, fields, session=None):
        self._check("update_venue", venue_id, fields)
        for doc in self.venues:
            if doc["_id"] == venue_id:
                doc.update(copy.deepcopy(fields))

    async def delete_venue(self, venue_id, session=None):
        self._check("delete_venue", venue_id)
        self.venues = [v for v in self.venues if v["_id"] != venue_id]

    # -- children

    def rows(self, kind: ChildKind, venue_id=None) -> list[dict]:
        return [r for r in self.children[kind] if venue_id is None or r["venue_id"] == venue_id]

    async def count_children(self, kind, venue_id, session=None):
        self._check("count_children", kind, venue_id)
        return len(self.rows(kind, venue_id))

    async def find_children(self, kind, venue_id, session=None):
        self._check("find_children", kind, venue_id)
        return copy.deepcopy(self.rows(kind, venue_id))

    async def insert_children(self, kind, docs, session=None):
        self._check("insert_children", kind, docs)
        for doc in docs:
            self.children[kind].append({"_id": ObjectId(), **copy.deepcopy(doc)})

    async def delete_children(
        self, kind, venue_id, *, match=None, key=None, values=None, session=None
    ):
        self._check("delete_children", kind, venue_id)
        values = set(values or [])

        def hit(row):
            if row["venue_id"] != venue_id:
                return False
            if any(row.get(k) != v for k, v in (match or {}).items()):
                return False
            return key is None or row.get(key) in values

        before = len(self.children[kind])
        self.children[kind] = [r for r in self.children[kind] if not hit(r)]
        return before - len(self.children[kind])

    async def reassign_children(self, kind, from_id, to_id, session=None):
        self._check("reassign_children", kind, from_id, to_id)
        moved = self.rows(kind, from_id)
        unique_key = "user_id" if kind in USER_KINDS else "provider" if kind == ChildKind.RATINGS else None
        if unique_key:
            taken = {r[unique_key] for r in self.rows(kind, to_id)}
            if any(r[unique_key] in taken for r in moved):
                raise DuplicateKeyError(f"duplicate {unique_key} in {kind.value}")
        for row in moved:
            row["venue_id"] = to_id
        return len(moved)

    async def last_content_hash(self, venue_id, session=None):
        logs = [
            r
            for r in self.rows(ChildKind.RUN_LOGS, venue_id)
            if r.get("content_hash") is not None and r.get("status") in COMMITTED_STATUSES
        ]
        if not logs:
            return None
        return max(logs, key=lambda r: r["scraped_at"])["content_hash"]


@pytest.fixture
def store():
    return InMemoryStore()


def make_target(slug: str = "silver-oak", **overrides) -> Target:
    fields = {
        "name": slug.replace("-", " ").title(),
        "slug": slug,
        "place_id": f"place-{slug}",
        "website_url": f"https://www.{slug}.com",
        "lat": 38.5,
        "lng": -122.5,
        "address": "915 Oakville Cross Rd, Oakville, CA 94562",
        "city": "Oakville",
        "review_count": 1200,
        "rating": 4.7,
        "rank": 1,
    }
    fields.update(overrides)
    return Target(**fields)


def make_offering(name: str = "Estate Cabernet Sauvignon 2021", **overrides) -> ExtractedOffering:
    fields = {
        "name": name,
        "offering_type": "Cabernet Sauvignon",
        "vintage": 2021,
        "price": 85.0,
        "description": None,
    }
    fields.update(overrides)
    return ExtractedOffering(**fields)


def make_experience(name: str = "Estate Tasting", **overrides) -> ExtractedExperience:
    fields = {
        "name": name,
        "description": "Five wines on the terrace",
        "price": 60.0,
        "duration_minutes": 75,
        "reservation_required": True,
    }
    fields.update(overrides)
    return ExtractedExperience(**fields)


def mapped_urls(root: str, **overrides) -> UrlMap:
    fields = {
        "website_url": root,
        "offerings_url": f"{root}/wines",
        "experiences_url": f"{root}/visit",
        "profile_url": f"{root}/about",
        "status": MappingStatus.MAPPED,
    }
    fields.update(overrides)
    return UrlMap(**fields)
