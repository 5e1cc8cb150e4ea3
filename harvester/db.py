from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Optional

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)

from harvester.config import settings
from harvester.models import RunStatus

_client: AsyncIOMotorClient | None = None

VENUES = "wineries"


class ChildKind(str, Enum):
    """Collections whose documents belong to one winery via ``venue_id``."""

    OFFERINGS = "wines"
    EXPERIENCES = "tastings"
    RUN_LOGS = "scrape_log"
    PHOTOS = "photos"
    FAVORITES = "favorites"
    VISITS = "visits"
    NOTES = "notes"
    RATINGS = "winery_ratings"


# User-authored rows: at most one per (user, winery)
USER_KINDS = (ChildKind.FAVORITES, ChildKind.VISITS, ChildKind.NOTES)

# Run statuses whose write reached the store
COMMITTED_STATUSES = [RunStatus.SUCCESS.value, RunStatus.PARTIAL.value]


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        _client = AsyncIOMotorClient(settings.mongodb_uri)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    return get_client()[settings.mongodb_db]


async def init_db() -> None:
    """Create indexes for wineries and their child collections."""
    db = get_db()

    await db[VENUES].create_index("slug", unique=True)
    await db[VENUES].create_index("place_id", sparse=True)

    for kind in ChildKind:
        await db[kind.value].create_index("venue_id")
    for kind in USER_KINDS:
        await db[kind.value].create_index([("user_id", 1), ("venue_id", 1)], unique=True)
    await db[ChildKind.RATINGS.value].create_index(
        [("venue_id", 1), ("provider", 1)], unique=True
    )
    await db[ChildKind.RUN_LOGS.value].create_index([("venue_id", 1), ("scraped_at", -1)])


async def close_db() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


Session = Optional[AsyncIOMotorClientSession]


class MongoStore:
    """
    Typed access to the winery collection and its child collections.

    Every method takes an optional ``session`` so a caller can group writes
    into one transaction opened with :meth:`transaction`. Multi-document
    transactions need a replica set or sharded cluster.
    """

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase) -> None:
        self._client = client
        self._db = db

    @classmethod
    def from_settings(cls) -> "MongoStore":
        return cls(get_client(), get_db())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncIOMotorClientSession]:
        async with await self._client.start_session() as session:
            async with session.start_transaction():
                yield session

    # -- wineries -----------------------------------------------------------

    async def find_venue(self, slug: str, session: Session = None) -> dict | None:
        return await self._db[VENUES].find_one({"slug": slug}, session=session)

    async def venue_ids(self) -> dict[str, Any]:
        cursor = self._db[VENUES].find({}, {"slug": 1})
        return {doc["slug"]: doc["_id"] async for doc in cursor}

    async def scraped_slugs(self) -> set[str]:
        cursor = self._db[VENUES].find({"data_source": "scraped"}, {"slug": 1})
        return {doc["slug"] async for doc in cursor}

    async def insert_venue(self, doc: dict, session: Session = None) -> Any:
        result = await self._db[VENUES].insert_one(doc, session=session)
        return result.inserted_id

    async def update_venue(self, venue_id: Any, fields: dict, session: Session = None) -> None:
        if fields:
            await self._db[VENUES].update_one(
                {"_id": venue_id}, {"$set": fields}, session=session
            )

    async def delete_venue(self, venue_id: Any, session: Session = None) -> None:
        await self._db[VENUES].delete_one({"_id": venue_id}, session=session)

    # -- children -----------------------------------------------------------

    async def count_children(self, kind: ChildKind, venue_id: Any, session: Session = None) -> int:
        return await self._db[kind.value].count_documents({"venue_id": venue_id}, session=session)

    async def find_children(
        self, kind: ChildKind, venue_id: Any, session: Session = None
    ) -> list[dict]:
        cursor = self._db[kind.value].find({"venue_id": venue_id}, session=session)
        return await cursor.to_list(None)

    async def insert_children(
        self, kind: ChildKind, docs: list[dict], session: Session = None
    ) -> None:
        if docs:
            await self._db[kind.value].insert_many(docs, session=session)

    async def delete_children(
        self,
        kind: ChildKind,
        venue_id: Any,
        *,
        match: dict | None = None,
        key: str | None = None,
        values: Iterable[Any] | None = None,
        session: Session = None,
    ) -> int:
        """Delete a winery's rows, optionally narrowed by *match* or ``key in values``."""
        query: dict = {"venue_id": venue_id, **(match or {})}
        if key is not None:
            query[key] = {"$in": list(values or [])}
        result = await self._db[kind.value].delete_many(query, session=session)
        return result.deleted_count

    async def reassign_children(
        self, kind: ChildKind, from_id: Any, to_id: Any, session: Session = None
    ) -> int:
        result = await self._db[kind.value].update_many(
            {"venue_id": from_id}, {"$set": {"venue_id": to_id}}, session=session
        )
        return result.modified_count

    async def last_content_hash(self, venue_id: Any, session: Session = None) -> str | None:
        """Content hash of the newest run whose children were committed."""
        doc = await self._db[ChildKind.RUN_LOGS.value].find_one(
            {
                "venue_id": venue_id,
                "content_hash": {"$ne": None},
                "status": {"$in": COMMITTED_STATUSES},
            },
            sort=[("scraped_at", -1)],
            session=session,
        )
        return doc["content_hash"] if doc else None

    async def count_venues(self) -> int:
        return await self._db[VENUES].count_documents({})
