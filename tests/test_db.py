from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from harvester.db import ChildKind, MongoStore


@pytest.fixture
def collections():
    return {}


@pytest.fixture
def store(collections):
    def collection(name):
        if name not in collections:
            coll = MagicMock()
            coll.delete_many = AsyncMock(return_value=SimpleNamespace(deleted_count=2))
            coll.update_many = AsyncMock(return_value=SimpleNamespace(modified_count=3))
            coll.update_one = AsyncMock()
            coll.find_one = AsyncMock(return_value=None)
            collections[name] = coll
        return collections[name]

    db = MagicMock()
    db.__getitem__.side_effect = collection
    return MongoStore(MagicMock(), db)


async def test_delete_children_narrowed_by_key(store, collections):
    deleted = await store.delete_children(
        ChildKind.FAVORITES, "drop", key="user_id", values={"u1"}
    )
    assert deleted == 2
    query = collections["favorites"].delete_many.await_args.args[0]
    assert query == {"venue_id": "drop", "user_id": {"$in": ["u1"]}}


async def test_delete_children_with_match(store, collections):
    await store.delete_children(ChildKind.PHOTOS, "v", match={"source": "website"})
    query = collections["photos"].delete_many.await_args.args[0]
    assert query == {"venue_id": "v", "source": "website"}


async def test_reassign_children(store, collections):
    moved = await store.reassign_children(ChildKind.RUN_LOGS, "drop", "keep")
    assert moved == 3
    args = collections["scrape_log"].update_many.await_args.args
    assert args == ({"venue_id": "drop"}, {"$set": {"venue_id": "keep"}})


async def test_update_venue_skips_empty_fields(store, collections):
    await store.update_venue("v", {})
    assert "wineries" not in collections


async def test_last_content_hash_none_without_logs(store):
    assert await store.last_content_hash("v") is None


async def test_last_content_hash_ignores_failed_runs(store, collections):
    await store.last_content_hash("v")
    query = collections["scrape_log"].find_one.await_args.args[0]
    assert query["status"] == {"$in": ["success", "partial"]}
