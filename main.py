"""Verify MongoDB connectivity and create the harvester's indexes."""

import asyncio

from pymongo.errors import OperationFailure

from harvester.db import close_db, get_client, get_db, init_db


async def main() -> None:
    client = get_client()
    db = get_db()

    result = await client.admin.command("ping")
    print(f"MongoDB ping: {result}")

    # Per-target writes and merges run in multi-document transactions
    try:
        hello = await client.admin.command("hello")
    except OperationFailure:
        hello = {}
    if not hello.get("setName") and hello.get("msg") != "isdbgrid":
        print("Warning: server is not a replica set; transactions will fail.")

    await init_db()
    print("Indexes created.")

    collections = await db.list_collection_names()
    print(f"Collections in '{db.name}': {collections}")

    await close_db()
    print("Done.")


if __name__ == "__main__":
    asyncio.run(main())
