from functools import lru_cache

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConfigurationError

AUDIT_COLLECTION = "audit_events"


@lru_cache
def get_mongo_client(uri: str) -> AsyncIOMotorClient:
    # One client per URI – Motor manages its own connection pool internally.
    return AsyncIOMotorClient(uri)


def get_db(uri: str, fallback_name: str = "intake") -> AsyncIOMotorDatabase:
    client = get_mongo_client(uri)
    try:
        # Preferred: database name in URI path (e.g. ...mongodb.net/intake)
        return client.get_default_database()
    except ConfigurationError:
        # Fallback for URIs without db path.
        return client.get_database(fallback_name)


async def ensure_audit_indexes(db, retention_days: int) -> None:
    """
    Ensure indexes for audit lookups and automatic retention.
    """
    collection = db[AUDIT_COLLECTION]
    await collection.create_index("event")
    await collection.create_index(
        "created_at",
        expireAfterSeconds=retention_days * 24 * 60 * 60,
        name="audit_created_at_ttl",
    )
