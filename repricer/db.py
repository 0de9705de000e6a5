# repricer/db.py
import logging
import os
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError
from pymongo.errors import PyMongoError
from dotenv import load_dotenv

from .errors import ConfigurationFailure, PersistenceFailure, StreamFailure
from .models import ProductItem, RetailerInfo, ScraperState

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI")
MONGO_DB = os.getenv("MONGO_DB")

SETTINGS_ID = "Settings"
STATE_FIELD = "ScraperState"

logger = logging.getLogger("repricer.db")

_client = None
_db = None


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        if not MONGO_URI or not MONGO_DB:
            raise ConfigurationFailure("MONGO_URI and MONGO_DB must be set")
        _client = AsyncIOMotorClient(MONGO_URI, tz_aware=True)
        _db = _client[MONGO_DB]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed."""
    global _db
    if _db is None:
        get_client()
    return _db


async def ping():
    """Fail startup early when the store cannot be reached."""
    try:
        await get_client().admin.command("ping")
    except PyMongoError as e:
        raise ConfigurationFailure(f"Document store unreachable: {e}") from e


async def load_retailers():
    """Read the whole product_retailers collection."""
    db = get_db()
    docs = await db.product_retailers.find({}).to_list(length=None)
    return [RetailerInfo.model_validate(d) for d in docs]


async def fetch_product_items():
    """
    Read every product item document.

    Documents that do not validate are logged and left out so that one
    malformed product cannot stop a whole catalog pass.
    """
    db = get_db()
    docs = await db.product_items.find({}).to_list(length=None)
    items = []
    for doc in docs:
        try:
            items.append(ProductItem.model_validate(doc))
        except ValidationError as e:
            logger.error(f"Skipping malformed product item {doc.get('_id')}: {e}")
    return items


async def save_product_item(item):
    """
    Write an item's display fields and retailer links back to its document.

    Only the fields the engine owns are set; anything else on the document is
    left alone.

    Raises:
        PersistenceFailure: If the write fails
    """
    db = get_db()
    try:
        await db.product_items.update_one(
            {"_id": item.source_id}, {"$set": item.to_document()}, upsert=True
        )
    except PyMongoError as e:
        raise PersistenceFailure(
            f"Failed to save product item {item.source_id}: {e}"
        ) from e


def history_doc_id(product_id, bucket_id):
    return f"{product_id}/{bucket_id}"


async def update_history(product_id, bucket_id, update_days):
    """
    Read-modify-write one history bucket document inside a transaction.

    Args:
        product_id: ``_id`` of the owning product item
        bucket_id (str): Period id the document covers
        update_days (callable): Receives the stored ``days`` mapping, or None
            when the bucket does not exist yet, and returns the mapping to
            store. It may run more than once if the transaction is retried, so
            it must not have side effects.

    Raises:
        PersistenceFailure: If the transaction cannot be committed
    """
    client = get_client()
    db = get_db()
    doc_id = history_doc_id(product_id, bucket_id)

    async def txn(session):
        existing = await db.product_history.find_one({"_id": doc_id}, session=session)
        days = update_days(existing.get("days", {}) if existing else None)
        await db.product_history.replace_one(
            {"_id": doc_id},
            {
                "_id": doc_id,
                "product_id": str(product_id),
                "bucket_id": bucket_id,
                "days": days,
            },
            upsert=True,
            session=session,
        )

    try:
        async with await client.start_session() as session:
            await session.with_transaction(txn)
    except PyMongoError as e:
        raise PersistenceFailure(
            f"History transaction failed for {doc_id}: {e}"
        ) from e


async def get_history(product_id, bucket_id=None):
    """Return history documents of a product, newest bucket first."""
    db = get_db()
    q = {"product_id": product_id}
    if bucket_id:
        q["bucket_id"] = bucket_id
    docs = await db.product_history.find(q).to_list(length=None)
    return sorted(docs, key=_bucket_sort_key, reverse=True)


# quarters in calendar order within one year: Q3 Jan-Mar ... Q2 Oct-Dec
QUARTER_ORDER = {"3": 0, "4": 1, "1": 2, "2": 3}


def _bucket_sort_key(doc):
    bucket = doc.get("bucket_id", "")
    if bucket.startswith("Q") and len(bucket) > 2:
        return (bucket[2:], QUARTER_ORDER.get(bucket[1], -1))
    return (bucket, -1)


class ScraperStateFlag:
    """
    The ScraperState field of the ``Settings`` document in product_settings.

    Both the engine and the operator API read and write it; the trigger
    monitor subscribes to it.
    """

    async def read(self):
        doc = await get_db().product_settings.find_one({"_id": SETTINGS_ID})
        return doc.get(STATE_FIELD) if doc else None

    async def write(self, state):
        state = ScraperState(state).value
        logger.info(f"Updating ScraperState to '{state}'...")
        try:
            await get_db().product_settings.update_one(
                {"_id": SETTINGS_ID}, {"$set": {STATE_FIELD: state}}, upsert=True
            )
        except PyMongoError as e:
            raise PersistenceFailure(f"Failed to update ScraperState: {e}") from e
        logger.info(f"ScraperState successfully updated to '{state}'.")

    async def subscribe(self):
        """
        Yield the flag's value now and after every change.

        The change stream is opened before the current value is read so no
        change can slip in between. A deleted document yields None.

        Raises:
            StreamFailure: On any driver error while opening or reading
        """
        pipeline = [{"$match": {"documentKey._id": SETTINGS_ID}}]
        try:
            async with get_db().product_settings.watch(
                pipeline, full_document="updateLookup"
            ) as stream:
                yield await self.read()
                async for change in stream:
                    if change.get("operationType") == "delete":
                        yield None
                        continue
                    doc = change.get("fullDocument") or {}
                    yield doc.get(STATE_FIELD)
        except PyMongoError as e:
            raise StreamFailure(str(e)) from e
