# tests/conftest.py
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

import asyncio
from datetime import datetime, timezone

import pytest
from bson import ObjectId
from bson.decimal128 import Decimal128
from httpx import ASGITransport, AsyncClient
from pymongo.errors import PyMongoError


def _copy(obj):
    """Copy nested dicts/lists so stored documents behave like a real store."""
    if isinstance(obj, dict):
        return {k: _copy(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_copy(v) for v in obj]
    return obj


def _resolve(doc, path):
    """
    Return every value found at a dotted path.

    Arrays are traversed the way MongoDB does, so ``retailers.retailerId``
    yields the retailerId of every element of ``retailers``.
    """
    values = [doc]
    for part in path.split("."):
        found = []
        for v in values:
            if isinstance(v, dict) and part in v:
                found.append(v[part])
            elif isinstance(v, list):
                found.extend(e[part] for e in v if isinstance(e, dict) and part in e)
        values = found
    return values


def _matches(doc, q):
    """Exact-match filter, dotted paths allowed."""
    return all(v in _resolve(doc, k) for k, v in (q or {}).items())


def _set_path(doc, path, value):
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


class FakeCursor:
    def __init__(self, docs):
        self._docs = list(docs)
        self._skip = 0
        self._limit = None

    def sort(self, order):
        """Sort by the first (field, direction) pair only."""
        field, direction = order[0]
        self._docs.sort(key=lambda d: d.get(field, ""), reverse=(direction < 0))
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        start = self._skip
        end = None if self._limit is None else start + self._limit
        return [_copy(d) for d in self._docs[start:end]]


class FakeChangeStream:
    """
    Stand-in for a motor change stream: an async context manager that
    iterates over scripted change events, then optionally raises.
    """

    def __init__(self, events, error=None):
        self._events = list(events)
        self._error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._events:
            return self._events.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration


class FakeCollection:
    """
    In-memory collection exposing the subset of the motor API the engine uses.

    Setting ``fail_writes`` makes every write raise PyMongoError; ``change_events``
    and ``watch_error`` script what ``watch()`` delivers.
    """

    def __init__(self, docs=None):
        self.docs = [_copy(d) for d in (docs or [])]
        for d in self.docs:
            if "_id" not in d:
                d["_id"] = str(ObjectId())
        self.fail_writes = False
        self.writes = 0
        self.change_events = []
        self.watch_error = None

    def _check_write(self):
        if self.fail_writes:
            raise PyMongoError("write failed")
        self.writes += 1

    def _find_stored(self, q):
        for d in self.docs:
            if _matches(d, q):
                return d
        return None

    async def find_one(self, q, session=None):
        d = self._find_stored(q)
        return _copy(d) if d is not None else None

    def find(self, q=None):
        return FakeCursor([d for d in self.docs if _matches(d, q)])

    async def update_one(self, q, u, upsert=False, session=None):
        """
        Apply a ``$set`` update (dotted paths allowed) to the first match.

        With ``upsert=True`` a missing document is created from the equality
        fields of the filter plus the ``$set`` fields.
        """
        self._check_write()
        doc = self._find_stored(q)
        if doc is None:
            if not upsert:
                return {"matched_count": 0}
            doc = {k: v for k, v in q.items() if not isinstance(v, dict)}
            self.docs.append(doc)
        for k, v in u.get("$set", {}).items():
            _set_path(doc, k, _copy(v))
        return {"matched_count": 1}

    async def replace_one(self, q, replacement, upsert=False, session=None):
        self._check_write()
        doc = self._find_stored(q)
        if doc is None:
            if not upsert:
                return {"matched_count": 0}
            self.docs.append(_copy(replacement))
            return {"matched_count": 0}
        doc.clear()
        doc.update(_copy(replacement))
        return {"matched_count": 1}

    async def count_documents(self, q=None):
        return sum(1 for d in self.docs if _matches(d, q))

    def watch(self, pipeline=None, full_document=None):
        if self.watch_error is not None and not self.change_events:
            raise self.watch_error
        return FakeChangeStream(self.change_events, self.watch_error)


class FakeDB:
    def __init__(self, items=None, retailers=None, settings=None, history=None):
        self.product_items = FakeCollection(items)
        self.product_retailers = FakeCollection(retailers)
        self.product_settings = FakeCollection(settings)
        self.product_history = FakeCollection(history)


class FakeSession:
    """
    Session whose ``with_transaction`` serialises callbacks and rolls the
    history collection back if the callback raises.
    """

    def __init__(self, client):
        self.client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def with_transaction(self, callback):
        async with self.client.lock:
            coll = self.client.db.product_history
            snapshot = _copy(coll.docs)
            try:
                result = await callback(self)
            except Exception:
                coll.docs = snapshot
                raise
            self.client.transactions += 1
            return result


class FakeClient:
    def __init__(self, db):
        self.db = db
        self.lock = asyncio.Lock()
        self.transactions = 0

    async def start_session(self):
        return FakeSession(self)


NOW = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sample_retailers():
    return [
        {
            "_id": "woolworths",
            "name": "Woolworths",
            "domain": "www.woolworths.com.au",
            "logo": "https://example/woolworths.png",
            "linkToSearch": "https://www.woolworths.com.au/shop/search?q={query}",
            "priceSelector": ".price-dollars",
        },
        {
            "_id": "coles",
            "name": "Coles",
            "domain": "www.coles.com.au",
            "logo": "https://example/coles.png",
            "linkToSearch": "https://www.coles.com.au/search?q={query}",
        },
    ]


@pytest.fixture
def sample_items():
    """
    Two products: "Dog Food" sold at both retailers (one link never fetched
    before, one fetched yesterday) and "Cat Litter" with a link already
    attempted today plus one with no URL.
    """
    return [
        {
            "_id": "item1",
            "name": "Dog Food",
            "image": "https://example/dog.png",
            "retailers": [
                {
                    "retailerId": "woolworths",
                    "urlParameters": "/shop/productdetails/1",
                    "retailerWouldSell": True,
                    "packId": 1,
                },
                {
                    "retailerId": "coles",
                    "urlParameters": "/product/dog-food-2",
                    "latestPrice": Decimal128("20.00"),
                    "lastScraped": datetime(2024, 3, 14, 1, 0, tzinfo=timezone.utc),
                    "packId": 2,
                    "errorOnLastScrap": False,
                },
            ],
        },
        {
            "_id": "item2",
            "name": "Cat Litter",
            "image": "",
            "retailers": [
                {
                    "retailerId": "woolworths",
                    "urlParameters": "/shop/productdetails/9",
                    "latestPrice": 7.5,
                    "lastScraped": datetime(2024, 3, 15, 8, 0, tzinfo=timezone.utc),
                },
                {"retailerId": "coles", "urlParameters": None},
            ],
        },
    ]


@pytest.fixture
def fake_db(sample_items, sample_retailers):
    return FakeDB(
        items=sample_items,
        retailers=sample_retailers,
        settings=[{"_id": "Settings", "ScraperState": "Idle"}],
    )


@pytest.fixture
def fake_client(fake_db):
    return FakeClient(fake_db)


@pytest.fixture
def store(monkeypatch, fake_db, fake_client):
    """Route every repricer.db call to the in-memory fakes."""
    monkeypatch.setattr("repricer.db.get_db", lambda: fake_db)
    monkeypatch.setattr("repricer.db.get_client", lambda: fake_client)
    return fake_db


class StubFetcher:
    """
    PriceFetcher returning scripted results keyed by (retailer_id, url).

    A result may be a Decimal/float (returned) or an exception instance
    (raised). Every call is recorded.
    """

    def __init__(self, results=None, default=None):
        self.results = dict(results or {})
        self.default = default
        self.calls = []

    async def fetch(self, retailer_id, url_parameters):
        self.calls.append((retailer_id, url_parameters))
        result = self.results.get((retailer_id, url_parameters), self.default)
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise AssertionError(f"unexpected fetch {retailer_id} {url_parameters}")
        return result


@pytest.fixture
def stub_fetcher():
    return StubFetcher


@pytest.fixture
async def client(monkeypatch, store):
    """
    Async test client for the operator API backed by the fake store.

    The server-side API key is forced to "testapikey".
    """
    from api.main import app
    from api.rate_limit import limiter

    monkeypatch.setattr("api.main.get_db", lambda: store)
    monkeypatch.setattr("api.auth.API_KEY", "testapikey")
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
