"""
Shared fixtures for the settlement test suite.

FakeDatabase is an in-memory stand-in for the motor database handle. It
implements the query/update subset the services use, enforces the unique
indexes declared in settlement.db_init, and yields to the event loop before
every operation so concurrent coroutines interleave between a read and the
conditional write that follows it.
"""

import asyncio
import copy
import itertools
import random
import sys
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

sys.path.insert(0, str(Path(__file__).parent.parent))

from settlement.db_init import REQUIRED_INDEXES
from settlement.momo_service import MoMoCollectionService
from settlement.token_manager import MoMoTokenManager
from settlement.wallet_service import WalletService

_MISSING = object()
_ids = itertools.count(1)


# ==================== QUERY MATCHING ====================

def _equals(value, expected) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _compare(value, op, arg) -> bool:
    if value is _MISSING or value is None:
        return False
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    if op == "$lt":
        return value < arg
    return value <= arg


def _matches_condition(value, condition) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op in ("$gt", "$gte", "$lt", "$lte"):
                ok = _compare(value, op, arg)
            elif op == "$ne":
                ok = not _equals(value, arg)
            elif op == "$in":
                ok = any(_equals(value, a) for a in arg)
            elif op == "$nin":
                ok = not any(_equals(value, a) for a in arg)
            elif op == "$exists":
                ok = (value is not _MISSING) == bool(arg)
            else:
                raise NotImplementedError(op)
            if not ok:
                return False
        return True
    return _equals(value, condition)


def matches(doc, query) -> bool:
    return all(_matches_condition(doc.get(k, _MISSING), cond) for k, cond in (query or {}).items())


def project(doc, projection):
    if doc is None:
        return None
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


def apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        for key, value in fields.items():
            if op == "$set":
                doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                doc[key] = doc.get(key, 0) + value
            elif op == "$push":
                doc.setdefault(key, []).append(copy.deepcopy(value))
            elif op == "$unset":
                doc.pop(key, None)
            elif op == "$setOnInsert":
                if inserting:
                    doc[key] = copy.deepcopy(value)
            else:
                raise NotImplementedError(op)


# ==================== FAKE MOTOR OBJECTS ====================

class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._limit = 0

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key) or 0), reverse=direction < 0)
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = self._docs[:self._limit] if self._limit else self._docs
        return docs[:length] if length else docs


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = {}

    def add_index(self, keys, unique=False, sparse=False, partialFilterExpression=None, name=None, **kwargs):
        if isinstance(keys, str):
            keys = [(keys, 1)]
        fields = tuple(k for k, _ in keys)
        name = name or "_".join(f"{k}_1" for k in fields)
        self.indexes[name] = {
            "fields": fields,
            "unique": unique,
            "sparse": sparse or partialFilterExpression is not None
        }
        return name

    async def create_index(self, keys, **options):
        await asyncio.sleep(0)
        return self.add_index(keys, **options)

    async def index_information(self):
        info = {"_id_": {"key": [("_id", 1)]}}
        info.update({n: {"key": [(f, 1) for f in i["fields"]], "unique": i["unique"]} for n, i in self.indexes.items()})
        return info

    def _check_unique(self, candidate, replacing=None):
        for name, index in self.indexes.items():
            if not index["unique"]:
                continue
            values = tuple(candidate.get(f) for f in index["fields"])
            if index["sparse"] and any(v is None for v in values):
                continue
            for other in self.docs:
                if other is replacing:
                    continue
                if tuple(other.get(f) for f in index["fields"]) == values:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {name}")

    def _first(self, query):
        return next((d for d in self.docs if matches(d, query)), None)

    def _insert(self, doc):
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", next(_ids))
        self._check_unique(stored)
        self.docs.append(stored)
        doc["_id"] = stored["_id"]
        return stored

    def _update(self, doc, update):
        updated = copy.deepcopy(doc)
        apply_update(updated, update)
        self._check_unique(updated, replacing=doc)
        doc.clear()
        doc.update(updated)

    def _upsert(self, query, update):
        new_doc = {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}
        apply_update(new_doc, update, inserting=True)
        return self._insert(new_doc)

    async def insert_one(self, doc):
        await asyncio.sleep(0)
        stored = self._insert(doc)
        return SimpleNamespace(inserted_id=stored["_id"])

    async def insert_many(self, docs):
        await asyncio.sleep(0)
        return SimpleNamespace(inserted_ids=[self._insert(d)["_id"] for d in docs])

    async def find_one(self, query=None, projection=None):
        await asyncio.sleep(0)
        return project(self._first(query), projection)

    def find(self, query=None, projection=None):
        return FakeCursor([project(d, projection) for d in self.docs if matches(d, query)])

    async def update_one(self, query, update, upsert=False):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is not None:
            self._update(doc, update)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            stored = self._upsert(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=stored["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update):
        await asyncio.sleep(0)
        targets = [d for d in self.docs if matches(d, query)]
        for doc in targets:
            self._update(doc, update)
        return SimpleNamespace(matched_count=len(targets), modified_count=len(targets))

    async def find_one_and_update(self, query, update, projection=None,
                                  return_document=ReturnDocument.BEFORE, upsert=False):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return None
            doc = self._upsert(query, update)
            return project(doc, projection) if return_document == ReturnDocument.AFTER else None
        before = copy.deepcopy(doc)
        self._update(doc, update)
        return project(doc if return_document == ReturnDocument.AFTER else before, projection)

    async def delete_one(self, query):
        await asyncio.sleep(0)
        doc = self._first(query)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, query))


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


# ==================== FIXTURES ====================

@pytest.fixture
def bare_db():
    """Database without any index (for index bootstrap tests)."""
    return FakeDatabase()


@pytest.fixture
def db():
    """Database with the production unique indexes in place."""
    fake = FakeDatabase()
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        fake[collection_name].add_index(index_spec, **options)
    return fake


@pytest.fixture
def rng():
    return random.Random(1234)


# ==================== MTN MOMO PROVIDER ====================

class FakeMoMoProvider:
    """
    httpx.MockTransport handler for the token and request-to-pay endpoints.

    statuses maps X-Reference-Id -> provider status body (or an int HTTP code).
    """

    def __init__(self):
        self.requests = []
        self.statuses = {}
        self.token_count = 0
        self.requesttopay_status = 202
        self.requesttopay_error = None
        self.poll_error = None

    def by_path(self, suffix, method=None):
        return [r for r in self.requests
                if r.url.path.endswith(suffix) and (method is None or r.method == method)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        await asyncio.sleep(0)
        path = request.url.path

        if path.endswith("/collection/token/"):
            self.token_count += 1
            return httpx.Response(200, json={
                "access_token": f"token-{self.token_count}",
                "token_type": "access_token",
                "expires_in": 3600
            })

        if path.endswith("/collection/v1_0/requesttopay") and request.method == "POST":
            if self.requesttopay_error:
                raise self.requesttopay_error
            reference = request.headers["X-Reference-Id"]
            self.statuses.setdefault(reference, {"status": "PENDING"})
            if self.requesttopay_status >= 400:
                return httpx.Response(self.requesttopay_status, json={
                    "code": "PAYER_NOT_FOUND",
                    "message": "Payer not found"
                })
            return httpx.Response(self.requesttopay_status)

        if "/collection/v1_0/requesttopay/" in path and request.method == "GET":
            if self.poll_error:
                raise self.poll_error
            reference = path.rsplit("/", 1)[-1]
            status = self.statuses.get(reference)
            if status is None:
                return httpx.Response(404, json={"code": "RESOURCE_NOT_FOUND"})
            if isinstance(status, int):
                return httpx.Response(status)
            return httpx.Response(200, json={"financialTransactionId": "ft-1", **status})

        return httpx.Response(500)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def set_status(self, reference, status, reason=None):
        body = {"status": status}
        if reason:
            body["reason"] = reason
        self.statuses[reference] = body


@pytest.fixture
def momo_provider():
    return FakeMoMoProvider()


@pytest.fixture
def token_manager(momo_provider):
    return MoMoTokenManager(
        subscription_key="sub-key",
        api_user="api-user",
        api_key="api-key",
        env="sandbox",
        transport=momo_provider.transport()
    )


@pytest.fixture
def momo_service(db, token_manager, momo_provider):
    return MoMoCollectionService(db, token_manager, env="sandbox", transport=momo_provider.transport())


@pytest.fixture
def wallet_service(db):
    return WalletService(db)


@pytest.fixture
def fund(wallet_service):
    """Seed a wallet balance through the ledger so reconciliation holds."""
    async def _fund(user_id, amount, key=None):
        return await wallet_service.credit(
            user_id=user_id,
            amount=amount,
            kind="deposit",
            reason="Test deposit",
            idempotency_key=key or f"seed:{user_id}:{amount}"
        )
    return _fund
