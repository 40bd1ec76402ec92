"""
Cloud Firestore implementation of the remote store contract.

Reads, writes and transactions go through the async client from
``firebase_admin.firestore_async``. Live queries use the synchronous client's
``on_snapshot`` watch, whose callbacks run on a listener thread and are handed
to the event loop with ``call_soon_threadsafe``.

The server SDK has no offline persistence, so this store remembers the last
server result of every query and document and serves ``Source.CACHE`` reads
from that memory. Writes made through the store drop cached query results for
the collection they touch.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Optional, Set

from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore import async_transactional
from google.cloud.firestore_v1.base_query import FieldFilter as _FF

from classroom_sync.errors import CacheMiss, StoreError, StoreUnavailable
from classroom_sync.firebase_init import get_db, get_listener_db
from classroom_sync.store import (
    DESCENDING, DISJUNCTIVE_OPERATORS, SERVER_TIMESTAMP, ArrayUnion, Document,
    Increment, QuerySnapshot, RemoteStore, Source, Subscription, Transaction,
    check_batch_size, check_query_limits,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.ResourceExhausted,
    google_exceptions.InternalServerError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@contextmanager
def _translate_errors(action):
    try:
        yield
    except _TRANSIENT_ERRORS as exc:
        raise StoreUnavailable(f'{action} failed: {exc}') from exc
    except google_exceptions.GoogleAPICallError as exc:
        raise StoreError(f'{action} failed: {exc}') from exc


def _to_document(doc_snapshot) -> Optional[Document]:
    """Convert a Firestore DocumentSnapshot to a Document, None if missing."""
    if not doc_snapshot.exists:
        return None
    return Document(doc_snapshot.id, doc_snapshot.reference.path, doc_snapshot.to_dict() or {})


def _to_native(value):
    """Translate store write transforms into Firestore sentinels."""
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, Increment):
        return firestore.Increment(value.amount)
    if isinstance(value, ArrayUnion):
        return firestore.ArrayUnion([_to_native(v) for v in value.values])
    if isinstance(value, dict):
        return {k: _to_native(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_native(v) for v in value]
    return value


def _apply_shape(ref, query):
    for f in query.filters:
        value = list(f.value) if f.op in DISJUNCTIVE_OPERATORS else f.value
        ref = ref.where(filter=_FF(f.field, f.op, value))
    if query.order_by:
        direction = firestore.Query.DESCENDING if query.direction == DESCENDING else firestore.Query.ASCENDING
        ref = ref.order_by(query.order_by, direction=direction)
    if query.limit is not None:
        ref = ref.limit(query.limit)
    return ref


def _parent(path):
    return path.rstrip('/').rpartition('/')[0]


class _FirestoreTransaction(Transaction):

    def __init__(self, db, transaction):
        self._db = db
        self._transaction = transaction

    async def get(self, path):
        snapshot = await self._db.document(path).get(transaction=self._transaction)
        return _to_document(snapshot)

    def set(self, path, data, merge=False):
        self._transaction.set(self._db.document(path), _to_native(data), merge=merge)

    def update(self, path, data):
        self._transaction.update(self._db.document(path), _to_native(data))

    def delete(self, path):
        self._transaction.delete(self._db.document(path))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class FirestoreStore(RemoteStore):

    def __init__(self, db=None, listener_db=None):
        self._db = db if db is not None else get_db()
        self._listener_db = listener_db
        self._query_cache: Dict[str, QuerySnapshot] = {}
        self._query_keys: Dict[str, Set[str]] = defaultdict(set)
        self._doc_cache: Dict[str, Optional[Document]] = {}

    def _remember(self, query, snapshot):
        self._query_cache[query.cache_key] = snapshot
        self._query_keys[query.collection].add(query.cache_key)

    def _forget(self, path):
        self._doc_cache.pop(path, None)
        for key in self._query_keys.pop(_parent(path), set()):
            self._query_cache.pop(key, None)

    # -- Reads ---------------------------------------------------------------

    async def get_document(self, path, source=Source.DEFAULT):
        if source == Source.CACHE:
            if path not in self._doc_cache:
                raise CacheMiss(path)
            return self._doc_cache[path]
        try:
            with _translate_errors(f'get {path}'):
                snapshot = await self._db.document(path).get()
        except StoreUnavailable:
            if source == Source.DEFAULT and path in self._doc_cache:
                logger.warning('Serving cached %s while the store is unavailable', path)
                return self._doc_cache[path]
            raise
        document = _to_document(snapshot)
        self._doc_cache[path] = document
        return document

    async def query(self, query, source=Source.DEFAULT):
        check_query_limits(query)
        key = query.cache_key
        if source == Source.CACHE:
            if key not in self._query_cache:
                raise CacheMiss(key)
            cached = self._query_cache[key]
            return QuerySnapshot(list(cached.documents), from_cache=True)
        try:
            with _translate_errors(f'query {query.collection}'):
                ref = _apply_shape(self._db.collection(query.collection), query)
                cursor = query.start_after
                if cursor is not None:
                    anchor = await self._db.collection(query.collection).document(cursor.doc_id).get()
                    if anchor.exists:
                        ref = ref.start_after(anchor)
                    elif cursor.values and query.order_by:
                        ref = ref.start_after({query.order_by: cursor.values[0]})
                documents = [_to_document(doc) async for doc in ref.stream()]
        except StoreUnavailable:
            if source == Source.DEFAULT and key in self._query_cache:
                logger.warning('Serving cached %s while the store is unavailable', query.collection)
                return QuerySnapshot(list(self._query_cache[key].documents), from_cache=True)
            raise
        snapshot = QuerySnapshot(documents, from_cache=False)
        self._remember(query, snapshot)
        return snapshot

    # -- Writes --------------------------------------------------------------

    async def add(self, collection, data):
        with _translate_errors(f'add to {collection}'):
            _, doc_ref = await self._db.collection(collection).add(_to_native(data))
        self._forget(f'{collection}/{doc_ref.id}')
        return doc_ref.id

    async def set(self, path, data, merge=False):
        with _translate_errors(f'set {path}'):
            await self._db.document(path).set(_to_native(data), merge=merge)
        self._forget(path)

    async def update(self, path, data):
        with _translate_errors(f'update {path}'):
            await self._db.document(path).update(_to_native(data))
        self._forget(path)

    async def delete(self, path):
        with _translate_errors(f'delete {path}'):
            await self._db.document(path).delete()
        self._forget(path)

    async def batch_write(self, ops):
        check_batch_size(ops)
        batch = self._db.batch()
        for op in ops:
            ref = self._db.document(op.path)
            if op.kind == 'set':
                batch.set(ref, _to_native(op.data), merge=op.merge)
            elif op.kind == 'update':
                batch.update(ref, _to_native(op.data))
            elif op.kind == 'delete':
                batch.delete(ref)
            else:
                raise ValueError(f'Unknown batch operation: {op.kind}')
        with _translate_errors('batch commit'):
            await batch.commit()
        for op in ops:
            self._forget(op.path)

    async def run_transaction(self, fn):

        @async_transactional
        async def _run(transaction):
            return await fn(_FirestoreTransaction(self._db, transaction))

        with _translate_errors('transaction'):
            result = await _run(self._db.transaction())
        # Writes inside the transaction are not tracked individually.
        self._query_cache.clear()
        self._query_keys.clear()
        self._doc_cache.clear()
        return result

    # -- Subscriptions -------------------------------------------------------

    def subscribe(self, query):
        check_query_limits(query)
        if self._listener_db is None:
            self._listener_db = get_listener_db()
        loop = asyncio.get_running_loop()
        subscription = Subscription(query, loop=loop)

        def on_snapshot(docs, changes, read_time):
            documents = [d for d in (_to_document(doc) for doc in docs) if d is not None]
            subscription.push_threadsafe(QuerySnapshot(documents, from_cache=False))

        ref = _apply_shape(self._listener_db.collection(query.collection), query)
        watch = ref.on_snapshot(on_snapshot)
        subscription._on_close = watch.unsubscribe
        logger.debug('Subscribed to %s', query.collection)
        return subscription
