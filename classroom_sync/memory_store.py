"""
In-process implementation of the remote store contract.

Keeps a "server" dict of documents plus a client-side cache that is filled by
server reads and by this client's own writes, the way an offline-capable
document store client behaves. Used for local development and by the test
suite; supports latency and fault injection so timeout, retry and reentrancy
behaviour can be exercised without a network.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from classroom_sync.errors import CacheMiss, StoreError, StoreUnavailable
from classroom_sync.store import (
    DESCENDING, SERVER_TIMESTAMP, ArrayUnion, BatchOp, Document, FieldFilter,
    Increment, Query, QuerySnapshot, RemoteStore, Source, Subscription,
    Transaction, check_batch_size, check_query_limits,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def _now():
    return datetime.now(timezone.utc)


def _split_path(path: str):
    parent, _, doc_id = path.rstrip('/').rpartition('/')
    if not parent:
        raise ValueError(f'Not a document path: {path}')
    return parent, doc_id


def _get_field(data: Dict[str, Any], field_path: str):
    current = data
    for part in field_path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _resolve(value, current=_MISSING):
    """Apply a write transform against the current field value."""
    if value is SERVER_TIMESTAMP:
        return _now()
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        items = list(current) if isinstance(current, list) else []
        for v in value.values:
            if v not in items:
                items.append(copy.deepcopy(v))
        return items
    if isinstance(value, dict):
        base = current if isinstance(current, dict) else {}
        return {k: _resolve(v, base.get(k, _MISSING)) for k, v in value.items()}
    return copy.deepcopy(value)


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]):
    for key, value in source.items():
        current = target.get(key, _MISSING)
        if isinstance(value, dict) and isinstance(current, dict):
            _deep_merge(current, value)
        else:
            target[key] = _resolve(value, current)


def _set_path(data: Dict[str, Any], field_path: str, value):
    parts = field_path.split('.')
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = _resolve(value, current.get(parts[-1], _MISSING))


def _matches(data: Dict[str, Any], f: FieldFilter) -> bool:
    value = _get_field(data, f.field)
    if value is _MISSING:
        return False
    try:
        if f.op == '==':
            return value == f.value
        if f.op == '!=':
            return value != f.value and value is not None
        if f.op == 'in':
            return value in f.value
        if f.op == 'array_contains':
            return isinstance(value, list) and f.value in value
        if f.op == 'array_contains_any':
            return isinstance(value, list) and any(v in value for v in f.value)
        if value is None:
            return False
        if f.op == '<':
            return value < f.value
        if f.op == '<=':
            return value <= f.value
        if f.op == '>':
            return value > f.value
        if f.op == '>=':
            return value >= f.value
    except TypeError:
        return False
    return False


def _run_query(docs: Dict[str, Dict[str, Any]], query: Query) -> List[Document]:
    results = []
    for path, data in docs.items():
        parent, doc_id = _split_path(path)
        if parent != query.collection:
            continue
        if all(_matches(data, f) for f in query.filters):
            results.append(Document(doc_id, path, copy.deepcopy(data)))

    if query.order_by:
        results = [d for d in results if _get_field(d.data, query.order_by) not in (_MISSING, None)]
        descending = query.direction == DESCENDING

        def key(doc):
            return (_get_field(doc.data, query.order_by), doc.id)

        results.sort(key=key, reverse=descending)
        if query.start_after is not None:
            cursor = query.start_after
            cursor_key = (cursor.values[0] if cursor.values else None, cursor.doc_id)
            if cursor_key[0] is None:
                anchor = docs.get(f'{query.collection}/{cursor.doc_id}')
                if anchor is not None:
                    cursor_key = (_get_field(anchor, query.order_by), cursor.doc_id)
            if descending:
                results = [d for d in results if key(d) < cursor_key]
            else:
                results = [d for d in results if key(d) > cursor_key]
    else:
        results.sort(key=lambda d: d.id)
        if query.start_after is not None:
            results = [d for d in results if d.id > query.start_after.doc_id]

    if query.limit is not None:
        results = results[:query.limit]
    return results


class _MemoryTransaction(Transaction):

    def __init__(self, store: MemoryStore):
        self._store = store
        self.ops: List[BatchOp] = []

    async def get(self, path):
        self._store.server_reads += 1
        data = self._store._docs.get(path)
        if data is None:
            return None
        self._store._cache[path] = copy.deepcopy(data)
        return Document(_split_path(path)[1], path, copy.deepcopy(data))

    def set(self, path, data, merge=False):
        self.ops.append(BatchOp.set(path, data, merge))

    def update(self, path, data):
        self.ops.append(BatchOp.update(path, data))

    def delete(self, path):
        self.ops.append(BatchOp.delete(path))


class MemoryStore(RemoteStore):

    def __init__(self, latency: float = 0.0, cache_enabled: bool = True):
        self.latency = latency
        self.cache_enabled = cache_enabled
        self.offline = False
        self.server_reads = 0
        self.cache_reads = 0
        self.writes = 0
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._subscriptions: List[Subscription] = []
        self._last_pushed: Dict[int, Any] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._id_counter = 0

    # -- Test and seeding helpers --------------------------------------------

    def seed_document(self, path: str, data: Dict[str, Any]):
        """Write a document server-side without touching the client cache."""
        self._docs[path] = _resolve(data)
        self._notify()

    def server_document(self, path: str) -> Optional[Dict[str, Any]]:
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    def clear_cache(self):
        self._cache.clear()

    def inject_failure(self, op: str, exc: Optional[Exception] = None, times: int = 1):
        """Make the next ``times`` server calls of kind ``op`` raise.

        ``op`` is one of 'get', 'query', 'write', 'transaction'.
        """
        for _ in range(times):
            self._failures[op].append(exc or StoreUnavailable(f'{op} failed'))

    def _next_id(self) -> str:
        self._id_counter += 1
        return f'doc{self._id_counter:06d}'

    async def _network(self, op: str):
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise StoreUnavailable('Store is offline')
        if self._failures[op]:
            raise self._failures[op].pop(0)

    # -- Reads ---------------------------------------------------------------

    async def get_document(self, path, source=Source.DEFAULT):
        if source == Source.CACHE:
            return self._get_cached(path)
        try:
            await self._network('get')
        except StoreUnavailable:
            if source == Source.DEFAULT and self.cache_enabled:
                return self._get_cached(path)
            raise
        self.server_reads += 1
        data = self._docs.get(path)
        if data is None:
            return None
        if self.cache_enabled:
            self._cache[path] = copy.deepcopy(data)
        return Document(_split_path(path)[1], path, copy.deepcopy(data))

    def _get_cached(self, path):
        if not self.cache_enabled:
            raise CacheMiss(path)
        self.cache_reads += 1
        data = self._cache.get(path)
        if data is None:
            return None
        return Document(_split_path(path)[1], path, copy.deepcopy(data))

    async def query(self, query, source=Source.DEFAULT):
        check_query_limits(query)
        if source == Source.CACHE:
            return self._query_cache(query)
        try:
            await self._network('query')
        except StoreUnavailable:
            if source == Source.DEFAULT and self.cache_enabled:
                return self._query_cache(query)
            raise
        self.server_reads += 1
        documents = _run_query(self._docs, query)
        if self.cache_enabled:
            for doc in documents:
                self._cache[doc.path] = copy.deepcopy(doc.data)
        return QuerySnapshot(documents, from_cache=False)

    def _query_cache(self, query):
        if not self.cache_enabled:
            raise CacheMiss(query.cache_key)
        self.cache_reads += 1
        return QuerySnapshot(_run_query(self._cache, query), from_cache=True)

    # -- Writes --------------------------------------------------------------

    async def add(self, collection, data):
        await self._network('write')
        path = f'{collection}/{self._next_id()}'
        self._apply_ops([BatchOp.set(path, data)])
        return _split_path(path)[1]

    async def set(self, path, data, merge=False):
        await self._network('write')
        self._apply_ops([BatchOp.set(path, data, merge)])

    async def update(self, path, data):
        await self._network('write')
        self._apply_ops([BatchOp.update(path, data)])

    async def delete(self, path):
        await self._network('write')
        self._apply_ops([BatchOp.delete(path)])

    async def batch_write(self, ops: Sequence[BatchOp]):
        check_batch_size(ops)
        await self._network('write')
        self._apply_ops(list(ops))

    async def run_transaction(self, fn):
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            await self._network('transaction')
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            self._apply_ops(tx.ops)
            return result

    def _apply_ops(self, ops: List[BatchOp]):
        # Stage every write first so a failing op leaves the store untouched.
        staged = {}
        for op in ops:
            current = staged.get(op.path, self._docs.get(op.path))
            if op.kind == 'delete':
                staged[op.path] = None
            elif op.kind == 'set':
                if op.merge and current is not None:
                    merged = copy.deepcopy(current)
                    _deep_merge(merged, op.data)
                    staged[op.path] = merged
                else:
                    staged[op.path] = _resolve(op.data)
            elif op.kind == 'update':
                if current is None:
                    raise StoreError(f'No document to update: {op.path}')
                updated = copy.deepcopy(current)
                for key, value in op.data.items():
                    _set_path(updated, key, value)
                staged[op.path] = updated
            else:
                raise ValueError(f'Unknown batch operation: {op.kind}')

        for path, data in staged.items():
            self.writes += 1
            if data is None:
                self._docs.pop(path, None)
                self._cache.pop(path, None)
            else:
                self._docs[path] = data
                if self.cache_enabled:
                    self._cache[path] = copy.deepcopy(data)
        self._notify()

    # -- Subscriptions -------------------------------------------------------

    def subscribe(self, query):
        check_query_limits(query)
        subscription = Subscription(query)
        subscription._on_close = lambda: self._unsubscribe(subscription)
        self._subscriptions.append(subscription)
        self._push(subscription)
        return subscription

    def _unsubscribe(self, subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        self._last_pushed.pop(id(subscription), None)

    def _push(self, subscription):
        documents = _run_query(self._docs, subscription.query)
        fingerprint = [(d.id, d.data) for d in documents]
        if self._last_pushed.get(id(subscription), _MISSING) == fingerprint:
            return
        self._last_pushed[id(subscription)] = fingerprint
        subscription.push(QuerySnapshot(documents, from_cache=False))

    def _notify(self):
        for subscription in list(self._subscriptions):
            self._push(subscription)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)
