"""
Remote document store contract.

Services never talk to a concrete database client. They build immutable
``Query`` descriptors and call a ``RemoteStore`` implementation:
``FirestoreStore`` in production, ``MemoryStore`` for local runs and tests.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# Cap enforced by the store on 'in' / 'array_contains_any' value lists.
MAX_DISJUNCTION_VALUES = 10

# Maximum number of writes in one atomic batch.
MAX_BATCH_WRITES = 500

ASCENDING = 'ASCENDING'
DESCENDING = 'DESCENDING'

FILTER_OPERATORS = ('==', '!=', '<', '<=', '>', '>=', 'array_contains', 'array_contains_any', 'in')
DISJUNCTIVE_OPERATORS = ('array_contains_any', 'in')


class Source(str, Enum):
    DEFAULT = 'default'
    CACHE = 'cache'
    SERVER = 'server'


def chunked(values: Sequence[Any], size: int = MAX_DISJUNCTION_VALUES) -> List[List[Any]]:
    """Split ``values`` into consecutive lists of at most ``size`` items."""
    values = list(values)
    return [values[i:i + size] for i in range(0, len(values), size)]


# ---------------------------------------------------------------------------
# Write transforms
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Increment:
    amount: float = 1


@dataclass(frozen=True)
class ArrayUnion:
    values: Tuple[Any, ...]

    def __init__(self, values):
        object.__setattr__(self, 'values', tuple(values))


class _ServerTimestamp:
    def __repr__(self):
        return 'SERVER_TIMESTAMP'


SERVER_TIMESTAMP = _ServerTimestamp()


# ---------------------------------------------------------------------------
# Queries and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f'Unsupported filter operator: {self.op}')
        if self.op in DISJUNCTIVE_OPERATORS:
            object.__setattr__(self, 'value', tuple(self.value))


@dataclass(frozen=True)
class Cursor:
    """Opaque position just after a document in an ordered feed."""
    doc_id: str
    values: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    order_by: Optional[str] = None
    direction: str = ASCENDING
    limit: Optional[int] = None
    start_after: Optional[Cursor] = None

    def where(self, field_path, op, value) -> Query:
        return replace(self, filters=self.filters + (FieldFilter(field_path, op, value),))

    def order(self, field_path, direction=ASCENDING) -> Query:
        return replace(self, order_by=field_path, direction=direction)

    def limited(self, count) -> Query:
        return replace(self, limit=count)

    def after(self, cursor: Optional[Cursor]) -> Query:
        return replace(self, start_after=cursor)

    @property
    def cache_key(self) -> str:
        return repr(self)


@dataclass
class Document:
    id: str
    path: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key, default=None):
        return self.data.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Document fields with the document ID under 'id'."""
        d = dict(self.data)
        d['id'] = self.id
        return d

    def cursor(self, order_by: Optional[str] = None) -> Cursor:
        values = (self.data.get(order_by),) if order_by else ()
        return Cursor(self.id, values)


@dataclass
class QuerySnapshot:
    documents: List[Document] = field(default_factory=list)
    from_cache: bool = False

    @property
    def empty(self) -> bool:
        return not self.documents

    @property
    def size(self) -> int:
        return len(self.documents)

    def __iter__(self) -> Iterator[Document]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)


@dataclass(frozen=True)
class BatchOp:
    kind: str
    path: str
    data: Optional[Dict[str, Any]] = None
    merge: bool = False

    @classmethod
    def set(cls, path, data, merge=False) -> BatchOp:
        return cls('set', path, data, merge)

    @classmethod
    def update(cls, path, data) -> BatchOp:
        return cls('update', path, data)

    @classmethod
    def delete(cls, path) -> BatchOp:
        return cls('delete', path)


# ---------------------------------------------------------------------------
# Live subscriptions
# ---------------------------------------------------------------------------

class Subscription:
    """Cancelable async stream of ``QuerySnapshot`` values.

    Producers call ``push`` from the event loop or ``push_threadsafe`` from a
    listener thread. Consumers iterate with ``async for``; iteration ends once
    ``close`` has been called.
    """

    _CLOSED = object()

    def __init__(self, query: Query, on_close: Optional[Callable[[], None]] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.query = query
        self._on_close = on_close
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, snapshot: QuerySnapshot):
        if not self.closed:
            self._queue.put_nowait(snapshot)

    def push_threadsafe(self, snapshot: QuerySnapshot):
        if self._loop is None:
            raise RuntimeError('Subscription has no event loop bound')
        self._loop.call_soon_threadsafe(self.push, snapshot)

    def close(self):
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close()
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> QuerySnapshot:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class Transaction(ABC):
    """Read-then-write unit; writes apply only if the function returns."""

    @abstractmethod
    async def get(self, path: str) -> Optional[Document]:
        ...

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any], merge: bool = False):
        ...

    @abstractmethod
    def update(self, path: str, data: Dict[str, Any]):
        ...

    @abstractmethod
    def delete(self, path: str):
        ...


TransactionFn = Callable[[Transaction], Awaitable[Any]]


class RemoteStore(ABC):

    @abstractmethod
    async def get_document(self, path: str, source: Source = Source.DEFAULT) -> Optional[Document]:
        ...

    @abstractmethod
    async def query(self, query: Query, source: Source = Source.DEFAULT) -> QuerySnapshot:
        ...

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def set(self, path: str, data: Dict[str, Any], merge: bool = False):
        ...

    @abstractmethod
    async def update(self, path: str, data: Dict[str, Any]):
        ...

    @abstractmethod
    async def delete(self, path: str):
        ...

    @abstractmethod
    async def batch_write(self, ops: Sequence[BatchOp]):
        ...

    @abstractmethod
    async def run_transaction(self, fn: TransactionFn) -> Any:
        ...

    @abstractmethod
    def subscribe(self, query: Query) -> Subscription:
        ...


def check_query_limits(query: Query):
    """Raise ``ValueError`` when a multi-value filter exceeds the store cap."""
    for f in query.filters:
        if f.op in DISJUNCTIVE_OPERATORS and len(f.value) > MAX_DISJUNCTION_VALUES:
            raise ValueError(
                f"'{f.op}' filter on '{f.field}' supports at most "
                f"{MAX_DISJUNCTION_VALUES} values, got {len(f.value)}"
            )


def check_batch_size(ops: Sequence[BatchOp]):
    if len(ops) > MAX_BATCH_WRITES:
        raise ValueError(f'A batch supports at most {MAX_BATCH_WRITES} writes, got {len(ops)}')
