"""
Cursor-based pagination over feeds ordered by creation time, newest first.

A filter set larger than the store's disjunction cap is split into chunks.
Each chunk is read as its own ordered stream and pages are cut from a k-way
merge of the streams, so the combined feed keeps a single descending order
and no document appears twice.
"""

import logging
from typing import Any, Callable, Iterable, List, Optional, Sequence

from classroom_sync.firestore_models import coerce_datetime
from classroom_sync.services.cache_first import CacheFirstExecutor
from classroom_sync.store import DESCENDING, MAX_DISJUNCTION_VALUES, Cursor, Document, Query, chunked

logger = logging.getLogger(__name__)


def _default_sort_key(item):
    return coerce_datetime(getattr(item, 'created_at', None))


class _ChunkStream:
    """One ordered stream of documents for a single chunk of filter values."""

    def __init__(self, query: Query, page_size: int):
        self.query = query
        self.page_size = page_size
        self.buffer: List[Document] = []
        self.cursor: Optional[Cursor] = None
        self.exhausted = False

    def absorb(self, documents: List[Document]):
        self.buffer.extend(documents)
        if documents:
            self.cursor = documents[-1].cursor(self.query.order_by)
        if len(documents) < self.page_size:
            self.exhausted = True

    async def load(self, executor: CacheFirstExecutor, force_refresh: bool):
        query = self.query.limited(self.page_size).after(self.cursor)
        snapshot = await executor.fetch(query, force_refresh=force_refresh)
        self.absorb(snapshot.documents)

    @property
    def needs_fetch(self) -> bool:
        return not self.buffer and not self.exhausted and self.cursor is not None


class PaginationLoader:
    """Loads pages of ``page_size`` items for a set of filter values.

    ``build_query(values)`` returns the unordered, unlimited query for one
    chunk of at most 10 values; the loader adds ordering, limit and cursor.
    ``parse(document)`` turns a document into the item kept in ``items``.
    """

    def __init__(self, executor: CacheFirstExecutor, build_query: Callable[[List[Any]], Query],
                 page_size: int, order_by: str = 'createdAt', parse: Optional[Callable[[Document], Any]] = None,
                 sort_key: Optional[Callable[[Any], Any]] = None):
        self.executor = executor
        self.build_query = build_query
        self.page_size = page_size
        self.order_by = order_by
        self.parse = parse or (lambda doc: doc)
        self.sort_key = sort_key or _default_sort_key
        self.items: List[Any] = []
        self.last_cursor: Optional[Cursor] = None
        self.has_more = False
        self.is_loading = False
        self._filter_values: Optional[tuple] = None
        self._streams: List[_ChunkStream] = []
        self._seen_ids = set()
        self._generation = 0

    @property
    def filter_values(self) -> Optional[tuple]:
        return self._filter_values

    def reset(self):
        self._generation += 1
        self.items = []
        self.last_cursor = None
        self.has_more = False
        self.is_loading = False
        self._filter_values = None
        self._streams = []
        self._seen_ids = set()

    def _order_key(self, doc: Document):
        return (coerce_datetime(doc.get(self.order_by)), doc.id)

    async def load_first_page(self, filter_values: Iterable[Any], force_refresh: bool = False) -> List[Any]:
        values = tuple(filter_values)
        self.reset()
        self._filter_values = values
        if not values:
            return []
        generation = self._generation
        self._streams = [
            _ChunkStream(self.build_query(chunk).order(self.order_by, DESCENDING), self.page_size)
            for chunk in chunked(values, MAX_DISJUNCTION_VALUES)
        ]
        self.is_loading = True
        try:
            snapshots = await self.executor.fetch_many(
                [s.query.limited(self.page_size) for s in self._streams], force_refresh=force_refresh)
            if generation != self._generation:
                return []
            for stream, snapshot in zip(self._streams, snapshots):
                stream.absorb(snapshot.documents)
            page = await self._cut_page(force_refresh)
        finally:
            if generation == self._generation:
                self.is_loading = False
        if generation != self._generation:
            return []
        return self._accept(page)

    async def load_next_page(self) -> List[Any]:
        """Append the next page. No-op while a load is in flight, at the end
        of the feed, or before a first page was loaded."""
        if self.last_cursor is None or not self.has_more or self.is_loading:
            return []
        generation = self._generation
        self.is_loading = True
        try:
            page = await self._cut_page(force_refresh=True)
        finally:
            if generation == self._generation:
                self.is_loading = False
        if generation != self._generation:
            logger.debug('Discarding page loaded for a stale filter set')
            return []
        return self._accept(page)

    async def _cut_page(self, force_refresh: bool) -> List[Document]:
        page: List[Document] = []
        while len(page) < self.page_size:
            for stream in self._streams:
                if stream.needs_fetch:
                    await stream.load(self.executor, force_refresh=True)
            candidates = [s for s in self._streams if s.buffer]
            if not candidates:
                break
            best = max(candidates, key=lambda s: self._order_key(s.buffer[0]))
            doc = best.buffer.pop(0)
            if doc.id in self._seen_ids or any(d.id == doc.id for d in page):
                continue
            page.append(doc)
        return page

    def _accept(self, page: List[Document]) -> List[Any]:
        self.has_more = len(page) == self.page_size
        self.last_cursor = page[-1].cursor(self.order_by) if page else None
        added = []
        for doc in page:
            if doc.id in self._seen_ids:
                continue
            self._seen_ids.add(doc.id)
            item = self.parse(doc)
            self.items.append(item)
            added.append(item)
        return added

    def merge_window(self, incoming: Sequence[Any]) -> List[Any]:
        """Union ``incoming`` with the feed by id (incoming wins) and re-sort
        by creation time descending; ties keep their previous order."""
        by_id = {}
        order = []
        for item in list(self.items) + list(incoming):
            if item.id not in by_id:
                order.append(item.id)
            by_id[item.id] = item
        merged = [by_id[i] for i in order]
        merged.sort(key=self.sort_key, reverse=True)
        self.items = merged
        self._seen_ids.update(by_id)
        return merged
