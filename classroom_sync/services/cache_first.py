"""
Cache-first query execution.

Every bulk read goes through ``CacheFirstExecutor.fetch``: the local cache is
tried first and the network is used only when the cache has nothing to offer
(or the caller forces a refresh). An empty cached result is treated as a miss,
since "nothing cached" and "cached, genuinely empty" cannot be told apart.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from classroom_sync.errors import StoreTimeout, StoreUnavailable
from classroom_sync.store import (
    MAX_DISJUNCTION_VALUES, Document, Query, QuerySnapshot, RemoteStore, Source, chunked,
)

logger = logging.getLogger(__name__)


class CacheFirstExecutor:

    def __init__(self, store: RemoteStore, timeout: Optional[float] = None, retry_attempts: int = 1,
                 retry_wait_min: float = 0.5, retry_wait_max: float = 8.0):
        self.store = store
        self.timeout = timeout
        self.retry_attempts = max(int(retry_attempts), 1)
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max

    async def _network(self, call: Callable[[], Any], what: str):
        """Run ``call`` against the server with a timeout and retries on
        transient failures. Non-transient errors are raised immediately."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception_type(StoreUnavailable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info('Retrying %s (attempt %d)', what, attempt.retry_state.attempt_number)
                try:
                    if self.timeout is None:
                        return await call()
                    return await asyncio.wait_for(call(), self.timeout)
                except asyncio.TimeoutError as exc:
                    raise StoreTimeout(f'{what} timed out after {self.timeout}s') from exc

    async def fetch(self, query: Query, force_refresh: bool = False) -> QuerySnapshot:
        if not force_refresh:
            try:
                cached = await self.store.query(query, source=Source.CACHE)
            except Exception as exc:
                logger.debug('Cache read failed for %s: %s', query.collection, exc)
            else:
                if not cached.empty:
                    return cached
                logger.debug('Cache empty for %s, reading from network', query.collection)
        return await self._network(lambda: self.store.query(query, source=Source.SERVER),
                                   f'query {query.collection}')

    async def fetch_document(self, path: str, force_refresh: bool = False) -> Optional[Document]:
        if not force_refresh:
            try:
                cached = await self.store.get_document(path, source=Source.CACHE)
            except Exception as exc:
                logger.debug('Cache read failed for %s: %s', path, exc)
            else:
                if cached is not None:
                    return cached
        return await self._network(lambda: self.store.get_document(path, source=Source.SERVER),
                                   f'get {path}')

    async def fetch_many(self, queries: Sequence[Query], force_refresh: bool = False) -> List[QuerySnapshot]:
        """Fetch several queries concurrently; results keep the input order."""
        return list(await asyncio.gather(*(self.fetch(q, force_refresh) for q in queries)))

    async def fetch_chunked(self, build_query: Callable[[List[Any]], Query], values: Iterable[Any],
                            force_refresh: bool = False) -> QuerySnapshot:
        """Run ``build_query(chunk)`` for each chunk of at most 10 values and
        union the results by document id, first occurrence wins."""
        chunks = chunked(list(values), MAX_DISJUNCTION_VALUES)
        if not chunks:
            return QuerySnapshot([], from_cache=False)
        snapshots = await self.fetch_many([build_query(chunk) for chunk in chunks], force_refresh)
        seen: Dict[str, Document] = {}
        for snapshot in snapshots:
            for doc in snapshot:
                seen.setdefault(doc.id, doc)
        return QuerySnapshot(list(seen.values()), from_cache=all(s.from_cache for s in snapshots))
