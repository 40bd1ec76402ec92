import pytest

from classroom_sync.errors import StoreError, StoreTimeout, StoreUnavailable
from classroom_sync.memory_store import MemoryStore
from classroom_sync.services.cache_first import CacheFirstExecutor
from classroom_sync.store import Query


def _executor(store, **kwargs):
    kwargs.setdefault('retry_wait_min', 0)
    kwargs.setdefault('retry_wait_max', 0)
    return CacheFirstExecutor(store, **kwargs)


@pytest.fixture
def classes_store():
    store = MemoryStore()
    for i in range(25):
        store.seed_document(f'classes/c{i:02d}', {'name': f'Class {i}', 'teacherId': 't1'})
    return store


class TestFetch:
    """Test cache-first query execution."""

    @pytest.mark.asyncio
    async def test_cache_hit_avoids_network(self, classes_store):
        """Test that a second identical fetch is served from the cache."""
        executor = _executor(classes_store)
        query = Query('classes').where('teacherId', '==', 't1')

        first = await executor.fetch(query)
        reads = classes_store.server_reads
        second = await executor.fetch(query)

        assert reads == 1
        assert classes_store.server_reads == reads
        assert second.from_cache
        assert [d.id for d in first] == [d.id for d in second]

    @pytest.mark.asyncio
    async def test_force_refresh_goes_to_network(self, classes_store):
        """Test that force_refresh skips the cache."""
        executor = _executor(classes_store)
        query = Query('classes')

        await executor.fetch(query)
        snapshot = await executor.fetch(query, force_refresh=True)

        assert classes_store.server_reads == 2
        assert not snapshot.from_cache

    @pytest.mark.asyncio
    async def test_empty_result_is_a_miss(self):
        """Test that an empty result triggers a network read on every call."""
        store = MemoryStore()
        executor = _executor(store)
        query = Query('classes').where('code', '==', 'NOPE')

        for _ in range(3):
            assert (await executor.fetch(query)).empty

        assert store.server_reads == 3

    @pytest.mark.asyncio
    async def test_cache_disabled(self, classes_store):
        """Test that a store without a cache always reads the network."""
        classes_store.cache_enabled = False
        executor = _executor(classes_store)

        await executor.fetch(Query('classes'))
        await executor.fetch(Query('classes'))

        assert classes_store.server_reads == 2

    @pytest.mark.asyncio
    async def test_offline_without_cache_raises(self, classes_store):
        """Test that an unreachable store surfaces StoreUnavailable on a miss."""
        classes_store.offline = True
        executor = _executor(classes_store)

        with pytest.raises(StoreUnavailable):
            await executor.fetch(Query('classes'))

    @pytest.mark.asyncio
    async def test_offline_with_cache_succeeds(self, classes_store):
        """Test that cached results are still served while offline."""
        executor = _executor(classes_store)
        await executor.fetch(Query('classes'))
        classes_store.offline = True

        snapshot = await executor.fetch(Query('classes'))

        assert snapshot.size == 25


class TestRetries:
    """Test timeout and retry handling of network reads."""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, classes_store):
        """Test that transient failures are retried up to the attempt limit."""
        classes_store.inject_failure('query', times=2)
        executor = _executor(classes_store, retry_attempts=3)

        snapshot = await executor.fetch(Query('classes'))

        assert snapshot.size == 25

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, classes_store):
        """Test that the last transient error is raised once attempts run out."""
        classes_store.inject_failure('query', times=3)
        executor = _executor(classes_store, retry_attempts=2)

        with pytest.raises(StoreUnavailable):
            await executor.fetch(Query('classes'))

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self, classes_store):
        """Test that non-transient store errors fail on the first attempt."""
        classes_store.inject_failure('query', exc=StoreError('permission denied'), times=1)
        executor = _executor(classes_store, retry_attempts=3)

        with pytest.raises(StoreError):
            await executor.fetch(Query('classes'))
        assert classes_store.server_reads == 0

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that a slow network read raises StoreTimeout."""
        store = MemoryStore(latency=0.2)
        executor = _executor(store, timeout=0.05)

        with pytest.raises(StoreTimeout):
            await executor.fetch(Query('classes'))


class TestChunkedFetch:
    """Test fetching with more filter values than one query accepts."""

    @pytest.mark.asyncio
    async def test_union_of_chunks(self, classes_store):
        """Test that 25 ids are read in three chunks and unioned by id."""
        executor = _executor(classes_store)
        ids = [f'c{i:02d}' for i in range(25)] + ['c00']

        snapshot = await executor.fetch_chunked(
            lambda chunk: Query('classes').where('name', 'in', [f'Class {int(c[1:])}' for c in chunk]),
            ids,
        )

        assert sorted(d.id for d in snapshot) == sorted(set(ids))
        assert classes_store.server_reads == 3

    @pytest.mark.asyncio
    async def test_no_values(self, classes_store):
        """Test that an empty value list issues no reads."""
        executor = _executor(classes_store)

        snapshot = await executor.fetch_chunked(lambda chunk: Query('classes'), [])

        assert snapshot.empty
        assert classes_store.server_reads == 0


class TestFetchDocument:
    """Test cache-first single document reads."""

    @pytest.mark.asyncio
    async def test_document_cached_after_first_read(self, classes_store):
        """Test that a document is read from the network once."""
        executor = _executor(classes_store)

        first = await executor.fetch_document('classes/c01')
        second = await executor.fetch_document('classes/c01')

        assert first.get('name') == second.get('name') == 'Class 1'
        assert classes_store.server_reads == 1

    @pytest.mark.asyncio
    async def test_missing_document(self, classes_store):
        """Test that a missing document returns None."""
        executor = _executor(classes_store)

        assert await executor.fetch_document('classes/missing') is None
