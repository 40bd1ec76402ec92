from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from classroom_sync.errors import CacheMiss, StoreError, StoreUnavailable
from classroom_sync.firestore_store import FirestoreStore, _to_native
from classroom_sync.store import (
    DESCENDING, SERVER_TIMESTAMP, ArrayUnion, BatchOp, Cursor, Increment, Query, Source,
)


class FakeSnapshot:
    def __init__(self, doc_id, data, collection='classes'):
        self.id = doc_id
        self.exists = data is not None
        self.reference = SimpleNamespace(path=f'{collection}/{doc_id}')
        self._data = data

    def to_dict(self):
        return self._data


class FakeQueryRef:
    """Records the query shape and streams canned snapshots."""

    def __init__(self, snapshots=(), error=None):
        self.snapshots = list(snapshots)
        self.error = error
        self.filters = []
        self.orders = []
        self.limits = []
        self.starts = []
        self.anchor = FakeSnapshot('anchor', {'createdAt': 1})

    def where(self, filter=None):
        self.filters.append(filter)
        return self

    def order_by(self, field_path, direction=None):
        self.orders.append((field_path, direction))
        return self

    def limit(self, count):
        self.limits.append(count)
        return self

    def start_after(self, anchor):
        self.starts.append(anchor)
        return self

    def document(self, doc_id):
        return SimpleNamespace(get=AsyncMock(return_value=self.anchor))

    async def stream(self):
        if self.error is not None:
            raise self.error
        for snapshot in self.snapshots:
            yield snapshot


@pytest.fixture
def db():
    return MagicMock()


class TestQueries:
    """Test query translation and the result memory."""

    @pytest.mark.asyncio
    async def test_query_shape(self, db):
        """Test that filters, ordering and limits reach the Firestore query."""
        ref = FakeQueryRef([FakeSnapshot('c1', {'name': 'Math'})])
        db.collection.return_value = ref
        store = FirestoreStore(db)
        query = (Query('classes')
                 .where('code', 'in', ['A', 'B'])
                 .where('teacherId', '==', 't1')
                 .order('createdAt', DESCENDING)
                 .limited(5))

        snapshot = await store.query(query, source=Source.SERVER)

        assert [d.id for d in snapshot] == ['c1']
        assert snapshot.documents[0].path == 'classes/c1'
        assert [(f.field_path, f.op_string, f.value) for f in ref.filters] == [
            ('code', 'in', ['A', 'B']), ('teacherId', '==', 't1')]
        assert ref.orders == [('createdAt', firestore.Query.DESCENDING)]
        assert ref.limits == [5]

    @pytest.mark.asyncio
    async def test_start_after_uses_anchor_document(self, db):
        """Test that a cursor resumes after its anchor snapshot."""
        ref = FakeQueryRef()
        db.collection.return_value = ref
        store = FirestoreStore(db)

        await store.query(Query('activities').order('createdAt').after(Cursor('anchor', (1,))), source=Source.SERVER)

        assert ref.starts == [ref.anchor]

    @pytest.mark.asyncio
    async def test_cache_reads(self, db):
        """Test that cache reads serve the last server result or miss."""
        db.collection.return_value = FakeQueryRef([FakeSnapshot('c1', {'name': 'Math'})])
        store = FirestoreStore(db)
        query = Query('classes')

        with pytest.raises(CacheMiss):
            await store.query(query, source=Source.CACHE)
        await store.query(query, source=Source.SERVER)
        cached = await store.query(query, source=Source.CACHE)

        assert cached.from_cache
        assert [d.id for d in cached] == ['c1']

    @pytest.mark.asyncio
    async def test_transient_error_falls_back_to_memory(self, db):
        """Test that DEFAULT reads serve remembered results while unavailable."""
        db.collection.return_value = FakeQueryRef([FakeSnapshot('c1', {'name': 'Math'})])
        store = FirestoreStore(db)
        query = Query('classes')
        await store.query(query, source=Source.SERVER)
        db.collection.return_value = FakeQueryRef(error=google_exceptions.ServiceUnavailable('down'))

        snapshot = await store.query(query)

        assert snapshot.from_cache
        with pytest.raises(StoreUnavailable):
            await store.query(query, source=Source.SERVER)

    @pytest.mark.asyncio
    async def test_permanent_error(self, db):
        """Test that non-transient API errors become StoreError."""
        db.collection.return_value = FakeQueryRef(error=google_exceptions.PermissionDenied('no'))
        store = FirestoreStore(db)

        with pytest.raises(StoreError) as info:
            await store.query(Query('classes'), source=Source.SERVER)
        assert not isinstance(info.value, StoreUnavailable)

    @pytest.mark.asyncio
    async def test_disjunction_cap(self, db):
        """Test that oversized 'in' filters are rejected before any call."""
        store = FirestoreStore(db)

        with pytest.raises(ValueError):
            await store.query(Query('classes').where('code', 'in', list(range(11))))
        db.collection.assert_not_called()


class TestDocuments:
    """Test single document reads and writes."""

    @pytest.mark.asyncio
    async def test_missing_document(self, db):
        """Test that a missing document reads as None and is remembered."""
        db.document.return_value.get = AsyncMock(return_value=FakeSnapshot('u1', None, 'users'))
        store = FirestoreStore(db)

        assert await store.get_document('users/u1', source=Source.SERVER) is None
        assert await store.get_document('users/u1', source=Source.CACHE) is None

    @pytest.mark.asyncio
    async def test_write_forgets_collection_queries(self, db):
        """Test that a write drops remembered results for its collection."""
        db.collection.return_value = FakeQueryRef([FakeSnapshot('c1', {'name': 'Math'})])
        db.document.return_value.update = AsyncMock()
        store = FirestoreStore(db)
        query = Query('classes')
        await store.query(query, source=Source.SERVER)

        await store.update('classes/c1', {'studentCount': Increment(1)})

        with pytest.raises(CacheMiss):
            await store.query(query, source=Source.CACHE)
        sent = db.document.return_value.update.await_args.args[0]
        assert isinstance(sent['studentCount'], firestore.Increment)

    @pytest.mark.asyncio
    async def test_set_merge(self, db):
        """Test that merge writes pass the merge flag through."""
        db.document.return_value.set = AsyncMock()
        store = FirestoreStore(db)

        await store.set('userAchievements/u1', {'xp': Increment(30)}, merge=True)

        assert db.document.return_value.set.await_args.kwargs == {'merge': True}

    @pytest.mark.asyncio
    async def test_batch_size_cap(self, db):
        """Test that batches over 500 writes are rejected."""
        store = FirestoreStore(db)

        with pytest.raises(ValueError):
            await store.batch_write([BatchOp.delete(f'broadcasts/b{i}') for i in range(501)])
        db.batch.assert_not_called()


class TestTransforms:
    """Test translation of write transforms."""

    def test_nested_transforms(self):
        """Test that transforms are translated inside nested values."""
        native = _to_native({
            'stats': {'quizzesCompleted': Increment(1)},
            'studentIds': ArrayUnion(['s1']),
            'updatedAt': SERVER_TIMESTAMP,
            'tags': ('a', 'b'),
        })

        assert isinstance(native['stats']['quizzesCompleted'], firestore.Increment)
        assert isinstance(native['studentIds'], firestore.ArrayUnion)
        assert native['updatedAt'] is firestore.SERVER_TIMESTAMP
        assert native['tags'] == ['a', 'b']
