import pytest

from classroom_sync.errors import AlreadyMember, StoreError, StoreUnavailable
from classroom_sync.notices import NoticeBoard
from classroom_sync.services.reconciler import DEFAULT_ERROR_MESSAGE, Reconciler


class _Counter:
    def __init__(self):
        self.value = 0


@pytest.fixture
def board():
    return NoticeBoard()


@pytest.fixture
def reconciler(board):
    return Reconciler(board)


class TestReconciler:
    """Test optimistic mutations with rollback."""

    @pytest.mark.asyncio
    async def test_success_keeps_local_change(self, reconciler, board):
        """Test that a successful commit keeps the optimistic change."""
        counter = _Counter()

        async def commit():
            pass

        ok = await reconciler.run('bump', commit,
                                  apply=lambda: setattr(counter, 'value', 1),
                                  rollback=lambda: setattr(counter, 'value', 0),
                                  success_message='Saved!')

        assert ok
        assert counter.value == 1
        assert board.get_flashed_messages(with_categories=True) == [('success', 'Saved!')]

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back(self, reconciler, board):
        """Test that a store failure restores the previous state and shows an error."""
        counter = _Counter()

        async def commit():
            raise StoreUnavailable('offline')

        ok = await reconciler.run('bump', commit,
                                  apply=lambda: setattr(counter, 'value', 1),
                                  rollback=lambda: setattr(counter, 'value', 0))

        assert not ok
        assert counter.value == 0
        assert board.get_flashed_messages(with_categories=True) == [('danger', DEFAULT_ERROR_MESSAGE)]

    @pytest.mark.asyncio
    async def test_conflict_reports_its_message(self, reconciler, board):
        """Test that a domain conflict is shown as an informational notice."""
        async def commit():
            raise AlreadyMember()

        assert not await reconciler.run('join', commit)
        assert board.peek() == [('info', 'You are already a member of this class.')]

    @pytest.mark.asyncio
    async def test_resync_when_no_rollback(self, reconciler):
        """Test that resync reloads state when no rollback is given."""
        calls = []

        async def commit():
            raise StoreError('rejected')

        async def resync():
            calls.append('resync')

        assert not await reconciler.run('grade', commit, resync=resync)
        assert calls == ['resync']

    @pytest.mark.asyncio
    async def test_failed_resync_is_logged(self, reconciler, board):
        """Test that a failing resync does not mask the original error notice."""
        async def commit():
            raise StoreError('rejected')

        async def resync():
            raise StoreUnavailable('still offline')

        assert not await reconciler.run('grade', commit, resync=resync, error_message='Could not save the grade.')
        assert board.peek() == [('danger', 'Could not save the grade.')]

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, reconciler):
        """Test that programming errors are not swallowed."""
        async def commit():
            raise KeyError('bug')

        with pytest.raises(KeyError):
            await reconciler.run('bug', commit)

    @pytest.mark.asyncio
    async def test_async_apply_and_rollback(self, reconciler):
        """Test that apply and rollback may be coroutines."""
        counter = _Counter()

        async def apply():
            counter.value += 1

        async def rollback():
            counter.value -= 1

        async def commit():
            raise StoreError('rejected')

        await reconciler.run('bump', commit, apply=apply, rollback=rollback)

        assert counter.value == 0
