# Tests for the listener registry and the schedulers

import pytest
from clover_connector.events import EventRegistry
from clover_connector.ids import BASE_32_DIGITS, ID_LENGTH, new_id
from clover_connector.scheduler import ManualScheduler


class TestEventRegistry:
    """Test listener registration and dispatch"""

    def setup_method(self):
        self.registry = EventRegistry()
        self.calls = []

    def test_listeners_run_in_registration_order(self):
        """on() keeps insertion order"""
        self.registry.on('A', lambda: self.calls.append(1))
        self.registry.on('A', lambda: self.calls.append(2))

        self.registry.emit('A')

        assert self.calls == [1, 2]

    def test_once_fires_once(self):
        """once() listeners are removed before they run"""
        self.registry.once('A', lambda value: self.calls.append(value))

        self.registry.emit('A', 'first')
        self.registry.emit('A', 'second')

        assert self.calls == ['first']
        assert self.registry.listener_count('A') == 0

    def test_remove_is_idempotent(self):
        """Removing twice, or removing a spent once-listener, is a no-op"""
        handle = self.registry.once('A', self.calls.append)
        self.registry.emit('A', 1)

        assert self.registry.remove_listener('A', handle) is False
        assert self.registry.remove_listeners([handle, ('B', print)]) == 0

    def test_remove_by_callback(self):
        """A listener can be removed by its callback"""
        self.registry.on('A', self.calls.append)

        assert self.registry.remove_listener('A', self.calls.append) is True
        assert self.registry.emit('A', 1) == 0

    def test_failing_listener_does_not_stop_others(self):
        """Exceptions are logged and the next listener still runs"""
        def broken():
            raise RuntimeError("boom")

        self.registry.on('A', broken)
        self.registry.on('A', lambda: self.calls.append('ok'))

        self.registry.emit('A')

        assert self.calls == ['ok']

    def test_listener_removed_during_emit_is_skipped(self):
        """A listener removed by an earlier one does not run"""
        second = lambda: self.calls.append('second')
        self.registry.on('A', lambda: self.registry.remove_listener('A', second))
        self.registry.on('A', second)

        self.registry.emit('A')

        assert self.calls == []

    def test_once_listener_removed_during_emit_is_skipped(self):
        """A once-listener removed by an earlier one neither runs nor stays registered"""
        handles = {}
        self.registry.on('A', lambda: self.registry.remove_listener('A', handles['second']))
        handles['second'] = self.registry.once('A', lambda: self.calls.append('second'))

        self.registry.emit('A')

        assert self.calls == []
        assert self.registry.listener_count('A') == 1

    def test_remove_all_during_emit_stops_remaining(self):
        """Listeners cleared by an earlier one do not run"""
        self.registry.on('A', lambda: self.registry.remove_all('A'))
        self.registry.once('A', lambda: self.calls.append('once'))
        self.registry.on('A', lambda: self.calls.append('on'))

        self.registry.emit('A')

        assert self.calls == []
        assert self.registry.listener_count('A') == 0


class TestManualScheduler:
    """Test the virtual clock scheduler"""

    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.calls = []

    def test_call_later_runs_at_deadline(self):
        """Callbacks run when the clock reaches them"""
        self.scheduler.call_later(3, lambda: self.calls.append(self.scheduler.now()))

        self.scheduler.advance(2.9)
        assert self.calls == []

        self.scheduler.advance(0.1)
        assert self.calls == [pytest.approx(3.0)]

    def test_call_every_and_cancel(self):
        """Repeating timers stop once cancelled"""
        timer = self.scheduler.call_every(1, lambda: self.calls.append(self.scheduler.now()))

        self.scheduler.advance(3)
        timer.cancel()
        self.scheduler.advance(3)

        assert self.calls == [1, 2, 3]

    def test_first_delay_zero_runs_immediately(self):
        """first_delay=0 fires on the next dispatch"""
        self.scheduler.call_every(5, lambda: self.calls.append(self.scheduler.now()), first_delay=0)

        self.scheduler.run_pending()

        assert self.calls == [0]

    def test_nested_call_soon_is_queued(self):
        """call_soon inside a callback runs after the current one finishes"""
        def outer():
            self.scheduler.call_soon(self.calls.append, 'inner')
            self.calls.append('outer')

        self.scheduler.call_soon(outer)

        assert self.calls == ['outer', 'inner']


class TestIds:
    """Test id generation"""

    def test_new_id_alphabet_and_length(self):
        """Ids are 13 base32 characters"""
        value = new_id()

        assert len(value) == ID_LENGTH
        assert set(value) <= set(BASE_32_DIGITS)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
