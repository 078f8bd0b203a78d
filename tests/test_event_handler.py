"""
Tests for the RealtimeEventHandler pub/sub bus.
"""

import asyncio

import pytest

from src.realtime_session.event_handler import RealtimeEventHandler


class TestRegistration:
    """Test on/once/off semantics."""

    def test_handlers_run_in_registration_order(self):
        bus = RealtimeEventHandler()
        calls = []
        bus.on("server.*", lambda e: calls.append(("first", e)))
        bus.on("server.*", lambda e: calls.append(("second", e)))

        bus.dispatch("server.*", 1)

        assert calls == [("first", 1), ("second", 1)]

    def test_non_callable_handler_rejected(self):
        bus = RealtimeEventHandler()
        with pytest.raises(TypeError):
            bus.on("x", "not callable")

    def test_once_delivers_a_single_time(self):
        bus = RealtimeEventHandler()
        calls = []
        bus.once("x", calls.append)

        bus.dispatch("x", "a")
        bus.dispatch("x", "b")

        assert calls == ["a"]
        assert "x" not in bus.event_handlers

    def test_off_removes_single_handler(self):
        bus = RealtimeEventHandler()
        calls = []

        def keep(e):
            calls.append(("keep", e))

        def drop(e):
            calls.append(("drop", e))

        bus.on("x", keep)
        bus.on("x", drop)
        bus.off("x", drop)
        bus.dispatch("x", 1)

        assert calls == [("keep", 1)]

    def test_off_without_handler_removes_all(self):
        bus = RealtimeEventHandler()
        calls = []
        bus.on("x", calls.append)
        bus.on("x", calls.append)

        bus.off("x")
        bus.dispatch("x", 1)

        assert calls == []

    def test_off_unknown_handler_is_an_error(self):
        bus = RealtimeEventHandler()
        bus.on("x", lambda e: None)
        with pytest.raises(ValueError):
            bus.off("x", lambda e: None)

    def test_failing_handler_does_not_stop_the_others(self):
        bus = RealtimeEventHandler()
        calls = []

        def broken(e):
            raise RuntimeError("boom")

        bus.on("x", broken)
        bus.on("x", calls.append)
        bus.dispatch("x", 42)

        assert calls == [42]

    def test_exact_and_wildcard_names_are_independent(self):
        bus = RealtimeEventHandler()
        exact, wildcard = [], []
        bus.on("server.response.created", exact.append)
        bus.on("server.*", wildcard.append)

        bus.dispatch("server.*", {"type": "session.created"})

        assert exact == []
        assert wildcard == [{"type": "session.created"}]


class TestAsyncDelivery:
    """Test coroutine handlers and wait_for_next."""

    @pytest.mark.asyncio
    async def test_coroutine_handler_runs_as_detached_task(self):
        bus = RealtimeEventHandler()
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event)

        bus.on("x", handler)
        bus.dispatch("x", "payload")
        assert seen == []

        await bus.drain()
        assert seen == ["payload"]

    @pytest.mark.asyncio
    async def test_wait_for_next_resolves_on_dispatch(self):
        bus = RealtimeEventHandler()
        waiter = asyncio.create_task(bus.wait_for_next("x", timeout=1.0))
        await asyncio.sleep(0)

        bus.dispatch("x", {"n": 1})
        bus.dispatch("x", {"n": 2})

        assert await waiter == {"n": 1}
        assert "x" not in bus.event_handlers

    @pytest.mark.asyncio
    async def test_wait_for_next_returns_none_on_timeout(self):
        bus = RealtimeEventHandler()

        result = await bus.wait_for_next("never", timeout=0.01)

        assert result is None
        assert "never" not in bus.event_handlers
