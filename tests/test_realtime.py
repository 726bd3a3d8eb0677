"""Tests for the realtime bridge and the complaint chat thread."""

from unittest.mock import MagicMock

import pytest

from helpers.fakes import ImmediateRunner, InMemoryBackend
from queries import QueryClient, messages_key
from query_cache import QueryCache
from realtime import ComplaintThread, RealtimeBridge, SubscriptionState


@pytest.fixture
def spy_cache():
    cache = QueryCache()
    cache.invalidate = MagicMock(wraps=cache.invalidate)
    return cache


class TestRealtimeBridge:
    def test_subscribe_reaches_subscribed_after_ack(self, spy_cache):
        transport = InMemoryBackend(auto_ack=False)
        bridge = RealtimeBridge(transport, spy_cache, "c1")

        bridge.subscribe()
        assert bridge.state == SubscriptionState.SUBSCRIBING
        assert bridge.is_active

        transport.ack_all()
        assert bridge.state == SubscriptionState.SUBSCRIBED

    def test_insert_invalidates_that_thread_exactly_once(self, spy_cache):
        transport = InMemoryBackend()
        bridge = RealtimeBridge(transport, spy_cache, "c1")
        bridge.subscribe()

        transport.insert("messages", {"complaint_id": "c1", "sender_id": "u2", "content": "hi"})

        spy_cache.invalidate.assert_called_once_with(messages_key("c1"))

    def test_inserts_on_other_threads_are_ignored(self, spy_cache):
        transport = InMemoryBackend()
        bridge = RealtimeBridge(transport, spy_cache, "c1")
        bridge.subscribe()

        transport.insert("messages", {"complaint_id": "c2", "sender_id": "u2", "content": "hi"})

        spy_cache.invalidate.assert_not_called()

    def test_events_before_ack_are_ignored(self, spy_cache):
        transport = InMemoryBackend(auto_ack=False)
        bridge = RealtimeBridge(transport, spy_cache, "c1")
        bridge.subscribe()

        transport.insert("messages", {"complaint_id": "c1", "content": "early"})
        spy_cache.invalidate.assert_not_called()

    def test_teardown_stops_events_and_is_idempotent(self, spy_cache):
        transport = InMemoryBackend()
        bridge = RealtimeBridge(transport, spy_cache, "c1")
        bridge.subscribe()

        bridge.teardown()
        bridge.teardown()
        transport.insert("messages", {"complaint_id": "c1", "content": "late"})

        assert bridge.state == SubscriptionState.UNSUBSCRIBED
        assert not bridge.is_active
        assert transport.calls["unsubscribe"] == 1
        spy_cache.invalidate.assert_not_called()

    def test_second_subscribe_is_a_no_op(self, spy_cache):
        transport = InMemoryBackend()
        bridge = RealtimeBridge(transport, spy_cache, "c1")
        bridge.subscribe()
        bridge.subscribe()
        assert transport.calls["subscribe"] == 1

    def test_failed_subscribe_resets_state(self, spy_cache):
        transport = InMemoryBackend()
        transport.fail_on[("subscribe", "messages")] = ConnectionError("offline")
        bridge = RealtimeBridge(transport, spy_cache, "c1")

        with pytest.raises(ConnectionError):
            bridge.subscribe()
        assert bridge.state == SubscriptionState.UNSUBSCRIBED

    def test_pending_teardown_releases_late_handle(self, spy_cache):
        transport = MagicMock()
        bridge = RealtimeBridge(transport, spy_cache, "c1")

        def subscribe(*args):
            bridge.teardown()  # view closed while the listener was being set up
            return "handle"

        transport.subscribe.side_effect = subscribe
        bridge.subscribe()

        transport.unsubscribe.assert_called_once_with("handle")
        assert bridge.state == SubscriptionState.UNSUBSCRIBED


class TestComplaintThread:
    def test_new_message_from_other_side_is_shown(self):
        backend = InMemoryBackend()
        queries = QueryClient(backend, QueryCache())
        backend.seed("messages", "m1", complaint_id="c1", sender_id="student", content="hello",
                     created_at="2024-01-01 10:00:00.000000")
        shown = []
        thread = ComplaintThread(queries, backend, ImmediateRunner(), "c1", "student",
                                 on_messages=lambda msgs: shown.append([m.content for m in msgs]))
        thread.open()
        assert shown == [["hello"]]

        # staff reply arrives through the realtime channel
        backend.insert("messages", {"complaint_id": "c1", "sender_id": "staff", "content": "on it",
                                    "created_at": "2024-01-01 10:05:00.000000"})

        assert shown[-1] == ["hello", "on it"]
        assert not thread.is_mine(thread.messages[-1])

    def test_send_refreshes_through_cache(self):
        backend = InMemoryBackend()
        queries = QueryClient(backend, QueryCache())
        thread = ComplaintThread(queries, backend, ImmediateRunner(), "c1", "student")
        thread.open()
        results = []

        thread.send("  where is my refund  ", lambda res, exc: results.append((res, exc)))

        row, exc = results[0]
        assert exc is None
        assert row["content"] == "where is my refund"
        assert [m.content for m in thread.messages] == ["where is my refund"]
        assert thread.is_mine(thread.messages[0])

    def test_close_tears_down_subscription(self):
        backend = InMemoryBackend()
        queries = QueryClient(backend, QueryCache())
        thread = ComplaintThread(queries, backend, ImmediateRunner(), "c1", "student")
        thread.open()
        thread.close()

        assert thread.closed
        assert not thread.bridge.is_active
        assert backend.subscriptions[0].active is False

    def test_load_error_is_reported(self):
        backend = InMemoryBackend()
        backend.fail_on[("select", "messages")] = RuntimeError("offline")
        queries = QueryClient(backend, QueryCache())
        errors = []
        thread = ComplaintThread(queries, backend, ImmediateRunner(), "c1", "student", on_error=errors.append)
        thread.open()

        assert len(errors) == 1
        assert errors[0].message == "Failed to load messages."
