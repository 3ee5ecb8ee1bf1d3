"""
Dispatcher behaviour: subscribe, trigger fan-out, scoping and error routing.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from sub_dispatch.dispatcher import Dispatcher, FaultPolicy
from sub_dispatch.errors import (
    CoercionError,
    RecordEncodingError,
    ScopeError,
    SubscribeError,
    TriggerTimeout,
    UnknownArgument,
    UnknownEvent,
)
from sub_dispatch.models import EventSelection
from sub_dispatch.sinks import CallbackSink, WebhookSink
from sub_dispatch.state import SqliteSubscriptionStore

from .fakes import ErrorPayload, Payload, StaticPayload, User


def ints(sink, channel_id):
    return [r.data["int"] for r in sink.for_channel(channel_id)]


# ---------------------------------------------------------------------------
# Pushing updates
# ---------------------------------------------------------------------------


class TestPushingUpdates:
    async def test_sends_updated_data(self, dispatcher, sink, executor):
        for channel, id_ in (("1", "100"), ("2", "200")):
            await dispatcher.subscribe_many(
                channel,
                [EventSelection(event_name="payload", arguments={"id": id_}),
                 ("payload", {"id": "900"})],
                {"socket": channel},
                query="str int",
            )
        assert sink.deliveries == {}

        payload = Payload()
        await dispatcher.trigger("payload", {"id": "100"}, payload)
        await dispatcher.trigger("payload", {"id": "200"}, payload)
        await dispatcher.trigger("payload", {"id": "100"}, payload)
        report = await dispatcher.trigger("payload", {"id": "300"}, None)

        assert [r.data for r in sink.for_channel("1")] == [
            {"str": "Update", "int": 1},
            {"str": "Update", "int": 3},
        ]
        assert [r.data for r in sink.for_channel("2")] == [{"str": "Update", "int": 2}]
        assert report.matched == 0
        assert len(executor.calls) == 3

    async def test_shared_topic_reaches_every_subscriber(self, dispatcher, sink):
        await dispatcher.subscribe_many(
            "1", [("payload", {"id": "100"}), ("payload", {"id": "900"})], query="int"
        )
        await dispatcher.subscribe_many(
            "2", [("payload", {"id": "200"}), ("payload", {"id": "900"})], query="int"
        )

        report = await dispatcher.trigger("payload", {"id": 900}, StaticPayload(int=7))

        assert report.matched == 2
        assert report.delivered == 2
        assert ints(sink, "1") == [7]
        assert ints(sink, "2") == [7]

    async def test_trigger_without_subscribers_is_noop(self, dispatcher, sink, executor):
        report = await dispatcher.trigger("payload", {"id": "1"}, Payload())
        assert report.matched == 0
        assert report.delivered == 0
        assert executor.calls == []
        assert sink.deliveries == {}

    async def test_executor_receives_stored_query_and_context(self, dispatcher, executor):
        await dispatcher.subscribe(
            "payload", {"id": "8"}, "1", {"me": "u1"},
            query="str", operation_name="Sub", variables={"id": "8"},
        )
        payload = StaticPayload(str="hi")
        await dispatcher.trigger("payload", {"id": "8"}, payload)

        assert executor.calls == [{"query": "str", "context": {"me": "u1"}, "root_value": payload}]


# ---------------------------------------------------------------------------
# Subscribing
# ---------------------------------------------------------------------------


class TestSubscribing:
    async def test_invalid_query_is_not_stored(self, dispatcher, store, metrics):
        with pytest.raises(SubscribeError) as exc_info:
            await dispatcher.subscribe("payload", {"id": "100"}, "1", query="str nope")

        assert exc_info.value.errors == [
            {"message": "Field 'nope' doesn't exist on type 'Payload'"}
        ]
        assert await store.count() == 0
        assert metrics.get("subscribe_rejected_total") == 1

    async def test_bad_arguments_become_subscribe_errors(self, dispatcher, store):
        with pytest.raises(SubscribeError) as exc_info:
            await dispatcher.subscribe("payload", {"id": "1", "x": 1}, "1", query="str")
        assert isinstance(exc_info.value.__cause__, UnknownArgument)

        with pytest.raises(SubscribeError) as exc_info:
            await dispatcher.subscribe("payload", {"id": True}, "1", query="str")
        assert isinstance(exc_info.value.__cause__, CoercionError)

        with pytest.raises(SubscribeError) as exc_info:
            await dispatcher.subscribe("nope", {}, "1", query="str")
        assert isinstance(exc_info.value.__cause__, UnknownEvent)

        assert await store.count() == 0

    async def test_partial_failure_stores_nothing(self, dispatcher, store):
        with pytest.raises(SubscribeError):
            await dispatcher.subscribe_many(
                "1", [("payload", {"id": "1"}), ("payload", {})], query="str"
            )
        assert await store.count() == 0
        assert await store.channels_for('payload:{"id":"1"}') == []

    async def test_empty_selection_rejected(self, dispatcher):
        with pytest.raises(SubscribeError):
            await dispatcher.subscribe_many("1", [], query="str")

    async def test_resubscribe_replaces_topics(self, dispatcher, sink):
        await dispatcher.subscribe("payload", {"id": "1"}, "c", query="int")
        await dispatcher.subscribe("payload", {"id": "2"}, "c", query="int")

        await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1))
        await dispatcher.trigger("payload", {"id": "2"}, StaticPayload(int=2))

        assert ints(sink, "c") == [2]

    async def test_returns_topic_keys(self, dispatcher, store):
        topics = await dispatcher.subscribe("payload", {"id": 5}, "1", query="str")
        assert topics == ['payload:{"id":"5"}']
        assert (await store.read("1")).topics == tuple(topics)

    async def test_context_the_store_cannot_persist(self, dispatcher, store, executor, metrics):
        user = User(1)
        await dispatcher.subscribe("payload", {"id": "1"}, "1", {"me": "u1"}, query="int")

        if isinstance(store, SqliteSubscriptionStore):
            with pytest.raises(SubscribeError) as exc_info:
                await dispatcher.subscribe("payload", {"id": "2"}, "1", {"user": user}, query="int")
            assert isinstance(exc_info.value.__cause__, RecordEncodingError)
            assert (await store.read("1")).context == {"me": "u1"}
            assert await store.channels_for('payload:{"id":"1"}') == ["1"]
            assert metrics.get("subscribe_rejected_total") == 1
        else:
            await dispatcher.subscribe("payload", {"id": "2"}, "1", {"user": user}, query="int")
            await dispatcher.trigger("payload", {"id": "2"}, StaticPayload(int=1))
            assert executor.calls[0]["context"]["user"] is user


# ---------------------------------------------------------------------------
# Argument coercion on trigger
# ---------------------------------------------------------------------------


class TestCoercedTriggers:
    async def test_coerces_args(self, dispatcher, sink):
        query = "int"
        await dispatcher.subscribe("event", {"stream": {"userId": "3", "type": "ONE"}}, "1", query=query)
        await dispatcher.subscribe("event", {"stream": {"userId": "3"}}, "2", query=query)
        await dispatcher.subscribe("event", {"stream": {"userId": "3", "type": "TWO"}}, "3", query=query)
        await dispatcher.subscribe("event", {"stream": {"userId": "3", "type": None}}, "4", query=query)

        await dispatcher.trigger("event", {"stream": {"userId": 3, "type": "ONE"}}, StaticPayload(int=1))
        await dispatcher.trigger("event", {"stream": {"type": "ONE", "userId": "3"}}, StaticPayload(int=2))
        await dispatcher.trigger("event", {"stream": {"userId": "3", "type": "TWO"}}, StaticPayload(int=3))
        await dispatcher.trigger("event", {"stream": {"userId": "3"}}, StaticPayload(int=4))
        await dispatcher.trigger("event", {"stream": {"userId": 3, "type": None}}, StaticPayload(int=5))

        assert ints(sink, "1") == [1, 2, 4]
        assert ints(sink, "2") == [1, 2, 4]
        assert ints(sink, "3") == [3]
        assert ints(sink, "4") == [5]

    async def test_bad_trigger_arguments_raise_to_caller(self, dispatcher, sink):
        await dispatcher.subscribe("payload", {"id": "1"}, "1", query="str")
        with pytest.raises(UnknownArgument):
            await dispatcher.trigger("payload", {"id": "1", "x": 2}, Payload())
        with pytest.raises(CoercionError):
            await dispatcher.trigger("payload", {}, Payload())
        with pytest.raises(UnknownEvent):
            await dispatcher.trigger("missing", {}, Payload())
        assert sink.deliveries == {}


# ---------------------------------------------------------------------------
# Scoped subscriptions
# ---------------------------------------------------------------------------


class TestScopes:
    async def test_context_scoped_subscriptions(self, dispatcher, sink):
        await dispatcher.subscribe("myEvent", {"type": "ONE"}, "1", {"me": "1"}, query="int")
        await dispatcher.subscribe("myEvent", {"type": "TWO"}, "2", {"me": "1"}, query="int")
        await dispatcher.subscribe("myEvent", {"type": "ONE"}, "3", {"me": "2"}, query="int")

        await dispatcher.trigger("myEvent", {"type": "ONE"}, StaticPayload(int=1), scope="1")
        await dispatcher.trigger("myEvent", {"type": "TWO"}, StaticPayload(int=2), scope="1")
        await dispatcher.trigger("myEvent", {"type": "ONE"}, StaticPayload(int=3), scope="2")

        assert ints(sink, "1") == [1]
        assert ints(sink, "2") == [2]
        assert ints(sink, "3") == [3]

    async def test_unscoped_trigger_misses_scoped_subscription(self, dispatcher, sink):
        await dispatcher.subscribe("myEvent", {"type": "ONE"}, "1", {"me": "1"}, query="int")

        report = await dispatcher.trigger("myEvent", {"type": "ONE"}, StaticPayload(int=1))
        assert report.matched == 0
        await dispatcher.trigger("myEvent", {"type": "ONE"}, StaticPayload(int=2), scope="3")
        assert sink.deliveries == {}

    async def test_unscoped_event_ignores_supplied_scope(self, dispatcher, sink):
        await dispatcher.subscribe("payload", {"id": "1"}, "1", {"me": "1"}, query="int")

        await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1), scope="1")
        await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=2), scope="2")
        await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=3))

        assert ints(sink, "1") == [1, 2, 3]

    async def test_missing_scope_in_context_is_rejected(self, dispatcher, store):
        with pytest.raises(SubscribeError, match="scoped by 'me'"):
            await dispatcher.subscribe("myEvent", {"type": "ONE"}, "1", {}, query="int")
        assert await store.count() == 0

    async def test_non_json_scope_values_rejected(self, dispatcher, store, sink):
        with pytest.raises(SubscribeError) as exc_info:
            await dispatcher.subscribe("myEvent", {"type": "ONE"}, "1", {"me": User(1)}, query="int")
        assert isinstance(exc_info.value.__cause__, ScopeError)
        assert await store.count() == 0

        with pytest.raises(ScopeError):
            await dispatcher.trigger("myEvent", {"type": "ONE"}, StaticPayload(int=1), scope=User(1))
        assert sink.deliveries == {}


# ---------------------------------------------------------------------------
# Unsubscribing
# ---------------------------------------------------------------------------


class TestUnsubscribe:
    async def test_unsubscribed_channel_gets_nothing(self, dispatcher, sink, store):
        await dispatcher.subscribe_many(
            "1", [("payload", {"id": "1"}), ("payload", {"id": "2"})], query="int"
        )
        await dispatcher.subscribe("payload", {"id": "1"}, "2", query="int")

        await dispatcher.unsubscribe("1")
        await dispatcher.unsubscribe("1")

        await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1))
        await dispatcher.trigger("payload", {"id": "2"}, StaticPayload(int=2))

        assert ints(sink, "1") == []
        assert ints(sink, "2") == [1]
        assert await dispatcher.stats() == {"subscriptions": 1, "topics": 1}

    async def test_channel_deleted_mid_sweep_is_skipped(self, schema, store, executor):
        delivered = []

        async def deliver(channel_id, result):
            delivered.append(channel_id)
            if channel_id == "1":
                await store.delete("2")

        dispatcher = Dispatcher(schema, store, executor, CallbackSink(deliver))
        for cid in ("1", "2", "3"):
            await dispatcher.subscribe("payload", {"id": "1"}, cid, query="int")

        report = await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1))

        assert delivered == ["1", "3"]
        assert report.matched == 3
        assert report.delivered == 2


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_unhandled_errors_crash_the_trigger(self, dispatcher, sink, metrics):
        await dispatcher.subscribe("myEvent", {"type": "ONE"}, "1", {"me": "1"}, query="int")
        await dispatcher.subscribe("myEvent", {"type": "ONE"}, "2", {"me": "1"}, query="int")

        with pytest.raises(RuntimeError, match="Boom!"):
            await dispatcher.trigger("myEvent", {"type": "ONE"}, ErrorPayload(), scope="1")

        assert sink.deliveries == {}
        assert metrics.get("executor_faults_total") == 1

    async def test_handled_errors_are_delivered(self, dispatcher, sink, metrics):
        await dispatcher.subscribe("myEvent", {"type": "ONE"}, "1", {"me": "1"}, query="str")

        report = await dispatcher.trigger("myEvent", {"type": "ONE"}, ErrorPayload(), scope="1")

        result = sink.for_channel("1")[0]
        assert report.delivered == 1
        assert result.data is None
        assert result.errors[0]["message"] == "This is handled"
        assert result.to_payload() == {
            "data": None,
            "errors": [{"message": "This is handled", "path": ["str"]}],
        }
        assert metrics.get("delivery_errors_total") == 1

    async def test_null_payload_fields_push_errors(self, dispatcher, sink):
        await dispatcher.subscribe("payload", {"id": "8"}, "1", query="str int")

        await dispatcher.trigger("payload", {"id": "8"}, StaticPayload(str=None, int=None))

        delivery = sink.for_channel("1")[0]
        assert delivery.data is None
        assert len(delivery.errors) == 2

    async def test_isolate_policy_continues_sweep(self, schema, store, executor, sink, metrics):
        dispatcher = Dispatcher(
            schema, store, executor, sink,
            fault_policy=FaultPolicy.ISOLATE, metrics=metrics,
        )
        await dispatcher.subscribe("payload", {"id": "1"}, "bad", query="int")
        await dispatcher.subscribe("payload", {"id": "1"}, "good", query="str")

        report = await dispatcher.trigger("payload", {"id": "1"}, ErrorPayload())

        assert report.failed == ["bad"]
        assert report.delivered == 1
        assert sink.for_channel("good")[0].errors[0]["message"] == "This is handled"
        assert metrics.get("executor_faults_total") == 1

    async def test_rate_limited_webhook_does_not_stop_fan_out(self, schema, store, executor, metrics):
        posted = []

        def handler(request):
            posted.append(request.url.path)
            return httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})

        sink = WebhookSink(
            "http://hooks.test", metrics=metrics, max_retries=1,
            retry_base_seconds=0, transport=httpx.MockTransport(handler),
        )
        await sink.open()
        try:
            dispatcher = Dispatcher(schema, store, executor, sink, metrics=metrics)
            for cid in ("1", "2"):
                await dispatcher.subscribe("payload", {"id": "1"}, cid, query="int")
            report = await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1))
        finally:
            await sink.close()

        assert posted == ["/channels/1", "/channels/2"]
        assert report.delivered == 2
        assert metrics.get("webhook_failures_total") == 2


# ---------------------------------------------------------------------------
# Timeouts and ordering
# ---------------------------------------------------------------------------


class SlowSink:
    def __init__(self, delay: float):
        self.delay = delay
        self.delivered: list[str] = []

    async def deliver(self, channel_id, result):
        await asyncio.sleep(self.delay)
        self.delivered.append(channel_id)


class TestTimeoutsAndOrdering:
    async def test_timeout_stops_the_sweep(self, schema, store, executor):
        slow = SlowSink(0.2)
        dispatcher = Dispatcher(schema, store, executor, slow)
        for cid in ("1", "2", "3"):
            await dispatcher.subscribe("payload", {"id": "1"}, cid, query="int")

        with pytest.raises(TriggerTimeout) as exc_info:
            await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1), timeout=0.05)

        assert exc_info.value.matched == 3
        assert slow.delivered == []

    async def test_configured_timeout_applies(self, schema, store, executor):
        dispatcher = Dispatcher(schema, store, executor, SlowSink(0.2), trigger_timeout=0.05)
        await dispatcher.subscribe("payload", {"id": "1"}, "1", query="int")
        with pytest.raises(TriggerTimeout):
            await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1))

    async def test_sequential_triggers_arrive_in_order(self, dispatcher, sink):
        await dispatcher.subscribe("payload", {"id": "1"}, "1", query="int")
        for n in range(5):
            await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=n + 1))
        assert ints(sink, "1") == [1, 2, 3, 4, 5]


async def test_metrics_track_activity(dispatcher, metrics):
    await dispatcher.subscribe("payload", {"id": "1"}, "1", query="int")
    await dispatcher.trigger("payload", {"id": "1"}, StaticPayload(int=1))
    await dispatcher.trigger("payload", {"id": "2"}, StaticPayload(int=1))
    await dispatcher.unsubscribe("1")
    await dispatcher.stats()

    assert metrics.get("subscriptions_total") == 1
    assert metrics.get("triggers_total") == 2
    assert metrics.get("deliveries_total") == 1
    assert metrics.get("unsubscribes_total") == 1
    assert metrics.get("subscriptions_active") == 0
