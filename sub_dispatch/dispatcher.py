"""
Subscription dispatcher.

subscribe: coerce arguments → topic keys → validate query → store.
trigger:   coerce arguments → topic key → matching channels → for each
           channel, re-run its stored query against the payload and hand the
           result to the delivery sink.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from .coercion import ArgumentCoercer
from .errors import (
    ArgumentError,
    RecordEncodingError,
    ScopeError,
    SubscribeError,
    SubscriptionNotFound,
    TriggerTimeout,
    UnknownEvent,
)
from .executor import Executor, run_query, validate_query
from .metrics import MetricsCollector
from .models import EventSelection, SubscriptionRecord
from .schema import SubscriptionSchema
from .sinks import DeliverySink
from .store import SubscriptionStore
from .topics import TopicKeyBuilder

log = structlog.get_logger()


class FaultPolicy(str, enum.Enum):
    """What a trigger does when the executor raises for one channel."""

    ABORT = "abort"
    ISOLATE = "isolate"


@dataclass
class TriggerReport:
    topic: str
    matched: int = 0
    delivered: int = 0
    failed: list[str] = field(default_factory=list)


class Dispatcher:
    """
    Routes triggered events to subscribed channels.

    Under ``FaultPolicy.ABORT`` an executor fault escapes ``trigger`` unchanged
    and the channels after the failing one are not processed. Under
    ``FaultPolicy.ISOLATE`` the fault is logged, the channel is reported in
    ``TriggerReport.failed`` and the sweep continues.
    """

    def __init__(
        self,
        schema: SubscriptionSchema,
        store: SubscriptionStore,
        executor: Executor,
        sink: DeliverySink,
        *,
        fault_policy: FaultPolicy | str = FaultPolicy.ABORT,
        trigger_timeout: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._schema = schema
        self._store = store
        self._executor = executor
        self._sink = sink
        self._fault_policy = FaultPolicy(fault_policy)
        self._trigger_timeout = trigger_timeout
        self._metrics = metrics or MetricsCollector()
        self._coercer = ArgumentCoercer(schema)
        self._keys = TopicKeyBuilder(schema, self._coercer)

    @property
    def schema(self) -> SubscriptionSchema:
        return self._schema

    @property
    def store(self) -> SubscriptionStore:
        return self._store

    # --- Subscribe ---

    async def subscribe(
        self,
        event_name: str,
        raw_args: Mapping[Any, Any] | None,
        channel_id: str,
        context: Mapping[str, Any] | None = None,
        *,
        query: str,
        operation_name: str | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Subscribe ``channel_id`` to a single event. See ``subscribe_many``."""
        selection = EventSelection(event_name=event_name, arguments=dict(raw_args or {}))
        return await self.subscribe_many(
            channel_id,
            [selection],
            context,
            query=query,
            operation_name=operation_name,
            variables=variables,
        )

    async def subscribe_many(
        self,
        channel_id: str,
        selections: Iterable[EventSelection | tuple[str, Mapping[Any, Any]]],
        context: Mapping[str, Any] | None = None,
        *,
        query: str,
        operation_name: str | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """
        Register one query that listens to every selected event.

        Returns the topic keys the channel was indexed under.

        Raises:
            SubscribeError: an argument did not coerce, a scope value is
                missing from ``context`` or not JSON-representable, the
                executor rejected the query, or the store cannot persist the
                record. Nothing is stored in that case.
        """
        context = dict(context or {})
        variables = dict(variables or {})
        try:
            topics, scope_value = self._topics_for(selections, context)
            errors = await validate_query(self._executor, query, operation_name, variables)
            if errors:
                raise SubscribeError("Invalid subscription query", errors)

            record = SubscriptionRecord(
                channel_id=channel_id,
                query=query,
                operation_name=operation_name,
                variables=variables,
                context=context,
                scope_value=scope_value,
                topics=tuple(topics),
            )
            try:
                await self._store.write(channel_id, record, topics)
            except RecordEncodingError as exc:
                raise SubscribeError(str(exc), [{"message": exc.reason}]) from exc
        except SubscribeError as exc:
            self._metrics.inc("subscribe_rejected_total")
            log.info("dispatcher.subscribe_rejected", channel=channel_id, reason=str(exc))
            raise

        self._metrics.inc("subscriptions_total")
        log.info("dispatcher.subscribed", channel=channel_id, topics=topics)
        return topics

    def _topics_for(
        self,
        selections: Iterable[EventSelection | tuple[str, Mapping[Any, Any]]],
        context: Mapping[str, Any],
    ) -> tuple[list[str], Any]:
        topics: list[str] = []
        scope_value = None
        for selection in selections:
            if not isinstance(selection, EventSelection):
                name, args = selection
                selection = EventSelection(event_name=name, arguments=dict(args or {}))
            try:
                event = self._schema.event(selection.event_name)
                args = self._coercer.coerce(event.arguments, selection.arguments)
            except (UnknownEvent, ArgumentError) as exc:
                raise SubscribeError(
                    str(exc), [{"message": str(exc), "event": selection.event_name}]
                ) from exc

            scope = None
            if event.scope is not None:
                scope = event.scope.resolve(context)
                if scope is None:
                    raise SubscribeError(
                        f"Event {event.name} is scoped by '{event.scope.context_key}', "
                        "which is missing from the subscription context"
                    )
                scope_value = scope
            try:
                key = self._keys.build_key(event.name, args, scope, scoped=event.scoped)
            except ScopeError as exc:
                raise SubscribeError(
                    f"Event {event.name}: {exc}", [{"message": str(exc), "event": event.name}]
                ) from exc
            if key not in topics:
                topics.append(key)

        if not topics:
            raise SubscribeError("Subscription selects no events")
        return topics, scope_value

    # --- Unsubscribe ---

    async def unsubscribe(self, channel_id: str) -> None:
        await self._store.delete(channel_id)
        self._metrics.inc("unsubscribes_total")
        log.info("dispatcher.unsubscribed", channel=channel_id)

    # --- Trigger ---

    async def trigger(
        self,
        event_name: str,
        raw_args: Mapping[Any, Any] | None = None,
        payload: Any = None,
        scope: Any = None,
        *,
        timeout: float | None = None,
    ) -> TriggerReport:
        """
        Announce an event and deliver re-executed results to its subscribers.

        ``scope`` only counts for events with a scope binding.

        Raises:
            UnknownEvent, UnknownArgument, CoercionError, ScopeError: bad
                caller input
            TriggerTimeout: the fan-out did not finish within ``timeout``
            Exception: whatever the executor raised, under ``FaultPolicy.ABORT``
        """
        event = self._schema.event(event_name)
        args = self._coercer.coerce(event.arguments, raw_args)
        topic = self._keys.build_key(event.name, args, scope, scoped=event.scoped)
        self._metrics.inc("triggers_total")

        report = TriggerReport(topic=topic)
        channels = await self._store.channels_for(topic)
        report.matched = len(channels)
        if not channels:
            log.debug("dispatcher.no_subscribers", topic=topic)
            return report

        if timeout is None:
            timeout = self._trigger_timeout
        sweep = self._sweep(topic, channels, payload, report)
        if timeout is None:
            await sweep
        else:
            try:
                await asyncio.wait_for(sweep, timeout=timeout)
            except asyncio.TimeoutError as exc:
                log.warning(
                    "dispatcher.trigger_timeout",
                    topic=topic,
                    delivered=report.delivered,
                    matched=report.matched,
                )
                raise TriggerTimeout(topic, report.delivered, report.matched) from exc

        log.info(
            "dispatcher.triggered",
            topic=topic,
            matched=report.matched,
            delivered=report.delivered,
            failed=len(report.failed),
        )
        return report

    async def _sweep(
        self,
        topic: str,
        channels: list[str],
        payload: Any,
        report: TriggerReport,
    ) -> None:
        for index, channel_id in enumerate(channels):
            try:
                record = await self._store.read(channel_id)
            except SubscriptionNotFound:
                # Unsubscribed after the snapshot was taken.
                log.debug("dispatcher.channel_gone", channel=channel_id, topic=topic)
                continue

            try:
                result = await run_query(
                    self._executor,
                    record.query,
                    record.operation_name,
                    record.variables,
                    record.context,
                    payload,
                )
            except Exception:
                self._metrics.inc("executor_faults_total")
                if self._fault_policy is FaultPolicy.ABORT:
                    log.warning(
                        "dispatcher.sweep_aborted",
                        channel=channel_id,
                        topic=topic,
                        skipped=len(channels) - index - 1,
                    )
                    raise
                log.exception("dispatcher.executor_fault", channel=channel_id, topic=topic)
                report.failed.append(channel_id)
                continue

            await self._sink.deliver(channel_id, result)
            report.delivered += 1
            self._metrics.inc("deliveries_total")
            if result.has_errors:
                self._metrics.inc("delivery_errors_total")

    # --- Stats ---

    async def stats(self) -> dict[str, int]:
        """Current index size; also refreshes the matching gauges."""
        subscriptions = await self._store.count()
        topics = await self._store.topic_count()
        self._metrics.set_gauge("subscriptions_active", subscriptions)
        self._metrics.set_gauge("topics_active", topics)
        return {"subscriptions": subscriptions, "topics": topics}
