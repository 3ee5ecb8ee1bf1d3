"""
Error taxonomy for subscription dispatch.

Caller-input errors (unknown events, bad arguments, rejected subscriptions)
are raised synchronously to whoever called ``subscribe``/``trigger`` and are
never delivered to a channel. ``QueryError`` is the one exception meant to be
raised from field logic: executors turn it into an entry in the result's
error list.
"""

from __future__ import annotations

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch errors."""


class SchemaError(DispatchError, ValueError):
    """The subscription schema itself is malformed."""


class UnknownEvent(DispatchError):
    def __init__(self, event_name: str):
        self.event_name = event_name
        super().__init__(f"Unknown event: {event_name}")


class ArgumentError(DispatchError):
    """Base for argument problems; ``path`` is the dotted argument path."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if path else reason)


class UnknownArgument(ArgumentError):
    def __init__(self, path: str):
        super().__init__(path, "unknown argument")


class CoercionError(ArgumentError):
    @property
    def argument(self) -> str:
        return self.path


class ScopeError(DispatchError, TypeError):
    """A scope value cannot be folded into a topic key (not JSON-representable)."""

    def __init__(self, scope_value: Any):
        self.scope_value = scope_value
        super().__init__(
            f"Scope value of type {type(scope_value).__name__} is not JSON-serialisable"
        )


class RecordEncodingError(DispatchError, ValueError):
    """A store could not serialise a subscription record."""

    def __init__(self, channel_id: str, reason: str):
        self.channel_id = channel_id
        self.reason = reason
        super().__init__(f"Cannot store subscription for channel {channel_id}: {reason}")


class SubscribeError(DispatchError):
    """
    A subscription was rejected. Nothing was written to the store.

    ``errors`` holds structured errors (e.g. from query validation); the
    triggering exception, if any, is chained as ``__cause__``.
    """

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        self.errors = errors or []
        super().__init__(message)


class SubscriptionNotFound(DispatchError, KeyError):
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(channel_id)

    def __str__(self) -> str:
        return f"No subscription for channel {self.channel_id}"


class TriggerTimeout(DispatchError):
    """The fan-out for one trigger did not finish in time."""

    def __init__(self, topic: str, delivered: int, matched: int):
        self.topic = topic
        self.delivered = delivered
        self.matched = matched
        super().__init__(
            f"Trigger for {topic} timed out after {delivered}/{matched} deliveries"
        )


class QueryError(Exception):
    """
    A handled, domain-level error raised from field logic.

    Executors catch it and report it in the result's ``errors`` list instead
    of letting it escape; any other exception is an unrecoverable fault.
    """

    def __init__(
        self,
        message: str,
        path: list[str | int] | None = None,
        extensions: dict[str, Any] | None = None,
    ):
        self.message = message
        self.path = path
        self.extensions = extensions
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"message": self.message}
        if self.path is not None:
            out["path"] = list(self.path)
        if self.extensions:
            out["extensions"] = dict(self.extensions)
        return out
