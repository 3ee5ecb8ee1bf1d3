"""Subscription records, event selections and execution results."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EventSelection(BaseModel):
    """One event (with its raw arguments) selected by a subscription."""

    model_config = ConfigDict(frozen=True)

    event_name: str
    # Raw, uncoerced; keys may be non-str (e.g. enum members).
    arguments: dict[Any, Any] = Field(default_factory=dict)


class SubscriptionRecord(BaseModel):
    """
    Everything needed to re-run a subscriber's query.

    Records are never modified once stored; re-subscribing under the same
    channel id replaces the record.
    """

    model_config = ConfigDict(frozen=True)

    channel_id: str
    query: str
    operation_name: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    scope_value: Any = None
    topics: tuple[str, ...] = ()


class ExecutionResult(BaseModel):
    """What a re-executed query produced: ``data`` and/or ``errors``."""

    data: Any = None
    errors: list[dict[str, Any]] | None = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"data": self.data}
        if self.errors:
            payload["errors"] = [dict(e) for e in self.errors]
        return payload

    @classmethod
    def coerce(cls, value: ExecutionResult | Mapping[str, Any]) -> ExecutionResult:
        if isinstance(value, cls):
            return value
        if isinstance(value, Mapping):
            return cls.model_validate(dict(value))
        raise TypeError(f"executor returned {type(value).__name__}, expected a result mapping")
