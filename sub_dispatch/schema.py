"""
Subscription schema: the events clients may subscribe to and their arguments.

Argument types are written in GraphQL notation (``ID!``, ``[Int]``,
``StreamInput``). Besides the built-in scalars, a schema declares enums and
input objects by name. An event may carry a scope binding, a dotted path into
the subscriber's context whose value partitions the event's audience.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ArgumentError, SchemaError, UnknownEvent

NAME_RE = re.compile(r"^[_A-Za-z][_0-9A-Za-z]*$")

BUILTIN_SCALARS = frozenset({"ID", "String", "Int", "Float", "Boolean"})


@dataclass(frozen=True)
class TypeRef:
    """Parsed type reference: a named type or a list of ``of_type``."""

    name: str | None = None
    of_type: TypeRef | None = None
    non_null: bool = False

    @classmethod
    def parse(cls, text: str) -> TypeRef:
        text = text.strip()
        if text.endswith("!"):
            inner = cls.parse(text[:-1])
            if inner.non_null:
                raise SchemaError(f"Invalid type reference: {text}!")
            return replace(inner, non_null=True)
        if text.startswith("[") and text.endswith("]"):
            return cls(of_type=cls.parse(text[1:-1]))
        if not NAME_RE.match(text):
            raise SchemaError(f"Invalid type reference: {text!r}")
        return cls(name=text)

    @property
    def is_list(self) -> bool:
        return self.of_type is not None

    @property
    def named_type(self) -> str:
        ref = self
        while ref.of_type is not None:
            ref = ref.of_type
        assert ref.name is not None
        return ref.name

    def __str__(self) -> str:
        inner = f"[{self.of_type}]" if self.of_type is not None else str(self.name)
        return inner + ("!" if self.non_null else "")


class ArgumentSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: str
    default: Any = None
    description: str | None = None

    @field_validator("type")
    @classmethod
    def _check_type(cls, value: str) -> str:
        TypeRef.parse(value)
        return value

    @property
    def type_ref(self) -> TypeRef:
        return TypeRef.parse(self.type)

    @property
    def has_default(self) -> bool:
        # An explicit ``default: null`` counts as a default.
        return "default" in self.model_fields_set


def _normalize_arguments(value: Any) -> Any:
    # Shorthand: ``id: "ID!"`` instead of ``id: {type: "ID!"}``.
    if isinstance(value, Mapping):
        return {
            name: {"type": spec} if isinstance(spec, str) else spec
            for name, spec in value.items()
        }
    return value


class EnumType(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    values: list[str]
    description: str | None = None

    @field_validator("values")
    @classmethod
    def _check_values(cls, values: list[str]) -> list[str]:
        if not values:
            raise ValueError("enum must declare at least one value")
        for v in values:
            if not NAME_RE.match(v):
                raise ValueError(f"invalid enum value {v!r}")
        return values


class InputObjectType(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    fields: dict[str, ArgumentSpec]
    description: str | None = None

    @field_validator("fields", mode="before")
    @classmethod
    def _shorthand_fields(cls, value: Any) -> Any:
        return _normalize_arguments(value)


class ScopeBinding(BaseModel):
    """Where a subscriber's scope value lives in its context."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    context_key: str

    def resolve(self, context: Mapping[str, Any] | None) -> Any:
        """Walk the dotted ``context_key`` through nested mappings; ``None`` if absent."""
        value: Any = context
        for part in self.context_key.split("."):
            if not isinstance(value, Mapping) or part not in value:
                return None
            value = value[part]
        return value


class EventDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    arguments: dict[str, ArgumentSpec] = Field(default_factory=dict)
    scope: ScopeBinding | None = None
    description: str | None = None

    @field_validator("arguments", mode="before")
    @classmethod
    def _shorthand_arguments(cls, value: Any) -> Any:
        return _normalize_arguments(value)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_RE.match(value):
            raise ValueError(f"invalid event name {value!r}")
        return value

    @field_validator("scope", mode="before")
    @classmethod
    def _scope_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"context_key": value}
        return value

    @property
    def scoped(self) -> bool:
        return self.scope is not None


class SubscriptionSchema(BaseModel):
    """All subscribable events plus the named types their arguments use."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enums: dict[str, EnumType] = Field(default_factory=dict)
    inputs: dict[str, InputObjectType] = Field(default_factory=dict)
    events: dict[str, EventDefinition] = Field(default_factory=dict)

    @field_validator("events", mode="before")
    @classmethod
    def _inject_event_names(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        out = {}
        for name, definition in value.items():
            if isinstance(definition, EventDefinition):
                out[name] = definition.model_copy(update={"name": name})
            elif isinstance(definition, Mapping):
                out[name] = {**definition, "name": name}
            elif definition is None:
                out[name] = {"name": name}
            else:
                out[name] = definition
        return out

    @model_validator(mode="after")
    def _check_types(self) -> SubscriptionSchema:
        for name in (*self.enums, *self.inputs):
            if not NAME_RE.match(name):
                raise SchemaError(f"Invalid type name {name!r}")
            if name in BUILTIN_SCALARS:
                raise SchemaError(f"Type {name} shadows a built-in scalar")
        clash = set(self.enums) & set(self.inputs)
        if clash:
            raise SchemaError(f"Types declared as both enum and input: {sorted(clash)}")

        for input_name, input_type in self.inputs.items():
            self._check_arguments(input_type.fields, f"input {input_name}")
        for event in self.events.values():
            self._check_arguments(event.arguments, f"event {event.name}")
        return self

    def _check_arguments(self, arguments: Mapping[str, ArgumentSpec], where: str) -> None:
        from .coercion import ArgumentCoercer

        coercer = ArgumentCoercer(self)
        for arg_name, spec in arguments.items():
            if not NAME_RE.match(arg_name):
                raise SchemaError(f"{where}: invalid argument name {arg_name!r}")
            ref = spec.type_ref
            if not self.is_known_type(ref.named_type):
                raise SchemaError(f"{where}: argument {arg_name} has unknown type {ref.named_type}")
            if spec.has_default:
                try:
                    coercer.coerce_value(ref, spec.default, arg_name)
                except ArgumentError as exc:
                    raise SchemaError(f"{where}: invalid default for {exc}") from exc

    def is_known_type(self, name: str) -> bool:
        return name in BUILTIN_SCALARS or name in self.enums or name in self.inputs

    def event(self, name: str) -> EventDefinition:
        try:
            return self.events[name]
        except KeyError:
            raise UnknownEvent(name) from None
