"""
Argument coercion against a subscription schema.

Turns a loosely-typed argument map (``{"userId": 3}``) into its canonical form
(``{"type": "ONE", "userId": "3"}``): defaults applied, scalars normalised,
nested input objects coerced recursively. Output dicts are built in sorted
key order, so two equal inputs always serialise identically.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Mapping
from typing import Any

from .errors import CoercionError, UnknownArgument
from .schema import BUILTIN_SCALARS, ArgumentSpec, SubscriptionSchema, TypeRef

INT_MIN = -(2**31)
INT_MAX = 2**31 - 1


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _key(raw_key: Any) -> str:
    if isinstance(raw_key, enum.Enum):
        return raw_key.name
    return str(raw_key)


class ArgumentCoercer:
    """Pure coercion of raw arguments; holds no state beyond the schema."""

    def __init__(self, schema: SubscriptionSchema):
        self._schema = schema

    def coerce_event(self, event_name: str, raw: Mapping[Any, Any] | None) -> dict[str, Any]:
        event = self._schema.event(event_name)
        return self.coerce(event.arguments, raw)

    def coerce(
        self,
        specs: Mapping[str, ArgumentSpec],
        raw: Mapping[Any, Any] | None,
        path: str = "",
    ) -> dict[str, Any]:
        """
        Coerce ``raw`` against the declared ``specs``.

        Every declared argument ends up in the result unless it was omitted,
        has no default and is nullable. An explicit ``None`` is kept.

        Raises:
            UnknownArgument: a supplied key is not declared
            CoercionError: a value does not fit its declared type, or a
                required argument is missing
        """
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise CoercionError(path, f"expected an object, got {type(raw).__name__}")

        supplied = {_key(k): v for k, v in raw.items()}
        for name in sorted(supplied):
            if name not in specs:
                raise UnknownArgument(_join(path, name))

        out: dict[str, Any] = {}
        for name in sorted(specs):
            spec = specs[name]
            arg_path = _join(path, name)
            ref = spec.type_ref
            if name in supplied:
                out[name] = self.coerce_value(ref, supplied[name], arg_path)
            elif spec.has_default:
                out[name] = self.coerce_value(ref, spec.default, arg_path)
            elif ref.non_null:
                raise CoercionError(arg_path, f"required argument of type {ref} is missing")
        return out

    def coerce_value(self, ref: TypeRef, value: Any, path: str) -> Any:
        if value is None:
            if ref.non_null:
                raise CoercionError(path, f"null is not allowed for {ref}")
            return None

        if ref.of_type is not None:
            # A single value is accepted where a list is expected.
            items = value if isinstance(value, (list, tuple)) else [value]
            return [
                self.coerce_value(ref.of_type, item, f"{path}[{i}]")
                for i, item in enumerate(items)
            ]

        name = ref.name
        assert name is not None
        if name in BUILTIN_SCALARS:
            return _coerce_scalar(name, value, path)
        if name in self._schema.enums:
            return _coerce_enum(name, self._schema.enums[name].values, value, path)
        if name in self._schema.inputs:
            return self.coerce(self._schema.inputs[name].fields, value, path)
        raise CoercionError(path, f"unknown type {name}")


def _coerce_scalar(name: str, value: Any, path: str) -> Any:
    if name == "ID":
        if isinstance(value, str):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    elif name == "String":
        if isinstance(value, str):
            return value
    elif name == "Boolean":
        if isinstance(value, bool):
            return value
    elif name == "Int":
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, int) and not isinstance(value, bool):
            if INT_MIN <= value <= INT_MAX:
                return value
            raise CoercionError(path, f"{value} is outside the 32-bit Int range")
    elif name == "Float":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if math.isfinite(value):
                return float(value)
    raise CoercionError(path, f"cannot coerce {value!r} to {name}")


def _coerce_enum(name: str, values: list[str], value: Any, path: str) -> str:
    if isinstance(value, enum.Enum):
        value = value.name
    if isinstance(value, str) and value in values:
        return value
    raise CoercionError(path, f"{value!r} is not a valid {name} (expected one of {', '.join(values)})")
