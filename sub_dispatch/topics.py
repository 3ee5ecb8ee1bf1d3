"""
Topic keys: the canonical name of "this event with these arguments (and scope)".

Keys are plain strings:

- unscoped: ``payload:{"id":"100"}``
- scoped:   ``myEvent@"1":{"type":"ONE"}``

Event names cannot contain ``@`` or ``:``, so the two forms never collide and
neither can keys of different events.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from .coercion import ArgumentCoercer
from .errors import ScopeError
from .schema import SubscriptionSchema


def canonical_json(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


class TopicKeyBuilder:
    def __init__(self, schema: SubscriptionSchema, coercer: ArgumentCoercer | None = None):
        self._schema = schema
        self._coercer = coercer or ArgumentCoercer(schema)

    @staticmethod
    def build_key(
        event_name: str,
        coerced_args: Mapping[str, Any],
        scope_value: Any = None,
        *,
        scoped: bool = False,
    ) -> str:
        """Build the key from already-coerced arguments.

        ``scope_value`` is only folded in when ``scoped`` is true, and must
        then be JSON-representable; anything else raises ``ScopeError``.
        """
        args = canonical_json(coerced_args)
        if scoped:
            try:
                scope = canonical_json(scope_value)
            except (TypeError, ValueError) as exc:
                raise ScopeError(scope_value) from exc
            return f"{event_name}@{scope}:{args}"
        return f"{event_name}:{args}"

    def key_for(
        self,
        event_name: str,
        raw_args: Mapping[Any, Any] | None,
        scope_value: Any = None,
    ) -> str:
        """Coerce ``raw_args`` for ``event_name`` and build its key."""
        event = self._schema.event(event_name)
        args = self._coercer.coerce(event.arguments, raw_args)
        return self.build_key(event.name, args, scope_value, scoped=event.scoped)
