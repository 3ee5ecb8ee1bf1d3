"""
Executor contract.

The query engine is a collaborator: the dispatcher hands it a stored query
plus the trigger's payload as root value and gets back ``data``/``errors``.
Handled errors (``QueryError`` raised by field logic) belong in ``errors``;
anything else the executor raises is an unrecoverable fault.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Mapping
from typing import Any, Protocol, runtime_checkable

from .models import ExecutionResult


@runtime_checkable
class Executor(Protocol):
    def execute(
        self,
        query: str,
        operation_name: str | None,
        variables: Mapping[str, Any],
        context: Mapping[str, Any],
        root_value: Any,
    ) -> Awaitable[ExecutionResult | Mapping[str, Any]] | ExecutionResult | Mapping[str, Any]:
        ...


async def run_query(
    executor: Executor,
    query: str,
    operation_name: str | None,
    variables: Mapping[str, Any],
    context: Mapping[str, Any],
    root_value: Any,
) -> ExecutionResult:
    """Call ``executor.execute`` (sync or async) and normalise its result."""
    result = executor.execute(query, operation_name, variables, context, root_value)
    if inspect.isawaitable(result):
        result = await result
    return ExecutionResult.coerce(result)


async def validate_query(
    executor: Executor,
    query: str,
    operation_name: str | None,
    variables: Mapping[str, Any],
) -> list[dict[str, Any]]:
    """Ask the executor to validate a query before it is stored.

    Executors without a ``validate`` method accept every query.
    """
    validate = getattr(executor, "validate", None)
    if validate is None:
        return []
    errors = validate(query, operation_name, variables)
    if inspect.isawaitable(errors):
        errors = await errors
    return [dict(e) for e in errors or ()]
