"""
Shared fixtures for dispatcher tests.
"""

import pytest

from sub_dispatch.dispatcher import Dispatcher
from sub_dispatch.metrics import MetricsCollector
from sub_dispatch.sinks import MemorySink
from sub_dispatch.state import SqliteSubscriptionStore
from sub_dispatch.store import MemorySubscriptionStore

from .fakes import FieldExecutor, build_schema


@pytest.fixture
def schema():
    return build_schema()


@pytest.fixture
def executor():
    return FieldExecutor()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "sqlite":
        s = SqliteSubscriptionStore(str(tmp_path / "subs.db"))
    else:
        s = MemorySubscriptionStore()
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def dispatcher(schema, store, executor, sink, metrics):
    return Dispatcher(schema, store, executor, sink, metrics=metrics)
