from __future__ import annotations
import io

import pytest
import pytest_asyncio

from sortavo.approval import BatchApprovalDriver
from sortavo.infra import timings
from sortavo.mockrest import MockRest, MOCK_SERVICE_KEY
from sortavo.rest import OrdersClient, make_http_client

REST_URL = "http://mock.local/rest/v1"


@pytest.fixture(autouse=True)
def _clear_timings():
    timings.reset()
    yield
    timings.reset()


@pytest.fixture
def mock() -> MockRest:
    return MockRest()


@pytest_asyncio.fixture
async def orders(mock):
    async with make_http_client(
        REST_URL, MOCK_SERVICE_KEY, transport=mock.transport()
    ) as client:
        yield OrdersClient(client)


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def make_driver(orders, sleeps):
    """Driver with captured output and a sleep that never waits."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def _make(**kw) -> BatchApprovalDriver:
        kw.setdefault("batch_size", 500)
        kw.setdefault("max_retries", 0)
        kw.setdefault("out", io.StringIO())
        kw.setdefault("err", io.StringIO())
        return BatchApprovalDriver(orders, sleep=fake_sleep, **kw)

    return _make
