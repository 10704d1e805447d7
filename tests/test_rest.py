from __future__ import annotations

import pytest

from sortavo.infra import timings
from sortavo.mockrest import MOCK_SERVICE_KEY
from sortavo.model.order import STATUS_COMPLETED, STATUS_PENDING_APPROVAL
from sortavo.rest import BackendError, parse_content_range_total


@pytest.mark.parametrize("value,total", [
    ("0-499/1200", 1200),
    ("*/0", 0),
    ("0-0/1", 1),
])
def test_content_range_total(value, total):
    assert parse_content_range_total(value) == total


@pytest.mark.parametrize("value", [None, "", "0-9", "0-9/*", "*/*"])
def test_content_range_without_exact_count(value):
    with pytest.raises(BackendError):
        parse_content_range_total(value)


@pytest.mark.parametrize("status,retryable", [
    (400, False), (401, False), (404, False), (409, False),
    (408, True), (425, True), (429, True), (500, True), (503, True),
])
def test_backend_error_retryable(status, retryable):
    assert BackendError(status, "body").retryable is retryable


def test_backend_error_message_keeps_body():
    e = BackendError(409, '{"message":"conflict"}', op="approve")
    assert str(e) == 'approve failed: 409 - {"message":"conflict"}'


@pytest.mark.asyncio
async def test_count_pending_is_exact_head_request(mock, orders):
    mock.seed(3)
    mock.seed(2, status=STATUS_COMPLETED, start=100)

    assert await orders.count_pending() == 3

    call = mock.calls[-1]
    assert call.method == "HEAD"
    assert ("status", f"eq.{STATUS_PENDING_APPROVAL}") in call.params
    assert "rest.count" in timings.summary()


@pytest.mark.asyncio
async def test_requests_carry_service_credentials(mock, orders):
    mock.service_key = "something-else"

    with pytest.raises(BackendError) as ei:
        await orders.count_pending()
    assert ei.value.status_code == 401

    mock.service_key = MOCK_SERVICE_KEY
    assert await orders.count_pending() == 0


@pytest.mark.asyncio
async def test_fetch_page_is_ordered_and_bounded(mock, orders):
    ids = mock.seed(10)

    first = await orders.fetch_pending_page(4)
    after = await orders.fetch_pending_page(4, after=first[-1])

    assert first == ids[:4]
    assert after == ids[4:8]
    params = mock.calls[-1].params
    assert ("order", "id.asc") in params
    assert ("limit", "4") in params
    assert ("id", f"gt.{ids[3]}") in params


@pytest.mark.asyncio
async def test_fetch_page_rejects_non_positive_limit(orders):
    with pytest.raises(ValueError):
        await orders.fetch_pending_page(0)


@pytest.mark.asyncio
async def test_approve_batch_only_touches_pending_rows(mock, orders):
    ids = mock.seed(3)
    mock.orders[ids[1]].update(
        status=STATUS_COMPLETED, approved_at="2026-01-01T00:00:00+00:00"
    )

    done = await orders.approve_batch(ids)

    assert sorted(done) == [ids[0], ids[2]]
    assert mock.orders[ids[1]]["approved_at"] == "2026-01-01T00:00:00+00:00"
    assert mock.orders[ids[0]]["status"] == STATUS_COMPLETED
    assert mock.orders[ids[0]]["sold_at"] == mock.orders[ids[0]]["approved_at"]


@pytest.mark.asyncio
async def test_approve_batch_needs_ids(orders):
    with pytest.raises(ValueError):
        await orders.approve_batch([])


@pytest.mark.asyncio
async def test_approve_batch_raises_on_rejection(mock, orders):
    ids = mock.seed(2)
    mock.patch_faults = [422]

    with pytest.raises(BackendError) as ei:
        await orders.approve_batch(ids)
    assert ei.value.status_code == 422
    assert "mock failure 422" in ei.value.body
    assert mock.pending_ids() == ids


@pytest.mark.asyncio
async def test_still_pending(mock, orders):
    ids = mock.seed(4)
    mock.orders[ids[0]]["status"] = STATUS_COMPLETED

    assert sorted(await orders.still_pending(ids)) == ids[1:]
    assert await orders.still_pending([]) == []
