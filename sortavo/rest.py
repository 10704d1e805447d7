from __future__ import annotations
from typing import List, Optional, Sequence

import httpx

from .helpers import utc_now_iso
from .infra.timings import timeit
from .model.order import (
    TABLE, COL_ID, COL_STATUS, STATUS_PENDING_APPROVAL, approval_patch,
)

RETRYABLE_STATUS = {408, 425, 429}


class BackendError(RuntimeError):
    """Non-2xx answer from the REST backend. The body is kept for logging."""

    def __init__(self, status_code: int, body: str, op: str = ""):
        self.status_code = status_code
        self.body = body
        self.op = op
        prefix = f"{op} failed" if op else "request failed"
        super().__init__(f"{prefix}: {status_code} - {body}")

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS or self.status_code >= 500


def parse_content_range_total(value: Optional[str]) -> int:
    # "0-499/1200" | "*/0" | "*/*"
    if not value or "/" not in value:
        raise BackendError(0, f"missing count in content-range: {value!r}",
                           op="count")
    total = value.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        raise BackendError(0, f"inexact count in content-range: {value!r}",
                           op="count")
    return int(total)


def _in_list(ids: Sequence[str]) -> str:
    return f"in.({','.join(ids)})"


def make_http_client(
    rest_url: str,
    service_key: str,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    headers = {
        "apikey": service_key,
        "Authorization": f"Bearer {service_key}",
        "Content-Type": "application/json",
        "User-Agent": "SortavoApprove/1.0",
    }
    return httpx.AsyncClient(
        base_url=rest_url,
        headers=headers,
        timeout=timeout,
        transport=transport,
    )


class OrdersClient:
    """
    Thin wrapper over the PostgREST `orders` endpoint.

    Only three shapes of request are made: an exact count, an id-only
    select, and a guarded bulk PATCH. Everything else about the backend is
    treated as a black box.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    @staticmethod
    def _check(resp: httpx.Response, op: str) -> None:
        if resp.status_code // 100 != 2:
            raise BackendError(resp.status_code, resp.text, op=op)

    async def count_pending(self) -> int:
        async with timeit("rest.count"):
            resp = await self.client.head(
                f"/{TABLE}",
                params={
                    "select": COL_ID,
                    COL_STATUS: f"eq.{STATUS_PENDING_APPROVAL}",
                },
                headers={"Prefer": "count=exact"},
            )
        self._check(resp, "count")
        return parse_content_range_total(resp.headers.get("content-range"))

    async def fetch_pending_page(
        self, limit: int, after: Optional[str] = None
    ) -> List[str]:
        if limit < 1:
            raise ValueError("limit must be positive")
        params = [
            ("select", COL_ID),
            (COL_STATUS, f"eq.{STATUS_PENDING_APPROVAL}"),
            ("order", f"{COL_ID}.asc"),
            ("limit", str(limit)),
        ]
        if after is not None:
            params.append((COL_ID, f"gt.{after}"))
        async with timeit("rest.select"):
            resp = await self.client.get(f"/{TABLE}", params=params)
        self._check(resp, "select")
        return [str(row[COL_ID]) for row in resp.json()]

    async def approve_batch(self, ids: Sequence[str]) -> List[str]:
        """
        Move the given orders from pending_approval to completed in one
        request. Returns the ids the backend actually updated; rows that were
        no longer pending are left alone and simply missing from the result.
        """
        if not ids:
            raise ValueError("approve_batch needs at least one id")
        params = [
            (COL_ID, _in_list(ids)),
            (COL_STATUS, f"eq.{STATUS_PENDING_APPROVAL}"),
            ("select", COL_ID),
        ]
        async with timeit("rest.patch"):
            resp = await self.client.patch(
                f"/{TABLE}",
                params=params,
                json=approval_patch(utc_now_iso()),
                headers={"Prefer": "return=representation"},
            )
        self._check(resp, "approve")
        return [str(row[COL_ID]) for row in resp.json()]

    async def still_pending(self, ids: Sequence[str]) -> List[str]:
        if not ids:
            return []
        params = [
            ("select", COL_ID),
            (COL_ID, _in_list(ids)),
            (COL_STATUS, f"eq.{STATUS_PENDING_APPROVAL}"),
        ]
        async with timeit("rest.reconcile"):
            resp = await self.client.get(f"/{TABLE}", params=params)
        self._check(resp, "reconcile")
        return [str(row[COL_ID]) for row in resp.json()]
