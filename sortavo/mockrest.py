from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import httpx

from .model.order import (
    TABLE, COL_ID, COL_STATUS, STATUS_PENDING_APPROVAL,
)

MOCK_SERVICE_KEY = "mock-service-key"

# A scripted PATCH outcome: an HTTP status to answer with, or an exception
# to raise from the transport. None lets the request through.
Fault = Union[int, Exception, None]


@dataclass
class Call:
    method: str
    params: List[tuple]
    ids: List[str] = field(default_factory=list)


# ----------------------------
# In-memory PostgREST `orders`
# ----------------------------
class MockRest:
    """
    Just enough PostgREST for the approval driver: eq/gt/in filters on
    `status` and `id`, order=id.asc, limit, exact counts via Content-Range
    and PATCH with return=representation.

    Use `transport()` as the transport of an httpx.AsyncClient.
    """

    def __init__(self, service_key: str = MOCK_SERVICE_KEY) -> None:
        self.service_key = service_key
        self.orders: Dict[str, dict] = {}
        self.calls: List[Call] = []
        # consumed one per PATCH, in order
        self.patch_faults: List[Fault] = []
        # number of PATCHes that commit but whose response never arrives
        self.lost_responses = 0
        # any PATCH touching one of these ids answers 500
        self.poison_ids: set[str] = set()
        self.reconcile_fault: Fault = None
        # consumed one per HEAD count
        self.count_faults: List[Fault] = []
        # hooks to simulate other actors mutating the table mid-run
        self.before_select: Optional[Callable[["MockRest"], None]] = None
        self.after_patch: Optional[Callable[["MockRest", List[str]], None]] = None

    # ----- seeding / inspection
    def seed(self, n: int, status: str = STATUS_PENDING_APPROVAL,
             start: int = 0) -> List[str]:
        ids = [f"{i:08d}" for i in range(start, start + n)]
        for oid in ids:
            self.orders[oid] = {
                COL_ID: oid, COL_STATUS: status,
                "approved_at": None, "sold_at": None,
            }
        return ids

    def pending_ids(self) -> List[str]:
        return sorted(
            oid for oid, row in self.orders.items()
            if row[COL_STATUS] == STATUS_PENDING_APPROVAL
        )

    def calls_of(self, method: str) -> List[Call]:
        return [c for c in self.calls if c.method == method]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # ----- request handling
    def _match(self, params: List[tuple]) -> List[dict]:
        rows = list(self.orders.values())
        for key, val in params:
            if key not in (COL_ID, COL_STATUS):
                continue
            op, _, arg = val.partition(".")
            if op == "eq":
                rows = [r for r in rows if str(r[key]) == arg]
            elif op == "gt":
                rows = [r for r in rows if str(r[key]) > arg]
            elif op == "in":
                wanted = set(arg.strip("()").split(",")) if arg != "()" else set()
                rows = [r for r in rows if str(r[key]) in wanted]
            else:
                raise ValueError(f"unsupported filter {key}={val}")
        rows.sort(key=lambda r: r[COL_ID])
        return rows

    @staticmethod
    def _project(rows: List[dict], params: List[tuple]) -> List[dict]:
        select = dict(params).get("select", "*")
        if select == "*":
            return [dict(r) for r in rows]
        cols = select.split(",")
        return [{c: r[c] for c in cols} for r in rows]

    @staticmethod
    def _raise_or_answer(fault: Fault, request: httpx.Request):
        if isinstance(fault, Exception):
            raise fault
        if isinstance(fault, int):
            return httpx.Response(
                fault, json={"message": f"mock failure {fault}"},
                request=request,
            )
        return None

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.headers.get("apikey") != self.service_key:
            return httpx.Response(401, json={"message": "Invalid API key"})
        if not request.url.path.endswith(f"/{TABLE}"):
            return httpx.Response(404, json={"message": "not found"})

        params = list(request.url.params.multi_items())
        method = request.method

        if method in ("GET", "HEAD"):
            return self._handle_select(request, method, params)
        if method == "PATCH":
            return self._handle_patch(request, params)
        return httpx.Response(405, json={"message": "method not allowed"})

    def _handle_select(self, request, method, params) -> httpx.Response:
        is_reconcile = any(
            k == COL_ID and v.startswith("in.") for k, v in params
        )
        self.calls.append(Call(method, params))
        if method == "HEAD" and self.count_faults:
            answer = self._raise_or_answer(self.count_faults.pop(0), request)
            if answer is not None:
                return answer
        if is_reconcile:
            answer = self._raise_or_answer(self.reconcile_fault, request)
            if answer is not None:
                return answer
        elif method == "GET" and self.before_select is not None:
            self.before_select(self)

        rows = self._match(params)
        total = len(rows)
        limit = dict(params).get("limit")
        if limit is not None:
            rows = rows[:int(limit)]

        headers = {}
        if "count=exact" in request.headers.get("prefer", ""):
            if rows:
                headers["content-range"] = f"0-{len(rows) - 1}/{total}"
            else:
                headers["content-range"] = f"*/{total}"
        if method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(
            200, headers=headers, json=self._project(rows, params)
        )

    def _handle_patch(self, request, params) -> httpx.Response:
        rows = self._match(params)
        ids = [r[COL_ID] for r in rows]
        requested = dict(params).get(COL_ID, "")
        requested_ids = requested[len("in.("):-1].split(",")
        self.calls.append(Call("PATCH", params, ids=requested_ids))

        fault = self.patch_faults.pop(0) if self.patch_faults else None
        answer = self._raise_or_answer(fault, request)
        if answer is not None:
            return answer
        if self.poison_ids.intersection(requested_ids):
            return httpx.Response(
                500, json={"message": "constraint violation"}
            )

        body = json.loads(request.content or b"{}")
        for r in rows:
            r.update(body)
        if self.after_patch is not None:
            self.after_patch(self, ids)
        if self.lost_responses > 0:
            self.lost_responses -= 1
            raise httpx.ReadError("connection reset after commit",
                                  request=request)

        if "return=representation" in request.headers.get("prefer", ""):
            return httpx.Response(200, json=self._project(rows, params))
        return httpx.Response(204)
