from __future__ import annotations
import asyncio
import random
import sys
import time
import uuid
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, List, Optional, Sequence, TextIO

import httpx
from redis.exceptions import RedisError

from .helpers import now_ts
from .infra import timings
from .model.checkpoint import Checkpoint
from .rest import BackendError, OrdersClient

# Errors that cost us one batch, never the run.
BATCH_ERRORS = (httpx.HTTPError, BackendError, ValueError, KeyError)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, BackendError):
        return exc.retryable
    return False


# ----------------------------
# Run state
# ----------------------------
@dataclass(frozen=True)
class BatchOutcome:
    approved: int = 0
    failed: int = 0
    # rows that were no longer pending when we got to them
    skipped: int = 0
    error: Optional[str] = None

    @property
    def size(self) -> int:
        return self.approved + self.failed + self.skipped


@dataclass(frozen=True)
class RunState:
    total_pending_at_start: int
    started_at: float
    approved: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    # last id seen; the next page starts strictly after it
    cursor: Optional[str] = None

    @property
    def processed(self) -> int:
        return self.approved + self.failed + self.skipped

    @property
    def percent(self) -> int:
        if self.total_pending_at_start <= 0:
            return 0
        return round(100 * self.approved / self.total_pending_at_start)


def step(state: RunState, page: Sequence[str],
         outcome: BatchOutcome) -> RunState:
    """Fold one batch into the run state."""
    if not page:
        raise ValueError("step needs a non-empty page")
    if outcome.size != len(page):
        raise ValueError(
            f"outcome covers {outcome.size} rows, page has {len(page)}"
        )
    return replace(
        state,
        approved=state.approved + outcome.approved,
        failed=state.failed + outcome.failed,
        skipped=state.skipped + outcome.skipped,
        batches=state.batches + 1,
        cursor=page[-1],
    )


@dataclass
class RunResult:
    state: RunState
    duration: float
    throughput: float
    remaining: Optional[int]
    cancelled: bool = False
    limited: bool = False
    fetch_failed: bool = False
    previous: Optional[Checkpoint] = None


# ----------------------------
# Driver
# ----------------------------
class BatchApprovalDriver:
    """
    Drains `pending_approval` orders to `completed` in bounded batches.

    Strictly sequential: fetch a page, approve it, record the outcome,
    report, repeat. Every iteration moves `processed` forward by the page
    size, so the loop ends after at most `total_pending_at_start` pages.
    """

    def __init__(
        self,
        orders: OrdersClient,
        *,
        batch_size: int = 500,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
        max_orders: Optional[int] = None,
        checkpoints=None,
        resume: bool = False,
        stop: Optional[asyncio.Event] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.orders = orders
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_orders = max_orders
        self.checkpoints = checkpoints
        self.resume = resume
        self.stop = stop or asyncio.Event()
        self.sleep = sleep
        self.clock = clock
        # None means whatever sys.stdout / sys.stderr are at print time
        self.out = out
        self.err = err
        self.run_id = uuid.uuid4().hex

    def _print(self, *args, **kw) -> None:
        print(*args, file=self.out, flush=True, **kw)

    def _eprint(self, *args) -> None:
        print(*args, file=self.err or sys.stderr, flush=True)

    # ----- one batch
    def backoff_delay(self, attempt: int) -> float:
        delay = min(self.retry_max_delay,
                    self.retry_base_delay * (2 ** attempt))
        return delay + random.uniform(0, delay * 0.1)

    async def with_retry(self, call: Callable[[], Awaitable], what: str):
        attempt = 0
        while True:
            try:
                return await call()
            except BATCH_ERRORS as e:
                if attempt >= self.max_retries or not is_retryable(e):
                    raise
                delay = self.backoff_delay(attempt)
                attempt += 1
                self._eprint(
                    f"\n⚠️  {what}: retry {attempt}/{self.max_retries} "
                    f"in {delay:.2f}s: {e}"
                )
                await self.sleep(delay)

    async def approve_with_retry(self, page: List[str]) -> BatchOutcome:
        lost_response = False

        async def attempt():
            nonlocal lost_response
            try:
                return await self.orders.approve_batch(page)
            except httpx.TransportError:
                # the PATCH may have committed even though we got no answer
                lost_response = True
                raise

        try:
            done = await self.with_retry(attempt, "approve")
        except BATCH_ERRORS as e:
            self._eprint(f"\n❌ Error: {e}")
            return await self.reconcile(page, str(e))

        approved = set(done).intersection(page)
        missing = [oid for oid in page if oid not in approved]
        if lost_response and missing:
            return await self.reconcile_lost(page, approved, missing)
        # rows not echoed back were already out of pending_approval
        return BatchOutcome(
            approved=len(approved), skipped=len(page) - len(approved)
        )

    async def reconcile_lost(self, page: List[str], approved: set,
                             missing: List[str]) -> BatchOutcome:
        """
        A retried PATCH succeeded after an attempt whose response was lost.
        Rows missing from the final answer that are no longer pending were
        most likely moved by that earlier attempt, so they count as approved.
        Another actor finishing the same rows in that window is
        indistinguishable and counted the same way.
        """
        try:
            still = set(await self.orders.still_pending(missing))
        except BATCH_ERRORS as e:
            self._eprint(f"⚠️  Could not check rows of a lost response: {e}")
            return BatchOutcome(
                approved=len(approved), skipped=len(page) - len(approved)
            )
        moved = len(missing) - len(still.intersection(missing))
        failed = len(missing) - moved
        return BatchOutcome(
            approved=len(approved) + moved, failed=failed,
        )

    async def reconcile(self, page: List[str], error: str) -> BatchOutcome:
        # the batch failed as a unit; ask which rows are really still pending
        try:
            still = set(await self.orders.still_pending(page))
        except BATCH_ERRORS as e:
            self._eprint(f"❌ Reconcile failed, counting whole batch: {e}")
            return BatchOutcome(failed=len(page), error=error)
        failed = len(still.intersection(page))
        return BatchOutcome(
            failed=failed, skipped=len(page) - failed, error=error
        )

    # ----- checkpoints
    async def _load_previous(self) -> Optional[Checkpoint]:
        if self.checkpoints is None:
            return None
        try:
            cp = await self.checkpoints.load()
        except (OSError, ValueError, KeyError, RedisError) as e:
            self._eprint(f"⚠️  Could not read checkpoint: {e}")
            return None
        if cp is None or cp.finished:
            return None
        if not self.resume:
            self._print(
                f"ℹ️  Unfinished run {cp.run_id} found "
                f"({cp.approved} approved, {cp.failed} failed); "
                f"pass --resume to carry its totals forward"
            )
            return None
        self.run_id = cp.run_id
        self._print(
            f"↩️  Resuming run {cp.run_id}: {cp.approved} approved, "
            f"{cp.failed} failed, ~{cp.remaining_estimate} were left"
        )
        return cp

    async def _save(self, state: RunState, previous: Optional[Checkpoint],
                    finished: bool) -> None:
        if self.checkpoints is None:
            return
        base = previous or Checkpoint(
            run_id=self.run_id, started_at=state.started_at,
            updated_at=0.0, total_pending_at_start=0,
        )
        cp = Checkpoint(
            run_id=self.run_id,
            started_at=base.started_at,
            updated_at=now_ts(),
            total_pending_at_start=(
                base.total_pending_at_start or state.total_pending_at_start
            ),
            approved=base.approved + state.approved,
            failed=base.failed + state.failed,
            skipped=base.skipped + state.skipped,
            batches=base.batches + state.batches,
            remaining_estimate=max(
                0, state.total_pending_at_start - state.processed
            ),
            finished=finished,
        )
        try:
            await self.checkpoints.save(cp)
        except (OSError, RedisError) as e:
            self._eprint(f"⚠️  Could not write checkpoint: {e}")

    # ----- the run
    def _progress(self, state: RunState) -> None:
        self._print(
            f"\r📊 Progress: {state.percent}% "
            f"({state.approved} approved, {state.failed} failed, "
            f"{state.skipped} skipped)",
            end="",
        )

    async def run(self) -> RunResult:
        self._print("🚀 BULK ORDER APPROVAL")
        self._print("================================")

        previous = await self._load_previous()
        t0 = self.clock()
        # an error here is fatal; it propagates to the caller
        total = await self.orders.count_pending()
        state = RunState(total_pending_at_start=total, started_at=now_ts())
        self._print(f"📋 Pending orders: {total}")

        if total == 0:
            self._print("✅ No orders pending approval")
            await self._save(state, previous, finished=True)
            return RunResult(state=state, duration=0.0, throughput=0.0,
                             remaining=0, previous=previous)

        bound = total
        if self.max_orders is not None:
            bound = min(total, self.max_orders)

        cancelled = False
        fetch_failed = False
        while state.processed < bound:
            # let pending signal callbacks run before looking at the stop flag
            await asyncio.sleep(0)
            if self.stop.is_set():
                cancelled = True
                self._print("\n🛑 Stop requested; finishing up")
                break

            limit = self.batch_size
            if self.max_orders is not None:
                limit = min(limit, self.max_orders - state.processed)
            try:
                page = await self.with_retry(
                    lambda: self.orders.fetch_pending_page(
                        limit, after=state.cursor
                    ),
                    "fetch",
                )
            except BATCH_ERRORS as e:
                # nothing was attempted; the next run picks these up
                self._eprint(f"\n❌ Error fetching page: {e}")
                fetch_failed = True
                break
            if not page:
                break

            outcome = await self.approve_with_retry(page)
            state = step(state, page, outcome)
            self._progress(state)
            await self._save(state, previous, finished=False)

        limited = (
            not cancelled
            and self.max_orders is not None
            and state.processed >= self.max_orders
            and state.processed < total
        )
        duration = self.clock() - t0
        throughput = state.approved / duration if duration > 0 else 0.0

        remaining: Optional[int] = None
        try:
            remaining = await self.orders.count_pending()
        except BATCH_ERRORS as e:
            self._eprint(f"\n❌ Could not re-count pending orders: {e}")

        await self._save(state, previous,
                         finished=not (cancelled or limited or fetch_failed))
        result = RunResult(
            state=state, duration=duration, throughput=throughput,
            remaining=remaining, cancelled=cancelled, limited=limited,
            fetch_failed=fetch_failed,
            previous=previous,
        )
        self.report(result)
        return result

    def report(self, result: RunResult) -> None:
        s = result.state
        self._print("\n\n================================")
        self._print("📊 SUMMARY")
        self._print("================================")
        self._print(f"✅ Approved: {s.approved}")
        self._print(f"❌ Failed: {s.failed}")
        self._print(f"⏭️  Skipped (no longer pending): {s.skipped}")
        self._print(f"📦 Batches: {s.batches}")
        self._print(f"⏱️  Total time: {result.duration:.2f}s")
        self._print(f"📈 Rate: {result.throughput:.2f} orders/second")
        for kind, st in timings.summary().items():
            self._print(
                f"   {kind}: n={st['n']} avg {st['mean']:.3f}s "
                f"± {st['std']:.3f}s"
            )
        if result.previous is not None:
            p = result.previous
            self._print(
                f"↩️  Including run {p.run_id}: "
                f"{p.approved + s.approved} approved, "
                f"{p.failed + s.failed} failed in total"
            )
        if result.cancelled:
            self._print("🛑 Run was stopped before draining the pending set")
        if result.limited:
            self._print(f"🔢 Stopped at --max-orders={self.max_orders}")
        if result.fetch_failed:
            self._print("⚠️  Stopped early: pending orders could not be fetched")
        if result.remaining is None:
            self._print("\n📋 Remaining pending orders: unknown")
        else:
            self._print(f"\n📋 Remaining pending orders: {result.remaining}")
