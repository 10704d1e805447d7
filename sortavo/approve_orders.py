#!/usr/bin/env python3
"""
Sortavo bulk order approval

Moves every order in `pending_approval` to `completed` in batches:
  1) count pending orders (exact)
  2) fetch a page of ids, PATCH them to completed, repeat
  3) print a summary and re-count what is still pending

Usage:
  sortavo-approve --env-file .env
  sortavo-approve --batch-size 200 --max-retries 5
  sortavo-approve --resume          # carry totals of an interrupted run
  sortavo-approve --count-only
  sortavo-approve --mock 1200       # in-memory backend, no credentials

Needs SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY (environment or env file).
Exit codes: 0 done (also when nothing is pending), 1 fatal error,
130 stopped by SIGINT/SIGTERM.
"""
from __future__ import annotations
import argparse
import asyncio
import os
import signal
import sys
from dataclasses import replace
from typing import Mapping, Optional, TextIO

import httpx
import redis.asyncio as redis

from .approval import BatchApprovalDriver
from .mockrest import MockRest, MOCK_SERVICE_KEY
from .model.checkpoint import new_store
from .rest import BackendError, OrdersClient, make_http_client
from .settings import ConfigError, Settings, load_settings


def install_stop_handlers(stop: asyncio.Event):
    # first signal asks the loop to stop between batches; after that the
    # default handlers are back, so a second Ctrl-C interrupts right away
    if os.name != "posix":
        return lambda: None
    loop = asyncio.get_running_loop()

    def _handle_sig(signum: int) -> None:
        print(f"\n==> Caught signal {signum}; stopping after this batch...",
              flush=True)
        stop.set()
        for s in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(s)

    for s in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(s, _handle_sig, s)

    def _uninstall() -> None:
        for s in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(s)
    return _uninstall


def build_settings(
    args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    if args.mock is not None:
        settings = Settings(supabase_url="http://mock.local",
                            service_key=MOCK_SERVICE_KEY)
    else:
        settings = load_settings(env_file=args.env_file, environ=environ)

    overrides = {}
    if args.batch_size is not None:
        if args.batch_size < 1:
            raise ConfigError("--batch-size must be >= 1")
        overrides["batch_size"] = args.batch_size
    if args.max_retries is not None:
        if args.max_retries < 0:
            raise ConfigError("--max-retries must be >= 0")
        overrides["max_retries"] = args.max_retries
    if args.max_orders is not None and args.max_orders < 1:
        raise ConfigError("--max-orders must be >= 1")
    if overrides:
        settings = replace(settings, **overrides)
    return settings


async def amain(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
) -> int:
    settings = build_settings(args, environ)

    if args.mock is not None:
        mock = MockRest(service_key=settings.service_key)
        mock.seed(args.mock)
        transport = mock.transport()

    checkpoints = None
    r: Optional[redis.Redis] = None
    if args.mock is None and not args.count_only:
        if settings.checkpoint_backend == "redis":
            r = redis.from_url(settings.redis_url, decode_responses=True)
        checkpoints = new_store(settings.checkpoint_backend,
                                path=settings.checkpoint_path, r=r)

    stop = asyncio.Event()
    uninstall = install_stop_handlers(stop)

    try:
        async with make_http_client(
            settings.rest_url, settings.service_key,
            timeout=settings.http_timeout, transport=transport,
        ) as client:
            orders = OrdersClient(client)

            if args.count_only:
                n = await orders.count_pending()
                print(f"📋 Pending orders: {n}", file=out)
                return 0

            driver = BatchApprovalDriver(
                orders,
                batch_size=settings.batch_size,
                max_retries=settings.max_retries,
                retry_base_delay=settings.retry_base_delay,
                retry_max_delay=settings.retry_max_delay,
                max_orders=args.max_orders,
                checkpoints=checkpoints,
                resume=args.resume,
                stop=stop,
                out=out,
                err=err,
            )
            result = await driver.run()
    finally:
        uninstall()
        if checkpoints is not None:
            await checkpoints.close()

    return 130 if result.cancelled else 0


def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Approve all pending_approval orders in batches"
    )
    ap.add_argument("--env-file", default=None,
                    help="KEY=VALUE file read before the environment")
    ap.add_argument("--batch-size", type=int, default=None,
                    help="Orders per PATCH (default: BATCH_SIZE or 500)")
    ap.add_argument("--max-retries", type=int, default=None,
                    help="Retries per batch on transient errors")
    ap.add_argument("--max-orders", type=int, default=None,
                    help="Stop after this many orders were processed")
    ap.add_argument("--resume", action="store_true",
                    help="Carry totals of an unfinished checkpoint forward")
    ap.add_argument("--count-only", action="store_true",
                    help="Only print the pending count")
    ap.add_argument("--mock", type=int, default=None, metavar="N",
                    help="Run against an in-memory backend with N orders")
    return ap.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(amain(args))
    except ConfigError as e:
        print(f"❌ Config error: {e}", file=sys.stderr)
        return 1
    except (httpx.HTTPError, BackendError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
