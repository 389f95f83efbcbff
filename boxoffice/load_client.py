#!/usr/bin/env python3
"""
BoxOffice load client (async)

Simulates buyers and the payment provider against a running server:
  1) POST /api/reservations  (buyerId, categoryId, quantity)
       -> {orderId, correlationToken}   or 409 out_of_stock
  2) POST /mockpay/{correlationToken}/emit  (t=succeeded|failed|canceled)
  3) Poll GET /api/orders/{orderId} until status != reserved (or timeout)
  4) Finally GET /api/inventory/{categoryId} and check that
     reserved + sold never exceeds capacity.

Usage:
  python -m boxoffice.load_client --base http://localhost:8000 \
         --category regular --total 500 --concurrency 50

Notes:
- The mock provider is disabled when APP_ENV=production.
"""

import asyncio
import argparse
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

TERMINAL = ("paid", "failed", "expired")


def _rand_buyer() -> str:
    return "buyer-" + "".join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )


@dataclass
class Result:
    ok: bool
    outcome: str  # paid/failed/expired/SOLD_OUT/TIMEOUT/ERROR
    quantity: int = 1
    t_reserve: float = 0.0
    t_emit: float = 0.0
    t_observed: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, float]:
        lat = [r.t_observed for r in self.results
               if r.outcome in TERMINAL and r.t_observed > 0]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "paid": self.count("paid"),
            "failed": self.count("failed"),
            "expired": self.count("expired"),
            "sold_out": self.count("SOLD_OUT"),
            "timeout": self.count("TIMEOUT"),
            "error": self.count("ERROR"),
            "tickets_paid": sum(r.quantity for r in self.results
                                if r.outcome == "paid"),
            "p50_s": pct(50),
            "p90_s": pct(90),
            "p99_s": pct(99),
            "avg_s": (sum(lat)/len(lat)) if lat else 0.0,
        }

    def print(self, elapsed_s: float):
        s = self.summary()
        print("\n=== Load Summary ===")
        print(
            f"Total: {int(s['total'])}   OK: {int(s['ok'])}   "
            f"PAID: {int(s['paid'])}   FAILED: {int(s['failed'])}   "
            f"EXPIRED: {int(s['expired'])}   "
            f"SOLD OUT: {int(s['sold_out'])}   "
            f"TIMEOUT: {int(s['timeout'])}   ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (observed order resolution): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )


def check_no_oversell(inventory: Dict[str, int]) -> bool:
    return (
        inventory["reserved"] + inventory["sold"] <= inventory["capacity"]
        and inventory["available"] >= 0
    )


async def one_order(
    client: httpx.AsyncClient,
    base: str,
    category: str,
    quantity: int,
    emit_kind: str,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> Result:
    r = Result(ok=False, outcome="ERROR", quantity=quantity)

    # 1) reserve
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/reservations",
            json={"buyerId": _rand_buyer(), "categoryId": category,
                  "quantity": quantity},
            timeout=30.0,
        )
        if resp.status_code == 409:
            r.ok = True
            r.outcome = "SOLD_OUT"
            return r
        resp.raise_for_status()
        j = resp.json()
        order_id = j["orderId"]
        token = j["correlationToken"]
    except Exception as e:
        r.err = f"reserve: {e}"
        return r
    r.t_reserve = time.perf_counter() - t0

    # 2) provider calls back
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{token}/emit",
            data={"t": emit_kind},
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except Exception as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 3) poll order status until terminal or timeout
    t2 = time.perf_counter()
    deadline = t2 + poll_timeout_s
    status = "reserved"
    try:
        while time.perf_counter() < deadline:
            g = await client.get(f"{base}/api/orders/{order_id}",
                                 timeout=10.0)
            if g.status_code == 200:
                status = g.json().get("status", status)
                if status in TERMINAL:
                    break
            await asyncio.sleep(poll_interval_s)
    except Exception as e:
        r.err = f"poll: {e}"
        return r

    r.t_observed = time.perf_counter() - t2
    r.ok = True
    r.outcome = status if status in TERMINAL else "TIMEOUT"
    return r


async def run_load(
    base: str,
    category: str,
    total: int,
    concurrency: int,
    max_quantity: int,
    fail_rate: float,
    cancel_rate: float,
    poll_interval_s: float,
    poll_timeout_s: float,
) -> tuple[Stats, Dict[str, int]]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "BoxOfficeLoad/1.0"}
    ) as client:

        async def worker(n: int):
            async with sem:
                rnd = random.random()
                if rnd < fail_rate:
                    emit_kind = "failed"
                elif rnd < fail_rate + cancel_rate:
                    emit_kind = "canceled"
                else:
                    emit_kind = "succeeded"

                res = await one_order(
                    client, base, category,
                    random.randint(1, max_quantity), emit_kind,
                    poll_interval_s, poll_timeout_s,
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        inv = await client.get(f"{base}/api/inventory/{category}")
        inv.raise_for_status()

    return stats, inv.json()


def main():
    ap = argparse.ArgumentParser(description="BoxOffice load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--category", required=True,
                    help="Ticket category to hammer")
    ap.add_argument("--total", type=int, default=100,
                    help="Total reservations to attempt")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--max-quantity", type=int, default=1,
                    help="Tickets per reservation are drawn from 1..N")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments that fail")
    ap.add_argument("--cancel-rate", type=float, default=0.0,
                    help="Fraction of payments the buyer cancels")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for a terminal status")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, inventory = asyncio.run(run_load(
        base=args.base.rstrip("/"),
        category=args.category,
        total=args.total,
        concurrency=args.concurrency,
        max_quantity=max(1, args.max_quantity),
        fail_rate=args.fail_rate,
        cancel_rate=args.cancel_rate,
        poll_interval_s=args.poll_interval,
        poll_timeout_s=args.poll_timeout,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)

    print(
        f"Inventory: capacity {inventory['capacity']}   "
        f"available {inventory['available']}   "
        f"reserved {inventory['reserved']}   sold {inventory['sold']}"
    )
    if not check_no_oversell(inventory):
        print("❌ OVERSOLD")
        raise SystemExit(1)
    print("✅ no oversell")


if __name__ == "__main__":
    main()
