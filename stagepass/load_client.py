#!/usr/bin/env python3
"""
StagePass load client (async)

Simulates concurrent voters against a server running the mock gateway:
  1) POST /api/voting/checkout  (email, items) -> {reference, total_votes}
  2) POST /mockpay/{reference}/emit  (t=success|failed, times=DUP)
     - the server delivers the signed webhook DUP times
  3) GET /api/payments/verify?reference=...  (one more settlement attempt)

Afterwards the leaderboard total must have grown by exactly the votes of
the successful purchases, no matter how often each payment was delivered.

The server should run with a generous CHECKOUT_BURST / CHECKOUT_PER_MINUTE,
otherwise the per-IP checkout limit rejects most of the load.

Usage:
  python -m stagepass.load_client --base http://localhost:8000 \
                                  --total 200 --concurrency 50 --dup 3
"""

import argparse
import asyncio
import random
import string
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


@dataclass
class Result:
    ok: bool
    outcome: str  # success/failed/ERROR
    votes: int = 0
    t_checkout: float = 0.0
    t_emit: float = 0.0
    t_verify: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result):
        self.results.append(r)

    def expected_votes(self) -> int:
        return sum(r.votes for r in self.results
                   if r.ok and r.outcome == "success")

    def summary(self) -> Dict[str, float]:
        lat = [r.t_checkout + r.t_emit + r.t_verify
               for r in self.results if r.ok]

        def pct(p):
            if not lat:
                return 0.0
            x = sorted(lat)
            k = int(max(0, min(len(x)-1, round(p/100*(len(x)-1)))))
            return x[k]
        return {
            "total": len(self.results),
            "ok": sum(1 for r in self.results if r.ok),
            "paid": sum(1 for r in self.results
                        if r.ok and r.outcome == "success"),
            "failed": sum(1 for r in self.results
                          if r.ok and r.outcome == "failed"),
            "error": sum(1 for r in self.results if not r.ok),
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
            f"ERROR: {int(s['error'])}"
        )
        print(
            f"Latency (checkout+pay+verify): "
            f"avg {s['avg_s']:.3f}s   p50 {s['p50_s']:.3f}s   "
            f"p90 {s['p90_s']:.3f}s   p99 {s['p99_s']:.3f}s"
        )
        print(
            f"Wall time: {elapsed_s:.3f}s   "
            f"Throughput: {s['total']/elapsed_s:.1f} ops/s"
        )
        errors = [r.err for r in self.results if r.err][:5]
        for err in errors:
            print(f"   error: {err}")


async def leaderboard_total(client: httpx.AsyncClient, base: str) -> int:
    resp = await client.get(f"{base}/api/voting/leaderboard")
    resp.raise_for_status()
    return int(resp.json()["data"]["total_votes"])


async def catalog(client: httpx.AsyncClient, base: str):
    arts = await client.get(f"{base}/api/voting/artists")
    arts.raise_for_status()
    pkgs = await client.get(f"{base}/api/voting/packages")
    pkgs.raise_for_status()
    return arts.json()["data"], pkgs.json()["data"]


async def one_purchase(
    client: httpx.AsyncClient,
    base: str,
    artists: list,
    packages: list,
    emit_kind: str,
    dup: int,
) -> Result:
    r = Result(ok=False, outcome="ERROR")
    items = [
        {
            "artist_id": random.choice(artists)["id"],
            "package_id": random.choice(packages)["id"],
            "quantity": random.randint(1, 3),
        }
        for _ in range(random.randint(1, 2))
    ]

    # 1) checkout
    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/api/voting/checkout",
            json={"email": _rand_email(), "items": items},
            timeout=30.0,
        )
        resp.raise_for_status()
        j = resp.json()
        reference = j["reference"]
        votes = int(j["total_votes"])
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"checkout: {e}"
        return r
    r.t_checkout = time.perf_counter() - t0

    # 2) pay (or decline) on the mock gateway page
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{reference}/emit",
            data={"t": emit_kind, "times": str(dup)},
            follow_redirects=False,
            timeout=30.0,
        )
        if resp.status_code >= 400:
            r.err = f"emit HTTP {resp.status_code}"
            return r
    except httpx.HTTPError as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1

    # 3) the browser lands on the callback page, which verifies again
    t2 = time.perf_counter()
    try:
        resp = await client.get(
            f"{base}/api/payments/verify",
            params={"reference": reference},
            timeout=30.0,
        )
        resp.raise_for_status()
        status = resp.json()["data"]["status"]
    except (httpx.HTTPError, KeyError, ValueError) as e:
        r.err = f"verify: {e}"
        return r
    r.t_verify = time.perf_counter() - t2

    r.ok = True
    r.outcome = status
    r.votes = votes
    return r


async def run_load(
    base: str,
    total: int,
    concurrency: int,
    fail_rate: float,
    dup: int,
) -> tuple[Stats, int, int]:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats()

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "StagePassLoad/1.0"}
    ) as client:
        artists, packages = await catalog(client, base)
        if not artists or not packages:
            raise SystemExit("need at least one contest artist and package")
        before = await leaderboard_total(client, base)

        async def worker(n: int):
            async with sem:
                emit_kind = (
                    "failed" if random.random() < fail_rate else "success"
                )
                res = await one_purchase(
                    client, base, artists, packages, emit_kind, dup
                )
                stats.add(res)

        tasks = [asyncio.create_task(worker(i)) for i in range(total)]
        await asyncio.gather(*tasks)

        after = await leaderboard_total(client, base)

    return stats, before, after


def main():
    ap = argparse.ArgumentParser(description="StagePass load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--total", type=int, default=100,
                    help="Total purchases to run")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments to decline")
    ap.add_argument("--dup", type=int, default=2,
                    help="Webhook deliveries per payment")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats, before, after = asyncio.run(run_load(
        base=args.base,
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        dup=max(1, args.dup),
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)

    expected = stats.expected_votes()
    grown = after - before
    verdict = "OK" if grown == expected else "MISMATCH"
    print(f"Leaderboard grew by {grown}, expected {expected}: {verdict}")
    if verdict != "OK":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
