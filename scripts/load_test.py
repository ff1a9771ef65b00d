"""Async load generator: one order + one UPI payment per iteration."""

import argparse
import asyncio
import random
import statistics
import time
from uuid import uuid4

import httpx


async def send_one(client: httpx.AsyncClient, base_url: str, headers: dict[str, str]) -> tuple[int, float]:
    """Create an order and pay it; returns (payment status_code, latency_ms)."""

    started = time.perf_counter()
    try:
        order = await client.post(
            f"{base_url}/api/v1/orders",
            json={"amount": random.randint(100, 250000), "currency": "INR", "receipt": f"load-{uuid4()}"},
            headers=headers,
        )
        if order.status_code >= 400:
            return order.status_code, (time.perf_counter() - started) * 1000
        resp = await client.post(
            f"{base_url}/api/v1/payments",
            json={"order_id": order.json()["id"], "method": "upi", "vpa": "load@upi"},
            headers={**headers, "Idempotency-Key": str(uuid4())},
        )
        return resp.status_code, (time.perf_counter() - started) * 1000
    except httpx.HTTPError:
        return 599, (time.perf_counter() - started) * 1000


def pct(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    idx = min(len(values) - 1, max(0, int((p / 100.0) * len(values)) - 1))
    return sorted(values)[idx]


async def run(total: int, concurrency: int, base_url: str, api_key: str, api_secret: str) -> None:
    """Execute a bounded-concurrency load run and print summary stats."""

    sem = asyncio.Semaphore(concurrency)
    headers = {"X-Api-Key": api_key, "X-Api-Secret": api_secret}
    results = []

    async with httpx.AsyncClient(timeout=10.0) as client:
        async def worker():
            async with sem:
                return await send_one(client, base_url, headers)

        tasks = [asyncio.create_task(worker()) for _ in range(total)]
        for task in asyncio.as_completed(tasks):
            results.append(await task)

    codes = [code for code, _ in results]
    lats = [latency for _, latency in results]
    success = sum(1 for code in codes if 200 <= code < 300)
    errors = total - success

    print(f"total={total}")
    print(f"success={success}")
    print(f"errors={errors}")
    print(f"error_rate={(errors / total) * 100:.2f}%")
    print(f"p50_ms={pct(lats, 50):.2f}")
    print(f"p95_ms={pct(lats, 95):.2f}")
    print(f"p99_ms={pct(lats, 99):.2f}")
    print(f"avg_ms={statistics.mean(lats):.2f}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--total", type=int, default=200)
    parser.add_argument("--concurrency", type=int, default=20)
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="key_test_abc123")
    parser.add_argument("--api-secret", default="secret_test_xyz789")
    args = parser.parse_args()
    asyncio.run(run(args.total, args.concurrency, args.base_url, args.api_key, args.api_secret))
