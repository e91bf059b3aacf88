import argparse
import asyncio
import os
import time
from collections import defaultdict

import httpx

GATEWAY_URL = os.environ.get("GATEWAY_URL", "http://localhost:10000")

# One numeric id; the rest fall back to hashing under INDEX_MODE=numeric.
CLIENT_IDS = ["123", "alice", "bob", "client-42"]
TRIALS = 3


async def send_join(client: httpx.AsyncClient, gateway: str, client_id: str, req_id: int, total: int):
    print(f"[{req_id}/{total}] join client_id={client_id}")
    start_time = time.time()
    try:
        response = await client.get(f"{gateway}/join", params={"client_id": client_id}, timeout=5.0)
        elapsed = time.time() - start_time
        print(f"[{req_id}/{total}] status={response.status_code} body={response.text.strip()} ({elapsed * 1000:.1f}ms)")
        if response.status_code != 200:
            return None, elapsed
        return response.json(), elapsed
    except httpx.HTTPError as e:
        print(f"[{req_id}/{total}] Request failed: {e!r}")
        return None, 0


def summarize(results):
    """Group join results by client id.

    Returns {client_id: {"assigned": set of host:port, "latencies_ms": [...]}}.
    """
    summary = defaultdict(lambda: {"assigned": set(), "latencies_ms": []})
    for client_id, data, elapsed in results:
        if data is None:
            continue
        summary[client_id]["assigned"].add(data.get("assigned"))
        summary[client_id]["latencies_ms"].append(elapsed * 1000)
    return dict(summary)


async def run_benchmark(gateway: str, client_ids, trials: int):
    # Interleave ids so consecutive requests for one id are not back to back.
    plan = [cid for _ in range(trials) for cid in client_ids]
    total = len(plan)
    print(f"Sending {total} joins through {gateway}...")

    results = []
    async with httpx.AsyncClient() as client:
        for i, client_id in enumerate(plan):
            data, elapsed = await send_join(client, gateway, client_id, i + 1, total)
            results.append((client_id, data, elapsed))

    summary = summarize(results)
    if not summary:
        print("All requests failed.")
        return summary

    print("\n--- Join Results ---")
    print(f"{'Client ID':<12} | {'Assigned':<40} | {'Avg Latency (ms)':<16} | Sticky")
    print("-" * 85)
    for client_id in client_ids:
        row = summary.get(client_id)
        if row is None:
            print(f"{client_id:<12} | {'(failed)':<40} | {'-':<16} | -")
            continue
        assigned = ", ".join(sorted(a for a in row["assigned"] if a))
        avg = sum(row["latencies_ms"]) / len(row["latencies_ms"])
        sticky = "yes" if len(row["assigned"]) == 1 else "NO"
        print(f"{client_id:<12} | {assigned:<40} | {avg:<16.2f} | {sticky}")
    return summary


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Send joins through the gateway and check they stay on one replica.")
    parser.add_argument("client_ids", nargs="*", default=CLIENT_IDS)
    parser.add_argument("--trials", type=int, default=TRIALS)
    parser.add_argument("--gateway", default=GATEWAY_URL)
    args = parser.parse_args()

    asyncio.run(run_benchmark(args.gateway.rstrip("/"), args.client_ids, args.trials))
