#!/usr/bin/env python3
"""Generate a large round dataset for exercising listings, pagination and the dashboards."""

import argparse
import asyncio
import json
import random
import time

from solders.pubkey import Pubkey

STAGES = ["meta", "meta", "fetched", "reconstructed", "verified", "finalized", "finalized", "finalized"]


def _summary(round_id: int, miners: list) -> dict:
    return {
        "round_id": round_id,
        "start_slot": round_id * 150,
        "end_slot": round_id * 150 + 149,
        "winning_square": random.randint(0, 24),
        "top_miner": random.choice(miners),
        "total_deployed": random.randint(1, 400) * 10_000_000,
        "total_vaulted": random.randint(0, 10) * 1_000_000,
        "total_winnings": random.randint(0, 300) * 10_000_000,
        "total_minted": random.randint(0, 2) * 100_000_000_000,
        "unique_miners": random.randint(1, 300),
        "motherlode": 0 if random.random() > 0.01 else random.randint(1, 500) * 100_000_000_000,
        "ts": 1_700_000_000 + round_id * 60,
    }


async def generate_rounds(storage, start: int, count: int, gap_rate: float, miners: list) -> list:
    """Insert round metadata, leaving random holes for the gap listing."""
    print(f"Generating up to {count} rounds from {start}...")
    round_ids = []
    for rid in range(start, start + count):
        if rid not in (start, start + count - 1) and random.random() < gap_rate:
            continue
        summary = _summary(rid, miners)
        summary["motherlode_hit"] = summary["motherlode"] > 0
        await storage.rounds.upsert(summary, source=random.choice(["backfill", "backfill", "live"]))
        round_ids.append(rid)
        if len(round_ids) % 1000 == 0:
            print(f"  Created {len(round_ids)} rounds...")
    print(f"Created {len(round_ids)} rounds ({count - len(round_ids)} gaps)")
    return round_ids


def _deployments(round_row: dict, miners: list) -> list:
    """Random staged cells summing exactly to the round total (or short of it, for invalid rounds)."""
    total = round_row["total_deployed"]
    cells = {}
    remaining = total
    while remaining > 0:
        amount = min(remaining, random.randint(1, 20) * 10_000_000)
        key = (random.choice(miners), random.randint(0, 24))
        cells[key] = cells.get(key, 0) + amount
        remaining -= amount
    slot = round_row["start_slot"]
    return [(m, sq, amt, slot + random.randint(0, 140)) for (m, sq), amt in cells.items()]


async def generate_workflow(storage, round_ids: list, miners: list, invalid_rate: float):
    """Walk each round to a random stage; finalized rounds also land in the analytical store."""
    print(f"Advancing {len(round_ids)} rounds through the workflow...")
    counts = {stage: 0 for stage in STAGES}
    for i, rid in enumerate(round_ids):
        stage = random.choice(STAGES)
        counts[stage] += 1
        await storage.workflow.set_meta_fetched(rid)
        if stage == "meta":
            continue

        await storage.raw_transactions.insert_many(rid, [{
            "signature": f"synthetic-{rid}-{n}",
            "slot": rid * 150 + n,
            "tx_type": "deploy",
            "raw": {"slot": rid * 150 + n, "synthetic": True},
        } for n in range(random.randint(1, 5))])
        await storage.workflow.mark_transactions_fetched(
            rid, await storage.raw_transactions.count_for_round(rid)
        )
        if stage == "fetched":
            continue

        round_row = await storage.rounds.get(rid)
        staged = _deployments(round_row, miners)
        invalid = random.random() < invalid_rate
        if invalid:
            staged = staged[:-1] or staged
        parsed_total = sum(d[2] for d in staged)
        discrepancy = round_row["total_deployed"] - parsed_total
        await storage.workflow.record_reconstruction(rid, staged, {
            "parsed_total": parsed_total,
            "logged_total": parsed_total,
            "logged_vs_parsed_diff": 0,
            "discrepancy": discrepancy,
            "unmatched_logged": 0,
            "invalid": discrepancy != 0,
        })
        if stage == "reconstructed":
            continue

        if stage == "verified":
            if discrepancy == 0:
                await storage.workflow.mark_verified(rid, "generated")
            continue

        deployments = [
            {
                "miner_pubkey": m, "square_id": sq, "amount": amt, "deployed_slot": slot,
                "is_winner": sq == round_row["winning_square"],
                "is_top_miner": m == round_row["top_miner"],
            }
            for m, sq, amt, slot in staged
        ]
        await storage.analytics.replace_round(round_row, deployments)
        await storage.workflow.mark_finalized(rid)

        if (i + 1) % 1000 == 0:
            print(f"  Advanced {i + 1} rounds...")
    print("Stage counts: " + json.dumps(counts))


async def generate_queue(storage, round_ids: list, count: int):
    """Queue a spread of actions and fail a handful so the queue views have content."""
    print(f"Queueing up to {count} actions...")
    picked = random.sample(round_ids, min(count, len(round_ids)))
    queued = 0
    for i, action in enumerate(("fetch_txns", "reconstruct", "finalize")):
        n, _ = await storage.action_queue.enqueue_many(picked[i::3], action)
        queued += n
    failed = 0
    for _ in range(min(10, queued)):
        item = await storage.action_queue.claim_next()
        if item is None:
            break
        await storage.action_queue.fail(item["id"], "generated failure")
        failed += 1
    print(f"Queued {queued} actions ({failed} failed)")


async def main():
    parser = argparse.ArgumentParser(description="Generate test round data")
    parser.add_argument("--start-round", type=int, default=10_000, help="Lowest round id")
    parser.add_argument("--rounds", type=int, default=5_000, help="Number of round ids to cover")
    parser.add_argument("--miners", type=int, default=300, help="Unique miner authorities")
    parser.add_argument("--gap-rate", type=float, default=0.02, help="Fraction of round ids left missing")
    parser.add_argument("--invalid-rate", type=float, default=0.05, help="Fraction of rounds reconstructed short")
    parser.add_argument("--queue", type=int, default=200, help="Queued actions")
    parser.add_argument("--db", type=str, default="data/recon.db", help="Row store path")
    parser.add_argument("--analytics-db", type=str, default="data/analytics.db", help="Analytical store path")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)

    from orerecon.storage import StorageManager

    print(f"Connecting to databases: {args.db}, {args.analytics_db}")
    storage = StorageManager(args.db, args.analytics_db)
    await storage.initialize()

    miners = [str(Pubkey.new_unique()) for _ in range(args.miners)]
    print(f"Using {len(miners)} miner authorities")

    t0 = time.time()
    round_ids = await generate_rounds(storage, args.start_round, args.rounds, args.gap_rate, miners)
    await generate_workflow(storage, round_ids, miners, args.invalid_rate)
    await generate_queue(storage, round_ids, args.queue)

    print("\nSummary:")
    print("  rounds:    " + json.dumps(await storage.rounds.stats()))
    print("  pipeline:  " + json.dumps(await storage.workflow.pipeline_stats()))
    print("  analytics: " + json.dumps(await storage.analytics.stats()))
    print(f"Done in {time.time() - t0:.1f}s")

    await storage.close()


if __name__ == "__main__":
    asyncio.run(main())
