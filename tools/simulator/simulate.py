#!/usr/bin/env python3
"""inspectsync offline device simulator.

Simulates field engineers whose devices queue inspections while offline and
push them when connectivity returns. Pushes are retried as if the
acknowledgement was lost, some edits are sent against a stale syncVersion,
and every device finishes with an incremental pull.

Usage:
    # 5 engineers, 20 queued inspections each
    python -m tools.simulator.simulate --server http://localhost:8000 --engineers 5

    # Flaky network: a third of pushes are resent
    python -m tools.simulator.simulate --engineers 20 --inspections 50 --resend-rate 0.33
"""

from __future__ import annotations

import argparse
import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx

GRADE_WEIGHTS = {"GRADE_1": 30, "GRADE_2": 30, "GRADE_3": 20, "GRADE_4": 12, "GRADE_5": 8}


@dataclass
class SimEngineer:
    engineer_id: str
    name: str
    pending: int = 0
    cursor: str | None = None
    queued: list[dict] = field(default_factory=list)
    # server id -> last known syncVersion
    known: dict[str, int] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)
    errors: int = 0

    @property
    def headers(self) -> dict:
        return {"X-Engineer-Id": self.engineer_id, "X-Engineer-Name": self.name}

    def tally(self, results: list[dict]) -> None:
        for r in results:
            self.counts[r["status"]] = self.counts.get(r["status"], 0) + 1


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def make_create(asset_id: str) -> dict:
    """A CREATE change as a device would queue it."""
    grade = random.choices(list(GRADE_WEIGHTS), weights=list(GRADE_WEIGHTS.values()))[0]
    inspected = datetime.now(timezone.utc) - timedelta(days=random.randint(0, 30))
    data = {
        "assetId": asset_id,
        "dateOfInspection": inspected.isoformat(),
        "conditionGrade": grade,
        "status": random.choice(["COMPLETE", "COMPLETE", "SUBMITTED", "IN_PROGRESS"]),
        "comments": random.choice([None, "Minor spalling", "Drainage blocked", "No change"]),
    }
    if grade in ("GRADE_3", "GRADE_4", "GRADE_5"):
        data["defectSeverity"] = random.randint(1, 5)
        data["followUpRequired"] = grade == "GRADE_5"
    return {
        "type": "CREATE",
        "entity": "inspection",
        "clientId": str(uuid.uuid4()),
        "data": data,
        "localTimestamp": now_iso(),
    }


def make_update(server_id: str, version: int) -> dict:
    return {
        "type": "UPDATE",
        "entity": "inspection",
        "id": server_id,
        "syncVersion": version,
        "data": {"comments": f"Revisited {now_iso()}"},
        "localTimestamp": now_iso(),
    }


async def push(client: httpx.AsyncClient, server_url: str, engineer: SimEngineer,
               changes: list[dict]) -> list[dict]:
    try:
        resp = await client.post(f"{server_url}/sync/push", json={"changes": changes},
                                 headers=engineer.headers)
    except httpx.RequestError:
        engineer.errors += 1
        return []
    if resp.status_code != 200:
        engineer.errors += 1
        return []
    results = resp.json()["results"]
    engineer.tally(results)
    for r in results:
        if "id" in r and "syncVersion" in r:
            engineer.known[r["id"]] = r["syncVersion"]
    return results


async def run_engineer(
    client: httpx.AsyncClient,
    engineer: SimEngineer,
    server_url: str,
    asset_ids: list[str],
    batch_size: int,
    resend_rate: float,
    stale_rate: float,
) -> None:
    """Drain one engineer's offline queue, then edit and pull."""
    engineer.queued = [make_create(random.choice(asset_ids)) for _ in range(engineer.pending)]

    while engineer.queued:
        batch, engineer.queued = engineer.queued[:batch_size], engineer.queued[batch_size:]
        await push(client, server_url, engineer, batch)
        if random.random() < resend_rate:
            # Ack lost on the way back: the device sends the same batch again.
            await push(client, server_url, engineer, batch)

    edits = []
    for server_id, version in list(engineer.known.items()):
        if random.random() < stale_rate:
            edits.append(make_update(server_id, version))
            edits.append(make_update(server_id, version))  # second one is stale
        elif random.random() < 0.2:
            edits.append(make_update(server_id, version))
    for start in range(0, len(edits), batch_size):
        await push(client, server_url, engineer, edits[start:start + batch_size])

    try:
        resp = await client.post(
            f"{server_url}/sync/pull",
            json={"lastSyncAt": engineer.cursor, "entities": ["assets", "inspections"]},
            headers=engineer.headers,
        )
        if resp.status_code == 200:
            engineer.cursor = resp.json()["syncedAt"]
        else:
            engineer.errors += 1
    except httpx.RequestError:
        engineer.errors += 1


async def fetch_asset_ids(client: httpx.AsyncClient, server_url: str) -> list[str]:
    resp = await client.get(f"{server_url}/sync/assets/all",
                            headers={"X-Engineer-Id": "simulator"})
    resp.raise_for_status()
    return [a["id"] for a in resp.json()["assets"]]


async def run_simulation(args: argparse.Namespace) -> int:
    """Run the full simulation."""
    async with httpx.AsyncClient(timeout=30.0) as client:
        asset_ids = await fetch_asset_ids(client, args.server)
        if not asset_ids:
            print("Server has no assets; load some before simulating inspections.")
            return 1

        engineers = []
        for i in range(args.engineers):
            eng = SimEngineer(engineer_id=f"sim-{uuid.uuid4().hex[:8]}", name=f"Engineer {i + 1}",
                              pending=args.inspections)
            eng.cursor = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
            engineers.append(eng)

        print(f"Starting simulation: {args.engineers} engineers, "
              f"{args.inspections} queued inspections each")
        print(f"  Assets available: {len(asset_ids)}")
        print(f"  Batch size: {args.batch_size}")
        print(f"  Resend rate: {args.resend_rate:.0%}  Stale edit rate: {args.stale_rate:.0%}")
        print(f"  Server: {args.server}")
        print()

        start = time.monotonic()
        await asyncio.gather(*(
            run_engineer(client, eng, args.server, asset_ids, args.batch_size,
                         args.resend_rate, args.stale_rate)
            for eng in engineers
        ))
        elapsed = time.monotonic() - start

        totals: dict[str, int] = {}
        for eng in engineers:
            for status, n in eng.counts.items():
                totals[status] = totals.get(status, 0) + n
        print(f"Simulation complete in {elapsed:.1f}s")
        for status in sorted(totals):
            print(f"  {status}: {totals[status]}")
        print(f"  Transport/HTTP errors: {sum(e.errors for e in engineers)}")

        resp = await client.get(f"{args.server}/api/v1/stats")
        if resp.status_code == 200:
            stats = resp.json()
            print("\nServer stats:")
            print(f"  Pushes received: {stats['pushes_received']}")
            print(f"  Operations received: {stats['operations_received']}")
            print(f"  Pulls served: {stats['pulls_served']}")
            print(f"  Active engineers: {stats['active_engineers']['total']}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="inspectsync offline device simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--engineers", type=int, default=5, help="Number of simulated engineers")
    parser.add_argument("--inspections", type=int, default=20,
                        help="Inspections queued offline per engineer")
    parser.add_argument("--batch-size", type=int, default=10, help="Changes per push")
    parser.add_argument("--resend-rate", type=float, default=0.25,
                        help="Probability a push is resent as if its ack was lost")
    parser.add_argument("--stale-rate", type=float, default=0.1,
                        help="Probability an edit is followed by a stale duplicate")

    args = parser.parse_args()
    raise SystemExit(asyncio.run(run_simulation(args)))


if __name__ == "__main__":
    main()
