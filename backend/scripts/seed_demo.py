#!/usr/bin/env python3
"""Seed a demo rule set, session and snapshot, then evaluate it.

Creates a new version of the rule set from a file, opens a session on it,
stores one ALERT snapshot and runs the evaluation job inline (no queue).
With --enqueue the job is pushed to the Redis queue for a running worker
instead.

Usage:
    python scripts/seed_demo.py
    python scripts/seed_demo.py --rule-set rulesets/ema_cross.yaml --symbol AAPL --enqueue
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.rule_set_config import load_rule_set, load_snapshot_data
from app.services import JobQueue
from app.storage import CoachRepository, cache, init_database
from core.models.coach import CoachSession, EvaluationJob, JobTrigger, Snapshot, SnapshotSource
from core.rules import EvaluationJobHandler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)

RULESETS_DIR = Path(__file__).parent.parent / "rulesets"


async def seed(rule_set_path: Path, snapshot_path: Path, symbol: str, timeframe: int, enqueue: bool):
    db = await init_database()
    repo = CoachRepository(db)

    try:
        rule_set = await repo.create_rule_set(load_rule_set(rule_set_path))
        session = await repo.create_session(
            CoachSession(rule_set_id=rule_set.id, symbol=symbol, timeframe_minutes=timeframe)
        )
        features, payload = load_snapshot_data(snapshot_path)
        snapshot = await repo.save_snapshot(
            Snapshot(
                session_id=session.id,
                source=SnapshotSource.ALERT,
                features=features,
                payload=payload,
            )
        )
        job = EvaluationJob(session_id=session.id, snapshot_id=snapshot.id, trigger=JobTrigger.ALERT)

        if enqueue:
            client = await cache.init_cache()
            try:
                envelope = await JobQueue(client).enqueue_evaluation(job)
                print(f"Enqueued evaluate job {envelope.id} for session {session.id}")
            finally:
                await cache.close_cache()
            return

        result = await EvaluationJobHandler(repo).handle(job)
        print("=" * 60)
        print(f"  {rule_set.name} v{rule_set.version} on {symbol}: {result.outcome.value}")
        print(f"  Session state: {result.session_state.value if result.session_state else '-'}")
        print("=" * 60)
        for evaluation in await repo.list_evaluations(session.id):
            print(f"  {evaluation.status.value:<7} {evaluation.score:.2f}  tag={evaluation.tag_id}")
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Seed and evaluate a demo coach session")
    parser.add_argument("--rule-set", type=Path, default=RULESETS_DIR / "ema_cross.yaml")
    parser.add_argument("--snapshot", type=Path, default=RULESETS_DIR / "demo_snapshot.json")
    parser.add_argument("--symbol", type=str, default="AAPL")
    parser.add_argument("--timeframe", type=int, default=5, help="Timeframe in minutes")
    parser.add_argument("--enqueue", action="store_true", help="Push the job to the queue")
    args = parser.parse_args()

    asyncio.run(seed(args.rule_set, args.snapshot, args.symbol, args.timeframe, args.enqueue))


if __name__ == "__main__":
    main()
