#!/usr/bin/env python3
"""Dry-run a rule set against a snapshot file.

Evaluates every tag, prints status/score/advice per tag and the derived
session state. Touches neither the database nor the queue.

Usage:
    python scripts/evaluate_snapshot.py rulesets/ema_cross.yaml snapshot.json
    python scripts/evaluate_snapshot.py rulesets/ema_cross.yaml snapshot.json --json
"""

import argparse
import logging
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import orjson
import yaml
from pydantic import ValidationError

from app.config import get_settings
from app.rule_set_config import load_rule_set, load_snapshot_data
from core.models.coach import Thresholds
from core.rules import build_advice, derive_session_state, evaluate_rule_set

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(levelname)s - %(message)s",
)


def run(rule_set_path: Path, snapshot_path: Path, as_json: bool = False) -> int:
    try:
        rule_set = load_rule_set(rule_set_path)
        features, payload = load_snapshot_data(snapshot_path)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    settings = get_settings()
    defaults = rule_set.default_thresholds(
        Thresholds(green_gte=settings.green_default, yellow_range=settings.yellow_default)
    )
    results = evaluate_rule_set(rule_set.tags, features, payload, defaults)
    state = derive_session_state((r.tag, r.status) for r in results)

    rows = []
    for r in results:
        advice = build_advice(r.tag, r.status, r.satisfied, r.score)
        rows.append({
            "tag_key": r.tag.tag_key,
            "severity": r.tag.severity.value,
            "satisfied": r.satisfied,
            "score": r.score,
            "status": r.status.value,
            "advice_state": advice.state.value,
            "headline": advice.headline,
            "body": advice.body,
        })

    if as_json:
        print(orjson.dumps(
            {"rule_set": rule_set.name, "session_state": state.value, "tags": rows},
            option=orjson.OPT_INDENT_2,
        ).decode())
        return 0

    print("\n" + "=" * 70)
    print(f"  {rule_set.name} (green >= {defaults.green_gte}, "
          f"yellow {defaults.yellow_range[0]}-{defaults.yellow_range[1]})")
    print("=" * 70)
    skipped = len(rule_set.tags) - len(results)
    for row in rows:
        print(f"  {row['status']:<7} {row['score']:.2f}  {row['tag_key']:<24} [{row['severity']}]")
        print(f"          {row['headline']}: {row['body']}")
    if skipped:
        print(f"\n  {skipped} tag(s) skipped (invalid rule)")
    print(f"\n  Session state: {state.value}")
    print("=" * 70)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Evaluate a coach rule set against a snapshot (no database)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("rule_set", type=Path, help="Rule-set file (YAML or JSON)")
    parser.add_argument("snapshot", type=Path, help="Snapshot file: features, or {features, payload}")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    args = parser.parse_args()

    sys.exit(run(args.rule_set, args.snapshot, as_json=args.json))


if __name__ == "__main__":
    main()
