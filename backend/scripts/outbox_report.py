#!/usr/bin/env python3
import argparse
import json
import os
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.config import NOTIFICATION_MAX_ATTEMPTS
from app.services.database import Database, default_db
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.push_sender import push_sender
from app.services.realtime import RealtimeHub


def build_report(rows: List[Dict[str, Any]], max_attempts: int) -> Dict[str, Any]:
    type_counts: Counter[str] = Counter()
    error_counts: Counter[str] = Counter()
    exhausted = 0
    retrying = 0
    for row in rows:
        type_counts[str(row.get("type", "unknown"))] += 1
        attempts = int(row.get("attempts") or 0)
        if attempts >= max_attempts:
            exhausted += 1
        elif attempts:
            retrying += 1
        if row.get("last_error"):
            error_counts[str(row["last_error"])[:80]] += 1
    return {
        "pending": len(rows),
        "retrying": retrying,
        "exhausted": exhausted,
        "max_attempts": max_attempts,
        "type_counts": dict(type_counts),
        "errors_top10": dict(error_counts.most_common(10)),
        "oldest_created_at": rows[0]["created_at"] if rows else None,
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Pending outbox rows: {report['pending']}")
    print(f"Retrying: {report['retrying']}  Exhausted (>= {report['max_attempts']} attempts): {report['exhausted']}")
    if report["oldest_created_at"]:
        print(f"Oldest pending: {report['oldest_created_at']}")
    print("By type:")
    for notification_type, count in sorted(report["type_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {notification_type}: {count}")
    if report["errors_top10"]:
        print("Top errors:")
        for error, count in report["errors_top10"].items():
            print(f"  - {count}x {error}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize undelivered notification outbox rows.")
    parser.add_argument("--db", default=os.getenv("BOOKINGS_DB_PATH", default_db), help="SQLite database path.")
    parser.add_argument("--limit", type=int, default=1000, help="Maximum rows to inspect.")
    parser.add_argument("--drain", action="store_true", help="Run one outbox drain before reporting.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    dispatcher = NotificationDispatcher(Database(db_path=args.db), RealtimeHub(), push_sender)
    if args.drain:
        delivered = dispatcher.drain_outbox(limit=args.limit)
        print(f"Delivered {delivered} notification(s)")

    rows = dispatcher.pending_outbox(include_exhausted=True, limit=args.limit)
    report = build_report(rows, NOTIFICATION_MAX_ATTEMPTS)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
