#!/usr/bin/env python3
"""
main.py

Control center for list maintenance operations.

   python -m listkeeper.main post-send <send_id> <campaign_id> <list> [--sent-at ISO]
   python -m listkeeper.main weekly-sweep
   python -m listkeeper.main pre-send <list> <expected_count>
   python -m listkeeper.main runs [--workflow NAME] [--limit N]
   python -m listkeeper.main serve
"""

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

from . import config
from .advisory import AdvisoryClient
from .audit import AuditLogWriter
from .config import EngineConfig
from .coordinator import WorkflowCoordinator
from .errors import LockContentionError, NotYetEligibleError
from .list_store import ListDirectory, MailjetListStore, TokenBucket
from .notifications import TeamsNotifier

logger = logging.getLogger("listkeeper")


def setup_logging(log_dir: str = None, level: str = None):
    """File + console logging, with summary.log collecting INFO and above"""
    log_dir = log_dir or config.LOG_DIR
    level = level or config.LOG_LEVEL
    os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.FileHandler(os.path.join(log_dir, "listkeeper.log")),
            logging.StreamHandler()
        ]
    )
    root_logger = logging.getLogger()
    # summary.log for INFO+
    summary_handler = logging.FileHandler(os.path.join(log_dir, "summary.log"))
    summary_handler.setLevel(logging.INFO)
    summary_handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(summary_handler)

    # Quiet noisy libs
    logging.getLogger("urllib3").setLevel(logging.INFO)
    logging.getLogger("requests").setLevel(logging.INFO)


def build_coordinator(engine_config: EngineConfig = None) -> WorkflowCoordinator:
    engine_config = engine_config or EngineConfig()
    store = MailjetListStore(
        ListDirectory.from_config(),
        timeout=engine_config.list_store_timeout,
        rate_limiter=TokenBucket(rate=engine_config.rate_limit_per_second),
    )
    return WorkflowCoordinator(
        store,
        advisory=AdvisoryClient(timeout=engine_config.advisory_timeout),
        audit=AuditLogWriter(config.AUDIT_DB_PATH),
        notifier=TeamsNotifier(config.TEAMS_WEBHOOK_URL),
        engine_config=engine_config,
    )


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="listkeeper", description="Campaign list maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    post_send = sub.add_parser("post-send", help="Run post-send maintenance for a completed send")
    post_send.add_argument("send_id")
    post_send.add_argument("campaign_id")
    post_send.add_argument("list", help="campaign_1 | campaign_2 | campaign_3")
    post_send.add_argument("--sent-at", help="ISO timestamp of the send (default: now)")

    sub.add_parser("weekly-sweep", help="Reconcile, process follow-ups and rebalance")

    pre_send = sub.add_parser("pre-send", help="Read-only readiness check for a list")
    pre_send.add_argument("list")
    pre_send.add_argument("expected_count", type=int)

    runs = sub.add_parser("runs", help="Show recent maintenance runs")
    runs.add_argument("--workflow")
    runs.add_argument("--limit", type=int, default=20)

    serve = sub.add_parser("serve", help="Start workers and the hourly scheduler")
    serve.add_argument("--workers", type=int)

    return parser.parse_args(argv)


def _print_run(run):
    counts = run.summary_counts()
    print("=" * 60)
    print(f"🏁 {run.workflow.value} {run.run_id}: {run.status.value.upper()}")
    print("   " + " | ".join(f"{k}: {v}" for k, v in counts.items()))
    if run.used_fallback:
        print("   🔁 Rule-based fallback plan used")
    if run.abort_reason:
        print(f"   ❌ {run.abort_reason}")
    print("=" * 60)


def main(argv=None) -> int:
    args = _parse_args(argv)
    setup_logging()

    if args.command == "runs":
        for row in AuditLogWriter(config.AUDIT_DB_PATH).list_runs(args.workflow, args.limit):
            print(json.dumps(row))
        return 0

    ok, errors, warnings = config.validate_configuration()
    for warning in warnings:
        logger.warning(f"⚠️ {warning}")
    if not ok:
        for error in errors:
            logger.error(f"❌ {error}")
        return 2

    coordinator = build_coordinator()

    if args.command == "pre-send":
        report = coordinator.validate_pre_send(args.list, args.expected_count)
        print(json.dumps(report.to_dict(), indent=2))
        if coordinator.notifier is not None:
            coordinator.notifier.send_pre_send_report(report)
        return 0 if report.status != "blocked" else 1

    coordinator.bootstrap(reconcile=True)

    try:
        if args.command == "post-send":
            sent_at = datetime.fromisoformat(args.sent_at) if args.sent_at else datetime.now(timezone.utc)
            if sent_at.tzinfo is None:
                sent_at = sent_at.replace(tzinfo=timezone.utc)
            coordinator.register_send(args.send_id, args.campaign_id, args.list, sent_at)
            run = coordinator.run_post_send_maintenance(args.send_id)
            _print_run(run)
            return 0 if run.status.value != "failed" else 1

        if args.command == "weekly-sweep":
            run = coordinator.run_weekly_sweep()
            _print_run(run)
            return 0 if run.status.value != "failed" else 1
    except NotYetEligibleError as e:
        logger.info(f"⏳ {e}")
        return 3
    except LockContentionError as e:
        logger.warning(f"🔒 {e} - try again later")
        return 3

    coordinator.start(workers=args.workers)
    logger.info("🎯 Listkeeper serving - Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        coordinator.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
