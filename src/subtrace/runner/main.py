"""
CLI main entry point.
"""

import argparse
import json
import logging
import signal
import sys
from datetime import date, timedelta
from pathlib import Path

from ..config import Config, ConfigValidationError, create_default_config, load_config
from ..confidence import detection_issues
from ..errors import DetectionNotFound, ImportConflict, PersistenceFailure
from ..extractors import CancellationToken
from ..oracle import OllamaExtractionOracle
from ..review import DecisionEngine
from ..schemas.detection import DetectionSource, DetectionStatus
from ..services import AccountJob, DetectionService, ScanSummary, run_account_scans
from ..services.notifications import Notifier
from ..sources import HttpEmailSource, HttpTransactionSource, ScanProgress, SourceError
from ..state_store import DetectionStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="subtrace",
        description="Detect subscriptions from emails and bank transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-u",
        "--user",
        type=str,
        default=None,
        help="User to act for (default: user_id from config)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    subparsers.add_parser("init-config", help="Write a default config file")

    # scan-emails command
    scan_parser = subparsers.add_parser("scan-emails", help="Scan recent emails for subscriptions")
    scan_parser.add_argument(
        "--max-results",
        type=int,
        default=None,
        help="Maximum emails to scan (default: scan.max_emails)",
    )
    scan_parser.add_argument(
        "--days-back",
        type=int,
        default=None,
        help="How far back to look (default: scan.email_days_back)",
    )

    # deep-scan command
    deep_parser = subparsers.add_parser(
        "deep-scan", help="Exhaustive email sweep with an insights report"
    )
    deep_parser.add_argument(
        "--days-back",
        type=int,
        default=None,
        help="How far back to look (default: scan.email_days_back)",
    )
    deep_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full report as JSON",
    )

    # scan-bank command
    bank_parser = subparsers.add_parser(
        "scan-bank", help="Detect recurring charges in bank transactions"
    )
    bank_parser.add_argument(
        "--account",
        dest="accounts",
        action="append",
        required=True,
        help="Bank account id (repeat for several accounts)",
    )
    bank_parser.add_argument(
        "--days-back",
        type=int,
        default=None,
        help="How far back to look (default: scan.bank_days_back)",
    )

    # list command
    list_parser = subparsers.add_parser("list", help="List detections")
    list_parser.add_argument(
        "--status",
        choices=[s.value for s in DetectionStatus] + ["all"],
        default=DetectionStatus.PENDING.value,
        help="Status filter (default: pending)",
    )
    list_parser.add_argument(
        "--source",
        choices=[s.value for s in DetectionSource],
        default=None,
        help="Source filter",
    )
    list_parser.add_argument(
        "--json",
        action="store_true",
        help="Print detections as JSON",
    )

    # import command
    import_parser = subparsers.add_parser("import", help="Import a pending detection")
    import_parser.add_argument("detection_id", type=str, help="Detection ID")

    # reject command
    reject_parser = subparsers.add_parser("reject", help="Reject a pending detection")
    reject_parser.add_argument("detection_id", type=str, help="Detection ID")

    # price-history command
    price_parser = subparsers.add_parser("price-history", help="Show recorded prices")
    price_parser.add_argument(
        "--service",
        type=str,
        default=None,
        help="Normalized service name (default: all services)",
    )

    # status command
    subparsers.add_parser("status", help="Show detection statistics")

    return parser


def _build_service(config: Config, store: DetectionStore, with_oracle: bool) -> DetectionService:
    oracle = None
    if with_oracle:
        oracle = OllamaExtractionOracle(config.oracle, cache=store)
    return DetectionService.from_config(config, store, oracle)


def _email_source(config: Config) -> HttpEmailSource:
    return HttpEmailSource(
        base_url=config.sources.email_base_url,
        token=config.sources.email_token,
        timeout=config.sources.timeout_seconds,
        page_size=config.sources.page_size,
        max_retries=config.sources.max_retries,
    )


def _print_summary(summary: ScanSummary) -> None:
    print()
    print("📊 Scan Results")
    print("=" * 40)
    print(f"  Scanned:           {summary.scanned}")
    print(f"  Usable:            {summary.usable}")
    if summary.failed:
        print(f"  Failed:            {summary.failed}")
    print(f"  Found:             {summary.found}")
    print(f"  Unique services:   {summary.unique}")
    print(f"  Auto-imported:     {summary.auto_imported}")
    print(f"  Pending review:    {summary.pending_review}")
    print(f"  Already tracked:   {summary.existing}")
    print(f"  Already reviewed:  {summary.duplicates}")
    print(f"  Ignored (weak):    {summary.ignored}")
    print(f"  Price changes:     {len(summary.price_changes)}")
    for change in summary.price_changes:
        pct = f" ({change.change_percentage:+}%)" if change.change_percentage is not None else ""
        print(
            f"    - {change.service_name}: {change.old_price} → {change.new_price} "
            f"{change.currency}{pct}"
        )
    if summary.cancelled:
        print("  ⚠️  Scan was cancelled; results so far were saved")
    print()


def cmd_init_config(config_path: Path) -> int:
    """Write a default config file."""
    if config_path.exists():
        print(f"❌ {config_path} already exists")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default configuration to {config_path}")
    return 0


def cmd_scan_emails(
    config: Config, user_id: str, max_results: int | None, days_back: int | None
) -> int:
    """Scan recent emails."""
    print("🔍 Scanning emails for subscriptions...")
    store = DetectionStore(config.state_db_path)
    service = _build_service(config, store, with_oracle=True)
    source = _email_source(config)

    try:
        summary = service.scan_emails(user_id, source, max_results, days_back)
    except SourceError as e:
        print(f"❌ Email scan aborted: {e}")
        return 1

    _print_summary(summary)
    return 0


def cmd_deep_scan(config: Config, user_id: str, days_back: int | None, as_json: bool) -> int:
    """Exhaustive email sweep. Ctrl+C stops after the current email."""
    print("🔍 Deep scanning emails (Ctrl+C to stop, progress is kept)...")
    store = DetectionStore(config.state_db_path)
    service = _build_service(config, store, with_oracle=True)
    source = _email_source(config)

    cancel_token = CancellationToken()
    previous = signal.signal(signal.SIGINT, lambda *_: cancel_token.cancel())

    def on_progress(progress: ScanProgress) -> None:
        total = f"/{progress.total}" if progress.total is not None else ""
        print(f"  → {progress.phase}: {progress.current}{total}")

    try:
        summary = service.deep_scan_emails(
            user_id, source, days_back, progress_callback=on_progress, cancel_token=cancel_token
        )
    except SourceError as e:
        print(f"❌ Deep scan aborted: {e}")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        print(json.dumps(summary.to_dict(), indent=2))
        return 0

    _print_summary(summary)
    report = summary.report
    if report is not None:
        print("📈 Insights")
        print("=" * 40)
        for currency, amount in report.estimated_annual_cost.items():
            print(f"  Estimated annual cost: {currency} {amount:,}")
        print(f"  Average confidence:    {report.average_confidence}%")
        if report.top_services:
            print("  Top services:")
            for item in report.top_services:
                print(f"    - {item['name']} ({item['detection_count']}x)")
        if report.cancel_suggestions:
            print("  Cancel suggestions:")
            for s in report.cancel_suggestions:
                print(
                    f"    - {s.service}: {s.currency} {s.monthly_amount}/month ({s.reason})"
                )
        for rec in report.recommendations:
            print(f"  💡 {rec.title}: {rec.description}")
        print()
    return 0


def cmd_scan_bank(
    config: Config, user_id: str, accounts: list[str], days_back: int | None
) -> int:
    """Detect recurring charges for one or more bank accounts."""
    store = DetectionStore(config.state_db_path)
    service = _build_service(config, store, with_oracle=False)
    end = date.today()
    start = end - timedelta(days=days_back or config.scan.bank_days_back)

    def make_job(account_id: str) -> AccountJob:
        def run() -> ScanSummary:
            # One client per account; sessions are not shared across workers
            source = HttpTransactionSource(
                base_url=config.sources.bank_base_url,
                token=config.sources.bank_token,
                timeout=config.sources.timeout_seconds,
                page_size=config.sources.page_size,
                max_retries=config.sources.max_retries,
            )
            return service.scan_transactions(user_id, source, account_id, start, end)

        return AccountJob(account_key=account_id, name="bank", run=run)

    print(f"🏦 Scanning {len(accounts)} account(s) from {start} to {end}...")
    results = run_account_scans(
        [make_job(a) for a in accounts], max_workers=config.scan.max_parallel_accounts
    )

    exit_code = 0
    for result in results:
        print(f"\nAccount {result.account_key}")
        if not result.success:
            print(f"❌ Failed: {result.error}")
            exit_code = 1
            continue
        _print_summary(result.results["bank"])
    return exit_code


def cmd_list(
    config: Config, user_id: str, status: str, source: str | None, as_json: bool
) -> int:
    """List detections."""
    store = DetectionStore(config.state_db_path)
    detections = store.list_detections(
        user_id,
        status=None if status == "all" else DetectionStatus(status),
        source=DetectionSource(source) if source else None,
    )

    if as_json:
        print(json.dumps([d.to_dict() for d in detections], indent=2))
        return 0

    if not detections:
        print("No detections.")
        return 0

    print(f"\n{len(detections)} detection(s):\n")
    for d in detections:
        amount = f"{d.amount} {d.currency}" if d.amount is not None else "amount unknown"
        print(
            f"  [{d.id}] {d.normalized_service_name} | {amount} | {d.billing_cycle.value} | "
            f"{d.category.value} | {d.confidence}% | {d.source.value} | {d.status.value}"
        )
        if d.status == DetectionStatus.PENDING:
            for issue in detection_issues(d):
                print(f"      ⚠️  {issue}")
    print()
    return 0


def cmd_import(config: Config, user_id: str, detection_id: str) -> int:
    """Import a pending detection."""
    store = DetectionStore(config.state_db_path)
    engine = DecisionEngine(store, Notifier(store))
    try:
        subscription = engine.import_detection(user_id, detection_id)
    except (DetectionNotFound, ImportConflict, PersistenceFailure) as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Imported {subscription.name} as subscription {subscription.id}")
    return 0


def cmd_reject(config: Config, user_id: str, detection_id: str) -> int:
    """Reject a pending detection."""
    store = DetectionStore(config.state_db_path)
    engine = DecisionEngine(store, Notifier(store))
    try:
        detection = engine.reject_detection(user_id, detection_id)
    except (DetectionNotFound, ImportConflict, PersistenceFailure) as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Rejected {detection.normalized_service_name}")
    return 0


def cmd_price_history(config: Config, user_id: str, service: str | None) -> int:
    """Show recorded price points."""
    store = DetectionStore(config.state_db_path)
    entries = store.get_price_history(user_id, service)
    if not entries:
        print("No price history.")
        return 0

    current = None
    for entry in entries:
        if entry.service_name != current:
            current = entry.service_name
            print(f"\n{current}")
        print(
            f"  {entry.observed_at:%Y-%m-%d %H:%M}  {entry.amount} {entry.currency} "
            f"({entry.billing_cycle.value})"
        )
    print()
    return 0


def cmd_status(config: Config, user_id: str) -> int:
    """Show detection statistics."""
    store = DetectionStore(config.state_db_path)
    stats = store.get_stats(user_id)

    print("\n📊 Detection Status")
    print("=" * 40)
    print(f"  Detections total:       {stats['detections_total']}")
    print(f"  Pending review:         {stats['pending']}")
    print(f"  Imported:               {stats['imported']}")
    print(f"  Auto-imported:          {stats['auto_imported']}")
    print(f"  Rejected:               {stats['rejected']}")
    print(f"  Active subscriptions:   {stats['active_subscriptions']}")
    print(f"  Price points:           {stats['price_points']}")
    print(f"  Unread notifications:   {stats['unread_notifications']}")

    runs = store.get_scan_runs(user_id, limit=5)
    if runs:
        print("\n  Recent scans:")
        for run in runs:
            state = "error" if run["error"] else ("cancelled" if run["cancelled"] else "ok")
            print(
                f"    {run['started_at'][:19]}  {run['kind']:<10} scanned {run['scanned']}, "
                f"unique {run['unique_count']}, auto {run['auto_imported']}, "
                f"pending {run['pending_review']} [{state}]"
            )
    print()
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config)

    # Load config
    try:
        config = load_config(parsed.config)
    except (ConfigValidationError, OSError, ValueError) as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        print("❌ Invalid configuration:")
        for error in errors:
            print(f"   - {error}")
        return 1

    user_id = parsed.user or config.user_id

    # Route to command
    if parsed.command == "scan-emails":
        return cmd_scan_emails(config, user_id, parsed.max_results, parsed.days_back)
    elif parsed.command == "deep-scan":
        return cmd_deep_scan(config, user_id, parsed.days_back, parsed.json)
    elif parsed.command == "scan-bank":
        return cmd_scan_bank(config, user_id, parsed.accounts, parsed.days_back)
    elif parsed.command == "list":
        return cmd_list(config, user_id, parsed.status, parsed.source, parsed.json)
    elif parsed.command == "import":
        return cmd_import(config, user_id, parsed.detection_id)
    elif parsed.command == "reject":
        return cmd_reject(config, user_id, parsed.detection_id)
    elif parsed.command == "price-history":
        return cmd_price_history(config, user_id, parsed.service)
    elif parsed.command == "status":
        return cmd_status(config, user_id)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
