"""CLI entry point for the Gmail Forwarder, meant to be run from cron or a systemd timer."""

from __future__ import annotations

import argparse
import logging
import sys

from gmail_forwarder.config.settings import ForwarderSettings
from gmail_forwarder.core.auth import authenticate, scopes_for
from gmail_forwarder.core.classifier import SubjectClassifier
from gmail_forwarder.core.models import RunSummary
from gmail_forwarder.pipeline.coordinator import IngestionCoordinator
from gmail_forwarder.storage.archive import DEFAULT_CLEANUP_DAYS, format_file_size

SECRET_FIELDS = ("slack_webhook_url", "slack_bot_token")


def setup_logging(level: str) -> None:
    """Configure logging with timestamp and module info."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def on_progress(progress: RunSummary) -> None:
    """Print progress updates to stdout."""
    print(
        f"[{progress.current_stage}] "
        f"checked={progress.checked} "
        f"processed={progress.processed} "
        f"skipped={progress.skipped} "
        f"errors={progress.errors}",
        end="\r",
        flush=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Gmail Forwarder - Forward matching emails and attachments to Slack"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Forward new matching emails")
    run_parser.add_argument(
        "--max-messages",
        type=int,
        default=None,
        dest="max_messages",
        help="Override the per-run message cap",
    )

    subparsers.add_parser("auth", help="Run the OAuth consent flow and cache the token")
    subparsers.add_parser("status", help="Show ledger, archive usage and recent runs")

    classify_parser = subparsers.add_parser(
        "classify", help="Test a subject against the configured patterns"
    )
    classify_parser.add_argument("subject", help="Subject line to classify")

    subparsers.add_parser(
        "migrate-legacy", help="Import legacy processed flags into the ledger"
    )
    subparsers.add_parser("purge-legacy", help="Delete legacy processed flags")

    cleanup_parser = subparsers.add_parser(
        "cleanup-archive", help="Remove archived attachments older than N days"
    )
    cleanup_parser.add_argument(
        "--days",
        type=int,
        default=DEFAULT_CLEANUP_DAYS,
        help=f"Age in days after which files are removed (default: {DEFAULT_CLEANUP_DAYS})",
    )

    subparsers.add_parser("test-notify", help="Send a test notification to Slack")
    subparsers.add_parser("show-config", help="Print the effective configuration")
    return parser


def _validate_args(args: argparse.Namespace) -> None:
    """Reject non-positive overrides."""
    if getattr(args, "max_messages", None) is not None and args.max_messages <= 0:
        print("Error: --max-messages must be positive", file=sys.stderr)
        sys.exit(1)
    if getattr(args, "days", None) is not None and args.days <= 0:
        print("Error: --days must be positive", file=sys.stderr)
        sys.exit(1)


def _print_classification(settings: ForwarderSettings, subject: str) -> bool:
    classifier = SubjectClassifier(settings.active_patterns, settings.active_match_mode)
    result = classifier.classify(subject)
    print(f"\nSubject: {subject}")
    print(f"Mode: {result.mode.value}")
    for outcome in result.outcomes:
        mark = "ERROR" if outcome.error else ("MATCH" if outcome.is_match else "no match")
        detail = f" ({outcome.error})" if outcome.error else ""
        print(f"  {mark:8s} {outcome.pattern}{detail}")
    print(f"\nResult: {'MATCH' if result.is_match else 'NO MATCH'}")
    return result.is_match


def _print_config(settings: ForwarderSettings) -> None:
    print("\nEffective configuration:")
    for name, value in settings.model_dump().items():
        if name in SECRET_FIELDS:
            value = "[SET]" if value else "NOT SET"
        print(f"  {name}: {value}")

    problems = settings.configuration_problems()
    if problems:
        print("\nProblems:")
        for problem in problems:
            print(f"  - {problem}")
    else:
        print("\nConfiguration OK")


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    _validate_args(args)

    settings = ForwarderSettings()
    setup_logging(settings.log_level)

    if args.command == "classify":
        sys.exit(0 if _print_classification(settings, args.subject) else 2)
    if args.command == "show-config":
        _print_config(settings)
        return
    if args.command == "auth":
        try:
            authenticate(
                settings.credentials_path,
                settings.token_path,
                scopes_for(settings.archive_backend),
            )
        except Exception as e:
            print(f"\nError: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"\nToken cached at {settings.token_path}")
        return

    if getattr(args, "max_messages", None) is not None:
        settings.max_messages_per_run = args.max_messages

    coordinator = IngestionCoordinator(settings=settings, on_progress=on_progress)

    try:
        if args.command == "run":
            summary = coordinator.run()
            print(f"\n\nComplete: {summary}")
            if summary.errors:
                sys.exit(1)

        elif args.command == "status":
            status = coordinator.status()
            stats = status["ledger"]
            print(f"\nLedger: {stats.count}/{stats.capacity} entries")
            print(f"  oldest: {stats.oldest}")
            print(f"  newest: {stats.newest}")
            archive = status["archive"]
            if archive is None:
                print("\nArchive: unavailable")
            else:
                print(f"\nArchive: {archive.folder_name} {archive.url}")
                print(f"  files: {archive.file_count}")
                print(f"  size:  {format_file_size(archive.total_bytes)}")
            print("\nRecent runs:")
            for run in status["runs"]:
                print(
                    f"  #{run['run_id']} {run['started_at']} {run['status']}: "
                    f"checked={run['messages_checked']} "
                    f"processed={run['messages_processed']} "
                    f"failed={run['messages_failed']}"
                )

        elif args.command == "migrate-legacy":
            count = coordinator.migrate_legacy()
            print(f"\nMigrated {count} legacy entries")

        elif args.command == "purge-legacy":
            count = coordinator.purge_legacy()
            print(f"\nRemoved {count} legacy flags")

        elif args.command == "cleanup-archive":
            result = coordinator.cleanup_archive(args.days)
            print(
                f"\nRemoved {result.deleted_count} files older than {args.days} days, "
                f"freed {format_file_size(result.freed_bytes)}"
            )
            if result.failed_count:
                print(f"Failed to remove {result.failed_count} files", file=sys.stderr)
                sys.exit(1)

        elif args.command == "test-notify":
            coordinator.dispatcher.send_test_notification()
            print("\nTest notification sent")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        coordinator.close()


if __name__ == "__main__":
    main()
