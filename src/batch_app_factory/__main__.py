"""Entry point for `python -m batch_app_factory` and the `batch-factory` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from batch_app_factory.events import BatchEvent
from batch_app_factory.models import CommandResult
from batch_app_factory.service import BatchJobService
from batch_app_factory.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage and run batch build jobs")
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="Optional dotenv file with BATCH_* settings")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a batch job for a campaign")
    create.add_argument("--campaign", required=True, help="Campaign id the ideas belong to")
    create.add_argument("--concurrency", type=int, default=1, help="Reserved; clamped to 1..4")
    create.add_argument("idea_ids", nargs="+", help="Idea ids to build, in order")

    for name, help_text in (
        ("start", "Run a job in the foreground, streaming events"),
        ("resume", "Resume a paused job in the foreground, streaming events"),
        ("pause", "Pause a running job at the next item boundary"),
        ("cancel", "Cancel a job at the next item boundary"),
        ("status", "Show a job and its stats"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("job_id")

    for name, help_text in (
        ("retry", "Re-queue a failed item"),
        ("skip", "Skip a queued item"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("job_id")
        sub.add_argument("idea_id")

    listing = commands.add_parser("list", help="List jobs with their stats")
    listing.add_argument("--campaign", default=None, help="Only jobs for this campaign")
    return parser.parse_args(argv)


def _print_event(event: BatchEvent) -> None:
    print(json.dumps(event.to_dict(), default=str), flush=True)


def dispatch(service: BatchJobService, args: argparse.Namespace) -> CommandResult:
    if args.command == "create":
        return service.create(args.campaign, args.idea_ids, args.concurrency)
    if args.command in {"start", "resume"}:
        subscription = service.broadcaster.subscribe(args.job_id, _print_event)
        try:
            if args.command == "start":
                return service.start(args.job_id, background=False)
            return service.resume(args.job_id, background=False)
        finally:
            service.broadcaster.unsubscribe(subscription)
    if args.command == "pause":
        return service.pause(args.job_id)
    if args.command == "cancel":
        return service.cancel(args.job_id)
    if args.command == "retry":
        return service.retry_item(args.job_id, args.idea_id)
    if args.command == "skip":
        return service.skip_item(args.job_id, args.idea_id)
    if args.command == "status":
        return service.status(args.job_id)
    return service.list_jobs(args.campaign)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = RuntimeSettings.from_env(env_file=args.env_file)
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    service = BatchJobService.from_settings(settings)
    try:
        result = dispatch(service, args)
    finally:
        service.shutdown()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
