"""Command-line interface for mailbox cleanup.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog

from mailbox_cleanup import __version__
from mailbox_cleanup.automation.engine import AutomationEngine
from mailbox_cleanup.clock import SystemClock
from mailbox_cleanup.config import Settings, get_settings
from mailbox_cleanup.exceptions import MailboxCleanupError, ValidationError
from mailbox_cleanup.models import JobStatus, JobType

logger = structlog.get_logger()


def _print_json(data: Any) -> None:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if hasattr(d, "model_dump") else d for d in data]
    print(json.dumps(data, indent=2, default=str))


def _load_json_arg(value: str) -> dict[str, Any]:
    """Parse an inline JSON object, or ``@path`` to read it from a file."""

    text = Path(value[1:]).read_text(encoding="utf-8") if value.startswith("@") else value
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    return data


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailbox-cleanup", description="Policy-driven mailbox cleanup"
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database (default: settings db_path)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Policy commands
    policy_parser = subparsers.add_parser("policy", help="Manage cleanup policies")
    policy_sub = policy_parser.add_subparsers(dest="policy_command", required=True)

    policy_sub.add_parser("list", help="List policies in evaluation order")

    show = policy_sub.add_parser("show", help="Show one policy")
    show.add_argument("policy_id")

    create = policy_sub.add_parser("create", help="Create a policy from JSON")
    create.add_argument("definition", help="JSON object, or @path/to/policy.json")

    update = policy_sub.add_parser("update", help="Apply a partial JSON update to a policy")
    update.add_argument("policy_id")
    update.add_argument("changes", help="JSON object, or @path/to/changes.json")

    for name, help_text in (
        ("enable", "Enable a policy"),
        ("disable", "Disable a policy"),
        ("delete", "Delete a policy"),
    ):
        p = policy_sub.add_parser(name, help=help_text)
        p.add_argument("policy_id")

    policy_sub.add_parser("seed", help="Create the default (disabled) policies if none exist")

    evaluate = policy_sub.add_parser("evaluate", help="Show what a policy would clean up now")
    evaluate.add_argument("policy_id")
    evaluate.add_argument("--max-emails", type=int, default=None)
    evaluate.add_argument(
        "--allow-disabled", action="store_true", help="Evaluate even if the policy is disabled"
    )

    policy_sub.add_parser("recommend", help="Suggest starter policies from the index")

    # Cleanup commands
    cleanup_parser = subparsers.add_parser("cleanup", help="Run cleanups")
    cleanup_sub = cleanup_parser.add_subparsers(dest="cleanup_command", required=True)

    trigger = cleanup_sub.add_parser("trigger", help="Trigger a manual cleanup and wait for it")
    trigger.add_argument("policy_id")
    trigger.add_argument("--dry-run", action="store_true", help="Report candidates only")
    trigger.add_argument("--max-emails", type=int, default=None)
    trigger.add_argument("--batch-size", type=int, default=None)
    trigger.add_argument(
        "--confirm", action="store_true", help="Confirm a policy that requires confirmation"
    )

    # Job commands
    job_parser = subparsers.add_parser("job", help="Inspect cleanup jobs")
    job_sub = job_parser.add_subparsers(dest="job_command", required=True)

    job_show = job_sub.add_parser("show", help="Show one job")
    job_show.add_argument("job_id")

    job_list = job_sub.add_parser("list", help="List jobs, newest first")
    job_list.add_argument("--status", choices=[s.value for s in JobStatus], default=None)
    job_list.add_argument("--type", choices=[t.value for t in JobType], default=None)
    job_list.add_argument("--policy", default=None)
    job_list.add_argument("--limit", type=int, default=20)

    reconcile = job_sub.add_parser(
        "reconcile", help="Fail jobs left IN_PROGRESS by a stopped process"
    )
    reconcile.add_argument("--requeue", action="store_true", help="Queue a fresh copy of each")

    prune = job_sub.add_parser("prune", help="Delete old finished jobs")
    prune.add_argument(
        "--days", type=int, default=None, help="Retention in days (default: settings)"
    )

    # Config commands
    config_parser = subparsers.add_parser("config", help="Automation configuration")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Show the current automation configuration")
    config_set = config_sub.add_parser("set", help="Merge a partial JSON update")
    config_set.add_argument("changes", help="JSON object, or @path/to/config.json")
    config_sub.add_parser("status", help="Show automation status")

    # Index commands
    index_parser = subparsers.add_parser("index", help="Local email index")
    index_sub = index_parser.add_subparsers(dest="index_command", required=True)

    sync = index_sub.add_parser("sync", help="Download Gmail metadata into the index")
    sync.add_argument("--query", default=None, help="Optional Gmail search query")
    sync.add_argument("--limit", type=int, default=None, help="Maximum messages to index")
    sync.add_argument("--batch-size", type=int, default=None, help="Upsert batch size")

    stats = index_sub.add_parser("stats", help="Show index stats and top senders")
    stats.add_argument("--top-senders", type=int, default=10, help="Number of top senders")

    # Run
    run = subparsers.add_parser("run", help="Run the scheduler and event monitor")
    run.add_argument(
        "--once",
        action="store_true",
        help="One scheduler tick and one event check, then wait for jobs and exit",
    )

    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    if args.db is not None:
        settings = settings.model_copy(update={"db_path": args.db})
    return settings


async def _open_engine(settings: Settings) -> AutomationEngine:
    engine = AutomationEngine.from_settings(settings)
    await engine.initialize(start_loops=False, reconcile=False)
    return engine


async def _cmd_policy(args: argparse.Namespace, settings: Settings) -> int:
    engine = await _open_engine(settings)
    policies = engine.policies
    cmd = args.policy_command

    if cmd == "list":
        for p in policies.list_policies():
            state = "enabled " if p.enabled else "disabled"
            print(f"{p.priority:>3}  {state}  {p.id}  {p.action.type:<7}  {p.name}")
    elif cmd == "show":
        _print_json(policies.get_policy(args.policy_id))
    elif cmd == "create":
        _print_json(policies.create_policy(_load_json_arg(args.definition)))
    elif cmd == "update":
        _print_json(policies.update_policy(args.policy_id, _load_json_arg(args.changes)))
    elif cmd in ("enable", "disable"):
        policy = policies.set_policy_enabled(args.policy_id, cmd == "enable")
        print(f"{policy.id}: {'enabled' if policy.enabled else 'disabled'}")
    elif cmd == "delete":
        policies.delete_policy(args.policy_id)
        print(f"Deleted {args.policy_id}")
    elif cmd == "seed":
        created = policies.ensure_default_policies()
        print(f"Created {len(created)} default policies")
    elif cmd == "evaluate":
        candidates = await policies.evaluate(
            args.policy_id, max_emails=args.max_emails, allow_disabled=args.allow_disabled
        )
        _print_json(
            {
                "policy_id": candidates.policy_id,
                "candidates": len(candidates),
                "total_size_bytes": candidates.total_size_bytes,
                "truncated": candidates.truncated,
                "protected_count": candidates.protected_count,
                "record_ids": candidates.record_ids,
            }
        )
    elif cmd == "recommend":
        report = await policies.generate_policy_recommendations()
        _print_json(dataclasses.asdict(report))
    return 0


async def _cmd_cleanup(args: argparse.Namespace, settings: Settings) -> int:
    engine = await _open_engine(settings)
    job_id = await engine.trigger_manual_cleanup(
        args.policy_id,
        dry_run=args.dry_run,
        max_emails=args.max_emails,
        batch_size=args.batch_size,
        confirmed=args.confirm,
        triggered_by="cli",
        process=False,
    )
    print(f"Job {job_id}")
    try:
        result = await engine.process_cleanup_job(job_id)
    finally:
        await engine.shutdown(timeout=0)
    _print_json(result)
    return 0 if result.success else 1


async def _cmd_job(args: argparse.Namespace, settings: Settings) -> int:
    engine = await _open_engine(settings)
    cmd = args.job_command

    if cmd == "show":
        _print_json(engine.get_job(args.job_id))
    elif cmd == "list":
        jobs = engine.list_jobs(
            status=JobStatus(args.status) if args.status else None,
            job_type=JobType(args.type) if args.type else None,
            policy_id=args.policy,
            limit=args.limit,
        )
        for j in jobs:
            print(
                f"{j.created_at.isoformat()}  {j.status.value:<11}  {j.job_type.value:<17}  "
                f"{j.job_id}  {j.policy_id}"
            )
    elif cmd == "reconcile":
        reconciled = engine.queue.reconcile_interrupted(requeue=args.requeue)
        for failed_id, new_id in reconciled:
            print(f"{failed_id} -> FAILED" + (f" (requeued as {new_id})" if new_id else ""))
        print(f"Reconciled {len(reconciled)} jobs")
    elif cmd == "prune":
        days = args.days if args.days is not None else settings.job_retention_days
        removed = engine.queue.delete_older_than(SystemClock().now() - timedelta(days=days))
        print(f"Deleted {removed} jobs older than {days} days")
    return 0


async def _cmd_config(args: argparse.Namespace, settings: Settings) -> int:
    engine = await _open_engine(settings)
    cmd = args.config_command

    if cmd == "show":
        _print_json(engine.get_configuration())
    elif cmd == "set":
        _print_json(engine.update_configuration(_load_json_arg(args.changes)))
    elif cmd == "status":
        _print_json(engine.get_status())
    return 0


async def _cmd_index(args: argparse.Namespace, settings: Settings) -> int:
    engine = await _open_engine(settings)
    repo = engine.index

    if args.index_command == "sync":
        from mailbox_cleanup.gmail.client import GmailClient
        from mailbox_cleanup.index.sync import sync_from_gmail

        gmail = GmailClient(settings)
        await gmail.authenticate()
        written = await sync_from_gmail(
            gmail,
            repo,
            query=args.query,
            limit=args.limit,
            batch_size=args.batch_size or settings.index_batch_size,
        )
        print(f"Indexed {written} messages into {settings.db_path}")
        return 0

    stats = repo.overall_stats()
    print(f"Total messages: {stats.total_messages}")
    print(f"Active messages: {stats.active_messages}")
    print(f"Unread messages: {stats.unread_messages}")
    print(f"Unique senders: {stats.unique_senders}")
    print(f"Active size: {stats.active_size_bytes / (1024 * 1024):.1f} MiB")
    if stats.min_date and stats.max_date:
        first, last = stats.min_date.date().isoformat(), stats.max_date.date().isoformat()
        print(f"Date range: {first} -> {last}")

    print("\nTop senders:")
    for s in repo.top_senders(limit=args.top_senders):
        print(f"- {s.from_email}: {s.total_messages} messages ({s.total_size_bytes} bytes)")
    return 0


async def _cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    engine = AutomationEngine.from_settings(settings)

    if args.once:
        await engine.initialize(start_loops=False)
        job_id = await engine.scheduler.tick()
        event_jobs = await engine.monitor.check()
        await engine.wait_for_jobs()
        await engine.shutdown()
        print(f"Scheduled job: {job_id or '-'}; event jobs: {len(event_jobs)}")
        return 0

    await engine.initialize()
    try:
        while engine.running:
            await asyncio.sleep(1.0)
    finally:
        await engine.shutdown()
    return 0


_COMMANDS = {
    "policy": _cmd_policy,
    "cleanup": _cmd_cleanup,
    "job": _cmd_job,
    "config": _cmd_config,
    "index": _cmd_index,
    "run": _cmd_run,
}


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mailbox cleanup CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()

    # Configure logging; stdout is reserved for command output.
    level = "DEBUG" if settings.debug else settings.log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

    parser = _build_parser()
    parsed = parser.parse_args(args)

    logger.debug(
        "mailbox_cleanup_started",
        version=__version__,
        command=parsed.command,
        debug=settings.debug,
    )

    handler = _COMMANDS.get(parsed.command)
    if handler is None:
        logger.error("unknown_command", command=parsed.command)
        return 2

    try:
        return asyncio.run(handler(parsed, _settings_for(parsed)))
    except KeyboardInterrupt:
        return 130
    except MailboxCleanupError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
