#!/usr/bin/env python3
"""Courier: reading-window batch push service.

Accumulates processed news in a reading window and pushes it as one
rendered batch per trigger: an auto-push threshold monitor and
cron-scheduled tasks, delivered over email, ntfy or webhook channels.

Commands:
    serve          Run the operator API with the monitor and scheduler
    status         Show configuration and reading-window statistics
    reading        List reading-window entries
    clear-pushed   Remove pushed entries from the window
    preview        Render a template against the current window
    run-task       Run one scheduled task now and wait for the result

Examples:
    python main.py serve                       # API on 127.0.0.1:5555
    python main.py serve --port 8080 --no-scheduler
    python main.py status
    python main.py reading --unpushed --category tech
    python main.py preview --builtin bilingual --output preview.html
    python main.py run-task 3f2a9c...

Environment:
    See config.py for all configuration options
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from config import Config
from database import Database
from observability.logging import setup_logging


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    """Run the operator API and the background triggers.

    Args:
        args: Parsed command line arguments
        config: Application configuration

    Returns:
        Exit code (0 for success)
    """
    from aiohttp import web

    from api import Services, create_app
    from observability.tracing import setup_tracing

    if args.host:
        config.api_host = args.host
    if args.port:
        config.api_port = args.port
    if args.no_monitor:
        config.monitor_enabled = False
    if args.no_scheduler:
        config.scheduler_enabled = False

    logger = logging.getLogger(__name__)
    setup_tracing(
        enabled=config.enable_logfire,
        service_name="courier",
        token=config.logfire_token,
    )

    services = Services.from_config(config)
    logger.info(
        "Starting Courier | host=%s port=%d monitor=%s scheduler=%s tz=%s",
        config.api_host, config.api_port,
        config.monitor_enabled, config.scheduler_enabled, config.timezone,
    )
    try:
        web.run_app(
            create_app(services),
            host=config.api_host,
            port=config.api_port,
            print=None,
        )
    except KeyboardInterrupt:
        logger.info("Stopped by user (Ctrl+C)")
    finally:
        services.db.close()
    return 0


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    """Display configuration and store statistics.

    Args:
        args: Parsed command line arguments
        config: Application configuration

    Returns:
        Exit code (0 for success)
    """
    with Database(config.db_path) as db:
        db_stats = db.stats()
        auto_push = db.load_auto_push()
        tasks = db.list_tasks()

    status = {
        "config": {
            "api": f"{config.api_host}:{config.api_port}",
            "monitor_enabled": config.monitor_enabled,
            "monitor_interval": config.monitor_interval_seconds,
            "scheduler_enabled": config.scheduler_enabled,
            "timezone": config.timezone,
            "dispatch_timeout": config.dispatch_timeout_seconds,
            "batch_max_items": config.batch_max_items,
            "enable_logfire": config.enable_logfire,
        },
        "database": {
            "path": str(config.db_path),
            **db_stats,
        },
        "auto_push": auto_push.model_dump(mode="json"),
        "tasks": [
            {
                "id": t.id,
                "name": t.name,
                "cron": t.cron_expr,
                "categories": t.categories,
                "enabled": t.enabled,
                "last_run_at": t.last_run_at.isoformat() if t.last_run_at else None,
            }
            for t in tasks
        ],
    }

    print(json.dumps(status, indent=2))
    return 0


def cmd_reading(args: argparse.Namespace, config: Config) -> int:
    """List reading-window entries, newest first.

    Args:
        args: Parsed command line arguments
        config: Application configuration

    Returns:
        Exit code (0 for success)
    """
    pushed = None
    if args.unpushed:
        pushed = False
    elif args.pushed:
        pushed = True

    with Database(config.db_path) as db:
        entries = db.list_window(category=args.category, pushed=pushed, limit=args.limit)
        counts = db.window_counts()

    if not entries:
        print("Reading window is empty.")
        return 0

    print(f"\n=== Reading window ({counts['unpushed']} unpushed / {counts['total']} total) ===\n")

    for entry in entries:
        item = entry.item
        mark = "pushed" if entry.pushed else "waiting"
        print(f"[{entry.entry_id}] {item.display_title if item else entry.item_id}")
        print(f"   Category: {entry.category or '-'}   State: {mark}")
        print(f"   Added: {entry.added_at.strftime('%Y-%m-%d %H:%M')}")
        if entry.pushed_at:
            print(f"   Pushed: {entry.pushed_at.strftime('%Y-%m-%d %H:%M')}")
        if item and item.url:
            print(f"   URL: {item.url}")
        print()

    return 0


def cmd_clear_pushed(args: argparse.Namespace, config: Config) -> int:
    """Remove pushed entries from the reading window."""
    with Database(config.db_path) as db:
        removed = db.clear_pushed()
    print(f"Removed {removed} pushed entr{'y' if removed == 1 else 'ies'}.")
    return 0


def cmd_preview(args: argparse.Namespace, config: Config) -> int:
    """Render a template against the current unpushed entries.

    Args:
        args: Parsed command line arguments
        config: Application configuration

    Returns:
        Exit code (0 for success, 1 on template errors)
    """
    from rendering import BUILTIN_TEMPLATES, CompileError, RenderError, preview

    subject = None
    with Database(config.db_path) as db:
        if args.template_id:
            template = db.get_template(args.template_id)
            if template is None:
                print(f"Error: template not found: {args.template_id}", file=sys.stderr)
                return 1
            body, subject = template.content, template.subject
        elif args.file:
            body = Path(args.file).read_text(encoding="utf-8")
        else:
            body = BUILTIN_TEMPLATES[args.builtin]
        entries = db.list_unpushed(args.category, limit=args.limit)

    try:
        rendered = preview(body, subject, entries, now=datetime.now(config.tzinfo))
    except CompileError as e:
        print(f"Compile error: {e}", file=sys.stderr)
        return 1
    except RenderError as e:
        print(f"Render error: {e}", file=sys.stderr)
        return 1

    output = rendered.text if args.text else rendered.html
    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(output, encoding="utf-8")
        print(f"Preview saved: {output_path} (subject={rendered.subject!r} items={rendered.item_count})")
    else:
        print(output)
    return 0


def cmd_run_task(args: argparse.Namespace, config: Config) -> int:
    """Run one scheduled task now and wait for it to finish."""
    from api import Services

    async def run_and_wait() -> int:
        services = Services.from_config(config)
        try:
            run = services.runner.run_now(args.task_id)
            while not run.done:
                await asyncio.sleep(0.2)
            print(json.dumps(run.to_dict(), indent=2))
            return 0 if run.status.value == "succeeded" else 1
        finally:
            services.db.close()

    return asyncio.run(run_and_wait())


def main() -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = argparse.ArgumentParser(
        description="Courier: reading-window batch push service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the API, monitor and scheduler")
    serve_parser.add_argument("--host", help="Bind address (default: config API_HOST)")
    serve_parser.add_argument("--port", type=int, help="Listen port (default: config API_PORT)")
    serve_parser.add_argument(
        "--no-monitor",
        action="store_true",
        help="Do not run the auto-push threshold monitor",
    )
    serve_parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not run scheduled tasks",
    )

    # status command
    subparsers.add_parser("status", help="Show configuration and statistics")

    # reading command
    reading_parser = subparsers.add_parser("reading", help="List reading-window entries")
    reading_parser.add_argument("--category", help="Only this category")
    state = reading_parser.add_mutually_exclusive_group()
    state.add_argument("--unpushed", action="store_true", help="Only entries awaiting a batch")
    state.add_argument("--pushed", action="store_true", help="Only delivered entries")
    reading_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Max entries to show (default: 50)",
    )

    # clear-pushed command
    subparsers.add_parser("clear-pushed", help="Remove pushed entries from the window")

    # preview command
    preview_parser = subparsers.add_parser("preview", help="Render a template preview")
    source = preview_parser.add_mutually_exclusive_group()
    source.add_argument("--template-id", help="Stored template id")
    source.add_argument("--file", help="Template file to render")
    source.add_argument(
        "--builtin",
        choices=["default", "bilingual"],
        default="default",
        help="Built-in template (default: default)",
    )
    preview_parser.add_argument("--category", action="append", help="Category filter (repeatable)")
    preview_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Max entries to render (default: 20)",
    )
    preview_parser.add_argument(
        "--text",
        action="store_true",
        help="Print the plain-text digest instead of HTML",
    )
    preview_parser.add_argument("--output", help="Write the preview to this path")

    # run-task command
    run_task_parser = subparsers.add_parser("run-task", help="Run a scheduled task now")
    run_task_parser.add_argument("task_id", help="Task id")

    args = parser.parse_args()

    # Load configuration
    try:
        config = Config.load()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    # Setup logging
    setup_logging(config, verbose=args.verbose)

    if error := config.validate():
        print(f"Configuration error: {error}", file=sys.stderr)
        return 1

    # Route to command handler
    commands = {
        "serve": cmd_serve,
        "status": cmd_status,
        "reading": cmd_reading,
        "clear-pushed": cmd_clear_pushed,
        "preview": cmd_preview,
        "run-task": cmd_run_task,
    }

    if args.command in commands:
        try:
            return commands[args.command](args, config)
        except Exception as e:
            logging.getLogger(__name__).error("Command failed | cmd=%s error=%s", args.command, e, exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
