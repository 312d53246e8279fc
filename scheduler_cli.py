"""
CLI interface for the POI audit scheduler.

Provides command-line tools for:
- Running the scheduler until interrupted
- Creating, listing and removing stored schedules
- Triggering a schedule by hand and inspecting its run history
- Checking cron expressions and their upcoming fire times
"""

import argparse
import signal
import sys
import threading
from datetime import datetime
from typing import Callable, List, Optional

from colored_logger import get_colored_logger, setup_colored_logging

from audit_scheduler.controller import SchedulerController
from audit_scheduler.cron_parser import CronParser
from audit_scheduler.errors import InvalidCronExpression, QueueError, ScheduleNotFound
from audit_scheduler.models import ScheduleDefinition, ScheduleFilters
from audit_scheduler.service import build_controller
from audit_scheduler.work_queue import RedisWorkQueue
from scheduler_settings import SchedulerSettings

logger = get_colored_logger(__name__)


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M %Z").strip() if value else "N/A"


class SchedulerCLI:
    """Command-line interface for scheduler management."""

    def __init__(
        self,
        settings: Optional[SchedulerSettings] = None,
        controller_factory: Callable[[SchedulerSettings], SchedulerController] = build_controller,
    ):
        """
        Args:
            settings: Preloaded settings; read from --settings/--env-file otherwise
            controller_factory: Builds the controller for commands that need one
        """
        self.settings = settings
        self.controller_factory = controller_factory
        self.cron_parser = CronParser()
        self._controller: Optional[SchedulerController] = None
        self._stop_event = threading.Event()

    @property
    def controller(self) -> SchedulerController:
        """Controller built on first use, so offline commands never open storage."""
        if self._controller is None:
            self._controller = self.controller_factory(self.settings)
        return self._controller

    def create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser for scheduler commands."""
        parser = argparse.ArgumentParser(
            prog="poi-scheduler", description="Manage recurring POI audit schedules"
        )
        parser.add_argument(
            "--settings", default="settings.json", help="Path to the JSON settings file"
        )
        parser.add_argument("--env-file", default=".env", help="Path to a .env file")
        parser.add_argument("--log-level", help="Override the configured log level")

        subparsers = parser.add_subparsers(dest="command", help="Available commands")

        subparsers.add_parser("run", help="Run the scheduler until interrupted")
        subparsers.add_parser("reconcile", help="Run one reconciliation pass")
        subparsers.add_parser("list", help="List stored schedules")
        subparsers.add_parser("status", help="Show scheduler status")

        trigger_parser = subparsers.add_parser("trigger", help="Run a schedule now")
        trigger_parser.add_argument("name", help="Schedule name")

        validate_parser = subparsers.add_parser(
            "validate", help="Validate cron expression"
        )
        validate_parser.add_argument("expression", help="Cron expression to validate")

        next_parser = subparsers.add_parser(
            "next", help="Show upcoming fire times of a cron expression"
        )
        next_parser.add_argument("expression", help="Cron expression")
        next_parser.add_argument(
            "--count", type=int, default=5, help="Number of fire times to show"
        )

        history_parser = subparsers.add_parser("history", help="Show run history")
        history_parser.add_argument("name", nargs="?", help="Filter by schedule name")
        history_parser.add_argument(
            "--limit", type=int, default=20, help="Number of records to show"
        )

        add_parser = subparsers.add_parser("add", help="Add or update a schedule")
        add_parser.add_argument("name", help="Schedule name")
        add_parser.add_argument("cron", help="Cron expression (e.g., '0 2 * * *')")
        add_parser.add_argument("--description", help="Free-text description")
        add_parser.add_argument("--region", help="Only POIs in this region")
        add_parser.add_argument("--category", help="Only POIs in this category")
        add_parser.add_argument(
            "--max-score", type=float, help="Only POIs scoring below this value"
        )
        add_parser.add_argument(
            "--min-score", type=float, help="Only POIs scoring at least this value"
        )
        add_parser.add_argument(
            "--priority", type=int, default=5, help="Job priority (0-10)"
        )
        add_parser.add_argument(
            "--inactive", action="store_true", help="Store the schedule disabled"
        )

        remove_parser = subparsers.add_parser("remove", help="Remove a schedule")
        remove_parser.add_argument("name", help="Schedule name")
        remove_parser.add_argument(
            "--force", action="store_true", help="Force removal without confirmation"
        )

        return parser

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the scheduler CLI with given arguments."""
        parser = self.create_parser()
        parsed_args = parser.parse_args(args)

        if not parsed_args.command:
            parser.print_help()
            return 0

        try:
            if self.settings is None:
                self.settings = SchedulerSettings(
                    settings_file=parsed_args.settings, env_file=parsed_args.env_file
                )
            setup_colored_logging(parsed_args.log_level or self.settings.log_level)

            return self._execute_command(parsed_args)

        except Exception as e:
            logger.error("Command failed: %s", e)
            return 1
        finally:
            if self._controller is not None:
                self._controller.close()
                self._controller = None

    def _execute_command(self, args: argparse.Namespace) -> int:
        """Execute the requested command."""
        command_map = {
            "run": self._cmd_run,
            "reconcile": self._cmd_reconcile,
            "list": self._cmd_list,
            "status": self._cmd_status,
            "trigger": self._cmd_trigger,
            "validate": self._cmd_validate,
            "next": self._cmd_next,
            "history": self._cmd_history,
            "add": self._cmd_add,
            "remove": self._cmd_remove,
        }

        handler = command_map.get(args.command)
        if not handler:
            logger.error("Unknown command: %s", args.command)
            return 1

        return handler(args)

    def _cmd_run(self, args: argparse.Namespace) -> int:
        """Start the controller and block until SIGINT/SIGTERM."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        controller = self.controller
        logger.info("Starting scheduler...")
        controller.start()
        logger.info("Scheduler running. Press Ctrl+C to stop.")

        while not self._stop_event.wait(timeout=1):
            pass

        logger.info("Stopping scheduler...")
        controller.stop(wait=True)
        return 0

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle shutdown signals gracefully."""
        logger.info("Received signal %d, initiating graceful shutdown", signum)
        self._stop_event.set()

    def _cmd_reconcile(self, args: argparse.Namespace) -> int:
        """Run one reconciliation pass and print what it would arm."""
        report = self.controller.reconcile()

        if report.error:
            logger.error("Reconciliation failed: %s", report.error)
            return 1

        print("\nReconciliation Report:")
        for label, names in (
            ("Added", report.added),
            ("Updated", report.updated),
            ("Removed", report.removed),
            ("Unchanged", report.unchanged),
            ("Invalid", report.invalid),
        ):
            print(f"  {label}: {', '.join(names) if names else '-'}")

        for info in self.controller.registry.snapshot():
            print(f"  Next fire of '{info.name}': {_format_time(info.next_fire_at)}")

        return 1 if report.invalid else 0

    def _cmd_list(self, args: argparse.Namespace) -> int:
        """List stored schedules."""
        schedules = self.controller.repository.list_all()

        if not schedules:
            logger.info("No schedules found")
            return 0

        print(
            f"\n{'Name':<24} {'Active':<7} {'Schedule':<16} {'Prio':<5} {'Last Status':<20} {'Next Run':<22} {'Filters'}"
        )
        print("-" * 120)

        for schedule in schedules:
            active = "yes" if schedule.is_active else "no"
            last_status = (schedule.last_status or "never run")[:20]
            filters = ", ".join(f"{k}={v}" for k, v in schedule.filters.to_dict().items())

            print(
                f"{schedule.name[:24]:<24} {active:<7} {schedule.cron_expression:<16} "
                f"{schedule.priority:<5} {last_status:<20} {_format_time(schedule.next_run_at):<22} "
                f"{filters or '-'}"
            )

        return 0

    def _cmd_status(self, args: argparse.Namespace) -> int:
        """Show scheduler status."""
        controller = self.controller
        status = controller.get_status()

        print("\nScheduler Status:")
        print(f"  State: {status['state']}")
        print(f"  Time Zone: {status['timezone']}")
        print(f"  Reconcile Interval: {status['reconcile_interval_seconds']}s")
        print(f"  Items per Run: {status['max_items_per_run']}")
        print(f"  Queue: {status['queue_name']}")
        print(f"  Live Timers: {len(status['timers'])}")
        usage = status["resource_usage"]
        print(
            f"  Memory: {usage['memory_mb']}MB, CPU: {usage['cpu_percent']}%, "
            f"Threads: {usage['active_threads']}"
        )

        stats = controller.repository.get_statistics()
        print("\nDatabase Statistics:")
        print(
            f"  Schedules: {stats['schedules']['total']} total, {stats['schedules']['active']} active"
        )
        print(f"  Last Execution: {stats['schedules']['last_execution'] or 'N/A'}")
        print(f"  Runs: {stats['runs']['total']} total, {stats['runs']['errors']} errors")
        print(f"  Jobs Submitted: {stats['runs']['jobs_submitted']}")
        print(f"  Database Size: {stats['database']['size_bytes']} bytes")

        if isinstance(controller.work_queue, RedisWorkQueue):
            try:
                pending = controller.work_queue.pending_count(controller.queue_name)
                print(f"\nQueue '{controller.queue_name}': {pending} jobs waiting")
            except QueueError as e:
                logger.warning("Queue length unavailable: %s", e)

        return 0

    def _cmd_trigger(self, args: argparse.Namespace) -> int:
        """Run a stored schedule immediately."""
        try:
            outcome = self.controller.trigger_schedule(args.name)
        except ScheduleNotFound as e:
            logger.error("%s", e)
            return 1

        if outcome is None:
            logger.warning("Schedule '%s' is already running", args.name)
            return 1

        print("\nRun Result:")
        print(f"  Status: {outcome.status_text}")
        print(f"  Items Selected: {outcome.item_count}")
        print(f"  Jobs Submitted: {outcome.submitted_count}")
        print(f"  Submissions Failed: {outcome.failed_count}")
        print(f"  Duration: {outcome.duration_seconds:.2f}s")
        print(f"  Next Run: {_format_time(outcome.next_run_at)}")

        return 0 if outcome.reason is None else 1

    def _cmd_validate(self, args: argparse.Namespace) -> int:
        """Validate a cron expression."""
        if not self.cron_parser.validate_expression(args.expression):
            logger.error("Invalid cron expression: %s", args.expression)
            return 1

        try:
            parsed = self.cron_parser.parse(args.expression)
            next_run = self.cron_parser.next_execution(
                parsed, datetime.now().astimezone(), self.settings.timezone
            )
        except ValueError as e:
            logger.error("Error calculating next execution: %s", e)
            return 1

        logger.info("Valid cron expression: %s", args.expression)
        logger.info("Next execution: %s", _format_time(next_run))
        return 0

    def _cmd_next(self, args: argparse.Namespace) -> int:
        """Print the upcoming fire times of a cron expression."""
        if args.count <= 0:
            logger.error("--count must be positive")
            return 1

        parsed = self.cron_parser.parse(args.expression)
        upcoming = self.cron_parser.upcoming(
            parsed, datetime.now().astimezone(), self.settings.timezone, args.count
        )

        print(f"\nNext {len(upcoming)} fire times of '{parsed.original_expression}':")
        for fire_at in upcoming:
            print(f"  {fire_at.strftime('%a %Y-%m-%d %H:%M %Z')}")
        return 0

    def _cmd_history(self, args: argparse.Namespace) -> int:
        """Show recorded run outcomes."""
        history = self.controller.repository.get_run_history(args.name, limit=args.limit)

        if not history:
            logger.info("No run history found")
            return 0

        print(
            f"\n{'Ran At':<20} {'Schedule':<24} {'Trigger':<8} {'Status':<8} {'Items':<6} {'Sent':<6} {'Failed':<6} {'Reason'}"
        )
        print("-" * 110)

        for outcome in history:
            print(
                f"{outcome.ran_at.strftime('%Y-%m-%d %H:%M:%S'):<20} {outcome.name[:24]:<24} "
                f"{outcome.trigger.value:<8} {outcome.status.value:<8} {outcome.item_count:<6} "
                f"{outcome.submitted_count:<6} {outcome.failed_count:<6} {outcome.reason or ''}"
            )

        return 0

    def _cmd_add(self, args: argparse.Namespace) -> int:
        """Add or update a stored schedule."""
        if not self.cron_parser.validate_expression(args.cron):
            logger.error("Invalid cron expression: %s", args.cron)
            return 1

        try:
            definition = ScheduleDefinition(
                name=args.name,
                cron_expression=args.cron,
                is_active=not args.inactive,
                filters=ScheduleFilters(
                    region=args.region,
                    category=args.category,
                    max_score=args.max_score,
                    min_score=args.min_score,
                ),
                priority=args.priority,
                description=args.description,
            )
        except ValueError as e:
            logger.error("Invalid schedule: %s", e)
            return 1

        try:
            next_run = self.cron_parser.next_execution(
                self.cron_parser.parse(definition.cron_expression),
                datetime.now().astimezone(),
                self.settings.timezone,
            )
        except InvalidCronExpression as e:
            logger.error("Schedule '%s' not saved: %s", definition.name, e)
            return 1

        self.controller.repository.save_schedule(definition)

        logger.info("Saved schedule '%s' (%s)", definition.name, definition.cron_expression)
        if definition.is_active:
            logger.info("Next run: %s", _format_time(next_run))
        return 0

    def _cmd_remove(self, args: argparse.Namespace) -> int:
        """Remove a stored schedule."""
        repository = self.controller.repository
        if repository.get_by_name(args.name) is None:
            logger.error("Schedule not found: %s", args.name)
            return 1

        if not args.force:
            response = input(f"Remove schedule '{args.name}'? [y/N]: ")
            if response.lower() not in ("y", "yes"):
                logger.info("Cancelled")
                return 0

        repository.delete_schedule(args.name)
        logger.info("Schedule removed: %s", args.name)
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for scheduler CLI."""
    setup_colored_logging()
    cli = SchedulerCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
