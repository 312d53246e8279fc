"""
Tests for the SchedulerController.

Tests cover:
- Reconciliation (idempotence, invalid schedules, removal, load failures)
- Execution (work selection, submission, outcome recording, error paths)
- Per-schedule overlap protection
- Manual triggers
- Lifecycle and status
- The nightly schedule end to end against SQLite
"""

import os
import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from unittest.mock import MagicMock, Mock
from zoneinfo import ZoneInfo

# Add parent directory to path for imports
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from audit_scheduler.controller import ControllerState, SchedulerController
from audit_scheduler.errors import QueueError, RepositoryError, ScheduleNotFound
from audit_scheduler.models import (
    JobHandle,
    JobPayload,
    RunOutcome,
    RunStatus,
    ScheduleDefinition,
    ScheduleFilters,
    TriggerSource,
    WorkItem,
)
from audit_scheduler.repository import ScheduleRepository, SQLiteScheduleRepository
from audit_scheduler.work_source import SQLitePoiSource
from tests.support import ShiftedClock, wait_until

BERLIN = ZoneInfo("Europe/Berlin")
NIGHTLY_FIRE = datetime(2024, 3, 15, 2, 0, tzinfo=BERLIN)


class InMemoryScheduleRepository(ScheduleRepository):
    """Schedule store kept in a dict, recording every outcome."""

    def __init__(self, definitions: Optional[List[ScheduleDefinition]] = None):
        self.definitions: Dict[str, ScheduleDefinition] = {
            d.name: d for d in definitions or []
        }
        self.outcomes: List[RunOutcome] = []
        self.fail_loads = False
        self.fail_records = False

    def put(self, definition: ScheduleDefinition) -> None:
        self.definitions[definition.name] = definition

    def list_active(self) -> List[ScheduleDefinition]:
        if self.fail_loads:
            raise RepositoryError("database is locked")
        return [d for _, d in sorted(self.definitions.items()) if d.is_active]

    def get_by_name(self, name: str) -> Optional[ScheduleDefinition]:
        return self.definitions.get(name)

    def record_outcome(self, name: str, outcome: RunOutcome) -> None:
        if self.fail_records:
            raise RepositoryError("disk I/O error")
        self.outcomes.append(outcome)


class ControllerTestCase(unittest.TestCase):
    def setUp(self):
        self.repository = InMemoryScheduleRepository()
        self.work_source = Mock()
        self.work_source.select.return_value = []
        self.work_queue = Mock()
        self.work_queue.submit.return_value = JobHandle(job_id="1", queue_name="scraper-queue")
        self.clock = ShiftedClock(datetime(2024, 3, 15, 10, 0, tzinfo=BERLIN))
        self.controller = self.make_controller()

    def make_controller(self, **kwargs):
        options = dict(
            repository=self.repository,
            work_source=self.work_source,
            work_queue=self.work_queue,
            timezone="Europe/Berlin",
            clock=self.clock,
        )
        options.update(kwargs)
        return SchedulerController(**options)

    def tearDown(self):
        self.controller.stop(timeout_seconds=5)
        self.controller.registry.stop_all(join_timeout=2)


class TestReconcile(ControllerTestCase):
    """Test reconciliation of timers against the store."""

    def test_reconcile_arms_active_schedules(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.repository.put(ScheduleDefinition(name="weekly", cron_expression="0 3 * * 1"))
        self.repository.put(
            ScheduleDefinition(name="paused", cron_expression="0 4 * * *", is_active=False)
        )

        report = self.controller.reconcile()

        self.assertEqual(report.added, ["nightly", "weekly"])
        self.assertEqual(self.controller.registry.names(), ["nightly", "weekly"])

    def test_reconcile_twice_is_idempotent(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.controller.reconcile()
        before = self.controller.registry.get("nightly")

        report = self.controller.reconcile()

        self.assertEqual(report.unchanged, ["nightly"])
        self.assertFalse(report.changed)
        self.assertEqual(self.controller.registry.names(), ["nightly"])
        self.assertEqual(self.controller.registry.get("nightly").next_fire_at, before.next_fire_at)

    def test_invalid_schedule_does_not_block_others(self):
        self.repository.put(ScheduleDefinition(name="broken", cron_expression="61 * * * *"))
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.repository.put(ScheduleDefinition(name="weekly", cron_expression="0 3 * * 1"))

        with self.assertLogs("audit_scheduler.controller", level="ERROR") as logs:
            report = self.controller.reconcile()

        self.assertEqual(report.invalid, ["broken"])
        self.assertEqual(self.controller.registry.names(), ["nightly", "weekly"])
        self.assertEqual(len([r for r in logs.records if "broken" in r.getMessage()]), 1)

    def test_changed_cron_rearms(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.controller.reconcile()

        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="30 2 * * *"))
        report = self.controller.reconcile()

        self.assertEqual(report.updated, ["nightly"])
        self.assertEqual(self.controller.registry.get("nightly").cron_expression, "30 2 * * *")

    def test_cron_turned_invalid_removes_timer(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.controller.reconcile()

        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * *"))
        with self.assertLogs("audit_scheduler.controller", level="ERROR"):
            report = self.controller.reconcile()

        self.assertEqual(report.invalid, ["nightly"])
        self.assertFalse(self.controller.registry.has("nightly"))

    def test_deleted_and_deactivated_schedules_are_removed(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.repository.put(ScheduleDefinition(name="weekly", cron_expression="0 3 * * 1"))
        self.controller.reconcile()

        del self.repository.definitions["nightly"]
        self.repository.put(
            ScheduleDefinition(name="weekly", cron_expression="0 3 * * 1", is_active=False)
        )
        report = self.controller.reconcile()

        self.assertEqual(sorted(report.removed), ["nightly", "weekly"])
        self.assertEqual(self.controller.registry.names(), [])

    def test_load_failure_keeps_existing_timers(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.controller.reconcile()

        self.repository.fail_loads = True
        with self.assertLogs("audit_scheduler.controller", level="ERROR"):
            report = self.controller.reconcile()

        self.assertEqual(report.error, "database is locked")
        self.assertEqual(self.controller.registry.names(), ["nightly"])

    def test_concurrent_reconcile_is_skipped(self):
        self.controller._reconcile_lock.acquire()
        try:
            with self.assertLogs("audit_scheduler.controller", level="WARNING"):
                report = self.controller.reconcile()
        finally:
            self.controller._reconcile_lock.release()

        self.assertTrue(report.skipped)
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.assertFalse(self.controller.reconcile().skipped)

    def test_unchanged_schedule_fires_with_current_filters(self):
        """Filters edited without a cron change apply to the next fire."""
        self.clock = ShiftedClock(NIGHTLY_FIRE - timedelta(seconds=0.4))
        self.controller = self.make_controller()

        self.repository.put(
            ScheduleDefinition(name="nightly", cron_expression="0 2 * * *", filters={"region": "Hessen"})
        )
        self.controller.reconcile()
        self.repository.put(
            ScheduleDefinition(name="nightly", cron_expression="0 2 * * *", filters={"region": "Bayern"})
        )
        self.controller.reconcile()

        self.assertTrue(wait_until(lambda: len(self.repository.outcomes) == 1))
        filters, _ = self.work_source.select.call_args.args
        self.assertEqual(filters, ScheduleFilters(region="Bayern"))


class TestExecuteSchedule(ControllerTestCase):
    """Test a single execution."""

    def test_submits_one_job_per_item_with_website(self):
        self.work_source.select.return_value = [
            WorkItem(id="p1", website="https://a.example"),
            WorkItem(id="p2", website=None),
            WorkItem(id="p3", website="https://c.example"),
        ]
        filters = ScheduleFilters(region="Schleswig-Holstein")
        controller = self.make_controller(max_items_per_run=50, queue_name="audit-test")

        outcome = controller.execute_schedule(
            "nightly", filters, priority=8, cron_expression="0 2 * * *"
        )

        self.work_source.select.assert_called_once_with(filters, 50)
        self.assertEqual(self.work_queue.submit.call_count, 2)
        self.work_queue.submit.assert_any_call(
            "audit-test",
            JobPayload(poi_id="p1", url="https://a.example", schedule_name="nightly"),
            8,
        )
        self.assertEqual(outcome.status, RunStatus.SUCCESS)
        self.assertEqual(outcome.item_count, 3)
        self.assertEqual(outcome.submitted_count, 2)
        self.assertEqual(outcome.failed_count, 0)
        self.assertEqual(outcome.next_run_at, datetime(2024, 3, 16, 2, 0, tzinfo=BERLIN))
        self.assertEqual(self.repository.outcomes, [outcome])

    def test_queue_failures_are_counted(self):
        self.work_source.select.return_value = [
            WorkItem(id=f"p{i}", website=f"https://{i}.example") for i in range(3)
        ]
        self.work_queue.submit.side_effect = [
            JobHandle(job_id="1", queue_name="scraper-queue"),
            QueueError("connection refused"),
            JobHandle(job_id="2", queue_name="scraper-queue"),
        ]

        with self.assertLogs("audit_scheduler.controller", level="WARNING"):
            outcome = self.controller.execute_schedule("nightly", ScheduleFilters())

        self.assertEqual(outcome.status, RunStatus.SUCCESS)
        self.assertEqual(outcome.submitted_count, 2)
        self.assertEqual(outcome.failed_count, 1)

    def test_selection_failure_records_error(self):
        self.work_source.select.side_effect = RepositoryError("no such table: pois")

        with self.assertLogs("audit_scheduler.controller", level="ERROR"):
            outcome = self.controller.execute_schedule("nightly", ScheduleFilters())

        self.assertEqual(outcome.status, RunStatus.ERROR)
        self.assertEqual(outcome.status_text, "error: no such table: pois")
        self.work_queue.submit.assert_not_called()
        self.assertEqual(self.repository.outcomes, [outcome])

    def test_persist_failure_is_logged_not_raised(self):
        self.work_source.select.return_value = [WorkItem(id="p1", website="https://a.example")]
        self.repository.fail_records = True

        with self.assertLogs("audit_scheduler.controller", level="ERROR"):
            outcome = self.controller.execute_schedule("nightly", ScheduleFilters())

        self.assertEqual(outcome.submitted_count, 1)
        self.work_queue.submit.assert_called_once()

    def test_next_run_follows_the_scheduled_instant(self):
        """A fire handled slightly early still schedules the following day."""
        self.clock = ShiftedClock(NIGHTLY_FIRE - timedelta(seconds=1))
        controller = self.make_controller()

        outcome = controller.execute_schedule(
            "nightly", ScheduleFilters(), fired_at=NIGHTLY_FIRE, cron_expression="0 2 * * *"
        )

        self.assertEqual(outcome.next_run_at, datetime(2024, 3, 16, 2, 0, tzinfo=BERLIN))

    def test_next_run_unknown_without_expression(self):
        outcome = self.controller.execute_schedule("adhoc", ScheduleFilters())
        self.assertIsNone(outcome.next_run_at)

    def test_overlapping_fire_is_dropped(self):
        started = threading.Event()
        release = threading.Event()

        def slow_select(filters, limit):
            started.set()
            release.wait(timeout=5)
            return [WorkItem(id="p1", website="https://a.example")]

        self.work_source.select.side_effect = slow_select
        results = []
        first = threading.Thread(
            target=lambda: results.append(
                self.controller.execute_schedule("nightly", ScheduleFilters())
            )
        )
        first.start()
        self.assertTrue(started.wait(timeout=5))

        with self.assertLogs("audit_scheduler.controller", level="WARNING"):
            second = self.controller.execute_schedule("nightly", ScheduleFilters())

        release.set()
        first.join(timeout=5)

        self.assertIsNone(second)
        self.assertEqual(len(results), 1)
        self.assertEqual(len(self.repository.outcomes), 1)
        self.assertEqual(self.work_queue.submit.call_count, 1)

    def test_trigger_accepts_string(self):
        outcome = self.controller.execute_schedule("nightly", ScheduleFilters(), trigger="manual")
        self.assertEqual(outcome.trigger, TriggerSource.MANUAL)


class TestTriggerSchedule(ControllerTestCase):
    """Test manual triggers."""

    def test_missing_schedule_raises(self):
        with self.assertRaises(ScheduleNotFound):
            self.controller.trigger_schedule("missing")
        self.work_queue.submit.assert_not_called()
        self.assertEqual(self.repository.outcomes, [])

    def test_inactive_schedule_raises(self):
        self.repository.put(
            ScheduleDefinition(name="paused", cron_expression="0 2 * * *", is_active=False)
        )
        with self.assertRaises(ScheduleNotFound):
            self.controller.trigger_schedule("paused")

    def test_trigger_runs_with_stored_settings(self):
        self.repository.put(
            ScheduleDefinition(
                name="weekly",
                cron_expression="0 3 * * 1",
                filters={"category": "museum"},
                priority=9,
            )
        )
        self.work_source.select.return_value = [WorkItem(id="p1", website="https://a.example")]

        outcome = self.controller.trigger_schedule("weekly")

        self.assertEqual(outcome.trigger, TriggerSource.MANUAL)
        self.assertEqual(outcome.next_run_at, datetime(2024, 3, 18, 3, 0, tzinfo=BERLIN))
        filters, limit = self.work_source.select.call_args.args
        self.assertEqual(filters, ScheduleFilters(category="museum"))
        self.assertEqual(limit, 1000)
        self.assertEqual(self.work_queue.submit.call_args.args[2], 9)


class TestLifecycle(ControllerTestCase):
    """Test start/stop state transitions."""

    def test_start_and_stop(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))

        self.controller.start()
        self.assertEqual(self.controller.state, ControllerState.RUNNING)
        self.assertEqual(self.controller.registry.names(), ["nightly"])

        self.controller.stop(wait=True, timeout_seconds=5)
        self.assertEqual(self.controller.state, ControllerState.STOPPED)
        self.assertEqual(self.controller.registry.names(), [])

    def test_start_twice_is_noop(self):
        self.controller.start()
        pool = self.controller._pool
        self.controller.start()
        self.assertIs(self.controller._pool, pool)

    def test_stop_when_stopped_is_noop(self):
        self.controller.stop()
        self.assertEqual(self.controller.state, ControllerState.STOPPED)

    def test_restart(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.controller.start()
        self.controller.stop()
        self.controller.start()
        self.assertEqual(self.controller.state, ControllerState.RUNNING)
        self.assertEqual(self.controller.registry.names(), ["nightly"])

    def test_reconcile_tick(self):
        controller = self.make_controller(reconcile_interval_seconds=0.1)
        self.addCleanup(controller.stop)
        controller.start()

        self.repository.put(ScheduleDefinition(name="late", cron_expression="0 5 * * *"))
        self.assertTrue(wait_until(lambda: controller.registry.has("late")))

    def test_invalid_configuration_raises(self):
        with self.assertRaises(ValueError):
            self.make_controller(max_items_per_run=0)
        with self.assertRaises(ValueError):
            self.make_controller(timezone="Nowhere/Atlantis")

    def test_get_status(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        self.controller.start()

        status = self.controller.get_status()

        self.assertEqual(status["state"], "running")
        self.assertEqual(status["timezone"], "Europe/Berlin")
        self.assertEqual(status["timers"][0]["name"], "nightly")
        self.assertEqual(status["timers"][0]["next_fire_at"], "2024-03-16T02:00:00+01:00")
        self.assertEqual(status["last_reconcile"]["added"], ["nightly"])
        self.assertIn("memory_mb", status["resource_usage"])

    def test_stop_during_initial_reconcile_leaves_no_timers(self):
        self.repository.put(ScheduleDefinition(name="nightly", cron_expression="0 2 * * *"))
        loading = threading.Event()
        release = threading.Event()
        list_active = self.repository.list_active

        def slow_list_active():
            loading.set()
            release.wait(5)
            return list_active()

        self.repository.list_active = slow_list_active

        starter = threading.Thread(target=self.controller.start)
        starter.start()
        self.assertTrue(loading.wait(5))

        self.controller.stop(timeout_seconds=5)
        release.set()
        starter.join(5)

        self.assertFalse(starter.is_alive())
        self.assertEqual(self.controller.state, ControllerState.STOPPED)
        self.assertEqual(self.controller.registry.names(), [])
        self.assertTrue(self.controller.get_status()["last_reconcile"]["skipped"])

    def test_stop_waits_for_running_execution(self):
        selecting = threading.Event()
        release = threading.Event()

        def slow_select(filters, limit):
            selecting.set()
            release.wait(5)
            return [WorkItem(id="poi-1", website="https://example.org")]

        self.work_source.select.side_effect = slow_select
        self.controller.start()

        runner = threading.Thread(target=self.controller.execute_schedule, args=("nightly",))
        runner.start()
        self.assertTrue(selecting.wait(5))

        stopper = threading.Thread(
            target=self.controller.stop, kwargs={"wait": True, "timeout_seconds": 5}
        )
        stopper.start()
        stopper.join(0.2)
        self.assertTrue(stopper.is_alive())
        self.assertEqual(self.repository.outcomes, [])

        release.set()
        runner.join(5)
        stopper.join(5)

        self.assertFalse(stopper.is_alive())
        self.assertEqual(self.controller.state, ControllerState.STOPPED)
        self.assertEqual(len(self.repository.outcomes), 1)
        self.assertEqual(self.repository.outcomes[0].status, RunStatus.SUCCESS)
        self.assertEqual(self.repository.outcomes[0].submitted_count, 1)

    def test_unexpected_load_error_does_not_escape_start(self):
        self.repository.list_active = Mock(
            side_effect=AttributeError("'list' object has no attribute 'get'")
        )

        with self.assertLogs("audit_scheduler.controller", level="ERROR"):
            self.controller.start()

        self.assertEqual(self.controller.state, ControllerState.RUNNING)
        self.assertIn("has no attribute", self.controller.get_status()["last_reconcile"]["error"])

    def test_close_closes_collaborators(self):
        work_queue = MagicMock()
        controller = self.make_controller(work_queue=work_queue)
        controller.close()
        work_queue.close.assert_called_once()


class TestNightlyEndToEnd(unittest.TestCase):
    """Nightly schedule firing against real SQLite adapters."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        db_path = os.path.join(self.temp_dir, "scheduler.db")
        self.repository = SQLiteScheduleRepository(db_path)
        self.work_source = SQLitePoiSource(db_path, create_schema=True)
        self.work_queue = Mock()
        self.work_queue.submit.return_value = JobHandle(job_id="1", queue_name="scraper-queue")

        with self.work_source._conn:
            self.work_source._conn.executemany(
                "INSERT INTO pois (id, name, website, region, is_active) VALUES (?, ?, ?, ?, 1)",
                [
                    ("p1", "Strandhotel", "https://strandhotel.example", "Schleswig-Holstein"),
                    ("p2", "Hafenmuseum", "https://hafenmuseum.example", "Schleswig-Holstein"),
                    ("p3", "Leuchtturm", "https://leuchtturm.example", "Schleswig-Holstein"),
                    ("p4", "Kurhaus", "https://kurhaus.example", "Hessen"),
                ],
            )

        self.repository.save_schedule(
            ScheduleDefinition(
                name="nightly",
                cron_expression="0 2 * * *",
                filters=ScheduleFilters(region="Schleswig-Holstein"),
            )
        )

        self.controller = SchedulerController(
            repository=self.repository,
            work_source=self.work_source,
            work_queue=self.work_queue,
            timezone="Europe/Berlin",
            clock=ShiftedClock(NIGHTLY_FIRE - timedelta(seconds=0.3)),
        )

    def tearDown(self):
        self.controller.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_nightly_fire(self):
        self.controller.start()

        self.assertTrue(
            wait_until(lambda: self.repository.get_by_name("nightly").last_status is not None)
        )
        self.controller.stop(wait=True, timeout_seconds=5)

        stored = self.repository.get_by_name("nightly")
        self.assertEqual(stored.last_status, "success")
        self.assertEqual(stored.next_run_at, datetime(2024, 3, 16, 2, 0, tzinfo=BERLIN))

        history = self.repository.get_run_history("nightly")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].item_count, 3)
        self.assertEqual(history[0].submitted_count, 3)
        self.assertEqual(history[0].trigger, TriggerSource.TIMER)

        submitted = {call.args[1].poi_id for call in self.work_queue.submit.call_args_list}
        self.assertEqual(submitted, {"p1", "p2", "p3"})


if __name__ == "__main__":
    unittest.main()
