"""
Recurring job scheduler for the POI audit platform.

This package provides:
- 5-field cron expressions evaluated in a fixed IANA time zone
- One live timer per active schedule, reconciled against the schedule store
- Bounded work selection and job submission on every fire
- Persistent run outcomes and history
"""

from .controller import ControllerState, ReconcileReport, SchedulerController
from .cron_parser import CronExpression, CronParser, next_fire_after, validate
from .errors import (
    InvalidCronExpression,
    QueueError,
    RepositoryError,
    ScheduleNotFound,
    SchedulerError,
)
from .models import (
    JobHandle,
    JobPayload,
    RunOutcome,
    RunStatus,
    ScheduleDefinition,
    ScheduleFilters,
    TriggerSource,
    WorkItem,
)
from .repository import ScheduleRepository, SQLiteScheduleRepository
from .timer_registry import TimerInfo, TimerRegistry
from .work_queue import RedisWorkQueue, WorkQueue
from .work_source import SQLitePoiSource, WorkItemSource

__all__ = [
    "ControllerState",
    "CronExpression",
    "CronParser",
    "InvalidCronExpression",
    "JobHandle",
    "JobPayload",
    "QueueError",
    "ReconcileReport",
    "RedisWorkQueue",
    "RepositoryError",
    "RunOutcome",
    "RunStatus",
    "ScheduleDefinition",
    "ScheduleFilters",
    "ScheduleNotFound",
    "ScheduleRepository",
    "SchedulerController",
    "SchedulerError",
    "SQLitePoiSource",
    "SQLiteScheduleRepository",
    "TimerInfo",
    "TimerRegistry",
    "TriggerSource",
    "WorkItemSource",
    "WorkQueue",
    "next_fire_after",
    "validate",
]
