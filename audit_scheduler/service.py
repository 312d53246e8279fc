"""
Wiring between settings and the scheduler controller.

Callers own the controller they get back; there is no module-level instance.
"""

from typing import Optional

from colored_logger import get_colored_logger
from scheduler_settings import SchedulerSettings

from .controller import SchedulerController
from .repository import SQLiteScheduleRepository
from .work_queue import RedisWorkQueue, WorkQueue
from .work_source import SQLitePoiSource, WorkItemSource

logger = get_colored_logger(__name__)


def build_controller(
    settings: Optional[SchedulerSettings] = None,
    work_queue: Optional[WorkQueue] = None,
    work_source: Optional[WorkItemSource] = None,
) -> SchedulerController:
    """
    Build a controller and its default adapters from settings.

    The schedule store and the POI table share the configured SQLite
    database; jobs go to Redis.

    Args:
        settings: Loaded settings (read from the default locations if omitted)
        work_queue: Queue adapter to use instead of Redis
        work_source: POI source to use instead of the SQLite table

    Returns:
        A stopped controller; call start() to begin scheduling
    """
    settings = settings or SchedulerSettings()

    repository = SQLiteScheduleRepository(settings.database_path)
    if work_source is None:
        work_source = SQLitePoiSource(settings.database_path, create_schema=True)
    if work_queue is None:
        work_queue = RedisWorkQueue(settings.redis_url)

    controller = SchedulerController(
        repository=repository,
        work_source=work_source,
        work_queue=work_queue,
        timezone=settings.timezone,
        reconcile_interval_seconds=settings.reconcile_interval_seconds,
        max_items_per_run=settings.max_items_per_run,
        queue_name=settings.queue_name,
        max_workers=settings.max_workers,
    )
    logger.debug("Controller built from settings: %s", settings.as_dict())
    return controller
