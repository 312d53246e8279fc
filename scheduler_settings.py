import json
import logging
import os
from typing import Any, Dict, Optional

from audit_scheduler.cron_parser import resolve_timezone
from colored_logger import parse_log_level

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_FILE = "settings.json"

DEFAULTS: Dict[str, Any] = {
    "timezone": "Europe/Berlin",
    "reconcile_interval_seconds": 300,
    "max_items_per_run": 1000,
    "queue_name": "scraper-queue",
    "max_workers": 5,
    "database_path": "scheduler.db",
    "redis_url": "redis://localhost:6379/0",
    "log_level": "INFO",
}

# Environment variable -> settings key
ENV_OVERRIDES = {
    "SCHEDULER_TIMEZONE": "timezone",
    "SCHEDULER_RECONCILE_INTERVAL_SECONDS": "reconcile_interval_seconds",
    "SCHEDULER_MAX_ITEMS_PER_RUN": "max_items_per_run",
    "SCHEDULER_QUEUE_NAME": "queue_name",
    "SCHEDULER_MAX_WORKERS": "max_workers",
    "SCHEDULER_DATABASE_PATH": "database_path",
    "REDIS_URL": "redis_url",
    "LOG_LEVEL": "log_level",
}

_POSITIVE_INT_KEYS = ("reconcile_interval_seconds", "max_items_per_run", "max_workers")


def load_env_file(env_path: str) -> bool:
    """
    Simple .env file parser that doesn't require external dependencies.
    Loads key=value pairs from .env file into os.environ.

    Variables already present in the environment win over the file.

    :return: True if the file existed and was read.
    """
    if not os.path.isfile(env_path):
        return False

    try:
        with open(env_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()

                # Skip empty lines and comments
                if not line or line.startswith("#") or "=" not in line:
                    continue

                key, value = line.split("=", 1)  # Split on first = only
                key = key.strip()
                if key.startswith("export "):
                    key = key[len("export ") :].strip()
                value = value.strip()

                # Remove quotes if present
                if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                    value = value[1:-1]

                if key:
                    os.environ.setdefault(key, value)

        logger.info(".env file loaded from '%s'", env_path)
        return True

    except OSError as e:
        logger.warning("Failed to load .env file '%s': %s", env_path, e)
        return False


class SchedulerSettings:
    """
    Scheduler configuration: time zone, reconciliation period, work cap,
    queue and storage locations.

    Values come from the "scheduler" section of a JSON settings file, then
    from environment variables, then from DEFAULTS.
    """

    def __init__(
        self,
        settings_file: Optional[str] = DEFAULT_SETTINGS_FILE,
        env_file: Optional[str] = ".env",
        overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        :param settings_file: Path to the JSON settings file. A missing file
            falls back to defaults and environment variables.
        :param env_file: Optional .env file to load before resolving values.
        :param overrides: Explicit values that win over everything else.
        """
        if env_file:
            load_env_file(env_file)

        self.raw: Dict[str, Any] = {}
        if settings_file:
            if os.path.isfile(settings_file):
                loaded = self._load_json(settings_file)
                if not isinstance(loaded, dict):
                    raise ValueError(
                        f"Settings file '{settings_file}' must contain a JSON object"
                    )
                self.raw = loaded
                logger.info("Settings loaded from '%s'.", settings_file)
            else:
                logger.warning(
                    "Settings file '%s' not found, using defaults and environment",
                    settings_file,
                )

        values = dict(DEFAULTS)
        section = self.raw.get("scheduler", {})
        if not isinstance(section, dict):
            raise ValueError("'scheduler' section of the settings file must be an object")
        values.update({k: v for k, v in section.items() if k in DEFAULTS})

        for env_name, key in ENV_OVERRIDES.items():
            env_value = os.environ.get(env_name)
            if env_value not in (None, ""):
                values[key] = env_value

        if overrides:
            unknown = set(overrides) - set(DEFAULTS)
            if unknown:
                raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
            values.update(overrides)

        for key in _POSITIVE_INT_KEYS:
            values[key] = self._positive_int(key, values[key])

        # Fail early on an unknown zone rather than at the first timer.
        resolve_timezone(values["timezone"])
        try:
            parse_log_level(values["log_level"])
        except ValueError:
            raise ValueError(f"Setting 'log_level' is not a known level, got {values['log_level']!r}")

        self.timezone: str = str(values["timezone"])
        self.reconcile_interval_seconds: int = values["reconcile_interval_seconds"]
        self.max_items_per_run: int = values["max_items_per_run"]
        self.queue_name: str = str(values["queue_name"])
        self.max_workers: int = values["max_workers"]
        self.database_path: str = str(values["database_path"])
        self.redis_url: str = str(values["redis_url"])
        self.log_level: str = str(values["log_level"]).upper()

    @staticmethod
    def _positive_int(key: str, value: Any) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Setting '{key}' must be an integer, got {value!r}")
        if number <= 0:
            raise ValueError(f"Setting '{key}' must be positive, got {number}")
        return number

    def _load_json(self, path: str) -> Any:
        """
        Loads JSON from the given file path.

        :param path: The path to the JSON file.
        :return: The parsed JSON, or None if the file is unreadable or invalid.
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError, OSError) as e:
            logger.error("Error loading JSON file '%s': %s", path, e)
            return None

    def as_dict(self) -> Dict[str, Any]:
        """Settings as a plain mapping; the Redis URL is reduced to its host part."""
        redis_location = self.redis_url.rsplit("@", 1)[-1]
        return {
            "timezone": self.timezone,
            "reconcile_interval_seconds": self.reconcile_interval_seconds,
            "max_items_per_run": self.max_items_per_run,
            "queue_name": self.queue_name,
            "max_workers": self.max_workers,
            "database_path": self.database_path,
            "redis_url": redis_location,
            "log_level": self.log_level,
        }
