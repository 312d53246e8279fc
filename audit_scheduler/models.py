"""
Data models shared by the scheduler components.

ScheduleDefinition is owned by the schedule repository and is read-only to the
scheduler; RunOutcome is the only thing the scheduler writes back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class RunStatus(Enum):
    """Outcome status of one schedule execution."""

    SUCCESS = "success"
    ERROR = "error"


class TriggerSource(Enum):
    """What caused an execution."""

    TIMER = "timer"
    MANUAL = "manual"


@dataclass(frozen=True)
class ScheduleFilters:
    """Work-selection criteria attached to a schedule."""

    region: Optional[str] = None
    category: Optional[str] = None
    max_score: Optional[float] = None
    min_score: Optional[float] = None

    def __post_init__(self):
        for field_name in ("max_score", "min_score"):
            value = getattr(self, field_name)
            if value is not None and not 0 <= value <= 100:
                raise ValueError(f"{field_name} must be between 0 and 100, got {value}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScheduleFilters":
        """Build filters from a loosely-typed mapping, ignoring unknown keys."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError(f"filters must be an object, got {type(data).__name__}")
        if not data:
            return cls()

        def _score(key: str) -> Optional[float]:
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            return float(value)

        return cls(
            region=data.get("region") or None,
            category=data.get("category") or None,
            max_score=_score("max_score") if "max_score" in data else _score("maxScore"),
            min_score=_score("min_score") if "min_score" in data else _score("minScore"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return only the criteria that are set."""
        return {
            key: value
            for key, value in (
                ("region", self.region),
                ("category", self.category),
                ("max_score", self.max_score),
                ("min_score", self.min_score),
            )
            if value is not None
        }

    def is_empty(self) -> bool:
        return not self.to_dict()


@dataclass
class ScheduleDefinition:
    """A recurring schedule as stored in the repository."""

    name: str
    cron_expression: str
    is_active: bool = True
    filters: ScheduleFilters = field(default_factory=ScheduleFilters)
    priority: int = 5
    description: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None
    next_run_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate schedule configuration."""
        if not self.name or not self.name.strip():
            raise ValueError("Schedule name cannot be empty")
        if len(self.name) > 100:
            raise ValueError("Schedule name cannot exceed 100 characters")
        if not 0 <= self.priority <= 10:
            raise ValueError(f"priority must be between 0 and 10, got {self.priority}")
        if self.filters is None:
            self.filters = ScheduleFilters()
        elif isinstance(self.filters, dict):
            self.filters = ScheduleFilters.from_dict(self.filters)


@dataclass(frozen=True)
class WorkItem:
    """A POI selected for dispatch. Never persisted by the scheduler."""

    id: str
    website: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class JobPayload:
    """Payload handed to the work queue for one work item."""

    poi_id: str
    url: Optional[str] = None
    schedule_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"poiId": self.poi_id}
        if self.url is not None:
            data["url"] = self.url
        if self.schedule_name is not None:
            data["scheduleName"] = self.schedule_name
        return data


@dataclass(frozen=True)
class JobHandle:
    """Identifier returned by the work queue for a submitted job."""

    job_id: str
    queue_name: str


@dataclass
class RunOutcome:
    """Result of one execution attempt, persisted after every run."""

    name: str
    ran_at: datetime
    status: RunStatus
    item_count: int = 0
    submitted_count: int = 0
    failed_count: int = 0
    next_run_at: Optional[datetime] = None
    reason: Optional[str] = None
    trigger: TriggerSource = TriggerSource.TIMER
    duration_seconds: float = 0.0

    @property
    def status_text(self) -> str:
        """Status string as stored in the schedule's last_status column."""
        if self.status == RunStatus.ERROR:
            return f"error: {self.reason or 'unknown error'}"
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ran_at": self.ran_at.isoformat(),
            "status": self.status.value,
            "reason": self.reason,
            "item_count": self.item_count,
            "submitted_count": self.submitted_count,
            "failed_count": self.failed_count,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "trigger": self.trigger.value,
            "duration_seconds": round(self.duration_seconds, 3),
        }
