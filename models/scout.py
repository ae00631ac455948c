"""Scout and execution models.

A scout is a journalist's standing request: re-scrape a URL on a cadence and
report when the page changes in a way that matches natural-language criteria.
Each run of a scout is recorded as a ScoutExecution.

Execution lifecycle:
    running -> completed | failed

    Terminal once completed or failed. At most one execution per scout may be
    running within the lock window (advisory check-then-act).

Change status (derived from the scraper's change signal):
    first_run: Scraper has never seen this page under the scout's tag
    same:      Content unchanged since the last scrape (short-circuit)
    changed:   Content changed, or the scraper could not tell
    error:     The scrape itself failed
"""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field


class Frequency(str, Enum):
    """How often a scout should run."""

    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @property
    def interval(self) -> timedelta:
        """Minimum time between two runs of a scout with this cadence."""
        return timedelta(days=_FREQUENCY_DAYS[self])


_FREQUENCY_DAYS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
    Frequency.MONTHLY: 30,
}


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ChangeStatus(str, Enum):
    FIRST_RUN = "first_run"
    SAME = "same"
    CHANGED = "changed"
    ERROR = "error"

    @classmethod
    def from_signal(cls, signal: str | None) -> "ChangeStatus":
        """Map the scraper's change signal to a stored change status.

        'new' means first run and 'same' means unchanged. Anything else,
        including a missing signal, counts as changed.
        """
        if signal == "new":
            return cls.FIRST_RUN
        if signal == "same":
            return cls.SAME
        return cls.CHANGED


class Location(BaseModel):
    """Geographic scope of a scout or information unit."""

    city: str = Field(description="City or village name")
    state: str | None = Field(default=None, description="State/canton (optional)")
    country: str = Field(default="", description="Country name or code")
    latitude: float | None = Field(default=None, description="Latitude (optional)")
    longitude: float | None = Field(default=None, description="Longitude (optional)")


class Scout(BaseModel):
    """A registered monitoring scout.

    Attributes:
        criteria: Natural-language match criteria. Empty means monitor-all,
            which is a valid configuration rather than a validation error.
        consecutive_failures: Incremented on each failed scrape, reset on
            any successful run.
    """

    id: str
    user_id: str
    name: str
    url: str
    criteria: str = ""
    location: Location | None = None
    topic: str | None = None
    notification_email: str | None = None
    is_active: bool = True
    frequency: Frequency = Frequency.DAILY
    consecutive_failures: int = 0
    last_run_at: datetime | None = None
    created_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        """Check whether this scout's cadence has elapsed.

        Active scouts that have never run are always due.
        """
        if not self.is_active:
            return False
        if self.last_run_at is None:
            return True
        return now - self.last_run_at >= self.frequency.interval


class ScoutExecution(BaseModel):
    """One run of a scout, as persisted."""

    id: str
    scout_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime
    completed_at: datetime | None = None
    change_status: ChangeStatus | None = None
    criteria_matched: bool | None = None
    summary_text: str | None = None
    summary_embedding: list[float] | None = Field(default=None, repr=False)
    is_duplicate: bool = False
    duplicate_similarity: float | None = None
    notification_sent: bool = False
    notification_error: str | None = None
    units_extracted: int = 0
    scrape_duration_ms: int | None = None
    error_message: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of a pipeline run as returned to callers.

    A failed scrape is reported here with status=failed rather than raised.
    """

    execution_id: str
    status: ExecutionStatus
    change_status: ChangeStatus | None = None
    criteria_matched: bool = False
    is_duplicate: bool = False
    notification_sent: bool = False
    units_extracted: int = 0
    duration_ms: int = 0
    summary: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        """Serialize for JSON responses, omitting unset error."""
        return self.model_dump(mode="json", exclude_none=True)
