import uuid
import logging
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator, model_validator


class ScheduleWindow(BaseModel):
    """
    Recurring window during which a task may run: the hours of the day and the days of the week.
    """
    start_hour: int = Field(..., ge=0, le=23, description="Hour of day (0-23) at which runs are anchored")
    end_hour: int = Field(..., ge=0, le=23, description="Hour of day (0-23) at which the window closes")
    days_of_week: List[int] = Field(default_factory=list, description="Allowed weekdays, 0 is Sunday")
    timezone: str = Field("EST", description="Timezone label the hours are expressed in, e.g. EST, UTC, America/New_York")

    @field_validator("days_of_week")
    def check_days(cls, v: List[int]) -> List[int]:
        for day in v:
            if day < 0 or day > 6:
                raise ValueError(f"Day of week must be within 0-6, got {day}")
        return sorted(set(v))

    @property
    def cron_expression(self) -> str:
        days = ",".join(str(day) for day in self.days_of_week)
        return f"0 {self.start_hour} * * {days}"

    def format_schedule(self) -> str:
        days = ", ".join(str(day) for day in self.days_of_week) or "none"
        return f"Runs at {self.start_hour:02d}:00-{self.end_hour:02d}:00 {self.timezone} on days [{days}]"


class CollectionSettings(BaseModel):
    """
    What a task collects from the data source and how hard it retries.
    """
    platform: str = Field("common-gen5", description="Data source platform identifier")
    task_type: str = Field("club_private", description="Kind of items to collect, e.g. the match type")
    frequency_minutes: int = Field(30, ge=5, description="How often to run during active hours")
    retry_attempts: int = Field(3, ge=0, description="Retries of a failed fetch before giving up")
    retry_delay_minutes: int = Field(5, ge=1, description="Base delay between fetch retries")


class Task(BaseModel):
    """
    A configured periodic collection job.
    """
    id: str = Field(default_factory=lambda: f"tsk_{uuid.uuid4().hex[:8]}", description="Unique task identifier")
    name: str = Field(..., description="Unique task name")
    description: Optional[str] = Field(None, description="Free-form description")
    is_active: bool = Field(default=True, description="Indicates whether the task is scheduled")
    owner_id: str = Field(..., description="Administrator who created the task")
    schedule: ScheduleWindow = Field(..., description="Schedule window configuration")
    collection: CollectionSettings = Field(default_factory=CollectionSettings, description="Collection settings")
    entity_ids: List[str] = Field(default_factory=list, description="Target entity ids, processed in order")
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(ZoneInfo("UTC")),
        description="Task creation timestamp with UTC timezone"
    )

    @field_validator("created_at", "last_run", "next_run")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            logging.warning("Datetime does not include a timezone. Defaulting to UTC+0 for consistent representation.")
            return v.replace(tzinfo=ZoneInfo("UTC"))
        return v

    @model_validator(mode="after")
    def check_next_run(self) -> "Task":
        if not self.is_active and self.next_run is not None:
            raise ValueError("An inactive task cannot have a next run")
        return self

    @property
    def readable_string(self) -> str:
        task_summary = f"Task Name: '{self.name}'"
        if self.description:
            task_summary += f"\nDescription: {self.description}"

        schedule_details = self.schedule.format_schedule()
        targets = f"Entities: {', '.join(self.entity_ids) or 'none'}"

        return f"{task_summary}\n{schedule_details}\n{targets}"
