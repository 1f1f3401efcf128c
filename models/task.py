"""Push trigger models: cron tasks and the auto-push singleton.

ScheduledTask:
    Cron-driven push of the reading window, optionally filtered by
    category. ``last_run_at`` advances after every attempt.

AutoPushConfig:
    Process-wide threshold trigger. Reloaded by the monitor on every
    evaluation so operator changes apply without a restart.
"""

import uuid
from datetime import datetime

from croniter import croniter
from pydantic import BaseModel, Field, field_validator


class ScheduledTask(BaseModel):
    """A cron-scheduled push task.

    Attributes:
        cron_expr: Five-field cron expression (minute resolution)
        channel_id: Channel that receives the batch
        template_id: Template to render (None = default template)
        categories: Category filter; empty selects every category
        enabled: Disabled tasks are skipped by the runner
        last_run_at: Tick of the most recent attempt, success or failure
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(min_length=1)
    cron_expr: str
    channel_id: str = Field(min_length=1)
    template_id: str | None = None
    categories: list[str] = Field(default_factory=list)
    enabled: bool = True
    last_run_at: datetime | None = None

    @field_validator("cron_expr")
    @classmethod
    def check_cron(cls, value: str) -> str:
        value = " ".join(value.split())
        if len(value.split()) != 5 or not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value

    @field_validator("categories", mode="before")
    @classmethod
    def split_categories(cls, value):
        # Stored by the admin panel as "tech,ai"
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return sorted({c.strip() for c in value if c and c.strip()})

    @field_validator("template_id", mode="before")
    @classmethod
    def blank_template(cls, value):
        return value or None


class AutoPushConfig(BaseModel):
    """Threshold-triggered auto-push settings (singleton)."""

    enabled: bool = False
    threshold: int = Field(default=6, ge=1)
    channel_id: str = ""
    template_id: str | None = None

    @field_validator("template_id", mode="before")
    @classmethod
    def blank_template(cls, value):
        return value or None
