"""Pydantic model for locally stored tasks."""

from datetime import date, datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class LocalTask(BaseModel):
    """A task as kept in the local task file."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    title: str
    comment: str | None = None
    done: bool = False
    due_date: datetime | None = None
    remote_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("remote_id", "google_task_id"),
    )

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value

    @field_validator("due_date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        # YAML reads a bare 2025-03-10 as a date.
        if isinstance(value, date) and not isinstance(value, datetime):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        return value

    @field_validator("due_date")
    @classmethod
    def _due_date_aware(cls, value: datetime | None) -> datetime | None:
        # Naive timestamps in the task file are UTC.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def with_remote_id(self, remote_id: str) -> "LocalTask":
        """Return a copy linked to another remote task."""
        return self.model_copy(update={"remote_id": remote_id})

    def to_store_dict(self) -> dict[str, Any]:
        """Convert to the dictionary written to the task file."""
        return {
            "title": self.title,
            "comment": self.comment,
            "done": self.done,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "google_task_id": self.remote_id,
        }
