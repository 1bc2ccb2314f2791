"""Pydantic models for Google Tasks and OAuth responses."""

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

TaskStatus = Literal["needsAction", "completed"]


class TaskList(BaseModel):
    """Google Tasks task list."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    title: str


class RemoteTask(BaseModel):
    """Google Tasks task.

    `updated` and `completed` are set by the server and never sent back.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    title: str = ""
    notes: str | None = None
    status: TaskStatus = "needsAction"
    due: str | None = None
    updated: str | None = None
    completed: str | None = None

    @field_validator("due")
    @classmethod
    def _due_is_timestamp(cls, value: str | None) -> str | None:
        if value:
            _parse_timestamp(value)
        return value

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def due_day(self) -> date | None:
        """Calendar day of the due date. The API keeps no time of day."""
        if not self.due:
            return None
        return _parse_timestamp(self.due).date()

    def to_api_dict(self) -> dict[str, Any]:
        """Convert to the body of an insert or full update.

        Returns:
            Dictionary for API submission.
        """
        payload: dict[str, Any] = {
            "title": self.title,
            "notes": self.notes,
            "status": self.status,
            "due": self.due,
        }
        if self.id:
            payload["id"] = self.id
        if self.status == "needsAction":
            # Reopening a task requires clearing its completion timestamp.
            payload["completed"] = None
        return payload


class TaskPage(BaseModel):
    """One page of a tasks.list response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: list[RemoteTask] | None = None
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class TaskListPage(BaseModel):
    """One page of a tasklists.list response."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    items: list[TaskList] | None = None
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class TokenResponse(BaseModel):
    """Token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None


def _parse_timestamp(value: str) -> datetime:
    # RFC 3339 as sent by the API, e.g. 2025-03-10T00:00:00.000Z
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
