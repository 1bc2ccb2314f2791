"""Mapping of local tasks onto Google Tasks fields.

Remote notes end with a metadata region that marks the task as created by
juggler:

    <comment>

    --- juggler ---
    JUGGLER_META_OWNED_V1

Only that trailing region is inspected. The marker text appearing inside the
user's comment does not make a task ours.
"""

from datetime import date, datetime, timezone

from juggler.config import GOOGLE_TASK_TITLE_PREFIX
from juggler.google.models import RemoteTask
from juggler.models import LocalTask

META_HEADER = "--- juggler ---"
OWNERSHIP_MARKER = "JUGGLER_META_OWNED_V1"
OWNERSHIP_REGION = f"{META_HEADER}\n{OWNERSHIP_MARKER}"

# Before ownership markers existed, any "j:"-prefixed task was assumed to be ours.
LEGACY_TITLE_PREFIX = GOOGLE_TASK_TITLE_PREFIX


def build_notes(comment: str | None) -> str:
    """Append the ownership region to a comment."""
    if not comment:
        return OWNERSHIP_REGION
    return f"{comment}\n\n{OWNERSHIP_REGION}"


def split_notes(notes: str | None) -> tuple[str | None, bool]:
    """Separate user content from the ownership region.

    Args:
        notes: Remote notes field.

    Returns:
        (comment, owned) tuple. `comment` is None when there is no user content.
    """
    if not notes:
        return None, False
    if notes == OWNERSHIP_REGION:
        return None, True
    suffix = f"\n\n{OWNERSHIP_REGION}"
    if notes.endswith(suffix):
        return notes[: -len(suffix)], True
    return notes, False


def has_ownership_marker(task: RemoteTask) -> bool:
    """Check whether a remote task was created by juggler."""
    return split_notes(task.notes)[1]


def is_legacy_owned(task: RemoteTask) -> bool:
    """Check whether a task follows the old title-prefix convention and lacks a marker.

    Only the explicit legacy migration uses this; sync never does.
    """
    return task.title.startswith(LEGACY_TITLE_PREFIX) and not has_ownership_marker(task)


def normalize_due(due_date: datetime | None) -> str | None:
    """Render a due date the way Google Tasks stores it: UTC midnight of its UTC day."""
    day = due_day(due_date)
    if day is None:
        return None
    return f"{day.isoformat()}T00:00:00.000Z"


def due_day(due_date: datetime | None) -> date | None:
    """UTC calendar day of a local due date."""
    if due_date is None:
        return None
    if due_date.tzinfo is None:
        due_date = due_date.replace(tzinfo=timezone.utc)
    return due_date.astimezone(timezone.utc).date()


def to_remote(task: LocalTask) -> RemoteTask:
    """Derive the remote fields a local task should have."""
    return RemoteTask(
        id=task.remote_id,
        title=f"{GOOGLE_TASK_TITLE_PREFIX}{task.title.strip()}",
        notes=build_notes(task.comment),
        status="completed" if task.done else "needsAction",
        due=normalize_due(task.due_date),
    )


def differs(desired: RemoteTask, current: RemoteTask) -> list[str]:
    """List the synced fields on which two tasks disagree.

    Due dates are compared by UTC calendar day only.

    Args:
        desired: Fields derived from the local task.
        current: Fields as fetched from Google.

    Returns:
        Names of mismatching fields, empty if the remote task is up to date.
    """
    changed = []
    if desired.title != current.title:
        changed.append("title")
    if (desired.notes or "") != (current.notes or ""):
        changed.append("notes")
    if desired.status != current.status:
        changed.append("status")
    if desired.due_day != current.due_day:
        changed.append("due")
    return changed
