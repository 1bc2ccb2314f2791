"""One-way reconciliation of local tasks into Google Tasks."""

import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Any, Sequence

import httpx

from juggler.config import Config, DEFAULT_MAX_WORKERS
from juggler.errors import JugglerError, ReconciliationError
from juggler.google import OAuthConfig, RemoteTask, TasksGateway, TokenManager
from juggler.models import LocalTask
from juggler.sync.mapper import (
    build_notes,
    differs,
    has_ownership_marker,
    is_legacy_owned,
    to_remote,
)
from juggler.utils.clock import Clock
from juggler.utils.storage import CredentialStore

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"

_SKIPPED = object()


class ChangeRecord:
    """One task touched, or deliberately left alone, by a pass."""

    def __init__(self, title: str, remote_id: str | None, detail: str = "") -> None:
        self.title = title
        self.remote_id = remote_id
        self.detail = detail

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChangeRecord):
            return NotImplemented
        return (self.title, self.remote_id, self.detail) == (other.title, other.remote_id, other.detail)

    def __repr__(self) -> str:
        return f"ChangeRecord({self.title!r}, {self.remote_id!r})"


class ChangeLog:
    """Results from a reconciliation pass."""

    def __init__(self, dry_run: bool = False) -> None:
        """Initialize change log.

        Args:
            dry_run: Whether the recorded changes were only planned.
        """
        self.dry_run = dry_run
        self.created: list[ChangeRecord] = []
        self.updated: list[ChangeRecord] = []
        self.deleted: list[ChangeRecord] = []
        self.unchanged: list[ChangeRecord] = []
        self.foreign: list[ChangeRecord] = []

    def add_created(self, title: str, remote_id: str, replaced_id: str | None = None) -> None:
        """Record a created task, noting the stale id it replaces if any."""
        detail = f"replaces missing {replaced_id}" if replaced_id else ""
        self.created.append(ChangeRecord(title, remote_id, detail))

    def add_updated(self, title: str, remote_id: str, fields: list[str]) -> None:
        """Record an updated task."""
        self.updated.append(ChangeRecord(title, remote_id, ", ".join(fields)))

    def add_deleted(self, title: str, remote_id: str) -> None:
        """Record a deleted remote task."""
        self.deleted.append(ChangeRecord(title, remote_id))

    def add_unchanged(self, title: str, remote_id: str) -> None:
        """Record a task that was already in sync."""
        self.unchanged.append(ChangeRecord(title, remote_id))

    def add_foreign(self, title: str, remote_id: str) -> None:
        """Record an unreferenced remote task without ownership marker."""
        self.foreign.append(ChangeRecord(title, remote_id))

    @property
    def operation_count(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    def counts(self) -> dict[str, int]:
        """Counts per category."""
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "unchanged": len(self.unchanged),
            "foreign": len(self.foreign),
        }

    def __str__(self) -> str:
        """String representation of results."""
        prefix = "[DRY RUN] " if self.dry_run else ""
        return (
            f"{prefix}Created: {len(self.created)}, "
            f"Updated: {len(self.updated)}, "
            f"Deleted: {len(self.deleted)}, "
            f"Unchanged: {len(self.unchanged)}, "
            f"Foreign: {len(self.foreign)}"
        )


class SyncOutcome:
    """Updated local snapshot and change log of a finished pass."""

    def __init__(self, tasks: list[LocalTask], changes: ChangeLog) -> None:
        self.tasks = tasks
        self.changes = changes

    @property
    def should_persist(self) -> bool:
        """Dry runs never ask the caller to save anything."""
        return not self.changes.dry_run


class Operation:
    """A planned gateway call."""

    def __init__(
        self,
        kind: str,
        title: str,
        remote_id: str | None = None,
        desired: RemoteTask | None = None,
        index: int | None = None,
        fields: list[str] | None = None,
    ) -> None:
        self.kind = kind
        self.title = title
        self.remote_id = remote_id
        self.desired = desired
        self.index = index
        self.fields = fields or []

    def __repr__(self) -> str:
        return f"Operation({self.kind!r}, {self.title!r}, remote_id={self.remote_id!r})"


class Reconciler:
    """Makes the remote list match the local snapshot."""

    def __init__(self, gateway: TasksGateway, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        """Initialize the reconciler.

        Args:
            gateway: Gateway for the synced task list. Its dry-run flag decides
                whether the pass is a dry run.
            max_workers: Upper bound on concurrent gateway calls.
        """
        self.gateway = gateway
        self.max_workers = max(1, max_workers)

    @property
    def dry_run(self) -> bool:
        return self.gateway.dry_run

    def plan(
        self,
        tasks: Sequence[LocalTask],
        remote_tasks: Sequence[RemoteTask],
        changes: ChangeLog,
    ) -> list[Operation]:
        """Decide the operations that bring the remote list in line with `tasks`.

        Identity is the stored remote id alone; titles never match tasks.
        Unchanged tasks and untouchable foreign tasks are recorded in
        `changes` directly.

        Args:
            tasks: Local snapshot.
            remote_tasks: Complete remote snapshot.
            changes: Change log to record no-op decisions in.

        Returns:
            Operations in snapshot order, then deletions.
        """
        remote_by_id = {task.id: task for task in remote_tasks if task.id}
        claimed: set[str] = set()
        operations: list[Operation] = []

        for index, task in enumerate(tasks):
            desired = to_remote(task)
            remote_id = task.remote_id

            if remote_id and remote_id in claimed:
                logger.warning(
                    f"Task '{task.title}' shares remote ID {remote_id} with an earlier task, "
                    f"creating a separate remote task"
                )
                remote_id = None

            if remote_id and remote_id in remote_by_id:
                claimed.add(remote_id)
                fields = differs(desired, remote_by_id[remote_id])
                if fields:
                    operations.append(
                        Operation(UPDATE, task.title, remote_id, desired, index, fields)
                    )
                else:
                    changes.add_unchanged(task.title, remote_id)
                continue

            if remote_id:
                logger.info(
                    f"Google Task {remote_id} for '{task.title}' no longer exists, recreating it"
                )
            operations.append(Operation(CREATE, task.title, remote_id, desired, index))

        for remote_id, remote in remote_by_id.items():
            if remote_id in claimed:
                continue
            if has_ownership_marker(remote):
                operations.append(Operation(DELETE, remote.title, remote_id))
            else:
                logger.info(
                    f"Leaving Google Task '{remote.title}' (ID: {remote_id}) alone: "
                    f"not created by juggler"
                )
                changes.add_foreign(remote.title, remote_id)

        return operations

    def reconcile(self, tasks: Sequence[LocalTask]) -> SyncOutcome:
        """Run one sync pass.

        Args:
            tasks: Local snapshot. Never modified.

        Returns:
            Updated snapshot and change log. In dry-run mode the snapshot
            equals the input.

        Raises:
            ReconciliationError: If a gateway call fails after the remote
                snapshot was fetched. Carries the partial results.
            GatewayError: If the remote snapshot cannot be fetched.
            AuthError: If no access token can be obtained.
        """
        if self.dry_run:
            logger.info("Starting sync in DRY RUN mode - no changes will be made")
        else:
            logger.info("Starting sync with Google Tasks")

        snapshot = list(tasks)
        changes = ChangeLog(dry_run=self.dry_run)

        # The whole remote list is read before anything is decided.
        remote_tasks = self.gateway.fetch_all()
        operations = self.plan(snapshot, remote_tasks, changes)
        logger.info(
            f"Planned {len(operations)} operation(s) for {len(snapshot)} local "
            f"and {len(remote_tasks)} remote task(s)"
        )

        updated = list(snapshot)
        error = self._execute(operations, updated, changes)

        if self.dry_run:
            updated = snapshot

        if error is not None:
            logger.error(f"Sync aborted: {error}")
            raise ReconciliationError(error, changes, updated)

        if self.dry_run:
            logger.info(f"Sync completed in DRY RUN mode - no actual changes were made: {changes}")
        else:
            logger.info(f"Sync completed successfully: {changes}")
        return SyncOutcome(updated, changes)

    def _execute(
        self,
        operations: list[Operation],
        updated: list[LocalTask],
        changes: ChangeLog,
    ) -> JugglerError | None:
        if not operations:
            return None

        results: dict[int, str | None] = {}
        first_error: JugglerError | None = None
        abort = threading.Event()

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="juggler-sync") as pool:
            futures: dict[Future[Any], int] = {
                pool.submit(self._apply, operation, abort): position
                for position, operation in enumerate(operations)
            }
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_EXCEPTION)
                for future in done:
                    if future.cancelled():
                        continue
                    error = future.exception()
                    if error is None:
                        result = future.result()
                        if result is not _SKIPPED:
                            results[futures[future]] = result
                    elif isinstance(error, JugglerError):
                        if first_error is None:
                            first_error = error
                    else:
                        for other in pending:
                            other.cancel()
                        raise error
                if first_error is not None:
                    for other in pending:
                        other.cancel()

        # Record in plan order so the log does not depend on thread timing.
        for position, operation in enumerate(operations):
            if position not in results:
                continue
            if operation.kind == CREATE:
                new_id = results[position]
                changes.add_created(operation.title, new_id, replaced_id=operation.remote_id)
                if operation.index is not None:
                    updated[operation.index] = updated[operation.index].with_remote_id(new_id)
            elif operation.kind == UPDATE:
                changes.add_updated(operation.title, operation.remote_id, operation.fields)
            else:
                changes.add_deleted(operation.title, operation.remote_id)

        return first_error

    def _apply(self, operation: Operation, abort: threading.Event) -> Any:
        # Queued operations are skipped once any operation has failed.
        if abort.is_set():
            return _SKIPPED
        try:
            if operation.kind == CREATE:
                return self.gateway.create(operation.desired)
            if operation.kind == UPDATE:
                self.gateway.update(operation.remote_id, operation.desired)
            else:
                self.gateway.delete(operation.remote_id)
        except BaseException:
            abort.set()
            raise
        return None


def adopt_legacy_tasks(gateway: TasksGateway, tasks: Sequence[LocalTask]) -> ChangeLog:
    """Stamp the ownership marker onto unreferenced tasks from the title-prefix era.

    Older releases recognised their tasks by the "j:" title prefix alone. This
    migration is the only place that convention is honoured: it claims such
    tasks so that a following sync pass deletes them. It never deletes.

    Args:
        gateway: Gateway for the synced list. Honors its dry-run flag.
        tasks: Local snapshot; tasks it references are left alone.

    Returns:
        Change log listing adopted tasks as updates.
    """
    changes = ChangeLog(dry_run=gateway.dry_run)
    referenced = {task.remote_id for task in tasks if task.remote_id}

    for remote in gateway.fetch_all():
        if remote.id in referenced:
            continue
        if not is_legacy_owned(remote):
            if not has_ownership_marker(remote):
                changes.add_foreign(remote.title, remote.id)
            continue
        claimed = remote.model_copy(update={"notes": build_notes(remote.notes)})
        gateway.update(remote.id, claimed)
        changes.add_updated(remote.title, remote.id, ["notes"])

    logger.info(f"Legacy migration finished: {len(changes.updated)} task(s) adopted")
    return changes


def build_gateway(
    config: Config,
    credential_store: CredentialStore,
    http_client: httpx.Client,
    clock: Clock,
    dry_run: bool = False,
) -> TasksGateway:
    """Wire a token manager and gateway from explicit dependencies."""
    token_manager = TokenManager(
        OAuthConfig(config.client_id, config.client_secret),
        credential_store,
        http_client,
        clock=clock,
    )
    return TasksGateway(
        token_manager,
        http_client,
        dry_run=dry_run,
        max_retries=config.max_retries,
    )


def run_sync(
    tasks: Sequence[LocalTask],
    config: Config,
    credential_store: CredentialStore,
    http_client: httpx.Client,
    clock: Clock,
    dry_run: bool = False,
) -> SyncOutcome:
    """Run one sync invocation with its own token cache.

    Args:
        tasks: Local snapshot.
        config: Application configuration.
        credential_store: Store holding the refresh token.
        http_client: HTTP client for token and API calls.
        clock: Time source for token expiry.
        dry_run: Plan and log only.

    Returns:
        Sync outcome for the caller to persist.
    """
    gateway = build_gateway(config, credential_store, http_client, clock, dry_run=dry_run)
    # Fail on missing or revoked credentials before touching the API.
    gateway.token_manager.get_access_token()
    return Reconciler(gateway, max_workers=config.max_workers).reconcile(tasks)
