"""Google Tasks API client scoped to one task list."""

import logging
import threading
import time
from typing import Any, Callable

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from juggler.config import DEFAULT_MAX_RETRIES, GOOGLE_TASKS_BASE_URL, GOOGLE_TASKS_LIST_NAME
from juggler.errors import (
    GatewayError,
    HttpFailureError,
    ListNotFoundError,
    MalformedResponseError,
    RateLimitedError,
)
from juggler.google.models import RemoteTask, TaskListPage, TaskPage
from juggler.google.oauth import TokenManager

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
DRY_RUN_ID_PREFIX = "dry-run-"


class GatewayAction:
    """A write the gateway performed, or would have performed in dry-run mode."""

    def __init__(
        self,
        kind: str,
        remote_id: str,
        task: RemoteTask | None = None,
        applied: bool = True,
    ) -> None:
        self.kind = kind
        self.remote_id = remote_id
        self.task = task
        self.applied = applied

    def __repr__(self) -> str:
        return f"GatewayAction({self.kind!r}, {self.remote_id!r}, applied={self.applied})"


class TasksGateway:
    """Reads and writes the tasks of one named Google Tasks list."""

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.Client,
        base_url: str = GOOGLE_TASKS_BASE_URL,
        list_name: str = GOOGLE_TASKS_LIST_NAME,
        dry_run: bool = False,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            token_manager: Source of bearer tokens.
            http_client: HTTP client for API calls.
            base_url: Google Tasks API root.
            list_name: Title of the task list all operations are scoped to.
            dry_run: If True, writes are logged and recorded but never sent.
            max_retries: Retries for rate limits, 5xx and transport errors
                (inserts: rate limits and connect errors only).
            backoff_base: First retry delay in seconds, doubled per attempt.
            backoff_max: Upper bound for a single delay.
            sleep: Sleep function, replaceable in tests.
        """
        self.token_manager = token_manager
        self.client = http_client
        self.base_url = base_url.rstrip("/")
        self.list_name = list_name
        self.dry_run = dry_run
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep
        self._backoff = wait_exponential(multiplier=backoff_base, max=backoff_max)
        self.actions: list[GatewayAction] = []
        self._list_id: str | None = None
        self._lock = threading.Lock()
        self._dry_run_counter = 0

    def resolve_list_id(self, list_name: str | None = None) -> str:
        """Find the id of the task list with the given title.

        Args:
            list_name: List title. Defaults to the gateway's list.

        Returns:
            Task list id.

        Raises:
            ListNotFoundError: If no list has that title.
        """
        list_name = list_name or self.list_name
        if self._list_id is not None and list_name == self.list_name:
            return self._list_id

        for page in self._paginate("/tasks/v1/users/@me/lists", TaskListPage, {}, "resolve_list"):
            for task_list in page.items or []:
                if task_list.title == list_name:
                    logger.info(f"Using task list '{list_name}' (ID: {task_list.id})")
                    if list_name == self.list_name:
                        self._list_id = task_list.id
                    return task_list.id

        raise ListNotFoundError(list_name)

    def fetch_all(self, list_name: str | None = None) -> list[RemoteTask]:
        """Fetch every task in the list, following page cursors to the end.

        Completed and hidden tasks are included so they are not mistaken for
        missing ones.

        Args:
            list_name: List title. Defaults to the gateway's list.

        Returns:
            All remote tasks, in no particular order.
        """
        list_id = self.resolve_list_id(list_name)
        params = {"showCompleted": "true", "showHidden": "true", "maxResults": str(PAGE_SIZE)}

        tasks: list[RemoteTask] = []
        for page in self._paginate(f"/tasks/v1/lists/{list_id}/tasks", TaskPage, params, "fetch"):
            tasks.extend(task for task in page.items or [] if task.id)

        logger.info(f"Fetched {len(tasks)} remote tasks")
        return tasks

    def create(self, desired: RemoteTask) -> str:
        """Insert a task.

        An insert is resent only after a rate limit or a failed connect.
        Other failures may have reached Google, and resending them could
        create a second copy of the task.

        Args:
            desired: Task fields to write.

        Returns:
            The id assigned by Google, or a placeholder id in dry-run mode.
        """
        if self.dry_run:
            placeholder = self._next_placeholder_id()
            logger.info(
                f"[DRY RUN] Would create task: '{desired.title}' with status: {desired.status}"
            )
            self._record(GatewayAction("create", placeholder, desired, applied=False))
            return placeholder

        list_id = self.resolve_list_id()
        logger.info(f"Creating Google Task: '{desired.title}'")
        response = self._request(
            "POST",
            f"/tasks/v1/lists/{list_id}/tasks",
            operation="create",
            json=desired.model_copy(update={"id": None}).to_api_dict(),
        )
        created = self._parse(response, RemoteTask, "create")
        if not created.id:
            raise MalformedResponseError("Created task has no id", operation="create")

        logger.info(f"Created Google Task '{desired.title}' with ID: {created.id}")
        self._record(GatewayAction("create", created.id, desired))
        return created.id

    def update(self, remote_id: str, desired: RemoteTask) -> None:
        """Overwrite every synced field of a task.

        Args:
            remote_id: Task id.
            desired: Task fields to write.
        """
        if self.dry_run:
            logger.info(
                f"[DRY RUN] Would update task '{desired.title}' (ID: {remote_id}) "
                f"with status: {desired.status}"
            )
            self._record(GatewayAction("update", remote_id, desired, applied=False))
            return

        list_id = self.resolve_list_id()
        logger.info(f"Updating Google Task: '{desired.title}' (ID: {remote_id})")
        self._request(
            "PUT",
            f"/tasks/v1/lists/{list_id}/tasks/{remote_id}",
            operation="update",
            remote_id=remote_id,
            json=desired.model_copy(update={"id": remote_id}).to_api_dict(),
        )
        self._record(GatewayAction("update", remote_id, desired))

    def delete(self, remote_id: str) -> None:
        """Delete a task. A task that is already gone counts as deleted.

        Args:
            remote_id: Task id.
        """
        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete task (ID: {remote_id})")
            self._record(GatewayAction("delete", remote_id, applied=False))
            return

        list_id = self.resolve_list_id()
        logger.info(f"Deleting Google Task (ID: {remote_id})")
        try:
            self._request(
                "DELETE",
                f"/tasks/v1/lists/{list_id}/tasks/{remote_id}",
                operation="delete",
                remote_id=remote_id,
            )
        except HttpFailureError as e:
            if e.status not in (404, 410):
                raise
            logger.warning(f"Google Task {remote_id} was already deleted")
        self._record(GatewayAction("delete", remote_id))

    def _paginate(
        self,
        path: str,
        page_model: type[TaskPage] | type[TaskListPage],
        params: dict[str, str],
        operation: str,
    ) -> Any:
        page_token: str | None = None
        seen_tokens: set[str] = set()
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            response = self._request("GET", path, operation=operation, params=page_params)
            page = self._parse(response, page_model, operation)
            yield page

            page_token = page.next_page_token
            if not page_token:
                return
            if page_token in seen_tokens:
                raise MalformedResponseError(
                    f"Pagination cursor repeated while listing {path}", operation=operation
                )
            seen_tokens.add(page_token)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        remote_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable if method != "POST" else _is_unsent),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._send, method, path, operation, remote_id, **kwargs)

    def _send(
        self,
        method: str,
        path: str,
        operation: str,
        remote_id: str | None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.token_manager.get_access_token()}",
        }
        try:
            response = self.client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise HttpFailureError(
                None,
                f"Google Tasks API request failed: {type(e).__name__}: {e}",
                operation=operation,
                remote_id=remote_id,
            ) from e

        if response.status_code == 429:
            raise RateLimitedError(
                "Google Tasks API rate limit exceeded",
                retry_after=_retry_after(response),
                operation=operation,
                remote_id=remote_id,
            )
        if not response.is_success:
            raise HttpFailureError(
                response.status_code,
                f"Google Tasks API request failed with status {response.status_code}: "
                f"{response.text[:200]}",
                operation=operation,
                remote_id=remote_id,
            )
        return response

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            return min(error.retry_after, self.backoff_max)
        return self._backoff(retry_state)

    def _parse(self, response: httpx.Response, model: type[BaseModel], operation: str) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise MalformedResponseError(
                f"Unexpected Google Tasks response: {e}", operation=operation
            ) from e

    def _next_placeholder_id(self) -> str:
        with self._lock:
            self._dry_run_counter += 1
            return f"{DRY_RUN_ID_PREFIX}{self._dry_run_counter}"

    def _record(self, action: GatewayAction) -> None:
        with self._lock:
            self.actions.append(action)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


def _is_unsent(error: BaseException) -> bool:
    """True if the request never reached Google, so resending cannot duplicate it."""
    if isinstance(error, RateLimitedError):
        return True
    return isinstance(error, HttpFailureError) and isinstance(
        error.__cause__, (httpx.ConnectError, httpx.ConnectTimeout)
    )


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
