"""Pytest configuration and fixtures."""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from juggler.config import Config
from juggler.google import OAuthConfig, TasksGateway, TokenManager
from juggler.utils import CredentialStore, FixedClock, StorageManager

TASKS_HOST = "tasks.googleapis.com"
TOKEN_HOST = "oauth2.googleapis.com"


class InMemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if self.passwords.pop((service, username), None) is None:
            raise PasswordDeleteError("Password not found")


class FakeGoogleTasks:
    """In-memory Google Tasks API and token endpoint behind an httpx.MockTransport.

    Tasks live in one list called "juggler". Listing is paged with a small page
    size so pagination is always exercised.
    """

    def __init__(self, page_size: int = 2) -> None:
        self.page_size = page_size
        self.task_lists = [
            {"id": "list_other", "title": "Groceries"},
            {"id": "list_juggler", "title": "juggler"},
        ]
        self.tasks: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict[str, str]] = []
        self.refresh_token = "1//stored-refresh"
        self.rotated_refresh_token: str | None = None
        self.issued_refresh_token = "1//issued-refresh"
        self.access_token = "ya29.fake-access"
        self.expires_in = 3600
        self.failures: list[tuple[str, int, dict[str, str]]] = []
        self.fail_titles: dict[str, int] = {}
        self._next_id = 0
        self._access_counter = 0

    def add_task(
        self,
        title: str,
        notes: str | None = None,
        status: str = "needsAction",
        due: str | None = None,
    ) -> str:
        """Seed a task as if created by another client."""
        self._next_id += 1
        task_id = f"task_{self._next_id}"
        self.tasks[task_id] = {
            "kind": "tasks#task",
            "id": task_id,
            "title": title,
            "notes": notes,
            "status": status,
            "due": due,
            "updated": "2025-01-01T00:00:00.000Z",
        }
        return task_id

    def fail_next(self, method: str, status: int, times: int = 1, headers: dict | None = None) -> None:
        """Answer the next `times` requests with `method` using `status`."""
        for _ in range(times):
            self.failures.append((method, status, headers or {}))

    @property
    def writes(self) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.host == TASKS_HOST and r.method in ("POST", "PUT", "DELETE")
        ]

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == TASKS_HOST]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == TOKEN_HOST:
            return self._handle_token(request)

        for position, (method, status, headers) in enumerate(self.failures):
            if method == request.method:
                del self.failures[position]
                return httpx.Response(status, headers=headers, json={"error": {"code": status}})

        if request.headers.get("Authorization") != f"Bearer {self.access_token}":
            return httpx.Response(401, json={"error": {"code": 401, "status": "UNAUTHENTICATED"}})

        path = request.url.path
        if path == "/tasks/v1/users/@me/lists":
            return httpx.Response(200, json={"kind": "tasks#taskLists", "items": self.task_lists})

        prefix = "/tasks/v1/lists/list_juggler/tasks"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"error": {"code": 404}})
        task_id = path[len(prefix) + 1 :] or None

        if request.method == "GET" and task_id is None:
            return self._list_page(request)
        if request.method == "POST" and task_id is None:
            body = json.loads(request.content)
            if body.get("title") in self.fail_titles:
                return httpx.Response(self.fail_titles[body["title"]], json={"error": {"code": 400}})
            new_id = self.add_task(body["title"], body.get("notes"), body.get("status"), body.get("due"))
            return httpx.Response(200, json=self.tasks[new_id])
        if task_id not in self.tasks:
            return httpx.Response(404, json={"error": {"code": 404, "message": "Not Found"}})
        if request.method == "PUT":
            body = json.loads(request.content)
            stored = {key: body.get(key) for key in ("title", "notes", "status", "due")}
            self.tasks[task_id].update(stored)
            return httpx.Response(200, json=self.tasks[task_id])
        if request.method == "DELETE":
            del self.tasks[task_id]
            return httpx.Response(204)
        return httpx.Response(405)

    def _list_page(self, request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params.get("pageToken", "0"))
        items = list(self.tasks.values())
        page = items[offset : offset + self.page_size]
        body: dict = {"kind": "tasks#tasks", "items": page}
        if offset + self.page_size < len(items):
            body["nextPageToken"] = str(offset + self.page_size)
        return httpx.Response(200, json=body)

    def _handle_token(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.token_requests.append(form)

        if form.get("grant_type") == "refresh_token":
            if form.get("refresh_token") != self.refresh_token:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
                )
            body = {"access_token": self.access_token, "expires_in": self.expires_in, "token_type": "Bearer"}
            if self.rotated_refresh_token:
                body["refresh_token"] = self.rotated_refresh_token
            return httpx.Response(200, json=body)

        if form.get("grant_type") == "authorization_code":
            if form.get("code") != "auth-code-123" or not form.get("code_verifier"):
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": self.access_token,
                    "expires_in": self.expires_in,
                    "refresh_token": self.issued_refresh_token,
                },
            )

        return httpx.Response(400, json={"error": "unsupported_grant_type"})


@pytest.fixture(autouse=True)
def memory_keyring() -> InMemoryKeyring:
    """Replace the OS keyring with an in-memory one for every test."""
    backend = InMemoryKeyring()
    keyring.set_keyring(backend)
    return backend


@pytest.fixture
def temp_data_dir() -> Path:
    """Create a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def storage_manager(temp_data_dir: Path) -> StorageManager:
    """Create a storage manager with temporary directory."""
    return StorageManager(temp_data_dir)


@pytest.fixture
def config(temp_data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    """Create a config instance with temporary directory."""
    monkeypatch.delenv("JUGGLER_CLIENT_SECRET", raising=False)
    monkeypatch.delenv("JUGGLER_DIR", raising=False)
    return Config(temp_data_dir)


@pytest.fixture
def fake_google() -> FakeGoogleTasks:
    """Create an in-memory Google Tasks backend."""
    return FakeGoogleTasks()


@pytest.fixture
def credential_store(storage_manager: StorageManager, fake_google: FakeGoogleTasks) -> CredentialStore:
    """Create a credential store holding a valid refresh token."""
    store = CredentialStore(storage_manager)
    store.set(fake_google.refresh_token)
    return store


@pytest.fixture
def clock() -> FixedClock:
    """Create a clock fixed at a known instant."""
    return FixedClock(datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def http_client(fake_google: FakeGoogleTasks) -> httpx.Client:
    """Create an HTTP client routed to the fake backend."""
    with httpx.Client(transport=httpx.MockTransport(fake_google.handle)) as client:
        yield client


@pytest.fixture
def oauth_config() -> OAuthConfig:
    """Create a sample OAuth configuration."""
    return OAuthConfig(client_id="test-client.apps.googleusercontent.com", client_secret="test-secret")


@pytest.fixture
def token_manager(
    oauth_config: OAuthConfig,
    credential_store: CredentialStore,
    http_client: httpx.Client,
    clock: FixedClock,
) -> TokenManager:
    """Create a token manager against the fake token endpoint."""
    return TokenManager(oauth_config, credential_store, http_client, clock=clock)


@pytest.fixture
def sleeps() -> list[float]:
    """Collect delays requested by retry loops."""
    return []


@pytest.fixture
def make_gateway(token_manager: TokenManager, http_client: httpx.Client, sleeps: list[float]):
    """Build gateways that share the fake backend and never really sleep."""

    def _make(dry_run: bool = False, max_retries: int = 3) -> TasksGateway:
        return TasksGateway(
            token_manager,
            http_client,
            dry_run=dry_run,
            max_retries=max_retries,
            sleep=sleeps.append,
        )

    return _make


@pytest.fixture
def gateway(make_gateway) -> TasksGateway:
    """Create a gateway that writes to the fake backend."""
    return make_gateway()
