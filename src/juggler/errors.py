"""Exception hierarchy for juggler."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from juggler.models import LocalTask
    from juggler.sync.engine import ChangeLog


class JugglerError(Exception):
    """Base class for all juggler errors."""


class ConfigError(JugglerError):
    """Configuration could not be read."""


class AuthError(JugglerError):
    """Authorization failed. Never retried; the user must log in again."""

    hint = "Run `juggler login` to authenticate."


class NoCredentialError(AuthError):
    """No refresh credential is stored."""

    def __init__(self, message: str = "No refresh token stored") -> None:
        super().__init__(message)


class InvalidGrantError(AuthError):
    """The provider rejected the refresh credential (revoked or expired)."""


class CallbackStateMismatchError(AuthError):
    """Only callbacks with a foreign `state` value reached the listener."""


class CallbackTimeoutError(AuthError):
    """No authorization redirect arrived before the timeout."""


class UserDeniedError(AuthError):
    """The user declined consent on the provider's page."""


class GatewayError(JugglerError):
    """A remote task operation failed.

    Attributes:
        operation: Gateway operation being attempted (e.g. "create").
        remote_id: Remote task id, when known.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        remote_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.remote_id = remote_id


class ListNotFoundError(GatewayError):
    """The named task list does not exist remotely."""

    def __init__(self, list_name: str) -> None:
        super().__init__(
            f"No '{list_name}' task list found in Google Tasks",
            operation="resolve_list",
        )
        self.list_name = list_name


class HttpFailureError(GatewayError):
    """Non-success HTTP response, or a transport failure (status is None)."""

    def __init__(
        self,
        status: int | None,
        message: str,
        operation: str | None = None,
        remote_id: str | None = None,
    ) -> None:
        super().__init__(message, operation=operation, remote_id=remote_id)
        self.status = status

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status is None or self.status >= 500


class RateLimitedError(GatewayError):
    """The API answered 429 Too Many Requests."""

    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        operation: str | None = None,
        remote_id: str | None = None,
    ) -> None:
        super().__init__(message, operation=operation, remote_id=remote_id)
        self.retry_after = retry_after


class MalformedResponseError(GatewayError):
    """The API returned a body that does not match the expected schema."""


class ReconciliationError(JugglerError):
    """A sync pass aborted on its first failed operation.

    Attributes:
        cause: The error that stopped the pass, usually a GatewayError.
        changes: Change log of operations completed before the failure.
        tasks: Local snapshot reflecting every completed operation.
    """

    def __init__(
        self,
        cause: JugglerError,
        changes: "ChangeLog",
        tasks: list["LocalTask"],
    ) -> None:
        operation = getattr(cause, "operation", None) or "sync"
        super().__init__(f"Sync aborted during {operation}: {cause}")
        self.cause = cause
        self.changes = changes
        self.tasks = tasks

    @property
    def operation(self) -> str | None:
        return getattr(self.cause, "operation", None)

    @property
    def remote_id(self) -> str | None:
        return getattr(self.cause, "remote_id", None)
