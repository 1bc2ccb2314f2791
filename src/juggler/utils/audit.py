"""HTTP audit logging for API calls."""

import logging
import time
from typing import Any

import httpx

from juggler.utils.logging import redact_secret

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = {"authorization", "x-api-key", "x-access-token", "cookie", "set-cookie"}


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Redact sensitive headers like Authorization.

    Args:
        headers: Original headers dictionary.

    Returns:
        Dictionary with sensitive values redacted.
    """
    redacted = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            redacted[key] = redact_secret(value)
        else:
            redacted[key] = value
    return redacted


class AuditTransport(httpx.BaseTransport):
    """httpx transport that logs every request and its outcome.

    Bodies are never logged: token requests and responses carry secrets.
    """

    def __init__(self, transport: httpx.BaseTransport) -> None:
        """Initialize audit transport with underlying transport.

        Args:
            transport: The underlying httpx transport to wrap.
        """
        self.transport = transport

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        url = request.url.copy_with(query=None)
        logger.debug(
            f"HTTP {request.method} {url} headers={redact_headers(dict(request.headers))}"
        )
        started = time.monotonic()
        try:
            response = self.transport.handle_request(request)
        except httpx.TransportError as e:
            logger.debug(f"HTTP {request.method} {url} failed: {type(e).__name__}")
            raise
        elapsed_ms = (time.monotonic() - started) * 1000
        logger.debug(f"HTTP {request.method} {url} -> {response.status_code} ({elapsed_ms:.0f} ms)")
        return response

    def close(self) -> None:
        self.transport.close()


def create_audited_client(
    transport: httpx.BaseTransport | None = None,
    **kwargs: Any,
) -> httpx.Client:
    """Create an httpx client whose traffic is audit-logged.

    Args:
        transport: Transport to wrap. Defaults to a plain HTTP transport.
        **kwargs: Additional arguments passed to httpx.Client.

    Returns:
        httpx.Client configured with the audit transport.
    """
    kwargs.setdefault("timeout", 30.0)
    return httpx.Client(
        transport=AuditTransport(transport or httpx.HTTPTransport()),
        **kwargs,
    )
