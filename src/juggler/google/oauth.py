"""OAuth 2.0 (authorization code + PKCE) for the Google Tasks API."""

import base64
import hashlib
import logging
import secrets
import threading
import time
import webbrowser
from datetime import datetime, timedelta
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import ValidationError

from juggler.config import (
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_TOKEN_EXPIRY_SECS,
    GOOGLE_OAUTH_AUTHORIZE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    GOOGLE_TASKS_SCOPE,
    TOKEN_REFRESH_BUFFER,
)
from juggler.errors import (
    AuthError,
    CallbackStateMismatchError,
    CallbackTimeoutError,
    HttpFailureError,
    InvalidGrantError,
    MalformedResponseError,
    NoCredentialError,
    UserDeniedError,
)
from juggler.google.models import TokenResponse
from juggler.utils.clock import Clock, SystemClock
from juggler.utils.storage import CredentialStore

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"


class OAuthConfig:
    """Configuration for the Google OAuth client."""

    def __init__(
        self,
        client_id: str,
        client_secret: str | None = None,
        authorize_url: str = GOOGLE_OAUTH_AUTHORIZE_URL,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
        scope: str = GOOGLE_TASKS_SCOPE,
    ) -> None:
        """Initialize OAuth configuration.

        Args:
            client_id: OAuth client ID.
            client_secret: OAuth client secret, if the client has one.
            authorize_url: Consent page URL.
            token_url: Token endpoint URL.
            scope: Requested scope.
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.scope = scope


class AccessToken:
    """Short-lived bearer token and the instant it expires."""

    def __init__(self, value: str, expires_at: datetime) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_fresh(self, now: datetime, buffer: timedelta) -> bool:
        """Check whether the token can still be used at `now`."""
        return now < self.expires_at - buffer

    def __repr__(self) -> str:
        return f"AccessToken(expires_at={self.expires_at.isoformat()})"


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code verifier and its S256 challenge.

    Returns:
        (verifier, challenge) tuple.
    """
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(48)).decode("ascii").rstrip("=")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


def build_authorization_url(
    config: OAuthConfig,
    redirect_uri: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build the consent page URL.

    Args:
        config: OAuth configuration.
        redirect_uri: Local callback URI.
        state: Anti-forgery state value.
        code_challenge: PKCE S256 challenge.

    Returns:
        Authorization URL.
    """
    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": redirect_uri,
        "scope": config.scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        # Offline access with forced consent so Google always returns a refresh token.
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{config.authorize_url}?{urlencode(params)}"


class CallbackServer(HTTPServer):
    """Loopback server that waits for one authorization redirect.

    The outcome is kept on the server instance so concurrent flows never share state.
    """

    def __init__(self, port: int, expected_state: str) -> None:
        super().__init__(("127.0.0.1", port), AuthorizationCallbackHandler)
        self.expected_state = expected_state
        self.authorization_code: str | None = None
        self.error: str | None = None
        self.error_description: str | None = None
        self.rejected_callbacks = 0

    @property
    def port(self) -> int:
        return self.server_address[1]

    @property
    def finished(self) -> bool:
        return self.authorization_code is not None or self.error is not None


class AuthorizationCallbackHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the OAuth redirect."""

    server: CallbackServer
    timeout = 10

    def do_GET(self) -> None:
        """Handle GET request from OAuth redirect."""
        parsed_path = urlparse(self.path)
        if parsed_path.path != CALLBACK_PATH:
            self._respond(404, "Not Found", "Nothing to see here.")
            return

        if self.server.finished:
            self._respond(409, "Already Completed", "This login has already been handled.")
            return

        query_params = parse_qs(parsed_path.query)
        state = query_params.get("state", [""])[0]
        if not state or not secrets.compare_digest(state, self.server.expected_state):
            # Keep listening: a forged callback must not abort a real login.
            self.server.rejected_callbacks += 1
            logger.warning("Rejected OAuth callback with invalid state parameter")
            self._respond(400, "Authentication Failed", "Invalid OAuth state parameter.")
            return

        if "error" in query_params:
            self.server.error = query_params["error"][0]
            self.server.error_description = query_params.get("error_description", [None])[0]
            self._respond(
                400,
                "Authentication Failed",
                "The authorization was not granted. You can close this window.",
            )
            return

        if "code" in query_params:
            self.server.authorization_code = query_params["code"][0]
            self._respond(
                200,
                "Authentication Successful",
                "You have authorized juggler for Google Tasks. "
                "You can close this window and return to your terminal.",
            )
            return

        self._respond(400, "Authentication Failed", "Missing authorization code.")

    def _respond(self, status: int, heading: str, text: str) -> None:
        self.send_response(status)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        self.wfile.write(
            f"<html><body><h1>{heading}</h1><p>{text}</p></body></html>".encode("utf-8")
        )

    def log_message(self, format: str, *args: Any) -> None:
        """Suppress request logging; the query string carries the authorization code."""
        pass


class TokenManager:
    """Owns the refresh credential and the access token cache for one run."""

    def __init__(
        self,
        config: OAuthConfig,
        credential_store: CredentialStore,
        http_client: httpx.Client,
        clock: Clock | None = None,
        refresh_buffer: timedelta = TOKEN_REFRESH_BUFFER,
    ) -> None:
        """Initialize the token manager.

        Args:
            config: OAuth configuration.
            credential_store: Where the refresh token is persisted.
            http_client: Client used for token endpoint calls.
            clock: Time source for expiry checks.
            refresh_buffer: Margin before expiry at which a token is refreshed.
        """
        self.config = config
        self.credential_store = credential_store
        self.http_client = http_client
        self.clock = clock or SystemClock()
        self.refresh_buffer = refresh_buffer
        self._token: AccessToken | None = None
        self._lock = threading.Lock()

    @property
    def cached_token(self) -> AccessToken | None:
        return self._token

    def get_access_token(self) -> str:
        """Return a usable access token, refreshing it when close to expiry.

        Returns:
            Bearer token value.

        Raises:
            NoCredentialError: If no refresh token is stored.
            InvalidGrantError: If Google rejects the refresh token.
        """
        with self._lock:
            if self._token is not None and self._token.is_fresh(self.clock.now(), self.refresh_buffer):
                return self._token.value
            self._token = self._refresh()
            return self._token.value

    def refresh_access_token(self) -> AccessToken:
        """Force a refresh regardless of the cached token."""
        with self._lock:
            self._token = self._refresh()
            return self._token

    def _refresh(self) -> AccessToken:
        refresh_token = self.credential_store.get()
        if not refresh_token:
            raise NoCredentialError()

        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret:
            payload["client_secret"] = self.config.client_secret

        logger.info("Refreshing Google Tasks access token")
        data = self._post_token(payload, operation="refresh")

        if data.refresh_token and data.refresh_token != refresh_token:
            logger.info("Google rotated the refresh token, storing the new one")
            self.credential_store.set(data.refresh_token)

        token = self._to_access_token(data)
        logger.info(f"Access token refreshed, valid until {token.expires_at.isoformat()}")
        return token

    def authorize_interactive(
        self,
        port: int,
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        """Run the browser login flow and store the resulting refresh token.

        Nothing is stored unless the whole flow succeeds.

        Args:
            port: Local port for the callback listener (0 picks a free port).
            timeout: Seconds to wait for the redirect.
            open_browser: Callable that shows the consent page to the user.

        Raises:
            UserDeniedError: If consent was refused.
            CallbackTimeoutError: If no redirect arrived in time.
            CallbackStateMismatchError: If only forged callbacks arrived.
            AuthError: If the code exchange yields no refresh token.
        """
        verifier, challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)

        server = CallbackServer(port, expected_state=state)
        try:
            redirect_uri = f"http://localhost:{server.port}{CALLBACK_PATH}"
            auth_url = build_authorization_url(self.config, redirect_uri, state, challenge)

            logger.info(f"Listening for the OAuth callback on port {server.port}")
            logger.info(f"Opening browser for authorization: {auth_url}")
            try:
                open_browser(auth_url)
            except Exception as e:
                logger.error(f"Failed to open browser: {e}. Please visit the URL above manually.")

            code = self._wait_for_callback(server, timeout)
        finally:
            server.server_close()

        logger.info("Received authorization code, exchanging for tokens")
        data = self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": verifier,
                "client_id": self.config.client_id,
                "redirect_uri": redirect_uri,
                **({"client_secret": self.config.client_secret} if self.config.client_secret else {}),
            },
            operation="exchange_code",
        )

        if not data.refresh_token:
            raise AuthError(
                "No refresh token in response. Revoke juggler's access at "
                "https://myaccount.google.com/permissions and log in again."
            )

        self.credential_store.set(data.refresh_token)
        with self._lock:
            self._token = self._to_access_token(data)
        logger.info("Stored Google Tasks refresh token")

    def _wait_for_callback(self, server: CallbackServer, timeout: float) -> str:
        deadline = time.monotonic() + timeout
        while not server.finished:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            server.timeout = remaining
            server.handle_request()

        if server.error:
            if server.error == "access_denied":
                raise UserDeniedError("Authorization was denied in the browser")
            raise AuthError(
                f"Authorization failed: {server.error}: {server.error_description or 'Unknown error'}"
            )

        if server.authorization_code is None:
            if server.rejected_callbacks:
                raise CallbackStateMismatchError(
                    f"Rejected {server.rejected_callbacks} callback(s) with an invalid state parameter"
                )
            raise CallbackTimeoutError(f"No authorization callback within {timeout:.0f} seconds")

        return server.authorization_code

    def revoke(self) -> None:
        """Forget the stored refresh token. Succeeds if none was stored."""
        with self._lock:
            self._token = None
        self.credential_store.delete()
        logger.info("Removed stored Google Tasks refresh token")

    def _post_token(self, payload: dict[str, str], operation: str) -> TokenResponse:
        try:
            response = self.http_client.post(self.config.token_url, data=payload)
        except httpx.TransportError as e:
            raise HttpFailureError(None, f"Token endpoint unreachable: {e}", operation=operation) from e

        if response.is_success:
            try:
                return TokenResponse.model_validate(response.json())
            except (ValueError, ValidationError) as e:
                raise MalformedResponseError(
                    f"Unexpected token endpoint response: {e}", operation=operation
                ) from e

        error, description = _oauth_error(response)
        if error == "invalid_grant" or response.status_code == 401:
            raise InvalidGrantError(
                f"Google rejected the credential ({error or response.status_code}): "
                f"{description or 'token revoked or expired'}"
            )
        if response.status_code >= 500:
            raise HttpFailureError(
                response.status_code,
                f"Token endpoint failed with status {response.status_code}",
                operation=operation,
            )
        raise AuthError(
            f"OAuth token request failed with status {response.status_code}: "
            f"{error or 'unknown error'} {description or ''}".rstrip()
        )

    def _to_access_token(self, data: TokenResponse) -> AccessToken:
        expires_in = data.expires_in or DEFAULT_TOKEN_EXPIRY_SECS
        return AccessToken(data.access_token, self.clock.now() + timedelta(seconds=expires_in))


def _oauth_error(response: httpx.Response) -> tuple[str | None, str | None]:
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("status"), error.get("message")
    return error, body.get("error_description")
