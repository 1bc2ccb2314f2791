"""Tests for OAuth token management and the browser login flow."""

import base64
import hashlib
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

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
from juggler.google import OAuthConfig, TokenManager
from juggler.google.oauth import build_authorization_url, generate_pkce_pair
from juggler.utils import CredentialStore, FixedClock

from conftest import FakeGoogleTasks


def _token_manager_answering(
    response: httpx.Response,
    credential_store: CredentialStore,
    clock: FixedClock,
) -> TokenManager:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: response))
    return TokenManager(OAuthConfig("client-id"), credential_store, client, clock=clock)


class TestPkce:
    """Test PKCE helpers."""

    def test_challenge_is_s256_of_verifier(self) -> None:
        """Test the challenge derivation."""
        verifier, challenge = generate_pkce_pair()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")

        assert challenge == expected
        assert 43 <= len(verifier) <= 128
        assert "=" not in verifier

    def test_pairs_are_random(self) -> None:
        """Test that two flows never share a verifier."""
        assert generate_pkce_pair()[0] != generate_pkce_pair()[0]

    def test_authorization_url(self, oauth_config: OAuthConfig) -> None:
        """Test the consent page parameters."""
        url = build_authorization_url(oauth_config, "http://localhost:8080/callback", "st4te", "ch4llenge")
        params = parse_qs(urlparse(url).query)

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert params["client_id"] == [oauth_config.client_id]
        assert params["redirect_uri"] == ["http://localhost:8080/callback"]
        assert params["scope"] == ["https://www.googleapis.com/auth/tasks"]
        assert params["state"] == ["st4te"]
        assert params["code_challenge"] == ["ch4llenge"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["access_type"] == ["offline"]


class TestTokenManager:
    """Test access token caching and refresh."""

    def test_refresh_only_when_close_to_expiry(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        clock: FixedClock,
    ) -> None:
        """Test that a token is reused until five minutes before it expires."""
        assert token_manager.get_access_token() == fake_google.access_token
        assert len(fake_google.token_requests) == 1

        clock.advance(timedelta(minutes=54, seconds=59))
        token_manager.get_access_token()
        assert len(fake_google.token_requests) == 1

        clock.advance(timedelta(seconds=1))
        token_manager.get_access_token()
        assert len(fake_google.token_requests) == 2

    def test_concurrent_callers_share_one_refresh(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
    ) -> None:
        """Test that parallel requests for a token refresh once."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            tokens = list(pool.map(lambda _: token_manager.get_access_token(), range(16)))

        assert set(tokens) == {fake_google.access_token}
        assert len(fake_google.token_requests) == 1

    def test_refresh_request_fields(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        oauth_config: OAuthConfig,
    ) -> None:
        """Test the refresh grant body."""
        token_manager.get_access_token()

        assert fake_google.token_requests[0] == {
            "grant_type": "refresh_token",
            "refresh_token": fake_google.refresh_token,
            "client_id": oauth_config.client_id,
            "client_secret": oauth_config.client_secret,
        }

    def test_expiry_from_response(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        clock: FixedClock,
    ) -> None:
        """Test that expires_in is measured from the injected clock."""
        fake_google.expires_in = 600
        token_manager.get_access_token()

        assert token_manager.cached_token.expires_at == clock.now() + timedelta(seconds=600)

    def test_rotated_refresh_token_is_stored(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        credential_store: CredentialStore,
    ) -> None:
        """Test that a new refresh token from Google replaces the stored one."""
        fake_google.rotated_refresh_token = "1//rotated"

        token_manager.get_access_token()

        assert credential_store.get() == "1//rotated"

    def test_no_credential(self, token_manager: TokenManager, credential_store: CredentialStore) -> None:
        """Test that a missing refresh token is reported without a network call."""
        credential_store.delete()

        with pytest.raises(NoCredentialError) as exc_info:
            token_manager.get_access_token()

        assert "juggler login" in exc_info.value.hint

    def test_invalid_grant(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        credential_store: CredentialStore,
    ) -> None:
        """Test that a revoked refresh token raises InvalidGrantError."""
        fake_google.refresh_token = "1//something-else"

        with pytest.raises(InvalidGrantError):
            token_manager.get_access_token()

        assert credential_store.get() is not None
        assert token_manager.cached_token is None

    def test_force_refresh(self, token_manager: TokenManager, fake_google: FakeGoogleTasks) -> None:
        """Test that refresh_access_token ignores the cache."""
        token_manager.get_access_token()
        token_manager.refresh_access_token()

        assert len(fake_google.token_requests) == 2

    def test_server_error(self, credential_store: CredentialStore, clock: FixedClock) -> None:
        """Test that a token endpoint 5xx is an HTTP failure, not an auth failure."""
        manager = _token_manager_answering(httpx.Response(503), credential_store, clock)

        with pytest.raises(HttpFailureError) as exc_info:
            manager.get_access_token()

        assert exc_info.value.status == 503
        assert exc_info.value.retryable

    def test_unauthorized_client(self, credential_store: CredentialStore, clock: FixedClock) -> None:
        """Test that other OAuth errors raise AuthError."""
        response = httpx.Response(400, json={"error": "unauthorized_client"})
        manager = _token_manager_answering(response, credential_store, clock)

        with pytest.raises(AuthError, match="unauthorized_client"):
            manager.get_access_token()

    def test_malformed_token_response(self, credential_store: CredentialStore, clock: FixedClock) -> None:
        """Test that a success without access_token is malformed."""
        manager = _token_manager_answering(httpx.Response(200, json={"expires_in": 3600}), credential_store, clock)

        with pytest.raises(MalformedResponseError):
            manager.get_access_token()

    def test_revoke(self, token_manager: TokenManager, credential_store: CredentialStore) -> None:
        """Test that revoking forgets both tokens and can be repeated."""
        token_manager.get_access_token()

        token_manager.revoke()
        token_manager.revoke()

        assert credential_store.get() is None
        assert token_manager.cached_token is None
        with pytest.raises(NoCredentialError):
            token_manager.get_access_token()


def _browser_sending(
    queries: Callable[[str], list[dict[str, str]]],
    seen_urls: list[str],
    threads: list[threading.Thread],
) -> Callable[[str], None]:
    """Stand in for the browser: hit the redirect URI with the given queries, in order."""

    def open_browser(url: str) -> None:
        seen_urls.append(url)
        params = parse_qs(urlparse(url).query)
        redirect_uri = params["redirect_uri"][0].replace("localhost", "127.0.0.1")
        state = params["state"][0]

        def visit() -> None:
            with httpx.Client(trust_env=False, timeout=5.0) as client:
                for query in queries(state):
                    client.get(f"{redirect_uri}?{urlencode(query)}")

        thread = threading.Thread(target=visit, daemon=True)
        threads.append(thread)
        thread.start()

    return open_browser


class TestInteractiveLogin:
    """Test the loopback authorization flow."""

    @pytest.fixture(autouse=True)
    def _logged_out(self, credential_store: CredentialStore) -> None:
        credential_store.delete()

    def test_success_stores_refresh_token(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        credential_store: CredentialStore,
    ) -> None:
        """Test the full flow, with a forged callback arriving first."""
        seen_urls: list[str] = []
        threads: list[threading.Thread] = []
        browser = _browser_sending(
            lambda state: [
                {"state": "forged", "code": "attacker-code"},
                {"state": state, "code": "auth-code-123"},
            ],
            seen_urls,
            threads,
        )

        token_manager.authorize_interactive(port=0, timeout=10, open_browser=browser)
        for thread in threads:
            thread.join(timeout=5)

        assert credential_store.get() == fake_google.issued_refresh_token
        assert token_manager.cached_token is not None

        exchange = fake_google.token_requests[-1]
        params = parse_qs(urlparse(seen_urls[0]).query)
        digest = hashlib.sha256(exchange["code_verifier"].encode()).digest()
        assert exchange["grant_type"] == "authorization_code"
        assert exchange["code"] == "auth-code-123"
        assert exchange["redirect_uri"] == params["redirect_uri"][0]
        assert base64.urlsafe_b64encode(digest).decode().rstrip("=") == params["code_challenge"][0]

    def test_state_mismatch_stores_nothing(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        credential_store: CredentialStore,
    ) -> None:
        """Test that only forged callbacks end in a state mismatch."""
        threads: list[threading.Thread] = []
        browser = _browser_sending(
            lambda state: [{"state": "forged", "code": "auth-code-123"}],
            [],
            threads,
        )

        with pytest.raises(CallbackStateMismatchError):
            token_manager.authorize_interactive(port=0, timeout=1.0, open_browser=browser)
        for thread in threads:
            thread.join(timeout=5)

        assert credential_store.get() is None
        assert fake_google.token_requests == []

    def test_missing_state_is_rejected(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
    ) -> None:
        """Test that a callback without state is treated as forged."""
        threads: list[threading.Thread] = []
        browser = _browser_sending(lambda state: [{"code": "auth-code-123"}], [], threads)

        with pytest.raises(CallbackStateMismatchError):
            token_manager.authorize_interactive(port=0, timeout=1.0, open_browser=browser)
        for thread in threads:
            thread.join(timeout=5)

        assert fake_google.token_requests == []

    def test_user_denied(
        self,
        token_manager: TokenManager,
        fake_google: FakeGoogleTasks,
        credential_store: CredentialStore,
    ) -> None:
        """Test that refusing consent raises UserDeniedError."""
        threads: list[threading.Thread] = []
        browser = _browser_sending(lambda state: [{"state": state, "error": "access_denied"}], [], threads)

        with pytest.raises(UserDeniedError):
            token_manager.authorize_interactive(port=0, timeout=10, open_browser=browser)
        for thread in threads:
            thread.join(timeout=5)

        assert credential_store.get() is None
        assert fake_google.token_requests == []

    def test_timeout(self, token_manager: TokenManager, credential_store: CredentialStore) -> None:
        """Test that no callback at all ends in a timeout."""
        with pytest.raises(CallbackTimeoutError):
            token_manager.authorize_interactive(port=0, timeout=0.2, open_browser=lambda url: None)

        assert credential_store.get() is None

    def test_browser_failure_keeps_listening(self, token_manager: TokenManager) -> None:
        """Test that a browser that cannot open does not abort the flow."""

        def broken_browser(url: str) -> None:
            raise OSError("no display")

        with pytest.raises(CallbackTimeoutError):
            token_manager.authorize_interactive(port=0, timeout=0.2, open_browser=broken_browser)
