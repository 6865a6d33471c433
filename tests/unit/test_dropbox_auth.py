"""Tests for the Dropbox OAuth2 transport."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from dreamflow.dropbox.auth import (
    DEFAULT_SCOPES,
    DROPBOX_AUTH_URL,
    DROPBOX_REVOKE_URL,
    DROPBOX_TOKEN_URL,
    DropboxAuth,
    OAuthError,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def auth() -> DropboxAuth:
    """Create a DropboxAuth instance with test credentials."""
    return DropboxAuth(
        app_key="test-app-key",
        app_secret="test-app-secret",
        redirect_uri="http://localhost:8080/oauth/callback",
    )


@pytest.fixture
def mock_httpx_response():
    """Factory for creating mock httpx.Response objects."""

    def _create(
        status_code: int = 200,
        json_data: dict | None = None,
        text: str = "",
        raise_for_status_error: bool = False,
    ) -> MagicMock:
        response = MagicMock(spec=httpx.Response)
        response.status_code = status_code
        response.text = text
        if json_data is not None:
            response.json.return_value = json_data
        if raise_for_status_error:
            response.raise_for_status.side_effect = httpx.HTTPStatusError(
                message=f"HTTP {status_code}",
                request=MagicMock(spec=httpx.Request),
                response=response,
            )
        else:
            response.raise_for_status.return_value = None
        return response

    return _create


def _mock_client(response: MagicMock | None = None, error: Exception | None = None) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    if error is not None:
        mock_client.post.side_effect = error
    else:
        mock_client.post.return_value = response
    return mock_client


# ===========================================================================
# Constructor and URL building
# ===========================================================================


class TestDropboxAuthConstructor:
    """Tests for DropboxAuth.__init__."""

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"app_key": ""}, "app_key is required"),
            ({"app_secret": ""}, "app_secret is required"),
            ({"redirect_uri": ""}, "redirect_uri is required"),
        ],
    )
    def test_empty_arguments_raise(self, kwargs: dict, message: str) -> None:
        """Every constructor argument is mandatory."""
        args = {"app_key": "k", "app_secret": "s", "redirect_uri": "http://x/cb"}
        args.update(kwargs)
        with pytest.raises(ValueError, match=message):
            DropboxAuth(**args)


class TestBuildAuthUrl:
    """Tests for DropboxAuth.build_auth_url."""

    def test_url_contains_offline_access_and_state(self, auth: DropboxAuth) -> None:
        """The consent URL requests offline access and carries the state."""
        url = auth.build_auth_url("state-123")
        parsed = urlparse(url)
        params = parse_qs(parsed.query)

        assert url.startswith(DROPBOX_AUTH_URL)
        assert params["client_id"] == ["test-app-key"]
        assert params["response_type"] == ["code"]
        assert params["token_access_type"] == ["offline"]
        assert params["state"] == ["state-123"]
        assert params["scope"] == [" ".join(DEFAULT_SCOPES)]

    def test_custom_scopes(self, auth: DropboxAuth) -> None:
        """Custom scopes replace the defaults."""
        params = parse_qs(urlparse(auth.build_auth_url("s", scopes=["account_info.read"])).query)
        assert params["scope"] == ["account_info.read"]


# ===========================================================================
# Token grants
# ===========================================================================


class TestExchangeCode:
    """Tests for DropboxAuth.exchange_code."""

    async def test_successful_exchange(self, auth: DropboxAuth, mock_httpx_response) -> None:
        """A successful exchange returns the token payload."""
        tokens = {
            "access_token": "sl.abc",
            "refresh_token": "rt-1",
            "expires_in": 14400,
            "account_id": "dbid:1",
        }
        client = _mock_client(mock_httpx_response(json_data=tokens))

        with patch("dreamflow.dropbox.auth.httpx.AsyncClient", return_value=client):
            result = await auth.exchange_code("code-1")

        assert result == tokens
        url = client.post.call_args.args[0]
        data = client.post.call_args.kwargs["data"]
        assert url == DROPBOX_TOKEN_URL
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "code-1"

    async def test_http_error_is_rejection(self, auth: DropboxAuth, mock_httpx_response) -> None:
        """A 400 from the token endpoint raises a rejection OAuthError."""
        response = mock_httpx_response(
            status_code=400, text="invalid_grant", raise_for_status_error=True
        )
        with patch(
            "dreamflow.dropbox.auth.httpx.AsyncClient", return_value=_mock_client(response)
        ):
            with pytest.raises(OAuthError, match="HTTP error 400") as exc_info:
                await auth.exchange_code("bad")

        assert exc_info.value.is_rejection is True

    async def test_error_body_raises(self, auth: DropboxAuth, mock_httpx_response) -> None:
        """An error field in a 200 body is still a failure."""
        response = mock_httpx_response(
            json_data={"error": "invalid_grant", "error_description": "code expired"}
        )
        with patch(
            "dreamflow.dropbox.auth.httpx.AsyncClient", return_value=_mock_client(response)
        ):
            with pytest.raises(OAuthError, match="invalid_grant"):
                await auth.exchange_code("stale")

    async def test_missing_access_token_raises(
        self, auth: DropboxAuth, mock_httpx_response
    ) -> None:
        """A body without an access token is rejected."""
        response = mock_httpx_response(json_data={"token_type": "bearer"})
        with patch(
            "dreamflow.dropbox.auth.httpx.AsyncClient", return_value=_mock_client(response)
        ):
            with pytest.raises(OAuthError, match="no access_token"):
                await auth.exchange_code("code")


class TestRefreshAccessToken:
    """Tests for DropboxAuth.refresh_access_token."""

    async def test_refresh_sends_refresh_grant(
        self, auth: DropboxAuth, mock_httpx_response
    ) -> None:
        """The refresh grant is posted with the stored refresh token."""
        client = _mock_client(
            mock_httpx_response(json_data={"access_token": "new", "expires_in": 14400})
        )
        with patch("dreamflow.dropbox.auth.httpx.AsyncClient", return_value=client):
            result = await auth.refresh_access_token("rt-1")

        assert result["access_token"] == "new"
        data = client.post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "rt-1"

    async def test_network_error_is_transient(self, auth: DropboxAuth) -> None:
        """A transport failure raises OAuthError without a status code."""
        client = _mock_client(error=httpx.ConnectError("unreachable"))
        with patch("dreamflow.dropbox.auth.httpx.AsyncClient", return_value=client):
            with pytest.raises(OAuthError, match="request failed") as exc_info:
                await auth.refresh_access_token("rt-1")

        assert exc_info.value.status_code is None
        assert exc_info.value.is_rejection is False

    async def test_non_json_body_is_transient(self, auth: DropboxAuth, mock_httpx_response) -> None:
        """A 200 gateway page is wrapped in OAuthError, not a decode error."""
        response = mock_httpx_response(text="<html>gateway</html>")
        response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        client = _mock_client(response)
        with patch("dreamflow.dropbox.auth.httpx.AsyncClient", return_value=client):
            with pytest.raises(OAuthError, match="non-JSON body") as exc_info:
                await auth.refresh_access_token("rt-1")

        assert exc_info.value.is_rejection is False

    async def test_non_object_body_raises(self, auth: DropboxAuth, mock_httpx_response) -> None:
        response = mock_httpx_response()
        response.json.return_value = ["not", "an", "object"]
        client = _mock_client(response)
        with patch("dreamflow.dropbox.auth.httpx.AsyncClient", return_value=client):
            with pytest.raises(OAuthError, match="unexpected body"):
                await auth.refresh_access_token("rt-1")


class TestRevokeToken:
    """Tests for DropboxAuth.revoke_token."""

    async def test_revoke_posts_bearer(self, auth: DropboxAuth, mock_httpx_response) -> None:
        """Revocation authenticates with the token being revoked."""
        client = _mock_client(mock_httpx_response())
        with patch("dreamflow.dropbox.auth.httpx.AsyncClient", return_value=client):
            await auth.revoke_token("sl.abc")

        assert client.post.call_args.args[0] == DROPBOX_REVOKE_URL
        assert client.post.call_args.kwargs["headers"] == {"Authorization": "Bearer sl.abc"}

    async def test_revoke_failure_raises(self, auth: DropboxAuth, mock_httpx_response) -> None:
        """A refused revocation raises OAuthError."""
        response = mock_httpx_response(status_code=401, raise_for_status_error=True)
        with patch(
            "dreamflow.dropbox.auth.httpx.AsyncClient", return_value=_mock_client(response)
        ):
            with pytest.raises(OAuthError, match="Token revoke HTTP error 401"):
                await auth.revoke_token("sl.abc")
