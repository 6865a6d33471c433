"""OAuth2 transport for the Dropbox integration.

Builds authorization URLs and talks to the Dropbox token endpoint for
authorization-code and refresh-token grants, plus token revocation.
State bookkeeping and credential persistence live in ``vault``.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx

from dreamflow.logging import get_logger
from dreamflow.utils import truncate

log = get_logger("dreamflow.dropbox.auth")

# Dropbox OAuth2 endpoints
DROPBOX_AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
DROPBOX_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"  # nosec B105
DROPBOX_REVOKE_URL = "https://api.dropboxapi.com/2/auth/token/revoke"

# Read-only access to file metadata and content
DEFAULT_SCOPES = [
    "files.metadata.read",
    "files.content.read",
]


class OAuthError(Exception):
    """Raised when OAuth2 operations fail."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rejection(self) -> bool:
        """True when Dropbox answered and refused the grant (4xx)."""
        return self.status_code is not None and 400 <= self.status_code < 500


class DropboxAuth:
    """Handles Dropbox OAuth2 flows.

    Generates auth URLs, exchanges authorization codes for
    access/refresh tokens, refreshes expiring tokens, and revokes them.
    """

    def __init__(
        self,
        app_key: str,
        app_secret: str,
        redirect_uri: str,
        *,
        timeout: float = 30.0,
    ) -> None:
        """Initialize Dropbox OAuth handler.

        Args:
            app_key: Dropbox app key (OAuth2 client ID).
            app_secret: Dropbox app secret (OAuth2 client secret).
            redirect_uri: Callback URL for OAuth2 redirect.
            timeout: HTTP request timeout in seconds.
        """
        if not app_key:
            raise ValueError("app_key is required")
        if not app_secret:
            raise ValueError("app_secret is required")
        if not redirect_uri:
            raise ValueError("redirect_uri is required")

        self._app_key = app_key
        self._app_secret = app_secret
        self._redirect_uri = redirect_uri
        self._timeout = timeout
        log.info("dropbox_auth_initialized", redirect_uri=redirect_uri)

    def build_auth_url(self, state: str, *, scopes: list[str] | None = None) -> str:
        """Build the Dropbox authorization URL for a previously issued state.

        Args:
            state: Opaque single-use state value bound to the user.
            scopes: OAuth scopes to request. Defaults to DEFAULT_SCOPES.

        Returns:
            The URL the user should be redirected to.
        """
        scope_list = scopes or DEFAULT_SCOPES
        params = {
            "client_id": self._app_key,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(scope_list),
            "token_access_type": "offline",
            "state": state,
        }
        return f"{DROPBOX_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Args:
            code: The authorization code from the OAuth callback.

        Returns:
            Dict with access_token, refresh_token, expires_in, scope, account_id.

        Raises:
            OAuthError: If the token exchange fails.
        """
        data = {
            "code": code,
            "grant_type": "authorization_code",
            "client_id": self._app_key,
            "client_secret": self._app_secret,
            "redirect_uri": self._redirect_uri,
        }
        result = await self._token_request(data, operation="Token exchange")
        log.info("code_exchanged_for_tokens", account_id=result.get("account_id"))
        return result

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Refresh an expiring access token.

        Args:
            refresh_token: The long-lived refresh token.

        Returns:
            Dict with new access_token, expires_in and, occasionally, a new
            refresh_token.

        Raises:
            OAuthError: If the refresh fails.
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._app_key,
            "client_secret": self._app_secret,
        }
        result = await self._token_request(data, operation="Token refresh")
        log.info("access_token_refreshed")
        return result

    async def revoke_token(self, access_token: str) -> None:
        """Revoke an access token (and the refresh token issued with it).

        Raises:
            OAuthError: If Dropbox refuses the revocation or is unreachable.
        """
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(
                    DROPBOX_REVOKE_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise OAuthError(
                    f"Token revoke HTTP error {exc.response.status_code}: "
                    f"{truncate(exc.response.text)}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.RequestError as exc:
                raise OAuthError(f"Token revoke request failed: {exc}") from exc
        log.info("access_token_revoked")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _token_request(self, data: dict[str, str], *, operation: str) -> dict[str, Any]:
        """POST a form-encoded grant to the token endpoint."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(DROPBOX_TOKEN_URL, data=data)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
            except httpx.HTTPStatusError as exc:
                raise OAuthError(
                    f"{operation} HTTP error {exc.response.status_code}: "
                    f"{truncate(exc.response.text)}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.RequestError as exc:
                raise OAuthError(f"{operation} request failed: {exc}") from exc
            except ValueError as exc:
                raise OAuthError(
                    f"{operation} returned a non-JSON body: {truncate(response.text)}"
                ) from exc

        if not isinstance(result, dict):
            raise OAuthError(f"{operation} returned an unexpected body")
        if "error" in result:
            raise OAuthError(
                f"{operation} error: {result['error']}"
                f" - {result.get('error_description', '')}",
                status_code=400,
            )
        if not result.get("access_token"):
            raise OAuthError(f"{operation} returned no access_token", status_code=400)
        return result
