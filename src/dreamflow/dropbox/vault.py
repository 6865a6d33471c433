"""Per-user Dropbox credential storage and lifecycle.

The vault is the only component that mutates stored credentials. It
hands out access tokens that stay valid for at least the refresh
window, refreshing them transparently, and runs the OAuth handshake
with single-use, time-bounded state values.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from dreamflow.constants import OAUTH_STATE_TTL_SECONDS, TOKEN_REFRESH_WINDOW_SECONDS
from dreamflow.dropbox.auth import DropboxAuth, OAuthError
from dreamflow.logging import get_logger
from dreamflow.utils import ensure_aware, utcnow

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("dreamflow.dropbox.vault")

REFRESH_WINDOW = timedelta(seconds=TOKEN_REFRESH_WINDOW_SECONDS)
STATE_TTL = timedelta(seconds=OAUTH_STATE_TTL_SECONDS)

# ------------------------------------------------------------------
# DDL
# ------------------------------------------------------------------

_CREATE_CREDENTIALS_TABLE = """
CREATE TABLE IF NOT EXISTS dropbox_credentials (
    user_id       TEXT PRIMARY KEY,
    access_token  TEXT NOT NULL,
    refresh_token TEXT,
    expires_at    TIMESTAMPTZ,
    scope         TEXT NOT NULL DEFAULT '',
    account_id    TEXT NOT NULL DEFAULT '',
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_dropbox_credentials_account
    ON dropbox_credentials (account_id);
"""

_CREATE_STATES_TABLE = """
CREATE TABLE IF NOT EXISTS oauth_states (
    state      TEXT PRIMARY KEY,
    user_id    TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_oauth_states_expires_at ON oauth_states (expires_at);
"""


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


class CredentialError(Exception):
    """Base class for credential failures scoped to a single user."""


class Unauthorized(CredentialError):
    """No Dropbox credential is stored for the user."""


class ReauthorizationRequired(CredentialError):
    """The credential cannot be refreshed; the user must reconnect Dropbox."""


class TokenRefreshFailed(CredentialError):
    """Dropbox was unreachable or errored during refresh; try again later."""


@dataclass
class Credential:
    """A user's delegated Dropbox credential."""

    user_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str = ""
    account_id: str = ""
    updated_at: datetime | None = None

    def needs_refresh(self, now: datetime | None = None) -> bool:
        """Check whether the token expires within the refresh window.

        A credential without an expiry never needs refreshing.
        """
        if self.expires_at is None:
            return False
        current = now or utcnow()
        return ensure_aware(self.expires_at) <= current + REFRESH_WINDOW

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the token is already past its expiry."""
        if self.expires_at is None:
            return False
        return ensure_aware(self.expires_at) <= (now or utcnow())

    @classmethod
    def from_row(cls, row: Any) -> Credential:
        return cls(
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            scope=row["scope"] or "",
            account_id=row["account_id"] or "",
            updated_at=row["updated_at"],
        )


def _expiry_from(tokens: dict[str, Any], now: datetime) -> datetime | None:
    """Compute an absolute expiry from a token response's ``expires_in``."""
    expires_in = tokens.get("expires_in")
    if not expires_in:
        return None
    return now + timedelta(seconds=int(expires_in))


class CredentialVault:
    """Stores, refreshes, and revokes per-user Dropbox credentials."""

    def __init__(self, auth: DropboxAuth) -> None:
        self._auth = auth
        self._pool: asyncpg.Pool | None = None

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_CREATE_CREDENTIALS_TABLE)
            await conn.execute(_CREATE_STATES_TABLE)
        log.info("credential_vault_initialized")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("CredentialVault is not initialized")
        return self._pool

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_credential(self, user_id: str) -> Credential | None:
        """Fetch the stored credential for a user."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM dropbox_credentials WHERE user_id = $1",
                user_id,
            )
        return Credential.from_row(row) if row else None

    async def get_valid_token(self, user_id: str) -> str:
        """Return an access token valid for at least the refresh window.

        Raises:
            Unauthorized: No credential is stored for the user.
            ReauthorizationRequired: A refresh is needed but impossible.
            TokenRefreshFailed: Dropbox could not be reached to refresh.
        """
        credential = await self.get_credential(user_id)
        if credential is None:
            raise Unauthorized(f"No Dropbox credential for user {user_id}")

        now = utcnow()
        if not credential.needs_refresh(now):
            return credential.access_token

        if not credential.refresh_token:
            log.warning("token_expired_without_refresh_token", user_id=user_id)
            raise ReauthorizationRequired(
                "Token expired and no refresh token available. User needs to reauthorize."
            )

        log.info("refreshing_dropbox_token", user_id=user_id)
        try:
            tokens = await self._auth.refresh_access_token(credential.refresh_token)
        except OAuthError as exc:
            if exc.is_rejection:
                log.warning("token_refresh_rejected", user_id=user_id, error=str(exc))
                raise ReauthorizationRequired(
                    "Failed to refresh token. User needs to reauthorize."
                ) from exc
            log.warning("token_refresh_unavailable", user_id=user_id, error=str(exc))
            raise TokenRefreshFailed(f"Token refresh failed: {exc}") from exc

        access_token = str(tokens["access_token"])
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE dropbox_credentials
                SET access_token = $2,
                    refresh_token = COALESCE($3, refresh_token),
                    expires_at = $4,
                    updated_at = NOW()
                WHERE user_id = $1
                """,
                user_id,
                access_token,
                tokens.get("refresh_token"),
                _expiry_from(tokens, now),
            )
        return access_token

    async def list_connected(
        self,
        *,
        account_ids: list[str] | None = None,
        limit: int = 50,
    ) -> list[Credential]:
        """List stored credentials, optionally only for given Dropbox accounts."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            if account_ids:
                rows = await conn.fetch(
                    """
                    SELECT * FROM dropbox_credentials
                    WHERE account_id = ANY($1::text[])
                    ORDER BY user_id
                    LIMIT $2
                    """,
                    account_ids,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM dropbox_credentials ORDER BY user_id LIMIT $1",
                    limit,
                )
        return [Credential.from_row(r) for r in rows]

    async def status(self, user_id: str) -> dict[str, Any]:
        """Describe a user's connection without exposing tokens."""
        credential = await self.get_credential(user_id)
        if credential is None:
            return {"connected": False, "message": "No Dropbox connection found"}
        return {
            "connected": True,
            "expired": credential.is_expired(),
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
            "scope": credential.scope,
            "account_id": credential.account_id,
            "last_updated": (
                credential.updated_at.isoformat() if credential.updated_at else None
            ),
        }

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def begin_authorization(self, user_id: str) -> tuple[str, str]:
        """Issue a single-use state for the user and build the auth URL.

        Returns:
            Tuple of (auth_url, state).
        """
        if not user_id:
            raise ValueError("user_id is required")

        state = secrets.token_urlsafe(32)
        now = utcnow()
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM oauth_states WHERE expires_at < NOW()")
            await conn.execute(
                """
                INSERT INTO oauth_states (state, user_id, created_at, expires_at)
                VALUES ($1, $2, $3, $4)
                """,
                state,
                user_id,
                now,
                now + STATE_TTL,
            )
        log.info("oauth_state_issued", user_id=user_id)
        return self._auth.build_auth_url(state), state

    async def complete_authorization(self, state: str, code: str) -> Credential:
        """Consume the state, exchange the code, and store the credential.

        The state row is deleted before the exchange so it can never be
        replayed, even if the exchange fails.

        Raises:
            OAuthError: Unknown or expired state, or a failed exchange.
        """
        if not state or not code:
            raise OAuthError("Missing authorization code or state")

        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM oauth_states WHERE state = $1 RETURNING user_id, expires_at",
                state,
            )
        if row is None:
            log.warning("oauth_state_unknown")
            raise OAuthError("Invalid state parameter")

        now = utcnow()
        user_id: str = row["user_id"]
        if ensure_aware(row["expires_at"]) <= now:
            log.warning("oauth_state_expired", user_id=user_id)
            raise OAuthError("State parameter expired")

        tokens = await self._auth.exchange_code(code)
        credential = Credential(
            user_id=user_id,
            access_token=str(tokens["access_token"]),
            refresh_token=tokens.get("refresh_token"),
            expires_at=_expiry_from(tokens, now),
            scope=str(tokens.get("scope", "")),
            account_id=str(tokens.get("account_id", "")),
            updated_at=now,
        )
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO dropbox_credentials
                    (user_id, access_token, refresh_token, expires_at,
                     scope, account_id, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    access_token = EXCLUDED.access_token,
                    refresh_token = COALESCE(EXCLUDED.refresh_token,
                                             dropbox_credentials.refresh_token),
                    expires_at = EXCLUDED.expires_at,
                    scope = EXCLUDED.scope,
                    account_id = EXCLUDED.account_id,
                    updated_at = NOW()
                """,
                credential.user_id,
                credential.access_token,
                credential.refresh_token,
                credential.expires_at,
                credential.scope,
                credential.account_id,
            )
        log.info("dropbox_connected", user_id=user_id, account_id=credential.account_id)
        return credential

    async def revoke(self, user_id: str) -> bool:
        """Revoke the user's token at Dropbox and delete the credential.

        The local credential is deleted even when the provider call fails.

        Returns:
            True if a credential was deleted.
        """
        try:
            token = await self.get_valid_token(user_id)
            await self._auth.revoke_token(token)
        except (CredentialError, OAuthError) as exc:
            log.warning("token_revoke_failed", user_id=user_id, error=str(exc))

        pool = self._require_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM dropbox_credentials WHERE user_id = $1",
                user_id,
            )
        deleted = bool(result == "DELETE 1")
        if deleted:
            log.info("dropbox_disconnected", user_id=user_id)
        return deleted
