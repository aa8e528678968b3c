"""Google OAuth 2.0 helpers for the Calendar API.

Covers the full token lifecycle:

- ``build_auth_url``: consent URL requesting offline access
- ``exchange_authorization_code``: code -> access/refresh tokens
- ``revoke_token``: revoke a token with Google
- ``GoogleOAuthClient``: refresh-token exchange with access-token caching

Tokens are persisted in the ``StateStore`` under ``TOKEN_STATE_KEY``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from gcal_mcp.core.state import StateStore
from gcal_mcp.modules.calendar.errors import (
    CalendarAuthError,
    CalendarCredentialError,
    CalendarTokenRefreshError,
)
from gcal_mcp.modules.calendar.google_payloads import safe_google_error_details

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"

TOKEN_STATE_KEY = "calendar::oauth::tokens"
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


class StoredTokens(BaseModel):
    """Token set persisted after the authorization-code exchange."""

    access_token: str
    refresh_token: str | None = None
    expiry: datetime | None = None
    scope: str | None = None
    token_type: str = "Bearer"

    def status(self, now: datetime | None = None) -> dict[str, Any] | None:
        """Summarise expiry for ``check_auth_status``; ``None`` when expiry is unknown."""
        if self.expiry is None:
            return None
        current = now or datetime.now(UTC)
        expired = current >= self.expiry
        minutes_left = 0 if expired else int((self.expiry - current).total_seconds() // 60)
        return {
            "status": "expired" if expired else "valid",
            "expiry": self.expiry.isoformat(),
            "timeLeftMinutes": minutes_left,
        }


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
    return DEFAULT_TOKEN_LIFETIME_SECONDS


def build_auth_url(
    *,
    client_id: str,
    redirect_uri: str,
    scope: str = GOOGLE_CALENDAR_SCOPE,
    state: str | None = None,
) -> str:
    """Return the consent URL; ``prompt=consent`` forces Google to issue a refresh token."""
    if not client_id.strip():
        raise CalendarCredentialError("client_id must be configured to build an auth URL")
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "access_type": "offline",
        "prompt": "consent",
    }
    if state:
        params["state"] = state
    return f"{GOOGLE_OAUTH_AUTH_URL}?{urlencode(params)}"


async def exchange_authorization_code(
    http_client: httpx.AsyncClient,
    *,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    code: str,
) -> StoredTokens:
    """Exchange an authorization code for tokens."""
    if not code.strip():
        raise CalendarCredentialError("No authorization code provided")
    try:
        response = await http_client.post(
            GOOGLE_OAUTH_TOKEN_URL,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "code": code.strip(),
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        raise CalendarAuthError(f"Google OAuth code exchange request failed: {exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        message, _ = safe_google_error_details(response)
        raise CalendarAuthError(
            f"Google OAuth code exchange failed ({response.status_code}): {message}"
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise CalendarAuthError("Google OAuth token endpoint returned invalid JSON") from exc

    access_token = payload.get("access_token") if isinstance(payload, dict) else None
    if not isinstance(access_token, str) or not access_token.strip():
        raise CalendarAuthError("Failed to retrieve tokens")

    expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
    refresh_token = payload.get("refresh_token")
    scope = payload.get("scope")
    return StoredTokens(
        access_token=access_token.strip(),
        refresh_token=refresh_token if isinstance(refresh_token, str) else None,
        expiry=datetime.now(UTC) + timedelta(seconds=expires_in),
        scope=scope if isinstance(scope, str) else None,
    )


async def revoke_token(http_client: httpx.AsyncClient, token: str) -> bool:
    """Revoke *token* with Google. Returns ``False`` when Google rejects it."""
    try:
        response = await http_client.post(
            GOOGLE_OAUTH_REVOKE_URL,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    except httpx.HTTPError as exc:
        raise CalendarAuthError(f"Google OAuth revoke request failed: {exc}") from exc
    if response.status_code != 200:
        message, _ = safe_google_error_details(response)
        logger.warning("Token revocation rejected (%d): %s", response.status_code, message)
        return False
    return True


async def load_tokens(store: StateStore) -> StoredTokens | None:
    raw = await store.get(TOKEN_STATE_KEY)
    if not isinstance(raw, dict):
        return None
    try:
        return StoredTokens.model_validate(raw)
    except ValueError:
        logger.warning("Ignoring malformed stored OAuth tokens")
        return None


async def save_tokens(store: StateStore, tokens: StoredTokens) -> None:
    await store.set(TOKEN_STATE_KEY, tokens.model_dump(mode="json"))


async def delete_tokens(store: StateStore) -> None:
    await store.delete(TOKEN_STATE_KEY)


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message, _ = safe_google_error_details(response)
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh failed ({response.status_code}): {message}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)
        logger.debug("Refreshed Google access token (ttl=%ds)", refresh_ttl_seconds)
