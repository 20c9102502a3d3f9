"""
OAuth token refresh for connection-backed actions.

Token bundles are stored as JSON in a record field:
``{"accessToken", "refreshToken", "expiresAt" (epoch ms), "scope", "tokenType", "updatedAt"}``.
"""

import base64
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog

from app.config import Settings, get_settings
from core.constants import NON_REFRESHABLE_PROVIDERS, OAuthProvider
from engine.stores import TokenRefreshResult

logger = structlog.get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FACEBOOK_TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"
X_TOKEN_URL = "https://api.x.com/2/oauth2/token"


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_token_expired(expires_at: Optional[float], buffer_minutes: int = 5) -> bool:
    """True if the token expires within ``buffer_minutes``. No expiry counts as expired."""
    if not expires_at:
        return True
    return (expires_at - _now_ms()) < buffer_minutes * 60 * 1000


def _bundle(
    access_token: str,
    refresh_token: str,
    expires_in: Optional[float],
    scope: str = "",
    token_type: str = "Bearer",
) -> Dict[str, Any]:
    return {
        "accessToken": access_token,
        "refreshToken": refresh_token,
        "expiresAt": _now_ms() + int(expires_in * 1000) if expires_in else None,
        "scope": scope or "",
        "tokenType": token_type or "Bearer",
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }


class OAuthTokenRefresher:
    """Implements the engine's TokenRefresher contract over the providers' token endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(30.0), transport=self._transport)

    async def ensure_fresh_token(self, token_data_json: str, provider: str) -> TokenRefreshResult:
        """
        Check a stored token bundle and refresh it when it is about to expire.

        Returns:
            TokenRefreshResult; ``new_token_data`` is the bundle to keep using
        """
        try:
            token_data = json.loads(token_data_json)
        except (TypeError, ValueError) as e:
            return TokenRefreshResult(success=False, error=f"Invalid token data: {e}")
        if not isinstance(token_data, dict) or not token_data.get("accessToken"):
            return TokenRefreshResult(success=False, error="No access token in token data")

        refresh_token = token_data.get("refreshToken")
        if not refresh_token:
            logger.warning("No refresh token available, cannot refresh", provider=provider)
            return TokenRefreshResult(success=True, new_token_data=token_data)

        if not is_token_expired(token_data.get("expiresAt"), self.settings.TOKEN_REFRESH_BUFFER_MINUTES):
            return TokenRefreshResult(success=True, new_token_data=token_data)

        if provider in NON_REFRESHABLE_PROVIDERS:
            logger.warning("Provider tokens do not support refresh, re-authorization needed", provider=provider)
            return TokenRefreshResult(success=True, new_token_data=token_data)

        refreshers = {
            OAuthProvider.GOOGLE.value: self.refresh_google,
            OAuthProvider.FACEBOOK.value: self.refresh_facebook,
            OAuthProvider.X.value: self.refresh_x,
        }
        refresh = refreshers.get(provider)
        if refresh is None:
            return TokenRefreshResult(success=False, error=f"Unsupported provider: {provider}")

        logger.info("Access token expired or expiring soon, refreshing", provider=provider)
        try:
            return await refresh(refresh_token)
        except httpx.HTTPError as e:
            logger.error("Token refresh request failed", provider=provider, error=str(e))
            return TokenRefreshResult(success=False, error=str(e) or type(e).__name__)

    @staticmethod
    def _failure(response: httpx.Response, provider: str) -> Optional[TokenRefreshResult]:
        if response.is_success:
            return None
        logger.error("Token refresh failed", provider=provider, status=response.status_code, body=response.text[:500])
        return TokenRefreshResult(
            success=False,
            error=f"Token refresh failed: {response.status_code} {response.text}",
        )

    async def refresh_google(self, refresh_token: str) -> TokenRefreshResult:
        async with self._client() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.settings.GOOGLE_CLIENT_ID,
                    "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        failure = self._failure(response, "google")
        if failure:
            return failure

        tokens = response.json()
        if not tokens.get("access_token"):
            return TokenRefreshResult(success=False, error="No access token in refresh response")

        logger.info("Google token refreshed", expires_in=tokens.get("expires_in"))
        return TokenRefreshResult(
            success=True,
            refreshed=True,
            # Google keeps the same refresh token
            new_token_data=_bundle(
                tokens["access_token"],
                refresh_token,
                tokens.get("expires_in"),
                tokens.get("scope", ""),
                tokens.get("token_type", "Bearer"),
            ),
        )

    async def refresh_facebook(self, refresh_token: str) -> TokenRefreshResult:
        # Facebook exchanges the current long-lived token for a new one
        async with self._client() as client:
            response = await client.get(
                FACEBOOK_TOKEN_URL,
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": self.settings.FACEBOOK_CLIENT_ID,
                    "client_secret": self.settings.FACEBOOK_CLIENT_SECRET,
                    "fb_exchange_token": refresh_token,
                },
            )
        failure = self._failure(response, "facebook")
        if failure:
            return failure

        tokens = response.json()
        if not tokens.get("access_token"):
            return TokenRefreshResult(success=False, error="No access token in refresh response")

        logger.info("Facebook token refreshed", expires_in=tokens.get("expires_in"))
        return TokenRefreshResult(
            success=True,
            refreshed=True,
            new_token_data=_bundle(tokens["access_token"], tokens["access_token"], tokens.get("expires_in")),
        )

    async def refresh_x(self, refresh_token: str) -> TokenRefreshResult:
        credentials = f"{self.settings.X_CLIENT_ID}:{self.settings.X_CLIENT_SECRET}"
        async with self._client() as client:
            response = await client.post(
                X_TOKEN_URL,
                headers={"Authorization": f"Basic {base64.b64encode(credentials.encode()).decode()}"},
                data={"refresh_token": refresh_token, "grant_type": "refresh_token"},
            )
        failure = self._failure(response, "x")
        if failure:
            return failure

        tokens = response.json()
        if not tokens.get("access_token"):
            return TokenRefreshResult(success=False, error="No access token in refresh response")

        logger.info("X token refreshed", expires_in=tokens.get("expires_in"))
        return TokenRefreshResult(
            success=True,
            refreshed=True,
            # X rotates refresh tokens
            new_token_data=_bundle(
                tokens["access_token"],
                tokens.get("refresh_token") or refresh_token,
                tokens.get("expires_in"),
                tokens.get("scope", ""),
            ),
        )


_token_refresher: Optional[OAuthTokenRefresher] = None


def get_token_refresher() -> OAuthTokenRefresher:
    """Get or create the singleton token refresher."""
    global _token_refresher
    if _token_refresher is None:
        _token_refresher = OAuthTokenRefresher()
    return _token_refresher
