"""OAuth token lease handling shared by the Twitch and Kick providers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from shared.logging.logger import get_logger

log = get_logger("auth.oauth")


class AuthFlowUnavailable(RuntimeError):
    """Raised when a fresh token would require interactive browser auth."""


@dataclass
class TokenLease:
    """In-memory credential lease. Never written to disk."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def expired(self, *, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


@runtime_checkable
class TokenProvider(Protocol):
    async def get_valid_token(self) -> Optional[str]: ...

    async def validate_token(self, token: str) -> bool: ...

    async def refresh(self) -> Optional[str]: ...

    async def perform_interactive_auth_flow(self) -> str: ...


class OAuthTokenProvider:
    """
    Base refresh-token provider.

    Subclasses set the endpoints and the validation request shape. The
    lease lives only in memory; a restart starts from the env-provided
    access token again.
    """

    PLATFORM = "oauth"
    TOKEN_URL = ""

    def __init__(
        self,
        *,
        access_token: str = "",
        refresh_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.lease: Optional[TokenLease] = (
            TokenLease(access_token=access_token, refresh_token=refresh_token or None)
            if access_token
            else None
        )
        self._refresh_token = refresh_token or None
        self._client = client or httpx.AsyncClient(timeout=10)
        self._client_owned = client is None

    # ------------------------------------------------------------------ #

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.client_secret and self._refresh_token)

    async def get_valid_token(self) -> Optional[str]:
        if self.lease and not self.lease.expired():
            return self.lease.access_token

        if self.lease:
            log.info(f"[{self.PLATFORM}] Token lease expired; attempting refresh")

        return await self.refresh()

    async def refresh(self) -> Optional[str]:
        if not self.can_refresh:
            log.warning(
                f"[{self.PLATFORM}] No refresh token available; re-authorization required"
            )
            return None

        try:
            resp = await self._client.post(
                self.TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
            resp.raise_for_status()
            lease = self._lease_from_payload(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"[{self.PLATFORM}] Token refresh failed: {e}")
            return None

        self.lease = lease
        if self.lease.refresh_token:
            self._refresh_token = self.lease.refresh_token

        log.info(f"[{self.PLATFORM}] Token lease refreshed")
        return self.lease.access_token

    async def validate_token(self, token: str) -> bool:
        if not token:
            return False
        try:
            resp = await self._client.get(
                self._validate_url(), headers=self._validate_headers(token)
            )
        except httpx.HTTPError as e:
            log.warning(f"[{self.PLATFORM}] Token validation request failed: {e}")
            return False
        return resp.status_code == 200

    async def perform_interactive_auth_flow(self) -> str:
        raise AuthFlowUnavailable(
            f"{self.PLATFORM} interactive authorization is not supported by the relay; "
            "provide an access token or refresh credentials"
        )

    async def close(self) -> None:
        if self._client_owned:
            await self._client.aclose()

    # ------------------------------------------------------------------ #

    def _validate_url(self) -> str:
        raise NotImplementedError

    def _validate_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    @staticmethod
    def _lease_from_payload(payload: Dict[str, Any]) -> TokenLease:
        access_token = payload.get("access_token")
        if not access_token:
            raise ValueError("token response missing access_token")

        expires_in = payload.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        return TokenLease(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )
