from __future__ import annotations

from typing import Optional

import httpx

from services.auth.oauth import OAuthTokenProvider
from shared.config.relay import KickSettings


class KickTokenProvider(OAuthTokenProvider):
    """Kick user-token lease. Validation probes the authenticated public-key endpoint."""

    PLATFORM = "kick"
    TOKEN_URL = "https://id.kick.com/oauth/token"
    VALIDATE_URL = "https://api.kick.com/public/v1/public-key"

    @classmethod
    def from_settings(
        cls, settings: KickSettings, *, client: Optional[httpx.AsyncClient] = None
    ) -> "KickTokenProvider":
        return cls(
            access_token=settings.access_token,
            refresh_token=settings.refresh_token,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            client=client,
        )

    def _validate_url(self) -> str:
        return self.VALIDATE_URL
