from __future__ import annotations

from typing import Dict, Optional

import httpx

from services.auth.oauth import OAuthTokenProvider
from shared.config.relay import TwitchSettings


class TwitchTokenProvider(OAuthTokenProvider):
    """Twitch user-token lease (validate + refresh_token grant)."""

    PLATFORM = "twitch"
    TOKEN_URL = "https://id.twitch.tv/oauth2/token"
    VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"

    @classmethod
    def from_settings(
        cls, settings: TwitchSettings, *, client: Optional[httpx.AsyncClient] = None
    ) -> "TwitchTokenProvider":
        return cls(
            access_token=_strip_oauth_prefix(settings.oauth_token),
            refresh_token=settings.refresh_token,
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            client=client,
        )

    def _validate_url(self) -> str:
        return self.VALIDATE_URL

    def _validate_headers(self, token: str) -> Dict[str, str]:
        # Twitch's validate endpoint expects the OAuth scheme, not Bearer.
        return {"Authorization": f"OAuth {_strip_oauth_prefix(token)}"}


def _strip_oauth_prefix(token: str) -> str:
    token = (token or "").strip()
    if token.startswith("oauth:"):
        return token[len("oauth:"):]
    return token
