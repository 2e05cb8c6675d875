"""Kick chat API client (secondary relay destination)."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from shared.logging.logger import get_logger

log = get_logger("kick.chat", runtime="relay")


class KickChatClient:
    """
    Minimal Kick public API client exposing send_message().

    - Never raises on send; failures are logged and reported as False
    - The access token is fixed per instance; a refreshed lease means a
      new client (see RelayApp._replace_kick_client)
    """

    BASE_URL = "https://api.kick.com"
    CHAT_PATH = "/public/v1/chat"

    def __init__(
        self,
        *,
        access_token: str,
        channel_id: int,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not access_token:
            raise RuntimeError("Kick access_token is required")
        if not channel_id:
            raise RuntimeError("Kick channel_id is required")

        self.access_token = access_token
        self.channel_id = channel_id

        self._client = client or httpx.AsyncClient(base_url=self.BASE_URL, timeout=10)
        self._client_owned = client is None

    async def send_message(self, content: str) -> bool:
        if not content.strip():
            return False

        payload: Dict[str, Any] = {
            "broadcaster_user_id": self.channel_id,
            "content": content,
            "reply_to_message_id": None,
            "type": "user",
        }

        try:
            resp = await self._client.post(
                self.CHAT_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            log.error(
                f"Kick chat send failed [HTTP {e.response.status_code}]: "
                f"{e.response.text[:300]}"
            )
            return False
        except (httpx.HTTPError, ValueError) as e:
            log.error(f"Kick chat send failed: {e}")
            return False

        message_id = _message_id(data)
        if not message_id:
            log.error(f"Kick API response missing message id: {data}")
            return False

        log.info(f"[kick:{self.channel_id}] Sent chat message ({len(content)} chars)")
        return True

    async def close(self) -> None:
        if self._client_owned:
            await self._client.aclose()


def _message_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    if data.get("id"):
        return str(data["id"])
    inner = data.get("data")
    if isinstance(inner, dict) and inner.get("message_id"):
        return str(inner["message_id"])
    return None


__all__ = ["KickChatClient"]
