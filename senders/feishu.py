"""
Feishu Sender - Replies via the Feishu (Lark) Open Platform messaging API.

Config (platforms.feishu):
    app_id: app credentials (required)
    app_secret: app credentials (required)
    api_base: defaults to https://open.feishu.cn/open-apis
              (use https://open.larksuite.com/open-apis for Lark)

Sending needs a tenant access token. It is fetched from
``/auth/v3/tenant_access_token/internal`` and reused until five minutes
before it expires.
"""

import asyncio
import json
import logging
import time

import httpx

from config import PlatformConfig
from senders import split_message

logger = logging.getLogger(__name__)

FEISHU_MESSAGE_LIMIT = 4000
TOKEN_REFRESH_MARGIN_SECONDS = 300


class FeishuAuthError(Exception):
    """The tenant access token could not be obtained."""


def receive_id_type(to: str) -> str:
    """Group chats are addressed by chat_id (``oc_``), people by open_id."""
    return "chat_id" if to.startswith("oc_") else "open_id"


class FeishuSender:
    """Sender for platform "feishu". ``to`` is an open_id or a chat_id."""

    name = "feishu"
    capabilities = ["text"]

    def __init__(self, config: PlatformConfig, client: httpx.AsyncClient = None):
        self.app_id = config.get("app_id")
        self.app_secret = config.get("app_secret")
        self.api_base = config.get("api_base", "https://open.feishu.cn/open-apis").rstrip("/")
        self._client = client
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def tenant_access_token(self, client: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._token and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
                return self._token

            response = await client.post(
                f"{self.api_base}/auth/v3/tenant_access_token/internal",
                json={"app_id": self.app_id, "app_secret": self.app_secret},
                timeout=30.0,
            )
            data = response.json()
            if response.status_code != 200 or data.get("code") != 0:
                raise FeishuAuthError(data.get("msg") or response.text)

            self._token = data["tenant_access_token"]
            self._token_expires_at = time.time() + int(data.get("expire", 7200))
            logger.debug("Feishu tenant token refreshed, valid for %ss", data.get("expire", 7200))
            return self._token

    async def send(self, to: str, content: str, **kwargs) -> dict:
        if not self.app_id or not self.app_secret:
            return {"error": "Feishu not configured. Set app_id and app_secret."}

        id_type = receive_id_type(to)
        url = f"{self.api_base}/im/v1/messages"
        message_ids = []
        try:
            client = self._client or httpx.AsyncClient()
            try:
                token = await self.tenant_access_token(client)
                for chunk in split_message(content, FEISHU_MESSAGE_LIMIT):
                    payload = {
                        "receive_id": to,
                        "msg_type": "text",
                        # Feishu wants the content object serialized as a string
                        "content": json.dumps({"text": chunk}, ensure_ascii=False),
                    }
                    response = await client.post(
                        url,
                        params={"receive_id_type": id_type},
                        headers={"Authorization": f"Bearer {token}"},
                        json=payload,
                        timeout=30.0,
                    )
                    data = response.json()
                    if response.status_code != 200 or data.get("code") != 0:
                        error = data.get("msg", response.text)
                        logger.error("Feishu send failed: %s - %s", response.status_code, error)
                        return {"error": f"Feishu API error: {error}"}
                    message_ids.append((data.get("data") or {}).get("message_id"))
            finally:
                if self._client is None:
                    await client.aclose()
        except FeishuAuthError as e:
            logger.error("Feishu authentication failed: %s", e)
            return {"error": f"Feishu authentication failed: {e}"}
        except httpx.TimeoutException:
            return {"error": "Feishu API timeout"}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Feishu send error: %s", e)
            return {"error": str(e)}

        return {"sent": True, "channel": "feishu", "to": to, "message_ids": message_ids}
