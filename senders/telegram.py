"""
Telegram Sender - Replies via the Telegram Bot API.

Uses ``sendMessage``; replies longer than Telegram's 4096 character limit are
split into several messages.
"""

import logging

import httpx

from config import PlatformConfig
from senders import split_message

logger = logging.getLogger(__name__)

TELEGRAM_MESSAGE_LIMIT = 4096


class TelegramSender:
    """Sender for platform "telegram". ``to`` is the chat id."""

    name = "telegram"
    capabilities = ["text", "markdown"]

    def __init__(self, config: PlatformConfig, client: httpx.AsyncClient = None):
        self.token = config.get("bot_token")
        self.api_base = config.get("api_base", "https://api.telegram.org").rstrip("/")
        self._client = client

    async def send(self, to: str, content: str, **kwargs) -> dict:
        if not self.token:
            return {"error": "Telegram not configured. Set platforms.telegram.bot_token."}

        url = f"{self.api_base}/bot{self.token}/sendMessage"
        message_ids = []
        try:
            client = self._client or httpx.AsyncClient()
            try:
                for chunk in split_message(content, TELEGRAM_MESSAGE_LIMIT):
                    payload = {"chat_id": to, "text": chunk}
                    if kwargs.get("parse_mode"):
                        payload["parse_mode"] = kwargs["parse_mode"]
                    response = await client.post(url, json=payload, timeout=30.0)
                    data = response.json()
                    if response.status_code != 200 or not data.get("ok"):
                        error = data.get("description", response.text)
                        logger.error("Telegram send failed: %s - %s", response.status_code, error)
                        return {"error": f"Telegram API error: {error}"}
                    message_ids.append(data.get("result", {}).get("message_id"))
            finally:
                if self._client is None:
                    await client.aclose()
        except httpx.TimeoutException:
            return {"error": "Telegram API timeout"}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Telegram send error: %s", e)
            return {"error": str(e)}

        return {"sent": True, "channel": "telegram", "to": to, "message_ids": message_ids}
