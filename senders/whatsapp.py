"""
WhatsApp Sender - Replies via the WhatsApp Cloud (Graph) API.

Config (platforms.whatsapp):
    access_token: Graph API token (required)
    phone_number_id: sending phone number id (required)
    api_base: defaults to https://graph.facebook.com/v18.0
"""

import logging

import httpx

from config import PlatformConfig
from senders import split_message

logger = logging.getLogger(__name__)

WHATSAPP_MESSAGE_LIMIT = 4096


class WhatsAppSender:
    """Sender for platform "whatsapp". ``to`` is the recipient's wa_id / phone number."""

    name = "whatsapp"
    capabilities = ["text"]

    def __init__(self, config: PlatformConfig, client: httpx.AsyncClient = None):
        self.access_token = config.get("access_token")
        self.phone_number_id = config.get("phone_number_id")
        self.api_base = config.get("api_base", "https://graph.facebook.com/v18.0").rstrip("/")
        self._client = client

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def send(self, to: str, content: str, **kwargs) -> dict:
        if not self.access_token or not self.phone_number_id:
            return {"error": "WhatsApp not configured. Set access_token and phone_number_id."}

        to_number = to.lstrip("+").replace(" ", "").replace("-", "")
        url = f"{self.api_base}/{self.phone_number_id}/messages"
        message_ids = []
        try:
            client = self._client or httpx.AsyncClient()
            try:
                for chunk in split_message(content, WHATSAPP_MESSAGE_LIMIT):
                    payload = {
                        "messaging_product": "whatsapp",
                        "to": to_number,
                        "type": "text",
                        "text": {"body": chunk},
                    }
                    response = await client.post(url, headers=self._headers(), json=payload, timeout=30.0)
                    data = response.json()
                    if response.status_code != 200:
                        error = (data.get("error") or {}).get("message", response.text)
                        logger.error("WhatsApp send failed: %s - %s", response.status_code, error)
                        return {"error": f"WhatsApp API error: {error}"}
                    message_ids.extend(m.get("id") for m in data.get("messages", []))
            finally:
                if self._client is None:
                    await client.aclose()
        except httpx.TimeoutException:
            return {"error": "WhatsApp API timeout"}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("WhatsApp send error: %s", e)
            return {"error": str(e)}

        return {"sent": True, "channel": "whatsapp", "to": to_number, "message_ids": message_ids}
