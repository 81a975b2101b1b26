"""
API Server for CoreBot

HTTP endpoints for:
- Sending a message to the bot (and optionally waiting for the reply)
- Inspecting and cancelling subagents
- Listing and triggering scheduled tasks
- WhatsApp Cloud API and Feishu event webhooks (inbound messages)

All inbound traffic goes through the message bus, exactly like the chat
platforms; the server never calls the agent directly.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from host import BotHost
from messages import AgentResponse, UserMessage
from subagents import Subagent

logger = logging.getLogger(__name__)

API_PLATFORM = "api"


class HttpReplySender:
    """Sender for platform "api". Replies are returned in the HTTP response instead."""

    name = API_PLATFORM
    capabilities = ["text"]

    async def send(self, to: str, content: str, **kwargs) -> dict:
        return {"sent": True, "channel": API_PLATFORM}


# =============================================================================
# Request/Response Models
# =============================================================================

class MessageRequest(BaseModel):
    """Message to the bot."""
    content: str
    user_id: str = "api"
    platform: str = API_PLATFORM
    wait: bool = True  # If false, return as soon as the message is queued
    timeout_seconds: float = 120.0


class MessageResponse(BaseModel):
    message_id: str
    queued: bool = True
    response: str | None = None


class SubagentResponse(BaseModel):
    id: str
    name: str
    state: str
    platform: str
    user_id: str
    task_name: str
    progress: int
    status_message: str
    result: str | None = None
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_subagent(cls, subagent: Subagent) -> "SubagentResponse":
        data = subagent.to_dict()
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})


class TaskResponse(BaseModel):
    name: str
    cron: str
    enabled: bool
    action: str
    next_run_at: str | None = None
    last_run_at: str | None = None
    last_status: str | None = None


# =============================================================================
# WhatsApp payload parsing
# =============================================================================

def parse_whatsapp_payload(payload: dict) -> list[tuple[str, str, str]]:
    """Extract ``(message_id, sender, text)`` for each inbound text message."""
    found = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for message in value.get("messages") or []:
                if message.get("type") != "text":
                    continue
                body = (message.get("text") or {}).get("body")
                sender = message.get("from")
                if body and sender:
                    found.append((message.get("id") or f"{sender}:{message.get('timestamp')}", sender, body))
    return found


# =============================================================================
# Feishu event parsing
# =============================================================================

FEISHU_MESSAGE_EVENT = "im.message.receive_v1"


def feishu_event_token(payload: dict) -> str | None:
    """Verification token of a v2 event (in the header) or a v1 / challenge payload."""
    return (payload.get("header") or {}).get("token") or payload.get("token")


def parse_feishu_event(payload: dict) -> tuple[str, str, str] | None:
    """Extract ``(message_id, user_id, text)`` from a text message event.

    Group chats are keyed by chat_id so replies go back to the group;
    direct chats by the sender's open_id.
    """
    header = payload.get("header") or {}
    if header.get("event_type") != FEISHU_MESSAGE_EVENT:
        return None

    event = payload.get("event") or {}
    message = event.get("message") or {}
    if message.get("message_type") != "text":
        return None
    try:
        text = json.loads(message.get("content") or "{}").get("text", "").strip()
    except (json.JSONDecodeError, AttributeError):
        return None

    open_id = ((event.get("sender") or {}).get("sender_id") or {}).get("open_id")
    user_id = message.get("chat_id") if message.get("chat_type") == "group" else open_id
    if not text or not user_id:
        return None
    message_id = message.get("message_id") or header.get("event_id") or f"{user_id}:{message.get('create_time')}"
    return message_id, user_id, text


# =============================================================================
# App Factory
# =============================================================================

def create_app(host: BotHost, manage_lifecycle: bool = True) -> FastAPI:
    """Build the FastAPI app around a BotHost.

    With ``manage_lifecycle`` the app starts and stops the host itself.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await host.start()
        yield
        if manage_lifecycle:
            await host.stop()

    app = FastAPI(
        title="CoreBot API",
        description="HTTP interface to the CoreBot message bus",
        lifespan=lifespan,
    )
    host.dispatcher.register(HttpReplySender())
    # Webhooks can be delivered more than once
    processed_ids: set[str] = set()

    def require_subagents():
        if host.subagents is None:
            raise HTTPException(status_code=503, detail="Subagents are disabled")
        return host.subagents

    # -------------------------------------------------------------------------
    # Core endpoints
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {
            "status": "ok" if not host.bus.closed else "stopping",
            "agent_running": host.agent.running,
            "in_flight": host.agent.in_flight,
            "platforms": host.config.enabled_platforms(),
            "tools": host.tools.names(),
            "user_message_subscribers": host.bus.subscriber_count(UserMessage),
        }

    @app.post("/message", response_model=MessageResponse)
    async def receive_message(req: MessageRequest):
        """
        Publish a message to the bot.

        With wait=true (default) the call returns the bot's reply, or 504 if
        none arrives within timeout_seconds.
        """
        message = UserMessage(platform=req.platform, user_id=req.user_id, content=req.content)
        if not req.wait:
            await host.bus.publish(message)
            return MessageResponse(message_id=message.message_id)

        # Subscribe before publishing so the reply cannot be missed
        async with host.bus.subscribe(AgentResponse) as replies:
            await host.bus.publish(message)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + req.timeout_seconds
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise HTTPException(status_code=504, detail="Timed out waiting for a reply")
                try:
                    reply = await replies.get(timeout=remaining)
                except asyncio.TimeoutError:
                    raise HTTPException(status_code=504, detail="Timed out waiting for a reply")
                except StopAsyncIteration:
                    raise HTTPException(status_code=503, detail="Bot is shutting down")
                if reply.platform == req.platform and reply.user_id == req.user_id:
                    return MessageResponse(message_id=message.message_id, response=reply.content)

    # -------------------------------------------------------------------------
    # Subagents
    # -------------------------------------------------------------------------

    @app.get("/subagents")
    async def list_subagents(platform: str = None, user_id: str = None) -> list[SubagentResponse]:
        manager = require_subagents()
        records = await manager.list_persisted(platform=platform, user_id=user_id)
        return [SubagentResponse.from_subagent(s) for s in records]

    @app.get("/subagents/{subagent_id}")
    async def get_subagent(subagent_id: str) -> SubagentResponse:
        manager = require_subagents()
        subagent = await manager.find_subagent(subagent_id)
        if not subagent:
            raise HTTPException(status_code=404, detail="Subagent not found")
        return SubagentResponse.from_subagent(subagent)

    @app.post("/subagents/{subagent_id}/cancel")
    async def cancel_subagent(subagent_id: str):
        manager = require_subagents()
        subagent = await manager.find_subagent(subagent_id)
        if not subagent:
            raise HTTPException(status_code=404, detail="Subagent not found")
        cancelled = await manager.cancel_subagent(subagent_id)
        if not cancelled:
            raise HTTPException(status_code=409, detail=f"Subagent is {subagent.state.value}, not running")
        return {"id": subagent_id, "cancelled": True}

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    @app.get("/scheduler/tasks")
    async def list_tasks() -> list[TaskResponse]:
        if host.scheduler is None:
            return []
        return [
            TaskResponse(
                name=t.name,
                cron=t.cron,
                enabled=t.enabled,
                action=t.action.type,
                next_run_at=t.next_run_at.isoformat() if t.next_run_at else None,
                last_run_at=t.last_run_at.isoformat() if t.last_run_at else None,
                last_status=t.last_status,
            )
            for t in host.scheduler.list(include_disabled=True)
        ]

    @app.post("/scheduler/tasks/{name}/run")
    async def run_task(name: str):
        if host.scheduler is None or host.scheduler.get(name) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return await host.scheduler.run_now(name)

    # -------------------------------------------------------------------------
    # WhatsApp webhook
    # -------------------------------------------------------------------------

    @app.get("/webhooks/whatsapp")
    async def whatsapp_verify(
        mode: str = Query(None, alias="hub.mode"),
        token: str = Query(None, alias="hub.verify_token"),
        challenge: str = Query(None, alias="hub.challenge"),
    ):
        """Subscription handshake: echo the challenge if the verify token matches."""
        expected = host.config.platform("whatsapp").get("verify_token")
        if mode == "subscribe" and expected and token == expected:
            return PlainTextResponse(challenge or "")
        raise HTTPException(status_code=403, detail="Verification failed")

    @app.post("/webhooks/whatsapp")
    async def whatsapp_webhook(request: Request):
        nonlocal processed_ids
        if not host.config.is_platform_enabled("whatsapp"):
            raise HTTPException(status_code=404, detail="WhatsApp is not enabled")

        payload = await request.json()
        received = 0
        for message_id, sender, text in parse_whatsapp_payload(payload):
            if message_id in processed_ids:
                logger.debug("WhatsApp webhook: skipping duplicate message %s", message_id)
                continue
            processed_ids.add(message_id)
            await host.bus.publish(UserMessage(platform="whatsapp", user_id=sender, content=text))
            received += 1

        if len(processed_ids) > 1000:
            processed_ids = set(list(processed_ids)[-500:])
        # Meta expects a fast 200 for every delivery, including status updates
        return {"status": "ok", "received": received}

    # -------------------------------------------------------------------------
    # Feishu event subscription
    # -------------------------------------------------------------------------

    @app.post("/webhooks/feishu")
    async def feishu_webhook(request: Request):
        if not host.config.is_platform_enabled("feishu"):
            raise HTTPException(status_code=404, detail="Feishu is not enabled")

        payload = await request.json()
        if "encrypt" in payload:
            logger.warning("Feishu webhook: encrypted event received; clear the app's encrypt key")
            raise HTTPException(status_code=400, detail="Encrypted events are not supported")

        expected = host.config.platform("feishu").get("verification_token")
        if expected and feishu_event_token(payload) != expected:
            raise HTTPException(status_code=403, detail="Verification failed")

        if payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge", "")}

        parsed = parse_feishu_event(payload)
        if parsed is None:
            return {"status": "ok", "received": 0}

        message_id, user_id, text = parsed
        if message_id in processed_ids:
            logger.debug("Feishu webhook: skipping duplicate message %s", message_id)
            return {"status": "ok", "received": 0}
        processed_ids.add(message_id)
        await host.bus.publish(UserMessage(platform="feishu", user_id=user_id, content=text))
        return {"status": "ok", "received": 1}

    return app
