"""
Bot Host

Builds every component from a CoreBotConfig and owns their lifecycle.

Start order (dependencies first):
    subagent recovery -> skills -> dispatcher -> agent -> scheduler -> listeners
Stop order (reverse, so nothing publishes into a stopped consumer):
    listeners -> scheduler -> agent -> subagents -> skills -> bus -> dispatcher (drains)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from agent import Agent
from bus import MessageBus
from config import CoreBotConfig
from listeners.telegram import run_telegram_listener
from llm import LLMProvider, create_provider
from memory.store import FileMemoryStore
from scheduler import Scheduler, SchedulerStore, tasks_from_config
from senders import Sender
from senders.cli import CLISender
from senders.dispatch import OutboundDispatcher
from senders.feishu import FeishuSender
from senders.telegram import TelegramSender
from senders.whatsapp import WhatsAppSender
from skills import SkillLoader
from subagents import SubagentManager, SubagentStore
from tools import ToolRegistry
from tools.builtin import register_builtin_tools

logger = logging.getLogger(__name__)


def build_senders(config: CoreBotConfig) -> dict[str, Sender]:
    """One sender per enabled platform."""
    senders: dict[str, Sender] = {}
    if config.is_platform_enabled("cli"):
        senders["cli"] = CLISender()
    if config.is_platform_enabled("telegram"):
        senders["telegram"] = TelegramSender(config.platform("telegram"))
    if config.is_platform_enabled("whatsapp"):
        senders["whatsapp"] = WhatsAppSender(config.platform("whatsapp"))
    if config.is_platform_enabled("feishu"):
        senders["feishu"] = FeishuSender(config.platform("feishu"))
    return senders


class BotHost:
    """Owns the bus and everything attached to it."""

    def __init__(self, config: CoreBotConfig, llm: LLMProvider = None, senders: dict[str, Sender] = None):
        self.config = config
        publish_timeout = config.bus.publish_timeout_seconds

        Path(config.tools.workspace_path).mkdir(parents=True, exist_ok=True)

        self.bus = MessageBus(capacity=config.bus.capacity)
        self.memory = FileMemoryStore(config.memory_dir, partition=config.agent.conversation_partition)
        self.tools = ToolRegistry(
            workspace_path=config.tools.workspace_path,
            allowed_tools=config.tools.allowed_tools,
            shell_timeout_seconds=config.tools.shell_timeout_seconds,
        )
        self.llm = llm or create_provider(config.llm)
        self.agent = Agent(self.bus, self.memory, self.llm, self.tools, config.agent, publish_timeout=publish_timeout)

        self.subagents: SubagentManager | None = None
        if config.subagents.enabled:
            self.subagents = SubagentManager(
                self.bus,
                self.tools,
                SubagentStore(config.subagents_dir),
                shutdown_timeout=config.subagents.shutdown_timeout_seconds,
                publish_timeout=publish_timeout,
            )
        register_builtin_tools(self.tools, bus=self.bus, subagents=self.subagents)

        self.scheduler: Scheduler | None = None
        if config.scheduler.enabled:
            self.scheduler = Scheduler(
                self.bus,
                tasks_from_config(config.scheduler.tasks),
                store=SchedulerStore(config.scheduler_dir),
                tick_seconds=config.scheduler.tick_seconds,
            )

        self.skills = SkillLoader(config.skills, self.tools, self.bus, settings=config.skills.settings)
        self.dispatcher = OutboundDispatcher(self.bus, senders if senders is not None else build_senders(config))

        self._listener_tasks: list[asyncio.Task] = []
        self._started = False

    async def start(self, listeners: bool = True):
        """Start all components. ``listeners=False`` leaves inbound platforms off."""
        if self._started:
            return
        self._started = True

        if self.subagents:
            recovered = await self.subagents.start()
            if recovered:
                logger.info("Marked %d interrupted subagent(s) as failed", len(recovered))
        await self.skills.load()
        await self.dispatcher.start()
        await self.agent.start()
        if self.scheduler:
            await self.scheduler.start()
        if listeners:
            self.start_listeners()

        logger.info(
            "CoreBot started (provider=%s, model=%s, tools=%s)",
            self.config.llm.provider, self.config.llm.model, ", ".join(self.tools.names()),
        )

    def start_listeners(self):
        """Background listeners for polling platforms (CLI runs in the foreground)."""
        if self.config.is_platform_enabled("telegram"):
            self._listener_tasks.append(
                asyncio.create_task(run_telegram_listener(self.bus, self.config.platform("telegram")))
            )

    async def stop(self):
        if not self._started:
            return
        self._started = False

        for task in self._listener_tasks:
            task.cancel()
        await asyncio.gather(*self._listener_tasks, return_exceptions=True)
        self._listener_tasks = []

        if self.scheduler:
            await self.scheduler.stop()
        await self.agent.stop()
        if self.subagents:
            await self.subagents.stop()
        await self.skills.unload()
        self.bus.close()
        await self.dispatcher.stop()
        logger.info("CoreBot stopped")

    async def __aenter__(self) -> "BotHost":
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()
