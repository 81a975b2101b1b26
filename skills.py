"""
Skills

In-process plugins that extend the bot with extra tools and bus handlers.

A skill is any object that satisfies the ``Skill`` protocol. Skills are
named in config by a factory path and built at startup:

    skills:
      skills:
        - my_package.weather:WeatherSkill
        - my_package.notes:create_skill
      disabled_skills: [notes]

Loading order per skill: import factory -> build -> enable/disable filter ->
initialize(context) -> register tools -> start message handlers. A skill
that fails at any step is logged and skipped; the others still load.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from bus import MessageBus, Subscription, topic_of
from config import SkillsConfig
from tools import ToolLike, ToolRegistry, ToolValidationError

logger = logging.getLogger(__name__)


@runtime_checkable
class MessageHandler(Protocol):
    """Receives every bus message of ``message_type``."""

    message_type: type

    async def handle(self, message: Any) -> None:
        ...


@runtime_checkable
class Skill(Protocol):
    name: str
    description: str
    version: str

    def get_tools(self) -> list[ToolLike]:
        ...

    def get_message_handlers(self) -> list[MessageHandler]:
        ...

    async def initialize(self, context: "SkillContext") -> None:
        ...

    async def shutdown(self) -> None:
        ...


@dataclass
class SkillContext:
    """What a skill gets to work with during initialize()."""
    bus: MessageBus
    tools: ToolRegistry
    config: dict = field(default_factory=dict)


@dataclass
class LoadedSkill:
    skill: Skill
    tool_names: list[str] = field(default_factory=list)
    handlers: list[MessageHandler] = field(default_factory=list)
    subscriptions: list[Subscription] = field(default_factory=list)
    tasks: list[asyncio.Task] = field(default_factory=list)


def import_factory(path: str) -> Callable[[], Skill]:
    """Resolve ``"package.module:attribute"`` to a callable."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Skill factory '{path}' must look like 'package.module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"'{attr}' in {module_name} is not callable")
    return factory


class SkillLoader:
    """Builds, initializes and tears down configured skills."""

    def __init__(self, config: SkillsConfig, tools: ToolRegistry, bus: MessageBus, settings: dict = None):
        self.config = config
        self.tools = tools
        self.bus = bus
        self.settings = settings or {}
        self._loaded: dict[str, LoadedSkill] = {}

    @property
    def loaded_skills(self) -> list[Skill]:
        return [entry.skill for entry in self._loaded.values()]

    def get_skill(self, name: str) -> Skill | None:
        entry = self._loaded.get(name.lower())
        return entry.skill if entry else None

    def handlers_for(self, message_type: type) -> list[MessageHandler]:
        topic = topic_of(message_type)
        return [
            handler
            for entry in self._loaded.values()
            for handler in entry.handlers
            if topic_of(handler.message_type) == topic
        ]

    def _is_enabled(self, name: str) -> bool:
        name = name.lower()
        if name in {s.lower() for s in self.config.disabled_skills}:
            return False
        if self.config.enabled_skills:
            return name in {s.lower() for s in self.config.enabled_skills}
        return True

    async def load(self, factories: list[Callable[[], Skill]] = None) -> list[str]:
        """Load configured skills plus any ``factories`` passed in.

        Returns the names of the skills that loaded.
        """
        if not self.config.enabled:
            logger.info("[Skills] Disabled in config")
            return []

        sources: list[tuple[str, Callable[[], Skill] | None]] = [(path, None) for path in self.config.skills]
        sources += [(getattr(f, "__name__", repr(f)), f) for f in factories or []]

        loaded = []
        for label, factory in sources:
            try:
                name = await self._load_one(label, factory)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("[Skills] Failed to load %s: %s", label, e)
                continue
            if name:
                loaded.append(name)

        if loaded:
            logger.info("[Skills] Loaded: %s", ", ".join(loaded))
        return loaded

    async def _load_one(self, label: str, factory: Callable[[], Skill] | None) -> str | None:
        skill = (factory or import_factory(label))()
        if not isinstance(skill, Skill):
            raise TypeError(f"{label} did not produce a Skill")

        key = skill.name.lower()
        if not self._is_enabled(skill.name):
            logger.info("[Skills] %s is disabled, skipping", skill.name)
            return None
        if key in self._loaded:
            raise ValueError(f"skill '{skill.name}' is already loaded")

        await skill.initialize(SkillContext(bus=self.bus, tools=self.tools, config=dict(self.settings.get(key, {}))))

        entry = LoadedSkill(skill=skill)
        try:
            for tool in skill.get_tools():
                if self.tools.register(tool):
                    entry.tool_names.append(tool.name)
            for handler in skill.get_message_handlers():
                subscription = self.bus.subscribe(handler.message_type)
                entry.subscriptions.append(subscription)
                entry.handlers.append(handler)
                entry.tasks.append(asyncio.create_task(self._run_handler(skill.name, handler, subscription)))
        except (ToolValidationError, TypeError) as e:
            await self._teardown(entry)
            raise ValueError(f"skill '{skill.name}' registration failed: {e}") from e

        self._loaded[key] = entry
        logger.debug(
            "[Skills] %s v%s: %d tool(s), %d handler(s)",
            skill.name, skill.version, len(entry.tool_names), len(entry.handlers),
        )
        return skill.name

    async def _run_handler(self, skill_name: str, handler: MessageHandler, subscription: Subscription):
        async with subscription:
            async for message in subscription:
                try:
                    await handler.handle(message)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("[Skills] %s handler failed on %s", skill_name, type(message).__name__)

    async def unload(self):
        """Stop all handlers and shut every skill down."""
        for key in list(self._loaded):
            await self._teardown(self._loaded.pop(key))

    async def _teardown(self, entry: LoadedSkill):
        for task in entry.tasks:
            task.cancel()
        if entry.tasks:
            await asyncio.gather(*entry.tasks, return_exceptions=True)
        # A task cancelled before its first step never reaches its async with
        for subscription in entry.subscriptions:
            subscription.close()
        for name in entry.tool_names:
            self.tools.unregister(name)
        try:
            await entry.skill.shutdown()
        except Exception as e:
            logger.warning("[Skills] %s shutdown failed: %s", entry.skill.name, e)
