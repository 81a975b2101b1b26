"""
Built-in tool set.

    register_builtin_tools(registry, bus=bus, subagents=manager)

Registers every built-in tool the registry's allowed_tools filter admits.
Tools needing a service (bus, subagent manager) are skipped when it is absent.
"""

import logging

from tools import ToolRegistry
from tools.filesystem import file_read, file_write
from tools.messaging import send_message
from tools.shell import shell
from tools.subagent import subagent
from tools.web import web_fetch

logger = logging.getLogger(__name__)

BUILTIN_TOOLS = [file_read, file_write, shell, web_fetch, send_message, subagent]


def register_builtin_tools(registry: ToolRegistry, bus=None, subagents=None) -> list[str]:
    """Register the built-in tools. Returns the names actually registered."""
    if bus is not None:
        registry.add_service("bus", bus)
    if subagents is not None:
        registry.add_service("subagents", subagents)

    registered = []
    for builtin in BUILTIN_TOOLS:
        if builtin.name == "send_message" and bus is None:
            continue
        if builtin.name == "subagent" and subagents is None:
            continue
        if builtin.name in registry:
            continue
        if registry.register(builtin):
            registered.append(builtin.name)

    logger.info("Registered built-in tools: %s", ", ".join(registered) or "none")
    return registered
