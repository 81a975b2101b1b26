"""
CLI Listener - Command-line chat with styled output.

Simple REPL that reads stdin and publishes each line to the bus as a
UserMessage from platform "cli". Replies come back through the outbound
dispatcher and the CLI sender. Component events are shown as verbose output.
"""

import asyncio
import logging
import sys
from typing import Callable

from bus import BusClosedError, MessageBus
from messages import UserMessage
from utils.console import VerboseLevel, console
from utils.events import EventEmitter

logger = logging.getLogger(__name__)

QUIT_COMMANDS = ("quit", "exit", "q")


def setup_event_handlers(agent: EventEmitter = None, scheduler: EventEmitter = None, subagents: EventEmitter = None):
    """Mirror component events on the console."""
    if agent is not None:
        @agent.on("tool_start")
        def on_tool_start(event):
            console.tool_start(event["name"], event.get("input"))

        @agent.on("tool_end")
        def on_tool_end(event):
            console.tool_end(event["name"], event.get("result"), event.get("duration_ms"), event.get("success", True))

    if scheduler is not None:
        @scheduler.on("task_start")
        def on_task_start(event):
            console.task_start(event["name"])

        @scheduler.on("task_end")
        def on_task_end(event):
            console.task_end(event["id"], event["status"], event.get("duration_ms"))

    if subagents is not None:
        @subagents.on("subagent_start")
        def on_subagent_start(event):
            console.subagent_event(event["id"], event["name"], "started")

        @subagents.on("subagent_end")
        def on_subagent_end(event):
            console.subagent_event(event["id"], event["name"], event["status"])


async def run_cli_listener(bus: MessageBus, user_id: str = "local", read_line: Callable[[], str] = input):
    """Read lines until quit/EOF and publish them as user messages.

    Args:
        bus: Message bus to publish on
        user_id: Identity of the person at the terminal
        read_line: Blocking line reader, run in a worker thread
    """
    level = console.get_verbose()
    if level >= VerboseLevel.LIGHT:
        console.system(f"Verbose mode: {level.name.lower()} (/verbose off to hide)")
    console.system("Ready. Type 'quit' to exit.\n")

    while True:
        print(console.user_prompt(), end="", file=sys.stderr, flush=True)
        try:
            line = await asyncio.to_thread(read_line)
        except EOFError:
            console.system("\nGoodbye!")
            return
        except KeyboardInterrupt:
            print("", file=sys.stderr)
            continue

        line = line.strip()
        if not line:
            continue
        if line.lower() in QUIT_COMMANDS:
            console.system("Goodbye!")
            return
        if line.lower().startswith("/verbose"):
            _handle_verbose_command(line)
            continue

        try:
            await bus.publish(UserMessage(platform="cli", user_id=user_id, content=line))
        except BusClosedError:
            logger.info("Bus closed, leaving the CLI")
            return


def _handle_verbose_command(command: str):
    parts = command.lower().split()
    if len(parts) == 1:
        level = console.get_verbose()
        console.system(f"Verbose level: {level.name.lower()} ({level.value})")
        console.system("Usage: /verbose [off|light|deep]")
        return

    level_str = parts[1]
    if level_str not in ("off", "0", "light", "1", "on", "deep", "2", "full", "all"):
        console.warning(f"Unknown verbose level: {level_str}")
        console.system("Usage: /verbose [off|light|deep]")
        return
    console.set_verbose(level_str)
    console.system(f"Verbose output: {console.get_verbose().name.lower()}")
