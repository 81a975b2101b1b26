"""
Subagent Tool

Lets the model hand a slow tool run to a background subagent and check on it
later. Acts on behalf of the user whose message is being processed.
"""

import json
import logging

from messages import current_message
from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)


def _summary(subagent) -> dict:
    data = {
        "id": subagent.id,
        "name": subagent.name,
        "task": subagent.task_name,
        "state": subagent.state.value,
        "progress": subagent.progress,
        "status": subagent.status_message,
    }
    if subagent.result is not None:
        data["result"] = subagent.result[:2000]
    if subagent.error is not None:
        data["error"] = subagent.error
    return data


@tool
async def subagent(
    action: str,
    context: ToolContext,
    name: str = None,
    task_name: str = None,
    parameters: dict = None,
    subagent_id: str = None,
) -> dict:
    """Run another tool in the background and manage those background runs.

    Use "spawn" for work that takes a long time; the user is notified when it
    finishes. Subagents cannot spawn further subagents.

    Args:
        action: One of "spawn", "list", "check", "cancel"
        name: Short label for a new subagent (spawn)
        task_name: Tool to run in the background (spawn)
        parameters: Parameters for that tool (spawn)
        subagent_id: Which subagent to check or cancel
    """
    manager = context.services.get("subagents")
    if manager is None:
        return tool_error("Background subagents are not enabled")

    message = current_message.get()
    if message is None:
        return tool_error("Subagents can only be managed while answering a user message")

    if action == "spawn":
        if not task_name:
            return tool_error("task_name is required to spawn a subagent")
        if task_name.lower() == "subagent":
            return tool_error("A subagent cannot run the subagent tool")
        if context.registry is not None and task_name not in context.registry:
            return tool_error(f"Tool '{task_name}' not found.")
        created = await manager.create_subagent(
            name=name or task_name,
            task_name=task_name,
            parameters=parameters or {},
            trigger_message=message,
        )
        return {"spawned": True, "id": created.id, "name": created.name}

    if action == "list":
        running = manager.get_user_subagents(message.platform, message.user_id)
        return {"subagents": [_summary(s) for s in running], "count": len(running)}

    if action in ("check", "cancel"):
        if not subagent_id:
            return tool_error(f"subagent_id is required to {action} a subagent")
        found = await manager.find_subagent(subagent_id)
        if found is None or (found.platform, found.user_id) != (message.platform, message.user_id):
            return tool_error(f"No subagent with id {subagent_id}")
        if action == "check":
            return _summary(found)
        cancelled = await manager.cancel_subagent(subagent_id)
        return {"cancelled": cancelled, "state": "cancelled" if cancelled else found.state.value}

    return tool_error(
        f"Unknown action '{action}'",
        fix=json.dumps(["spawn", "list", "check", "cancel"]),
    )


subagent.schema["input_schema"]["properties"]["action"]["enum"] = ["spawn", "list", "check", "cancel"]
