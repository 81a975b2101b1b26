"""
Shell Tool

Runs a command with bash inside the workspace directory. The process is
killed when it exceeds ``shell_timeout_seconds``.
"""

import asyncio
import logging

from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20_000


@tool
async def shell(command: str, context: ToolContext) -> dict | str:
    """Execute a shell command in the workspace and return its output.

    Args:
        command: Shell command to execute
    """
    if not command.strip():
        return tool_error("Command parameter cannot be empty")

    timeout = context.shell_timeout_seconds
    context.workspace.mkdir(parents=True, exist_ok=True)

    process = await asyncio.create_subprocess_exec(
        "/bin/bash", "-c", command,
        cwd=str(context.workspace),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("Shell command timed out after %ss: %s", timeout, command[:80])
        return tool_error(f"Command timed out after {timeout} seconds")
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    output = stdout.decode("utf-8", errors="replace")
    err_text = stderr.decode("utf-8", errors="replace")
    if err_text.strip():
        output += f"\nStderr: {err_text}"
    output = output.strip()
    if len(output) > MAX_OUTPUT_CHARS:
        output = output[:MAX_OUTPUT_CHARS] + "\n... (truncated)"

    if process.returncode != 0:
        message = f"Command failed with exit code {process.returncode}"
        if output:
            message += f"\n{output}"
        return tool_error(message)
    return output
