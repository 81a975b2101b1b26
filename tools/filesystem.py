"""
File Tools

Read and write text files inside the configured workspace. Paths are
relative to the workspace; anything resolving outside it is refused.
"""

import logging

from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 1_000_000


@tool
def file_read(path: str, context: ToolContext) -> dict | str:
    """Read the contents of a file within the workspace.

    Args:
        path: Path to the file to read (relative to workspace)
    """
    if not path.strip():
        return tool_error("Path parameter cannot be empty")
    try:
        full_path = context.resolve(path)
    except PermissionError:
        return tool_error(f"Path '{path}' is outside the workspace directory")

    if not full_path.is_file():
        return tool_error(f"File not found: {path}")

    size = full_path.stat().st_size
    if size > MAX_READ_BYTES:
        return tool_error(
            f"File too large ({size} bytes, limit {MAX_READ_BYTES})",
            fix="Read a smaller file or use the shell tool with head/tail",
        )
    return full_path.read_text(encoding="utf-8", errors="replace")


@tool
def file_write(path: str, content: str, context: ToolContext, append: bool = False) -> dict:
    """Write content to a file within the workspace.

    Parent directories are created as needed.

    Args:
        path: Path to the file to write (relative to workspace)
        content: Content to write to the file
        append: Append instead of overwriting (default false)
    """
    if not path.strip():
        return tool_error("Path parameter cannot be empty")
    try:
        full_path = context.resolve(path)
    except PermissionError:
        return tool_error(f"Path '{path}' is outside the workspace directory")

    full_path.parent.mkdir(parents=True, exist_ok=True)
    mode = "a" if append else "w"
    with open(full_path, mode, encoding="utf-8") as f:
        f.write(content)

    logger.debug("Wrote %d chars to %s", len(content), full_path)
    return {"written": True, "path": path, "bytes": len(content.encode("utf-8"))}
