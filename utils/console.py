"""
Terminal Output for the CoreBot CLI

Colored, leveled output for the interactive console. Everything goes to
stderr so stdout stays clean for piping.

Verbose Levels:
    - OFF (0): replies only
    - LIGHT (1): tool names, scheduled tasks, subagent lifecycle [default]
    - DEEP (2): tool inputs and results too

Set with COREBOT_VERBOSE=0|1|2 (or off|light|deep), or ``/verbose <level>``
in the CLI.
"""

import os
import sys
from enum import IntEnum
from typing import Any


class VerboseLevel(IntEnum):
    OFF = 0
    LIGHT = 1
    DEEP = 2


_LEVEL_NAMES = {
    "0": VerboseLevel.OFF, "off": VerboseLevel.OFF, "false": VerboseLevel.OFF, "none": VerboseLevel.OFF,
    "1": VerboseLevel.LIGHT, "light": VerboseLevel.LIGHT, "on": VerboseLevel.LIGHT, "true": VerboseLevel.LIGHT,
    "2": VerboseLevel.DEEP, "deep": VerboseLevel.DEEP, "full": VerboseLevel.DEEP, "all": VerboseLevel.DEEP,
}


def parse_verbose_level(value: str | int | VerboseLevel) -> VerboseLevel:
    """Parse "off"/"light"/"deep", 0-2 or a VerboseLevel. Unknown values mean OFF."""
    if isinstance(value, VerboseLevel):
        return value
    if isinstance(value, int):
        return VerboseLevel(min(max(value, 0), 2))
    return _LEVEL_NAMES.get(str(value).lower().strip(), VerboseLevel.OFF)


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    BRIGHT_BLACK = "\033[90m"


def _supports_color() -> bool:
    if os.environ.get("NO_COLOR") or os.environ.get("COREBOT_NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
        return False
    return os.environ.get("TERM") != "dumb"


class Console:
    """
    Styled console output.

    Example:
        from utils.console import console

        console.user("Hello!")
        console.agent("Hi there!")
        console.tool_start("shell", {"command": "ls"})
    """

    # Values under these keys never reach the terminal
    _SENSITIVE_KEYS = frozenset({
        "password", "secret", "api_key", "api_secret", "auth_token", "token",
        "bot_token", "access_token", "refresh_token", "private_key", "verify_token",
    })

    def __init__(self):
        self._verbose_level = parse_verbose_level(os.environ.get("COREBOT_VERBOSE", "1"))
        self._use_color = _supports_color()

    def set_verbose(self, level: VerboseLevel | int | str):
        self._verbose_level = parse_verbose_level(level)

    def get_verbose(self) -> VerboseLevel:
        return self._verbose_level

    def _colorize(self, text: str, *codes: str) -> str:
        if not self._use_color:
            return text
        return f"{''.join(codes)}{text}{Colors.RESET}"

    def _print(self, text: str):
        print(text, file=sys.stderr, flush=True)

    # -------------------------------------------------------------------------
    # Primary output
    # -------------------------------------------------------------------------

    def banner(self, text: str, width: int = 40):
        self._print(self._colorize(text, Colors.BOLD, Colors.BLUE))
        self._print(self._colorize("=" * width, Colors.DIM, Colors.BLUE))

    def user(self, text: str, prompt: str = "You"):
        self._print(f"{self._colorize(f'{prompt}: ', Colors.BOLD, Colors.GREEN)}{text}")

    def user_prompt(self) -> str:
        return self._colorize("> ", Colors.BOLD, Colors.GREEN)

    def agent(self, text: str, prefix: str = "CoreBot"):
        self._print(f"{self._colorize(f'{prefix}: ', Colors.BOLD, Colors.CYAN)}{text}\n")

    def system(self, text: str):
        self._print(self._colorize(text, Colors.BLUE))

    def error(self, text: str):
        self._print(self._colorize(f"Error: {text}", Colors.BOLD, Colors.RED))

    def warning(self, text: str):
        self._print(self._colorize(f"Warning: {text}", Colors.YELLOW))

    # -------------------------------------------------------------------------
    # Verbose output
    # -------------------------------------------------------------------------

    def verbose(self, text: str, level: VerboseLevel = VerboseLevel.LIGHT):
        if self._verbose_level < level:
            return
        if level == VerboseLevel.LIGHT:
            self._print(self._colorize(f"  {text}", Colors.YELLOW))
        else:
            self._print(self._colorize(f"    {text}", Colors.DIM, Colors.BRIGHT_BLACK))

    def tool_start(self, name: str, inputs: dict[str, Any] = None):
        self.verbose(f"[tool] {name}")
        if inputs and self._verbose_level >= VerboseLevel.DEEP:
            self.verbose(f"  input: {self._summarize(self.redact(inputs))}", VerboseLevel.DEEP)

    def tool_end(self, name: str, result: Any = None, duration_ms: int = None, success: bool = True):
        timing = f" ({duration_ms}ms)" if duration_ms else ""
        self.verbose(f"[tool] {name} {'done' if success else 'failed'}{timing}")
        if result and self._verbose_level >= VerboseLevel.DEEP:
            self.verbose(f"  result: {self._summarize(result)}", VerboseLevel.DEEP)

    def task_start(self, task_name: str):
        self.verbose(f"[scheduler] Running: {task_name}")

    def task_end(self, task_name: str, status: str, duration_ms: int = None):
        timing = f" ({duration_ms}ms)" if duration_ms else ""
        self.verbose(f"[scheduler] {task_name} {status}{timing}")

    def subagent_event(self, subagent_id: str, name: str, state: str):
        self.verbose(self._colorize(f"[subagent] {name} ({subagent_id[:8]}) {state}", Colors.MAGENTA))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def redact(self, d: Any) -> Any:
        """Copy of ``d`` with sensitive values replaced by '***', recursively."""
        if isinstance(d, dict):
            return {
                k: "***" if str(k).lower() in self._SENSITIVE_KEYS else self.redact(v)
                for k, v in d.items()
            }
        if isinstance(d, list):
            return [self.redact(item) for item in d]
        return d

    def _summarize(self, v: Any, max_len: int = 80) -> str:
        if isinstance(v, dict):
            text = "{" + ", ".join(f"{k}={self._summarize(x, 30)}" for k, x in v.items()) + "}"
        elif isinstance(v, (list, tuple)):
            text = f"[...{len(v)} items]" if len(v) > 3 else "[" + ", ".join(self._summarize(x, 20) for x in v) + "]"
        elif isinstance(v, str):
            text = f'"{v}"'
        else:
            text = str(v)
        return text if len(text) <= max_len else text[: max_len - 3] + "..."


console = Console()
