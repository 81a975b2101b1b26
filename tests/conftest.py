"""
Shared fixtures for the CoreBot test suite.

Provides temp directories, a scripted LLM provider, and ready-made bus,
memory and tool registry instances.
"""

import os
import sys
from pathlib import Path

import pytest

# Use litellm's bundled model cost map instead of fetching it over the network
# at import time (the offline fetch retry can deadlock test collection).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

# Ensure the project root is on sys.path so tests can import project modules
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bus import MessageBus  # noqa: E402
from llm import LLMResponse  # noqa: E402
from memory.store import FileMemoryStore  # noqa: E402
from messages import ToolCall  # noqa: E402
from tools import ToolRegistry  # noqa: E402


class ScriptedLLM:
    """LLM provider that replays a fixed list of responses and records requests.

    Entries may be LLMResponse objects, strings (plain text replies) or
    exceptions (raised from complete()). When the script runs out the last
    entry repeats.
    """

    name = "scripted"

    def __init__(self, *script):
        self.script = list(script) or ["ok"]
        self.requests = []

    async def complete(self, request):
        # Snapshot: the agent keeps appending to the same message list
        self.requests.append(type(request)(
            messages=list(request.messages),
            tools=request.tools,
            model=request.model,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        ))
        index = min(len(self.requests) - 1, len(self.script) - 1)
        entry = self.script[index]
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, str):
            return LLMResponse(content=entry)
        return entry

    @property
    def calls(self) -> int:
        return len(self.requests)


def tool_response(name: str, content: str = "", **parameters) -> LLMResponse:
    """An LLM response asking for one tool call."""
    return LLMResponse(content=content, tool_calls=[ToolCall(tool_name=name, parameters=parameters)])


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory that is cleaned up after the test."""
    return tmp_path


@pytest.fixture
def workspace(tmp_path):
    d = tmp_path / "workspace"
    d.mkdir()
    return d


@pytest.fixture
def scheduler_dir(tmp_path):
    """Provide a temporary directory for scheduler run history."""
    d = tmp_path / "scheduler"
    d.mkdir()
    return str(d)


@pytest.fixture
def config_dir(tmp_path):
    """Provide a temporary directory for config files."""
    d = tmp_path / "config"
    d.mkdir()
    return d


@pytest.fixture
def clean_env():
    """Temporarily clear env vars that config loading reads."""
    keys = ["COREBOT_CONFIG", "COREBOT_VERBOSE", "OPENROUTER_API_KEY", "TELEGRAM_BOT_TOKEN"]
    saved = {key: os.environ.pop(key) for key in keys if key in os.environ}
    yield
    for key in keys:
        os.environ.pop(key, None)
    os.environ.update(saved)


@pytest.fixture
def bus():
    return MessageBus()


@pytest.fixture
def memory(tmp_path):
    return FileMemoryStore(tmp_path / "memory")


@pytest.fixture
def registry(workspace):
    return ToolRegistry(workspace_path=workspace)


@pytest.fixture
def sample_config():
    """Return a minimal valid config dict for testing."""
    return {
        "llm": {"provider": "openai", "model": "gpt-4o-mini", "api_key": "sk-test"},
        "platforms": {"cli": {"enabled": True}},
        "agent": {"history_limit": 20, "max_tool_iterations": 3},
    }
