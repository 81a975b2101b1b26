"""
Configuration loader for CoreBot.

Loads configuration from a YAML file with environment variable substitution,
merges it over defaults and builds typed config objects. Components receive
the section they need through their constructor; nothing else reads
environment variables or expands ``~`` after load time.

Example config.yaml:

    llm:
      provider: openrouter
      model: anthropic/claude-3.5-sonnet
      api_key: ${OPENROUTER_API_KEY}

    platforms:
      telegram:
        enabled: true
        bot_token: ${TELEGRAM_BOT_TOKEN}

    scheduler:
      tasks:
        - name: morning-check
          cron: "0 9 * * *"
          action:
            type: send_message
            platform: telegram
            user_id: "12345"
            message: Good morning!
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_ALLOWED_TOOLS = ["file_read", "file_write", "shell", "web_fetch", "send_message", "subagent"]
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
PARTITIONS = ("day", "week", "month", "none")

# Level names people carry over from other logging stacks
_LEVEL_ALIASES = {"TRACE": "DEBUG", "INFORMATION": "INFO", "WARN": "WARNING", "FATAL": "CRITICAL"}


class ConfigValidationError(Exception):
    """Raised when the loaded configuration is unusable."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Configuration validation failed:\n" + "\n".join(f"- {p}" for p in problems))


# =============================================================================
# Typed Sections
# =============================================================================

@dataclass
class LLMConfig:
    provider: str = "openrouter"
    model: str = ""
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    max_retries: int = 3
    timeout_seconds: float = 120.0


@dataclass
class AgentConfig:
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_limit: int = 50
    max_tool_iterations: int = 10
    enable_tool_calling: bool = True
    conversation_partition: str = "day"
    shutdown_timeout_seconds: float = 30.0


@dataclass
class ToolConfig:
    workspace_path: str = "~/.corebot/workspace"
    shell_timeout_seconds: int = 30
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))


@dataclass
class PlatformConfig:
    name: str
    enabled: bool = False
    settings: dict = field(default_factory=dict)

    def get(self, key: str, default=None):
        return self.settings.get(key, default)


@dataclass
class SchedulerConfig:
    enabled: bool = True
    tick_seconds: float = 1.0
    tasks: list[dict] = field(default_factory=list)


@dataclass
class SubagentConfig:
    enabled: bool = True
    shutdown_timeout_seconds: float = 10.0


@dataclass
class SkillsConfig:
    enabled: bool = True
    skills: list[str] = field(default_factory=list)
    enabled_skills: list[str] = field(default_factory=list)
    disabled_skills: list[str] = field(default_factory=list)
    settings: dict = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    quiet_loggers: list[str] = field(default_factory=lambda: ["httpx", "httpcore", "LiteLLM", "anthropic"])


@dataclass
class BusConfig:
    capacity: int = 1024
    publish_timeout_seconds: float | None = None


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class CoreBotConfig:
    data_dir: Path = field(default_factory=lambda: Path("~/.corebot").expanduser())
    llm: LLMConfig = field(default_factory=LLMConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    tools: ToolConfig = field(default_factory=ToolConfig)
    platforms: dict[str, PlatformConfig] = field(default_factory=dict)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    subagents: SubagentConfig = field(default_factory=SubagentConfig)
    skills: SkillsConfig = field(default_factory=SkillsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @property
    def memory_dir(self) -> Path:
        return self.data_dir / "memory"

    @property
    def subagents_dir(self) -> Path:
        return self.data_dir / "subagents"

    @property
    def scheduler_dir(self) -> Path:
        return self.data_dir / "scheduler"

    def platform(self, name: str) -> PlatformConfig:
        return self.platforms.get(name) or PlatformConfig(name=name)

    def is_platform_enabled(self, name: str) -> bool:
        return self.platform(name).enabled

    def enabled_platforms(self) -> list[str]:
        return [name for name, p in self.platforms.items() if p.enabled]


# =============================================================================
# Loading
# =============================================================================

def load_config(config_path: str = None, validate: bool = True) -> CoreBotConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $COREBOT_CONFIG, then
            config.yaml in the current directory. A missing file means defaults.
        validate: Raise ConfigValidationError when the result is unusable.
    """
    if config_path is None:
        config_path = os.environ.get("COREBOT_CONFIG", "config.yaml")

    raw: dict = {}
    path = Path(config_path).expanduser()
    if path.exists():
        with open(path) as f:
            content = f.read()
        # Substitute environment variables: ${VAR_NAME} or ${VAR_NAME:default}
        content = _substitute_env_vars(content)
        raw = yaml.safe_load(content) or {}
        if not isinstance(raw, dict):
            raise ConfigValidationError([f"{path} must contain a mapping at the top level"])
        logger.debug("Loaded configuration from %s", path)
    else:
        logger.info("No config file at %s, using defaults", path)

    config = build_config(_merge_with_defaults(raw))
    if validate:
        problems = validate_config(config)
        if problems:
            raise ConfigValidationError(problems)
    return config


def _substitute_env_vars(content: str) -> str:
    """Replace ${VAR} and ${VAR:default} with environment values."""

    def replace(match):
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
        else:
            var_name, default = var_expr, ""
        return os.environ.get(var_name, default)

    return re.sub(r"\$\{([^}]+)\}", replace, content)


def _default_config() -> dict:
    """Return minimal default configuration."""
    return {
        "data_dir": "~/.corebot",
        "llm": {
            "provider": "openrouter",
            "model": "",
            "api_key": "",
            "max_tokens": 4096,
            "temperature": 0.7,
            "max_retries": 3,
            "timeout_seconds": 120,
        },
        "agent": {
            "system_prompt": DEFAULT_SYSTEM_PROMPT,
            "history_limit": 50,
            "max_tool_iterations": 10,
            "enable_tool_calling": True,
            "conversation_partition": "day",
            "shutdown_timeout_seconds": 30,
        },
        "tools": {
            "workspace_path": "~/.corebot/workspace",
            "shell_timeout_seconds": 30,
            "allowed_tools": list(DEFAULT_ALLOWED_TOOLS),
        },
        "platforms": {
            "cli": {"enabled": True},
            "telegram": {
                "enabled": False,
                "api_base": "https://api.telegram.org",
                "poll_timeout": 30,
                "retry_delay_seconds": 5,
            },
            "whatsapp": {
                "enabled": False,
                "api_base": "https://graph.facebook.com/v18.0",
            },
            "feishu": {
                "enabled": False,
                "api_base": "https://open.feishu.cn/open-apis",
            },
        },
        "scheduler": {"enabled": True, "tick_seconds": 1.0, "tasks": []},
        "subagents": {"enabled": True, "shutdown_timeout_seconds": 10},
        "skills": {"enabled": True, "skills": [], "enabled_skills": [], "disabled_skills": [], "settings": {}},
        "logging": {"level": "INFO", "file": None},
        "bus": {"capacity": 1024, "publish_timeout_seconds": None},
        "server": {"host": "0.0.0.0", "port": 8000},
    }


def _merge_with_defaults(config: dict) -> dict:
    """Merge user config with defaults."""
    defaults = _default_config()

    def merge(base, override):
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge(result[key], value)
            else:
                result[key] = value
        return result

    return merge(defaults, config)


def _expand_path(value) -> Path:
    return Path(str(value)).expanduser()


def _section(cls, data: dict | None, **overrides):
    """Build a dataclass section, ignoring unknown keys."""
    data = dict(data or {})
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    unknown = sorted(set(data) - set(known))
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    known.update(overrides)
    return cls(**known)


def build_config(data: dict) -> CoreBotConfig:
    """Turn a merged config dict into typed sections."""
    platforms = {}
    for name, settings in (data.get("platforms") or {}).items():
        settings = dict(settings or {})
        enabled = bool(settings.pop("enabled", False))
        platforms[name] = PlatformConfig(name=name, enabled=enabled, settings=settings)

    tools = _section(ToolConfig, data.get("tools"))
    tools.workspace_path = str(_expand_path(tools.workspace_path)) if tools.workspace_path else ""

    logging_config = _section(LoggingConfig, data.get("logging"))
    logging_config.level = normalize_level(logging_config.level)
    if logging_config.file:
        logging_config.file = str(_expand_path(logging_config.file))

    return CoreBotConfig(
        data_dir=_expand_path(data.get("data_dir") or "~/.corebot"),
        llm=_section(LLMConfig, data.get("llm")),
        agent=_section(AgentConfig, data.get("agent")),
        tools=tools,
        platforms=platforms,
        scheduler=_section(SchedulerConfig, data.get("scheduler")),
        subagents=_section(SubagentConfig, data.get("subagents")),
        skills=_section(SkillsConfig, data.get("skills")),
        logging=logging_config,
        bus=_section(BusConfig, data.get("bus")),
        server=_section(ServerConfig, data.get("server")),
    )


def normalize_level(level) -> str:
    name = str(level or "").strip().upper()
    return _LEVEL_ALIASES.get(name, name)


# =============================================================================
# Validation
# =============================================================================

def validate_config(config: CoreBotConfig) -> list[str]:
    """Return every problem found, or an empty list."""
    problems = []

    if not config.llm.provider or not config.llm.provider.strip():
        problems.append("llm.provider is required")
    if not config.llm.model or not config.llm.model.strip():
        problems.append("llm.model is required")
    if not 0.0 <= config.llm.temperature <= 1.0:
        problems.append("llm.temperature must be between 0.0 and 1.0")
    if config.llm.max_tokens <= 0:
        problems.append("llm.max_tokens must be greater than 0")
    if config.llm.max_retries < 0:
        problems.append("llm.max_retries must not be negative")

    if config.agent.history_limit <= 0:
        problems.append("agent.history_limit must be greater than 0")
    if config.agent.max_tool_iterations <= 0:
        problems.append("agent.max_tool_iterations must be greater than 0")
    if config.agent.conversation_partition not in PARTITIONS:
        problems.append(f"agent.conversation_partition must be one of {', '.join(PARTITIONS)}")

    if not config.enabled_platforms():
        problems.append("At least one chat platform must be enabled")
    if config.is_platform_enabled("telegram") and not config.platform("telegram").get("bot_token"):
        problems.append("platforms.telegram.bot_token is required when telegram is enabled")
    if config.is_platform_enabled("whatsapp"):
        whatsapp = config.platform("whatsapp")
        if not whatsapp.get("access_token") or not whatsapp.get("phone_number_id"):
            problems.append("platforms.whatsapp needs access_token and phone_number_id when enabled")
    if config.is_platform_enabled("feishu"):
        feishu = config.platform("feishu")
        if not feishu.get("app_id") or not feishu.get("app_secret"):
            problems.append("platforms.feishu needs app_id and app_secret when enabled")

    if not config.tools.workspace_path:
        problems.append("tools.workspace_path is required")
    if not 1 <= config.tools.shell_timeout_seconds <= 300:
        problems.append("tools.shell_timeout_seconds must be between 1 and 300 seconds")
    if not config.tools.allowed_tools:
        problems.append("At least one tool must be allowed")

    if config.logging.level not in LOG_LEVELS:
        problems.append(f"logging.level must be one of {', '.join(LOG_LEVELS)}")

    for i, task in enumerate(config.scheduler.tasks):
        if not isinstance(task, dict) or not task.get("name") or not task.get("cron"):
            problems.append(f"scheduler.tasks[{i}] needs a name and a cron expression")

    return problems
