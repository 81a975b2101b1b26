"""
Unit tests for config.py

Tests cover:
- Environment variable substitution (${VAR} and ${VAR:default})
- Default config generation and deep merging
- Config loading from YAML files and COREBOT_CONFIG
- Typed sections, path expansion and log level aliases
- Validation problems (collected, not first-only)
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from config import (
    ConfigValidationError,
    CoreBotConfig,
    PlatformConfig,
    _default_config,
    _merge_with_defaults,
    _substitute_env_vars,
    build_config,
    load_config,
    normalize_level,
    validate_config,
)


# =============================================================================
# Environment Variable Substitution Tests
# =============================================================================


class TestSubstituteEnvVars:
    """Test _substitute_env_vars for ${VAR} and ${VAR:default} patterns."""

    def test_simple_var(self):
        with patch.dict(os.environ, {"MY_VAR": "hello"}):
            result = _substitute_env_vars("value: ${MY_VAR}")
            assert result == "value: hello"

    def test_var_with_default(self):
        # Ensure MY_VAR is not set
        env = os.environ.copy()
        env.pop("MY_MISSING_VAR", None)
        with patch.dict(os.environ, env, clear=True):
            result = _substitute_env_vars("value: ${MY_MISSING_VAR:fallback}")
            assert result == "value: fallback"

    def test_var_set_overrides_default(self):
        with patch.dict(os.environ, {"MY_VAR": "actual"}):
            result = _substitute_env_vars("value: ${MY_VAR:fallback}")
            assert result == "value: actual"

    def test_missing_var_empty_default(self):
        env = os.environ.copy()
        env.pop("NOPE", None)
        with patch.dict(os.environ, env, clear=True):
            result = _substitute_env_vars("value: ${NOPE}")
            assert result == "value: "

    def test_multiple_vars(self):
        with patch.dict(os.environ, {"A": "1", "B": "2"}):
            result = _substitute_env_vars("${A} and ${B}")
            assert result == "1 and 2"

    def test_no_substitution_needed(self):
        result = _substitute_env_vars("plain text with no vars")
        assert result == "plain text with no vars"

    def test_nested_colon_in_default(self):
        env = os.environ.copy()
        env.pop("URL_VAR", None)
        with patch.dict(os.environ, env, clear=True):
            result = _substitute_env_vars("url: ${URL_VAR:http://localhost:8080}")
            assert result == "url: http://localhost:8080"


# =============================================================================
# Default Config Tests
# =============================================================================

class TestDefaultConfig:
    """Test _default_config generation."""

    def test_has_required_sections(self, clean_env):
        config = _default_config()
        for section in ("llm", "agent", "tools", "platforms", "scheduler", "subagents", "skills", "logging"):
            assert section in config

    def test_cli_enabled_by_default(self, clean_env):
        config = _default_config()
        assert config["platforms"]["cli"]["enabled"] is True

    def test_remote_platforms_disabled_by_default(self, clean_env):
        config = _default_config()
        assert config["platforms"]["telegram"]["enabled"] is False
        assert config["platforms"]["whatsapp"]["enabled"] is False
        assert config["platforms"]["feishu"]["enabled"] is False

    def test_agent_defaults(self, clean_env):
        config = _default_config()
        assert config["agent"]["history_limit"] == 50
        assert config["agent"]["max_tool_iterations"] == 10
        assert config["agent"]["conversation_partition"] == "day"


# =============================================================================
# Config Merge Tests
# =============================================================================


class TestMergeWithDefaults:
    """Test deep merge of user config with defaults."""

    def test_empty_override(self, clean_env):
        result = _merge_with_defaults({})
        assert result == _default_config()

    def test_partial_override(self, clean_env):
        result = _merge_with_defaults({"agent": {"history_limit": 5}})
        assert result["agent"]["history_limit"] == 5
        # Other agent keys should still be from defaults
        assert result["agent"]["max_tool_iterations"] == 10

    def test_nested_deep_merge(self, clean_env):
        result = _merge_with_defaults({"platforms": {"telegram": {"enabled": True, "bot_token": "t"}}})
        assert result["platforms"]["telegram"]["enabled"] is True
        assert result["platforms"]["telegram"]["poll_timeout"] == 30
        assert result["platforms"]["cli"]["enabled"] is True

    def test_lists_replaced_not_merged(self, clean_env):
        result = _merge_with_defaults({"tools": {"allowed_tools": ["shell"]}})
        assert result["tools"]["allowed_tools"] == ["shell"]


# =============================================================================
# Config Loading Tests
# =============================================================================


class TestLoadConfig:
    """Test load_config from YAML file."""

    def test_missing_file_returns_defaults(self, clean_env):
        config = load_config("/nonexistent/path/config.yaml", validate=False)
        assert isinstance(config, CoreBotConfig)
        assert config.llm.provider == "openrouter"
        assert config.enabled_platforms() == ["cli"]

    def test_missing_file_fails_validation(self, clean_env):
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config("/nonexistent/path/config.yaml")
        assert "llm.model is required" in exc_info.value.problems

    def test_load_from_yaml(self, config_dir, clean_env):
        yaml_content = """
llm:
  provider: openai
  model: gpt-4o-mini
agent:
  system_prompt: You are terse.
  max_tool_iterations: 4
"""
        config_file = config_dir / "config.yaml"
        config_file.write_text(yaml_content)
        config = load_config(str(config_file))
        assert config.llm.model == "gpt-4o-mini"
        assert config.agent.system_prompt == "You are terse."
        assert config.agent.max_tool_iterations == 4
        assert config.agent.history_limit == 50

    def test_yaml_with_env_substitution(self, config_dir, clean_env):
        yaml_content = """
llm:
  provider: openrouter
  model: meta/llama
  api_key: ${OPENROUTER_API_KEY:missing}
"""
        config_file = config_dir / "config.yaml"
        config_file.write_text(yaml_content)

        with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-or-123"}):
            config = load_config(str(config_file))
            assert config.llm.api_key == "sk-or-123"

    def test_env_var_for_config_path(self, config_dir, clean_env):
        yaml_content = """
llm:
  model: env-path-model
"""
        config_file = config_dir / "config.yaml"
        config_file.write_text(yaml_content)
        with patch.dict(os.environ, {"COREBOT_CONFIG": str(config_file)}):
            config = load_config()
            assert config.llm.model == "env-path-model"

    def test_non_mapping_rejected(self, config_dir, clean_env):
        config_file = config_dir / "config.yaml"
        config_file.write_text("- just\n- a list\n")
        with pytest.raises(ConfigValidationError):
            load_config(str(config_file))


# =============================================================================
# Typed Sections
# =============================================================================


class TestBuildConfig:

    def test_platform_sections(self, sample_config):
        config = build_config(_merge_with_defaults(sample_config))
        telegram = config.platform("telegram")
        assert isinstance(telegram, PlatformConfig)
        assert telegram.enabled is False
        assert telegram.get("api_base") == "https://api.telegram.org"
        assert "enabled" not in telegram.settings

    def test_unknown_platform_is_disabled(self, sample_config):
        config = build_config(_merge_with_defaults(sample_config))
        assert config.is_platform_enabled("slack") is False

    def test_paths_expanded(self, sample_config):
        data = _merge_with_defaults({**sample_config, "data_dir": "~/bot-data"})
        config = build_config(data)
        assert config.data_dir == Path("~/bot-data").expanduser()
        assert config.memory_dir == config.data_dir / "memory"
        assert not config.tools.workspace_path.startswith("~")

    def test_unknown_keys_ignored(self, sample_config):
        data = _merge_with_defaults({**sample_config, "agent": {"mood": "cheerful"}})
        config = build_config(data)
        assert not hasattr(config.agent, "mood")

    @pytest.mark.parametrize("given,expected", [
        ("debug", "DEBUG"),
        ("Warn", "WARNING"),
        ("TRACE", "DEBUG"),
        ("fatal", "CRITICAL"),
    ])
    def test_level_aliases(self, given, expected):
        assert normalize_level(given) == expected


# =============================================================================
# Validation
# =============================================================================


class TestValidateConfig:

    def build(self, **overrides):
        overrides.setdefault("llm", {})
        overrides["llm"].setdefault("model", "gpt-4o-mini")
        return build_config(_merge_with_defaults(overrides))

    def test_sample_config_valid(self, sample_config):
        assert validate_config(build_config(_merge_with_defaults(sample_config))) == []

    def test_all_problems_reported(self):
        config = self.build(
            llm={"temperature": 1.5, "max_tokens": 0},
            agent={"history_limit": 0, "conversation_partition": "hourly"},
        )
        problems = validate_config(config)
        assert "llm.temperature must be between 0.0 and 1.0" in problems
        assert "llm.max_tokens must be greater than 0" in problems
        assert "agent.history_limit must be greater than 0" in problems
        assert any("conversation_partition" in p for p in problems)

    def test_no_platform_enabled(self):
        config = self.build(platforms={"cli": {"enabled": False}})
        assert "At least one chat platform must be enabled" in validate_config(config)

    def test_telegram_requires_token(self):
        config = self.build(platforms={"telegram": {"enabled": True}})
        assert any("bot_token" in p for p in validate_config(config))

    def test_whatsapp_requires_credentials(self):
        config = self.build(platforms={"whatsapp": {"enabled": True, "access_token": "a"}})
        assert any("phone_number_id" in p for p in validate_config(config))

    def test_feishu_requires_app_credentials(self):
        config = self.build(platforms={"feishu": {"enabled": True, "app_id": "cli_a1"}})
        assert "platforms.feishu needs app_id and app_secret when enabled" in validate_config(config)

    def test_shell_timeout_bounds(self):
        config = self.build(tools={"shell_timeout_seconds": 0})
        assert any("shell_timeout_seconds" in p for p in validate_config(config))

    def test_bad_log_level(self):
        config = self.build(logging={"level": "LOUD"})
        assert any("logging.level" in p for p in validate_config(config))

    def test_scheduler_task_without_cron(self):
        config = self.build(scheduler={"tasks": [{"name": "nightly"}]})
        assert "scheduler.tasks[0] needs a name and a cron expression" in validate_config(config)

    def test_error_message_lists_problems(self):
        error = ConfigValidationError(["a is wrong", "b is wrong"])
        assert "- a is wrong" in str(error)
        assert error.problems == ["a is wrong", "b is wrong"]
