"""Tests for settings, error helpers and logging utilities."""

import json
import logging

import pytest

from statefulAgent.config.settings import ContextSettings, GovernanceSettings, Settings, get_settings
from statefulAgent.utils.error_handler import (
    OperationTimeoutError,
    ToolNotFoundError,
    format_tool_error,
    handle_model_error,
    safe_callback,
)
from statefulAgent.utils.logging_utils import get_agent_logger


class TestSettings:
    """测试配置加载"""

    def test_defaults(self, monkeypatch):
        for name in ("AGENT_MAX_ITERATIONS", "AGENT_MAX_EMPTY_RESPONSES", "AGENT_MAX_REPEATED_CALLS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.governance.max_iterations == 10
        assert settings.governance.max_empty_responses == 3
        assert settings.governance.max_repeated_calls == 2
        assert settings.timeouts.llm_invoke == 60
        assert settings.timeouts.llm_invoke_with_image == 120
        assert settings.timeouts.tool_execute == 30

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("AGENT_MAX_ITERATIONS", "4")
        assert GovernanceSettings().max_iterations == 4

    def test_field_names_accepted(self):
        assert GovernanceSettings(max_repeated_calls=5).max_repeated_calls == 5

    def test_context_budget(self):
        assert ContextSettings(max_tokens=1000, reserved_for_response=200).budget == 800

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestErrorHelpers:
    """测试错误处理工具"""

    def test_format_tool_error(self):
        payload = json.loads(format_tool_error(ToolNotFoundError("list_all")))
        assert payload == {"ok": False, "error": "Error: 工具 list_all 不存在"}

    @pytest.mark.parametrize("error, expected", [
        (OperationTimeoutError("slow", 60), "AI 响应超时，请重试"),
        (RuntimeError("429 rate limit"), "请求过于频繁，请稍后再试"),
        (RuntimeError("maximum context length"), "对话历史过长，请开启新会话"),
        (RuntimeError("invalid_api_key"), "API 密钥无效，请联系管理员"),
    ])
    def test_handle_model_error(self, error, expected):
        assert handle_model_error(error) == expected

    def test_safe_callback_swallows(self, caplog):
        def broken(_event):
            raise RuntimeError("ui crashed")

        safe_callback("on_step")(broken)("event")
        assert "Callback on_step failed" in caplog.text


class TestAgentLogger:
    """测试带 trace id 的日志"""

    def test_trace_prefix(self, caplog):
        logger = get_agent_logger("statefulAgent.test")
        trace_id = logger.new_trace()
        with caplog.at_level(logging.INFO, logger="statefulAgent.test"):
            logger.info("hello")
        assert f"[{trace_id}] hello" in caplog.text

    def test_min_level(self, caplog):
        logger = get_agent_logger("statefulAgent.test", min_level="WARNING")
        with caplog.at_level(logging.DEBUG, logger="statefulAgent.test"):
            logger.info("dropped")
            logger.warning("kept")
        assert "dropped" not in caplog.text
        assert "kept" in caplog.text
