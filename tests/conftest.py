"""Pytest configuration and fixtures for all tests.

This file is automatically loaded by pytest and ensures proper test environment setup.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root (and this directory, for the shared fakes) are importable
project_root = Path(__file__).parent.parent
for path in (project_root, Path(__file__).parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fakes import FakeLedger, ScriptedChatModel, make_settings  # noqa: E402


@pytest.fixture
def ledger():
    """内存账本及其工具（transaction / category / render_*）"""
    return FakeLedger()


@pytest.fixture
def settings():
    """测试用配置：不重试、超时短、关闭反思"""
    return make_settings(reflection=False)


@pytest.fixture
def scripted_model():
    """按脚本返回响应的假模型（工厂）"""
    return ScriptedChatModel
