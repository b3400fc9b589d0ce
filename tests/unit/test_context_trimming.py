"""Tests for token estimation and context trimming."""

import random

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from statefulAgent.config.settings import ContextSettings
from statefulAgent.context.manager import ContextManager
from statefulAgent.context.token_tracker import (
    MEDIA_PART_TOKENS,
    MESSAGE_OVERHEAD,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
    extract_token_usage,
)
from statefulAgent.context.truncator import MEDIA_OMITTED_NOTE, ContextTrimmer, is_trim_note


def _settings(max_tokens: int, reserved: int = 0) -> ContextSettings:
    return ContextSettings(max_tokens=max_tokens, reserved_for_response=reserved)


def _conversation(rounds: int):
    messages = []
    for i in range(rounds):
        messages.append(HumanMessage(content=f"第 {i} 个问题：帮我查询一下最近的交易记录"))
        messages.append(AIMessage(content=f"第 {i} 个回答：这是你最近的交易记录"))
    return messages


class TestTokenEstimation:
    """测试 token 估算"""

    def test_empty_text(self):
        assert estimate_tokens("") == 0

    def test_chinese_weighs_more_than_english(self):
        assert estimate_tokens("查询交易记录") > estimate_tokens("query")

    def test_minimum_one(self):
        assert estimate_tokens(" ") == 1

    def test_tool_calls_are_counted(self):
        plain = AIMessage(content="")
        with_call = AIMessage(content="", tool_calls=[
            {"name": "transaction", "args": {"action": "query", "limit": 20}, "id": "c1"},
        ])
        assert estimate_message_tokens(plain) == MESSAGE_OVERHEAD
        assert estimate_message_tokens(with_call) > MESSAGE_OVERHEAD

    def test_extract_usage(self):
        response = AIMessage(content="ok", response_metadata={
            "token_usage": {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120},
            "model_name": "test-model",
        })
        usage = extract_token_usage(response)
        assert usage.total_tokens == 120
        assert usage.model_name == "test-model"

    def test_extract_usage_missing(self):
        assert extract_token_usage(AIMessage(content="ok")) is None


class TestContextTrimmer:
    """测试上下文裁剪"""

    def test_within_budget_is_untouched(self):
        messages = [SystemMessage(content="你是记账助手")] + _conversation(2)
        trimmed, stats = ContextTrimmer(_settings(10_000)).trim(messages)
        assert trimmed == messages
        assert not stats.was_trimmed

    def test_drops_oldest_and_inserts_note(self):
        """超出预算时丢弃最旧消息，并在系统消息后插入说明"""
        messages = [SystemMessage(content="你是记账助手")] + _conversation(30)
        trimmed, stats = ContextTrimmer(_settings(300)).trim(messages)

        assert stats.was_trimmed
        assert isinstance(trimmed[0], SystemMessage) and not is_trim_note(trimmed[0])
        assert is_trim_note(trimmed[1])
        assert trimmed[-1] is messages[-1]
        assert stats.estimated_tokens <= 300
        assert f"已省略前 {stats.trimmed_count} 条" in trimmed[1].content

    def test_tool_round_kept_together(self):
        """AIMessage 与其 ToolMessage 不被拆开"""
        round_messages = [
            AIMessage(content="", tool_calls=[{"name": "transaction", "args": {"action": "query"}, "id": "c1"}]),
            ToolMessage(content="交易记录" * 20, tool_call_id="c1"),
        ]
        messages = [SystemMessage(content="sys")] + _conversation(20) + round_messages
        trimmed, _ = ContextTrimmer(_settings(400)).trim(messages)

        assert any(isinstance(m, ToolMessage) for m in trimmed)
        ai_ids = {tc["id"] for m in trimmed if isinstance(m, AIMessage) for tc in m.tool_calls}
        for message in trimmed:
            if isinstance(message, ToolMessage):
                assert message.tool_call_id in ai_ids

    def test_stale_note_is_replaced(self):
        messages = [SystemMessage(content="sys")] + _conversation(30)
        trimmer = ContextTrimmer(_settings(300))
        first, _ = trimmer.trim(messages)
        second, _ = trimmer.trim(first + [HumanMessage(content="再查一次" * 30)])
        assert sum(1 for m in second if is_trim_note(m)) == 1

    def test_oversized_system_prompt_keeps_only_system(self, caplog):
        system = SystemMessage(content="规则" * 500)
        trimmed, stats = ContextTrimmer(_settings(100)).trim([system] + _conversation(2))
        assert trimmed == [system]
        assert stats.trimmed_count == 4
        assert "System prompt too long" in caplog.text

    def test_single_oversized_message_is_clipped(self):
        """唯一的超长用户消息被截断而不是丢弃"""
        messages = [SystemMessage(content="sys"), HumanMessage(content="很长的账单描述" * 200)]
        trimmed, _ = ContextTrimmer(_settings(300)).trim(messages)

        assert isinstance(trimmed[-1], HumanMessage)
        assert trimmed[-1].content.endswith("…")
        assert len(trimmed[-1].content) < len(messages[-1].content)


class TestContextManager:
    """测试上下文管理器"""

    def test_prepare_records_stats(self):
        manager = ContextManager(_settings(300))
        report = manager.prepare([SystemMessage(content="sys")] + _conversation(30))
        assert report.action == "trimmed"
        assert manager.last_stats is report.stats

    def test_record_response_and_reset(self):
        manager = ContextManager(_settings(10_000))
        manager.record_response(AIMessage(content="ok", usage_metadata={
            "input_tokens": 10, "output_tokens": 5, "total_tokens": 15,
        }))
        assert manager.last_usage.total_tokens == 15
        manager.reset()
        assert manager.last_usage is None and manager.last_stats is None


def _image_part(size: int = 300_000):
    return {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64," + "A" * size}}


def _receipt_request(text: str = "帮我把这张小票记一笔"):
    return HumanMessage(content=[{"type": "text", "text": text}, _image_part()])


class TestMultimodalTrimming:
    """测试带图片的消息裁剪"""

    def test_image_part_has_flat_cost(self):
        message = _receipt_request()
        expected = MESSAGE_OVERHEAD + estimate_tokens("帮我把这张小票记一笔") + MEDIA_PART_TOKENS
        assert estimate_message_tokens(message) == expected

    def test_latest_image_request_is_kept(self):
        """最新的图片消息始终保留，较早的历史被丢弃"""
        request = _receipt_request()
        messages = [SystemMessage(content="你是记账助手")] + _conversation(30) + [request]
        trimmed, stats = ContextTrimmer(_settings(1500)).trim(messages)

        assert stats.was_trimmed
        assert trimmed[-1] is request
        assert stats.estimated_tokens <= 1500

    def test_latest_request_text_clipped_image_kept(self):
        request = _receipt_request("很长的账单描述" * 200)
        messages = [SystemMessage(content="sys")] + _conversation(5) + [request]
        trimmed, stats = ContextTrimmer(_settings(1200)).trim(messages)

        last = trimmed[-1]
        assert isinstance(last, HumanMessage)
        assert last.content[0]["text"].endswith("…")
        assert last.content[1] == request.content[1]
        assert not any(isinstance(m, AIMessage) for m in trimmed)
        assert stats.estimated_tokens <= 1200

    def test_media_over_budget_is_replaced_by_note(self):
        messages = [SystemMessage(content="sys"), _receipt_request("帮我记一笔")]
        trimmed, stats = ContextTrimmer(_settings(300)).trim(messages)

        last = trimmed[-1]
        assert isinstance(last, HumanMessage)
        assert isinstance(last.content, str)
        assert MEDIA_OMITTED_NOTE in last.content
        assert "帮我记一笔" in last.content
        assert stats.estimated_tokens <= 300

    def test_latest_request_kept_before_newer_tool_round(self):
        """最新用户消息之后的工具轮次放不下时，用户消息仍然保留"""
        request = HumanMessage(content="查一下最近的交易")
        round_messages = [
            AIMessage(content="", tool_calls=[{"name": "transaction", "args": {"action": "query"}, "id": "c1"}]),
            ToolMessage(content="交易记录" * 400, tool_call_id="c1"),
        ]
        messages = [SystemMessage(content="sys")] + _conversation(3) + [request] + round_messages
        trimmed, stats = ContextTrimmer(_settings(400)).trim(messages)

        assert request in trimmed
        assert not any(isinstance(m, ToolMessage) for m in trimmed)
        assert stats.estimated_tokens <= 400


def _random_conversation(rng: random.Random):
    messages = []
    for i in range(rng.randint(0, 25)):
        kind = rng.choice(["human", "image", "ai", "tools"])
        text = "记账" * rng.randint(0, 300) + "query" * rng.randint(0, 50)
        if kind == "human":
            messages.append(HumanMessage(content=text))
        elif kind == "image":
            messages.append(HumanMessage(content=[{"type": "text", "text": text}, _image_part(rng.randint(10, 5000))]))
        elif kind == "ai":
            messages.append(AIMessage(content=text))
        else:
            ids = [f"c{i}_{n}" for n in range(rng.randint(1, 3))]
            messages.append(AIMessage(content="", tool_calls=[
                {"name": "transaction", "args": {"action": "query", "page": n}, "id": call_id}
                for n, call_id in enumerate(ids)
            ]))
            messages.extend(ToolMessage(content=text, tool_call_id=call_id) for call_id in ids)
    return messages


@pytest.mark.parametrize("seed", range(40))
def test_trim_never_exceeds_budget(seed):
    """任意输入裁剪后都不超过预算，且工具调用与结果成对保留"""
    rng = random.Random(seed)
    budget = rng.randint(100, 4000)
    messages = [SystemMessage(content="你是记账助手")] + _random_conversation(rng)

    trimmed, _ = ContextTrimmer(_settings(budget)).trim(messages)

    assert estimate_messages_tokens(trimmed) <= budget
    open_ids = set()
    for message in trimmed:
        if isinstance(message, AIMessage):
            open_ids = {tc["id"] for tc in message.tool_calls}
        elif isinstance(message, ToolMessage):
            assert message.tool_call_id in open_ids
    answered = {m.tool_call_id for m in trimmed if isinstance(m, ToolMessage)}
    for message in trimmed:
        if isinstance(message, AIMessage):
            assert {tc["id"] for tc in message.tool_calls} <= answered
