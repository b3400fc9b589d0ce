"""End-to-end turns of the stateful agent against a scripted model."""

import asyncio
import json
import logging

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from fakes import BlockingChatModel, ScriptedChatModel, ScriptedReflector, make_settings, tool_call, tool_calls, wait_until
from statefulAgent import AgentCallbacks, AgentState, StatefulAgent, StepType, build_agent
from statefulAgent.agents.interfaces import NextAction, ReflectionResult
from statefulAgent.graph.prompts import (
    EMPTY_RESPONSE_FAILURE,
    REFLECTION_COMPLETE_PROMPT,
    TASK_BLOCK_MARKER,
    is_agent_system_message,
)
from statefulAgent.utils.error_handler import InvalidStateError, ProviderEmptyResponseError

pytestmark = pytest.mark.integration


class Recorder:
    """Collects callback invocations."""

    def __init__(self):
        self.steps = []
        self.states = []
        self.confirmations = []
        self.reflections = []
        self.intents = []

    def callbacks(self):
        return AgentCallbacks(
            on_state_change=lambda old, new: self.states.append((old, new)),
            on_intent_rewritten=self.intents.append,
            on_confirmation_required=self.confirmations.append,
            on_reflection=self.reflections.append,
            on_step=self.steps.append,
        )

    def steps_of(self, step_type):
        return [s for s in self.steps if s.type == step_type]


def _last_ai(snapshot):
    return [m for m in snapshot.messages if isinstance(m, AIMessage)][-1]


def _tool_messages(snapshot):
    return [m for m in snapshot.messages if isinstance(m, ToolMessage)]


class TestSimpleTurns:
    """测试基本对话轮次"""

    @pytest.mark.asyncio
    async def test_chat_turn_walks_the_happy_path(self, ledger):
        recorder = Recorder()
        model = ScriptedChatModel([AIMessage(content="你好！有什么可以帮你？")])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="你好")], recorder.callbacks())

        assert snapshot.state == AgentState.COMPLETED
        assert _last_ai(snapshot).content == "你好！有什么可以帮你？"
        assert [new for _, new in recorder.states] == [
            AgentState.PARSING,
            AgentState.EXECUTING,
            AgentState.SUMMARIZING,
            AgentState.COMPLETED,
        ]
        assert agent.get_state() == AgentState.COMPLETED
        assert agent.get_plan().status == "completed"

    @pytest.mark.asyncio
    async def test_system_prompt_is_refreshed(self, ledger):
        """旧的 agent 系统提示被替换，宿主系统消息被合并"""
        model = ScriptedChatModel([AIMessage(content="好的")])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(enable_intent_rewrite=False))
        history = [
            SystemMessage(content="过期的提示", id="agent-system-prompt"),
            SystemMessage(content="用户偏好：金额保留两位小数"),
            HumanMessage(content="你好"),
        ]

        await agent.invoke(history)

        sent = model.calls[0]
        system_messages = [m for m in sent if isinstance(m, SystemMessage)]
        assert len(system_messages) == 1
        assert is_agent_system_message(system_messages[0])
        assert "过期的提示" not in system_messages[0].content
        assert "金额保留两位小数" in system_messages[0].content
        assert "<current_datetime>" in system_messages[0].content

    @pytest.mark.asyncio
    async def test_clarify_ends_turn_without_model_call(self, ledger):
        model = ScriptedChatModel()
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="帮我记账，午饭")])

        assert snapshot.state == AgentState.COMPLETED
        assert _last_ai(snapshot).content == "请问这笔账的金额是多少？"
        assert model.calls == []

    @pytest.mark.asyncio
    async def test_query_then_render_completes(self, ledger):
        """查询后调用 render 工具，反思判定任务完成"""
        recorder = Recorder()
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "query"}, "c1"),
            tool_call("render_transaction_list", {"title": "最近交易"}, "c2"),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="查询最近的交易")], recorder.callbacks())

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.names() == ["transaction", "render_transaction_list"]
        assert len(model.calls) == 2
        results = _tool_messages(snapshot)
        assert json.loads(results[0].content)["items"][0]["id"] == 42
        assert recorder.reflections and recorder.reflections[-1].is_task_complete
        assert [s.tool_name for s in recorder.steps_of(StepType.TOOL_RESULT)] == [
            "transaction",
            "render_transaction_list",
        ]
        assert [step.tool_name for step in agent.get_plan().steps] == ["transaction", "render_transaction_list"]

    @pytest.mark.asyncio
    async def test_text_reply_with_unrendered_result_gets_reminder(self, ledger):
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "query"}, "c1"),
            AIMessage(content="你有两笔交易"),
            tool_call("render_transaction_list", {}, "c2"),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(reflection=False))

        snapshot = await agent.invoke([HumanMessage(content="查询最近的交易")])

        reminder = model.calls[2][-1]
        assert isinstance(reminder, HumanMessage)
        assert "render_" in reminder.content
        assert ledger.names()[-1] == "render_transaction_list"
        assert len(model.calls) == 4
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_receipt_image_reaches_the_model(self, ledger):
        """带大图片的用户消息不会被上下文裁剪丢掉"""
        image = {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64," + "A" * 400_000}}
        request = HumanMessage(content=[{"type": "text", "text": "帮我把这张小票记一笔"}, image])
        model = ScriptedChatModel([AIMessage(content="小票金额是 35 元，要记到餐饮吗？")])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(enable_intent_rewrite=False))

        snapshot = await agent.invoke([request])

        assert snapshot.state == AgentState.COMPLETED
        sent = [m for m in model.calls[0] if isinstance(m, HumanMessage)]
        assert len(sent) == 1
        assert sent[0].content[1] == image
        assert agent.context.last_stats.estimated_tokens < 5_000

    @pytest.mark.asyncio
    async def test_snapshots_are_streamed(self, ledger):
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "query"}, "c1"),
            AIMessage(content="查完了"),
        ])
        agent = StatefulAgent(
            model, ledger.tools, settings=make_settings(reflection=False, max_render_reminders=0)
        )

        snapshots = [s async for s in agent.stream([HumanMessage(content="查询交易")])]

        assert len(snapshots) >= 3
        assert snapshots[-1].state == AgentState.COMPLETED
        assert all(len(a.messages) <= len(b.messages) for a, b in zip(snapshots, snapshots[1:]))


class TestConfirmation:
    """测试确认流程"""

    @pytest.mark.asyncio
    async def test_delete_intent_rejected(self, ledger):
        """"delete transaction 42" → 等待确认 → reject("wrong one") → 完成且未执行工具"""
        recorder = Recorder()
        model = ScriptedChatModel()
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        task = asyncio.create_task(
            agent.invoke([HumanMessage(content="delete transaction 42")], recorder.callbacks())
        )
        await wait_until(agent.is_awaiting_confirmation)

        assert agent.get_state() == AgentState.AWAITING_CONFIRMATION
        pending = agent.get_pending_confirmation()
        assert pending.tool_name == "intent:delete"
        assert pending.args == {"transaction_id": 42}
        assert recorder.confirmations == [pending]

        assert agent.reject("wrong one") is True
        snapshot = await task

        assert snapshot.state == AgentState.COMPLETED
        assert "wrong one" in _last_ai(snapshot).content
        assert ledger.calls == []
        assert model.calls == []
        assert not agent.is_awaiting_confirmation()

    @pytest.mark.asyncio
    async def test_dangerous_tool_waits_for_confirm(self, ledger):
        """危险工具在 confirm() 之前绝不执行"""
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "delete", "transaction_id": 42}, "c1"),
            AIMessage(content="已删除"),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(enable_intent_rewrite=False))

        task = asyncio.create_task(agent.invoke([HumanMessage(content="把那笔午饭删了")]))
        await wait_until(agent.is_awaiting_confirmation)

        assert ledger.calls == []
        pending = agent.get_pending_confirmation()
        assert pending.tool_name == "transaction"
        assert pending.risk_level == "high"

        agent.confirm()
        snapshot = await task

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.calls == [("transaction", {"action": "delete", "transaction_id": 42})]
        assert 42 not in ledger.transactions

    @pytest.mark.asyncio
    async def test_dangerous_tool_rejected(self, ledger):
        model = ScriptedChatModel([
            tool_calls(
                ("transaction", {"action": "delete", "transaction_id": 42}, "c1"),
                ("render_transaction_list", {}, "c2"),
            ),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(enable_intent_rewrite=False))

        task = asyncio.create_task(agent.invoke([HumanMessage(content="删掉 42")]))
        await wait_until(agent.is_awaiting_confirmation)
        agent.reject("不要删")
        snapshot = await task

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.calls == []
        results = _tool_messages(snapshot)
        assert results[0].content == "操作被用户取消: 不要删"
        assert json.loads(results[1].content)["skipped"] is True
        assert _last_ai(snapshot).content == "好的，已取消执行。不要删"
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_confirmed_intent_adds_task_block(self, ledger):
        """确认意图后，任务块写入系统提示；危险工具仍需单独确认"""
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "delete", "transaction_id": 42}, "c1"),
            AIMessage(content="已删除"),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        task = asyncio.create_task(agent.invoke([HumanMessage(content="delete transaction 42")]))
        await wait_until(agent.is_awaiting_confirmation)
        agent.confirm()
        await wait_until(lambda: agent.is_awaiting_confirmation() and ledger.calls == [] and model.calls)
        assert agent.get_pending_confirmation().tool_name == "transaction"
        agent.confirm()
        snapshot = await task

        assert snapshot.state == AgentState.COMPLETED
        assert TASK_BLOCK_MARKER in model.calls[0][0].content
        assert ledger.names() == ["transaction"]

    @pytest.mark.asyncio
    async def test_confirm_without_pending_is_noop(self, ledger):
        agent = StatefulAgent(ScriptedChatModel(), ledger.tools, settings=make_settings())
        assert agent.confirm() is False
        assert agent.reject("x") is False
        assert agent.get_state() == AgentState.IDLE


class TestRecovery:
    """测试纠错与循环防护"""

    @pytest.mark.asyncio
    async def test_malformed_tool_name_is_corrected(self, ledger):
        """list({}) 被纠正为 category(action="list")，并发出步骤事件"""
        recorder = Recorder()
        model = ScriptedChatModel([
            tool_call("list", {}, "c1"),
            AIMessage(content="分类有：餐饮、交通、购物"),
        ])
        agent = StatefulAgent(
            model,
            ledger.tools,
            settings=make_settings(reflection=False, max_render_reminders=0),
        )

        snapshot = await agent.invoke([HumanMessage(content="列出分类")], recorder.callbacks())

        assert ledger.calls == [("category", {"action": "list"})]
        corrected = [s for s in recorder.steps_of(StepType.TOOL_CALL) if s.extra.get("corrected_from") == "list"]
        assert len(corrected) == 1
        assert corrected[0].tool_name == "category"
        assert corrected[0].tool_args == {"action": "list"}
        assert _tool_messages(snapshot)[0].tool_call_id == "c1"
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_tool_reports_error(self, ledger):
        model = ScriptedChatModel([tool_call("drop_everything", {}, "c1"), AIMessage(content="抱歉")])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(reflection=False))

        snapshot = await agent.invoke([HumanMessage(content="随便做点什么")])

        result = _tool_messages(snapshot)[0]
        assert result.status == "error"
        assert "工具 drop_everything 不存在" in result.content
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_repeated_call_is_intercepted_then_hard_stopped(self, ledger):
        """同一调用重复出现：先拦截，再次重复则终止"""
        call = ("transaction", {"action": "query"})
        model = ScriptedChatModel([
            tool_call(*call, "c1"),
            tool_call(*call, "c2"),
            tool_call(*call, "c3"),
            tool_call(*call, "c4"),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(reflection=False))

        snapshot = await agent.invoke([HumanMessage(content="查询交易")])

        assert ledger.names() == ["transaction"]
        assert len(model.calls) == 3
        intercepted = _tool_messages(snapshot)[1]
        assert intercepted.status == "error"
        assert "重复调用" in intercepted.content
        assert snapshot.state == AgentState.ERROR
        assert "检测到重复调用 transaction" in _last_ai(snapshot).content

    @pytest.mark.asyncio
    async def test_repeated_argument_order_is_same_call(self, ledger):
        model = ScriptedChatModel([
            tool_call("category", {"action": "search", "keyword": "餐"}, "c1"),
            tool_call("category", {"keyword": "餐", "action": "search"}, "c2"),
            AIMessage(content="找到餐饮"),
        ])
        agent = StatefulAgent(
            model, ledger.tools, settings=make_settings(reflection=False, max_render_reminders=0)
        )

        snapshot = await agent.invoke([HumanMessage(content="搜索分类 餐")])

        assert ledger.names() == ["category"]
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_repeated_render_counts_as_completion(self, ledger):
        """重复调用已成功的 render 工具视为完成"""
        model = ScriptedChatModel([
            tool_call("render_transaction_detail", {"transaction_id": 42}, "c1"),
            tool_call("render_transaction_detail", {"transaction_id": 42}, "c2"),
        ])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(reflection=False))

        snapshot = await agent.invoke([HumanMessage(content="看看 42 号交易")])

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.names() == ["render_transaction_detail"]
        assert len(model.calls) == 2
        assert _tool_messages(snapshot)[-1].tool_call_id == "c2"

    @pytest.mark.asyncio
    async def test_ten_empty_responses_end_in_error(self, ledger):
        """连续空响应达到上限后以错误结束，并提示用户"""
        model = ScriptedChatModel([AIMessage(content="") for _ in range(10)])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="查询交易")])

        assert snapshot.state == AgentState.ERROR
        assert _last_ai(snapshot).content == EMPTY_RESPONSE_FAILURE
        assert len(model.calls) == 3
        corrective = model.calls[1][-1]
        assert isinstance(corrective, HumanMessage) and corrective.additional_kwargs.get("corrective")
        assert not any(isinstance(m, AIMessage) and not m.content for m in snapshot.messages)

    @pytest.mark.asyncio
    async def test_provider_empty_error_counts_as_empty(self, ledger):
        model = ScriptedChatModel([ProviderEmptyResponseError(), AIMessage(content="你好")])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="你好")])

        assert snapshot.state == AgentState.COMPLETED
        assert len(model.calls) == 2

    @pytest.mark.asyncio
    async def test_tool_failure_triggers_reflection_hint(self, ledger):
        """工具失败 → 反思给出调整建议，作为下一轮输入"""
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "delete", "transaction_id": 999}, "c1"),
            AIMessage(content="没有找到这笔交易"),
        ])
        agent = StatefulAgent(
            model, ledger.tools, settings=make_settings(enable_intent_rewrite=False, enable_confirmation=False)
        )

        snapshot = await agent.invoke([HumanMessage(content="删掉 999")])

        failed = _tool_messages(snapshot)[0]
        assert failed.status == "error"
        assert "transaction 999 not found" in failed.content
        hint = model.calls[1][-1]
        assert isinstance(hint, HumanMessage)
        assert hint.content.startswith("[反思]")
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_max_iterations(self, ledger):
        model = ScriptedChatModel(default=lambda n: tool_call("category", {"action": "search", "keyword": str(n)}, f"c{n}"))
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(reflection=False, max_iterations=3))

        snapshot = await agent.invoke([HumanMessage(content="找分类")])

        assert snapshot.state == AgentState.ERROR
        assert len(model.calls) == 3
        assert "最大执行轮数" in _last_ai(snapshot).content

    @pytest.mark.asyncio
    async def test_model_failure_ends_in_error(self, ledger):
        model = ScriptedChatModel([ValueError("invalid_api_key")])
        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="你好")])

        assert snapshot.state == AgentState.ERROR
        assert "API 密钥无效" in _last_ai(snapshot).content

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_turn(self, ledger, caplog):
        def broken(_event):
            raise RuntimeError("ui crashed")

        agent = StatefulAgent(ScriptedChatModel([AIMessage(content="你好")]), ledger.tools, settings=make_settings())

        snapshot = await agent.invoke([HumanMessage(content="你好")], AgentCallbacks(on_step=broken))

        assert snapshot.state == AgentState.COMPLETED
        assert "Callback on_step failed" in caplog.text


class TestReflection:
    """测试反思结论对执行流程的影响"""

    @pytest.mark.asyncio
    async def test_complete_before_render_asks_for_render(self, ledger):
        """反思判定完成但还没有展示结果 → 注入提示并继续执行"""
        reflector = ScriptedReflector(ReflectionResult(thought="查到了", next_action=NextAction.COMPLETE))
        model = ScriptedChatModel([
            tool_call("transaction", {"action": "query"}, "c1"),
            tool_call("render_transaction_list", {"title": "最近交易"}, "c2"),
            AIMessage(content="已为你展示最近的交易"),
        ])
        agent = StatefulAgent(
            model, ledger.tools, settings=make_settings(enable_intent_rewrite=False), reflector=reflector
        )

        snapshot = await agent.invoke([HumanMessage(content="查询最近的交易")])

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.names() == ["transaction", "render_transaction_list"]
        assert len(model.calls) == 3
        prompt = model.calls[1][-1]
        assert isinstance(prompt, HumanMessage)
        assert prompt.content == REFLECTION_COMPLETE_PROMPT
        assert isinstance(model.calls[1][-2], ToolMessage)

    @pytest.mark.asyncio
    async def test_adjust_strategy_skips_rest_of_round(self, ledger):
        """调整策略 → 本轮剩余调用不执行，但都有对应的 ToolMessage"""
        reflector = ScriptedReflector(ReflectionResult(
            thought="应该先确认分类",
            next_action=NextAction.ADJUST_STRATEGY,
            correction_hint="先按分类筛选再展示",
        ))
        model = ScriptedChatModel([
            tool_calls(
                ("transaction", {"action": "query"}, "c1"),
                ("category", {"action": "list"}, "c2"),
                ("render_transaction_list", {}, "c3"),
            ),
            tool_call("render_transaction_list", {"title": "餐饮"}, "c4"),
            AIMessage(content="已展示"),
        ])
        agent = StatefulAgent(
            model, ledger.tools, settings=make_settings(enable_intent_rewrite=False), reflector=reflector
        )

        snapshot = await agent.invoke([HumanMessage(content="查询最近的交易")])

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.names() == ["transaction", "render_transaction_list"]
        assert [c["name"] for c in reflector.contexts[0].remaining_calls] == ["category", "render_transaction_list"]

        skipped = {m.tool_call_id: m for m in _tool_messages(snapshot) if m.tool_call_id in ("c2", "c3")}
        assert set(skipped) == {"c2", "c3"}
        for message in skipped.values():
            assert message.status == "error"
            assert json.loads(message.content)["skipped"] is True

        hint = model.calls[1][-1]
        assert hint.content == "[反思] 先按分类筛选再展示"
        assert isinstance(model.calls[1][-2], ToolMessage)
        assert model.calls[1][-2].tool_call_id == "c3"

    @pytest.mark.asyncio
    async def test_abort_is_advisory(self, ledger, caplog):
        """abort 只记录日志，本轮剩余调用照常执行"""
        reflector = ScriptedReflector(ReflectionResult(thought="数据可能不完整", next_action=NextAction.ABORT))
        model = ScriptedChatModel([
            tool_calls(
                ("transaction", {"action": "query"}, "c1"),
                ("render_transaction_list", {}, "c2"),
            ),
            AIMessage(content="已展示"),
        ])
        agent = StatefulAgent(
            model, ledger.tools, settings=make_settings(enable_intent_rewrite=False), reflector=reflector
        )

        snapshot = await agent.invoke([HumanMessage(content="查询最近的交易")])

        assert snapshot.state == AgentState.COMPLETED
        assert ledger.names() == ["transaction", "render_transaction_list"]
        assert all(m.status == "success" for m in _tool_messages(snapshot))
        assert len(model.calls) == 2
        assert "Reflector suggested abort: 数据可能不完整" in caplog.text


class TestCancellationAndReset:
    """测试取消与重置"""

    @pytest.mark.asyncio
    async def test_cancel_during_model_call(self, ledger):
        """模型调用期间取消：立即 Cancelled → Idle，迟到结果被丢弃"""
        recorder = Recorder()
        model = BlockingChatModel(tool_call("transaction", {"action": "query"}, "c1"))
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(enable_intent_rewrite=False))

        task = asyncio.create_task(agent.invoke([HumanMessage(content="查询交易")], recorder.callbacks()))
        await asyncio.wait_for(model.started.wait(), timeout=2)

        assert agent.cancel() is True
        assert agent.get_state() == AgentState.CANCELLED

        snapshot = await task
        assert snapshot.state == AgentState.CANCELLED
        assert agent.get_state() == AgentState.IDLE
        assert recorder.steps_of(StepType.CANCELLED)

        model.release.set()
        await asyncio.sleep(0.05)
        assert ledger.calls == []

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_confirmation(self, ledger):
        agent = StatefulAgent(ScriptedChatModel(), ledger.tools, settings=make_settings())

        task = asyncio.create_task(agent.invoke([HumanMessage(content="delete transaction 42")]))
        await wait_until(agent.is_awaiting_confirmation)
        agent.cancel()
        snapshot = await task

        assert snapshot.state == AgentState.CANCELLED
        assert agent.get_state() == AgentState.IDLE
        assert not agent.is_awaiting_confirmation()
        assert agent.confirm() is False

    @pytest.mark.asyncio
    async def test_cancel_without_turn_is_noop(self, ledger, caplog):
        agent = StatefulAgent(ScriptedChatModel(), ledger.tools, settings=make_settings())
        with caplog.at_level(logging.WARNING):
            assert agent.cancel() is False
        assert agent.get_state() == AgentState.IDLE
        assert "no turn in progress" in caplog.text

    @pytest.mark.asyncio
    async def test_next_turn_after_cancel(self, ledger):
        model = BlockingChatModel(AIMessage(content="你好"))
        agent = StatefulAgent(model, ledger.tools, settings=make_settings(enable_intent_rewrite=False))

        task = asyncio.create_task(agent.invoke([HumanMessage(content="你好")]))
        await asyncio.wait_for(model.started.wait(), timeout=2)
        agent.cancel()
        await task
        model.release.set()

        snapshot = await agent.invoke([HumanMessage(content="你好")])
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_reset_is_idempotent(self, ledger):
        agent = StatefulAgent(ScriptedChatModel([AIMessage(content="你好")]), ledger.tools, settings=make_settings())
        await agent.invoke([HumanMessage(content="你好")])

        agent.reset()
        agent.reset()

        assert agent.get_state() == AgentState.IDLE
        assert agent.get_plan() is None
        assert agent.get_pending_confirmation() is None
        assert agent.context.last_stats is None

    @pytest.mark.asyncio
    async def test_reset_during_confirmation(self, ledger):
        agent = StatefulAgent(ScriptedChatModel([AIMessage(content="你好")]), ledger.tools, settings=make_settings())

        task = asyncio.create_task(agent.invoke([HumanMessage(content="delete transaction 42")]))
        await wait_until(agent.is_awaiting_confirmation)
        agent.reset()
        await task

        assert agent.get_state() == AgentState.IDLE
        assert not agent.is_awaiting_confirmation()
        snapshot = await agent.invoke([HumanMessage(content="你好")])
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_error_state_requires_reset(self, ledger):
        agent = StatefulAgent(ScriptedChatModel([ValueError("invalid_api_key")]), ledger.tools, settings=make_settings())
        await agent.invoke([HumanMessage(content="你好")])
        assert agent.get_state() == AgentState.ERROR

        with pytest.raises(InvalidStateError):
            await agent.invoke([HumanMessage(content="你好")])

        agent.reset()
        snapshot = await agent.invoke([HumanMessage(content="你好")])
        assert snapshot.state == AgentState.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_turn_is_rejected(self, ledger):
        agent = StatefulAgent(ScriptedChatModel(), ledger.tools, settings=make_settings())

        task = asyncio.create_task(agent.invoke([HumanMessage(content="delete transaction 42")]))
        await wait_until(agent.is_awaiting_confirmation)

        with pytest.raises(InvalidStateError):
            await agent.invoke([HumanMessage(content="你好")])

        agent.reject("算了")
        await task


class TestBuildAgent:
    """测试运行时组装"""

    @pytest.mark.asyncio
    async def test_build_agent_from_settings(self, ledger):
        agent = build_agent(ScriptedChatModel([AIMessage(content="你好")]), ledger.tools, settings=make_settings())
        assert agent.registry.tool_names() == ["transaction", "category", "render_transaction_list", "render_transaction_detail"]
        snapshot = await agent.invoke([HumanMessage(content="你好")])
        assert snapshot.state == AgentState.COMPLETED

    def test_binds_tools_when_supported(self, ledger, mocker):
        model = mocker.Mock()
        bound = mocker.Mock()
        model.bind_tools.return_value = bound

        agent = StatefulAgent(model, ledger.tools, settings=make_settings())

        model.bind_tools.assert_called_once()
        assert agent.model is bound
