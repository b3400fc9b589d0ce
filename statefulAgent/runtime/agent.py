"""Stateful agent: the orchestration loop and the host control surface.

One instance drives one conversation. Each ``stream()`` call runs one turn:

    Idle → Parsing → (AwaitingConfirmation) → Executing ⇄ Reflecting
         → Summarizing → Completed

with Cancelled and Error as the other terminal states. The turn yields a
``TurnSnapshot(messages, state)`` after every model response, after every
round of tool calls, and when it ends.

Example:
    agent = StatefulAgent(model, tools)
    async for snapshot in agent.stream(messages, AgentCallbacks(on_step=print)):
        render(snapshot.messages)
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Union

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage, ToolMessage
from langchain_core.tools import BaseTool

from statefulAgent.agents.intent_rewriter import IntentRewriterConfig, RuleBasedIntentRewriter
from statefulAgent.agents.interfaces import (
    ACTIONABLE_INTENTS,
    ChatModel,
    IntentType,
    IntentRewriter,
    NextAction,
    ReflectionContext,
    Reflector,
)
from statefulAgent.agents.reflector import PolicyReflector
from statefulAgent.config.settings import Settings, get_settings
from statefulAgent.context.manager import ContextManager
from statefulAgent.context.truncator import is_trim_note
from statefulAgent.graph.message_utils import (
    any_images,
    canonical_args,
    clean_message_history,
    extract_text_content,
    has_image_content,
    has_media_content,
    is_function_call_json,
    last_human_index,
)
from statefulAgent.graph.prompts import (
    EMPTY_RESPONSE_FAILURE,
    EMPTY_RESPONSE_PROMPT,
    REFLECTION_COMPLETE_PROMPT,
    RENDER_REMINDER_PROMPT,
    RuntimeContext,
    agent_system_message,
    build_system_prompt,
    build_task_block,
    corrective_message,
    is_agent_system_message,
    rejection_reply,
)
from statefulAgent.graph.routing import ResponseKind, classify_response, evaluate_completion
from statefulAgent.graph.state import (
    STATE_DISPLAY_NAMES,
    AgentState,
    AgentTurn,
    ExecutionPlan,
    StepObservation,
    TurnSnapshot,
)
from statefulAgent.graph.state_machine import StateMachine
from statefulAgent.hitl.confirmation import ConfirmationRendezvous, ConfirmationRequest
from statefulAgent.hitl.permissions import PermissionGate, PermissionTier
from statefulAgent.tools.name_corrector import correct_tool_call
from statefulAgent.tools.registry import ToolRegistry
from statefulAgent.utils.cancellation import CancellationController, with_cancellation
from statefulAgent.utils.error_handler import (
    CancellationError,
    CancellationReason,
    ConfirmationRejectedError,
    InvalidStateError,
    MaxIterationsExceededError,
    ModelInvocationError,
    PermissionDeniedError,
    ProviderEmptyResponseError,
    RepeatedCallLoopError,
    ToolNotFoundError,
    format_tool_error,
    handle_model_error,
)
from statefulAgent.utils.logging_utils import (
    AgentLogger,
    get_agent_logger,
    log_agent_response,
    log_error,
    log_llm_call,
    log_retry,
    log_tool_call,
    log_tool_result,
    log_user_message,
)
from statefulAgent.utils.retry import RetryConfig, with_retry, with_timeout

from .callbacks import AgentCallbacks, AgentStepEvent, StepType


class RepeatOutcome(str, Enum):
    INTERCEPTED = "intercepted"
    RENDER_COMPLETE = "render_complete"
    HARD_STOP = "hard_stop"


class StatefulAgent:
    """Runs tool-using turns with confirmation, reflection and recovery."""

    def __init__(
        self,
        model: ChatModel,
        tools: Iterable[BaseTool] = (),
        *,
        settings: Optional[Settings] = None,
        intent_rewriter: Optional[IntentRewriter] = None,
        reflector: Optional[Reflector] = None,
        permission_gate: Optional[PermissionGate] = None,
        runtime_context: Optional[RuntimeContext] = None,
        logger: Optional[Union[logging.Logger, AgentLogger]] = None,
        bind_tools: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        governance = self.settings.governance

        if isinstance(logger, AgentLogger):
            self.logger = logger
        else:
            self.logger = get_agent_logger(min_level=self.settings.observability.log_level, logger=logger)

        self.registry = ToolRegistry(tools)
        if bind_tools and self.registry.list_tools() and hasattr(model, "bind_tools"):
            model = model.bind_tools(self.registry.list_tools())
        self.model = model

        self.intent_rewriter = intent_rewriter or RuleBasedIntentRewriter(IntentRewriterConfig(
            enabled=governance.enable_intent_rewrite,
            confirm_high_risk=governance.confirm_high_risk_intents,
        ))
        self.reflector = reflector or PolicyReflector(self.settings.reflection)
        self.permissions = permission_gate or PermissionGate(
            config_path=self.settings.permissions.rules_path,
            enable_confirmation=governance.enable_confirmation,
            logger=self.logger,
        )
        self.context = ContextManager(self.settings.context, self.logger)
        self.runtime_context = runtime_context

        self.state_machine = StateMachine(self.logger)
        self._cancellation = CancellationController(self.logger)
        self._rendezvous = ConfirmationRendezvous(self.logger)
        self._callbacks = AgentCallbacks()
        self._turn: Optional[AgentTurn] = None
        self.state_machine.subscribe(self._on_state_change)

    # ========== Host control surface ==========

    def get_state(self) -> AgentState:
        return self.state_machine.state

    def get_plan(self) -> Optional[ExecutionPlan]:
        return self.state_machine.plan

    def get_pending_confirmation(self) -> Optional[ConfirmationRequest]:
        return self._rendezvous.pending if self._rendezvous.is_pending() else None

    def is_awaiting_confirmation(self) -> bool:
        return self._rendezvous.is_pending()

    def set_runtime_context(self, context: Optional[RuntimeContext]) -> None:
        self.runtime_context = context

    def confirm(self) -> bool:
        """Approve the pending confirmation. No-op (False) when none is pending."""
        return self._rendezvous.confirm()

    def reject(self, reason: str = "") -> bool:
        """Reject the pending confirmation. No-op (False) when none is pending."""
        return self._rendezvous.reject(reason)

    def cancel(self, reason: CancellationReason = CancellationReason.USER_CANCELLED) -> bool:
        """Cancel the turn in flight.

        The machine moves to Cancelled right away; the loop unwinds at its
        next suspension point and returns to Idle.
        """
        if self._turn is None or self._turn.finished:
            self.logger.warning(f"cancel({reason.value}) ignored: no turn in progress")
            return False
        fired = self._cancellation.cancel(reason)
        if fired:
            self.state_machine.transition(AgentState.CANCELLED)
        return fired

    def reset(self) -> None:
        """Drop all per-conversation state; afterwards behaves like a new instance."""
        turn = self._turn
        if turn is not None and not turn.finished:
            self._cancellation.cancel(CancellationReason.SUPERSEDED)
            turn.finished = True
        self._turn = None
        self._rendezvous.clear()
        self._cancellation.reset()
        self.state_machine.reset()
        self.reflector.reset()
        self.permissions.reset()
        self.context.reset()
        self._callbacks = AgentCallbacks()

    async def invoke(
        self,
        messages: Sequence[BaseMessage],
        callbacks: Optional[AgentCallbacks] = None,
    ) -> Optional[TurnSnapshot]:
        """Run a whole turn and return its final snapshot."""
        last: Optional[TurnSnapshot] = None
        async for snapshot in self.stream(messages, callbacks):
            last = snapshot
        return last

    async def stream(
        self,
        messages: Sequence[BaseMessage],
        callbacks: Optional[AgentCallbacks] = None,
    ) -> AsyncIterator[TurnSnapshot]:
        """Run one turn over ``messages`` (the full history plus the new user message)."""
        if self._turn is not None and not self._turn.finished:
            raise InvalidStateError("A turn is already in progress")
        if self.state_machine.state == AgentState.ERROR:
            raise InvalidStateError("Agent is in error state; call reset() first")
        if self.state_machine.state in (AgentState.COMPLETED, AgentState.CANCELLED):
            self.state_machine.transition(AgentState.IDLE)
        if self._cancellation.is_cancelled:
            self._cancellation.reset()

        self._callbacks = callbacks or AgentCallbacks()
        turn = AgentTurn(
            messages=list(messages),
            token=self._cancellation.token,
            trace_id=self.logger.new_trace(),
        )
        self._turn = turn

        try:
            self.state_machine.transition(AgentState.PARSING)
            self._prepare_messages(turn)

            snapshot = await self._rewrite_intent(turn)
            if snapshot is not None:
                yield snapshot
                return

            self._enter_execution(turn)
            async for snapshot in self._execute_rounds(turn):
                yield snapshot
        except CancellationError as e:
            if self._turn is turn:
                yield self._cancelled(turn, e.reason)
        except Exception as e:
            if self._turn is not turn:
                raise
            log_error(self.logger, e, f"turn {turn.trace_id}, iteration {turn.iteration}")
            user_message = getattr(e, "user_message", None) or "执行出错，请重试。如果问题持续，请联系支持。"
            if isinstance(e, ModelInvocationError):
                user_message = f"🤖 AI 模型调用失败：{user_message}"
            yield self._fail(turn, user_message, f"{type(e).__name__}: {e}")
        finally:
            self._finish_turn(turn)

    # ========== Turn phases ==========

    def _prepare_messages(self, turn: AgentTurn) -> None:
        """Refresh the agent system prompt and trim the history."""
        host_system: List[str] = []
        conversation: List[BaseMessage] = []
        for message in turn.messages:
            if isinstance(message, SystemMessage):
                if not is_agent_system_message(message) and not is_trim_note(message):
                    host_system.append(extract_text_content(message))
            else:
                conversation.append(message)

        prompt = build_system_prompt(self.runtime_context)
        if host_system:
            prompt = "\n\n".join([prompt, *host_system])

        report = self.context.prepare([agent_system_message(prompt), *clean_message_history(conversation)])
        turn.messages = report.messages

        index = last_human_index(turn.messages)
        if index is not None:
            human = turn.messages[index]
            turn.user_request = extract_text_content(human)
            turn.has_image = has_image_content(human)
            log_user_message(self.logger, turn.user_request)

        turn.plan = ExecutionPlan.for_request(turn.user_request)
        self.state_machine.set_plan(turn.plan)

    async def _rewrite_intent(self, turn: AgentTurn) -> Optional[TurnSnapshot]:
        """Rewrite the request; returns a terminal snapshot when the turn ends here."""
        index = last_human_index(turn.messages)
        if index is None:
            return None
        if not self.settings.governance.enable_intent_rewrite or not self.intent_rewriter.is_enabled():
            return None
        human = turn.messages[index]
        if not turn.user_request.strip() and not has_media_content(human):
            return None

        self._step(StepType.INTENT_REWRITING, "正在理解你的需求...")
        try:
            intent = await with_cancellation(
                self.intent_rewriter.rewrite(human.content, turn.messages[:index]),
                turn.token,
            )
        except CancellationError:
            raise
        except Exception as e:
            log_error(self.logger, e, "intent rewrite failed; continuing with the original request")
            return None

        turn.intent = intent
        turn.plan.description = intent.rewritten_prompt
        self._callbacks.emit("on_intent_rewritten", intent, logger=self.logger)
        self._step(StepType.INTENT_REWRITING, intent.rewritten_prompt, intent=intent)

        if intent.intent_type == IntentType.CLARIFY:
            turn.messages.append(AIMessage(content=intent.clarify_question or intent.rewritten_prompt))
            self.state_machine.transition(AgentState.COMPLETED)
            turn.plan.status = "completed"
            turn.completed = True
            return TurnSnapshot(list(turn.messages), AgentState.COMPLETED)

        if intent.requires_confirmation and self.settings.governance.enable_confirmation:
            reason = intent.confirmation_reason or "请确认操作"
            request = ConfirmationRequest(
                tool_name=f"intent:{intent.intent_type.value}",
                args=dict(intent.extracted_info),
                message=f"{reason}：{intent.rewritten_prompt}",
                risk_level=intent.risk_level.value,
            )
            try:
                await self._await_confirmation(turn, request)
            except ConfirmationRejectedError as e:
                return self._rejected(turn, e.reason)
            turn.intent_confirmed = True

        return None

    def _enter_execution(self, turn: AgentTurn) -> None:
        if self.state_machine.state != AgentState.EXECUTING:
            self.state_machine.transition(AgentState.EXECUTING)

        intent = turn.intent
        if (
            intent is None
            or intent.intent_type not in ACTIONABLE_INTENTS
            or intent.confidence < self.settings.governance.intent_confidence_threshold
        ):
            return
        for index, message in enumerate(turn.messages):
            if is_agent_system_message(message):
                turn.messages[index] = agent_system_message(
                    f"{extract_text_content(message)}\n\n{build_task_block(intent)}"
                )
                break

    async def _execute_rounds(self, turn: AgentTurn) -> AsyncIterator[TurnSnapshot]:
        governance = self.settings.governance

        while turn.iteration < governance.max_iterations:
            turn.token.throw_if_cancelled()
            turn.iteration += 1
            self._step(StepType.THINKING, "正在思考...")

            try:
                response = await self._call_model(turn)
            except ProviderEmptyResponseError:
                response = AIMessage(content="")
            self.context.record_response(response)
            kind = classify_response(response)

            if kind == ResponseKind.EMPTY:
                if turn.render_done:
                    yield self._complete(turn, "empty reply after render")
                    return
                turn.empty_responses += 1
                self.logger.warning(
                    f"Empty model response ({turn.empty_responses}/{governance.max_empty_responses})"
                )
                if turn.empty_responses >= governance.max_empty_responses:
                    yield self._fail(turn, EMPTY_RESPONSE_FAILURE, "too many empty responses")
                    return
                turn.messages.append(corrective_message(EMPTY_RESPONSE_PROMPT))
                continue

            turn.empty_responses = 0
            turn.messages.append(response)
            yield TurnSnapshot(list(turn.messages), self.state_machine.state)
            turn.token.throw_if_cancelled()

            if kind == ResponseKind.TEXT:
                decision = evaluate_completion(
                    turn, self._needs_presentation, governance.max_render_reminders, self.logger
                )
                if decision.complete:
                    yield self._complete(turn, decision.reason)
                    return
                turn.render_reminders += 1
                turn.messages.append(corrective_message(RENDER_REMINDER_PROMPT))
                continue

            text = extract_text_content(response).strip()
            if text and not is_function_call_json(text):
                self._step(StepType.THINKING, text)

            terminal = await self._run_tool_calls(turn, list(response.tool_calls))
            if terminal is not None:
                yield terminal
                return
            turn.messages.extend(turn.pending_injections)
            turn.pending_injections.clear()

            yield TurnSnapshot(list(turn.messages), self.state_machine.state)
            if turn.completed:
                yield self._complete(turn, "task complete")
                return

        error = MaxIterationsExceededError(governance.max_iterations)
        yield self._fail(turn, error.user_message, str(error))

    async def _call_model(self, turn: AgentTurn) -> AIMessage:
        timeouts = self.settings.timeouts
        retry = self.settings.retry
        has_image = any_images(turn.messages)
        timeout = timeouts.llm_invoke_with_image if has_image else timeouts.llm_invoke
        log_llm_call(self.logger, turn.iteration, len(turn.messages), has_image)

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            turn.token.throw_if_cancelled()
            log_retry(self.logger, "LLM call", attempt, error, delay)
            self._step(StepType.THINKING, f"重试中 ({attempt}/{retry.llm_max_retries})...")

        config = RetryConfig(
            max_retries=retry.llm_max_retries,
            initial_delay=retry.llm_initial_delay,
            max_delay=retry.llm_max_delay,
            backoff_multiplier=retry.backoff_multiplier,
            jitter_ratio=retry.jitter_ratio,
            on_retry=on_retry,
            token=turn.token,
        )
        messages = list(turn.messages)

        try:
            response = await with_cancellation(
                with_retry(lambda: with_timeout(self.model.ainvoke(messages), timeout, "LLM 响应超时"), config),
                turn.token,
            )
        except (CancellationError, ProviderEmptyResponseError):
            raise
        except Exception as e:
            raise ModelInvocationError(f"Model invocation failed: {e}", handle_model_error(e)) from e

        if not isinstance(response, AIMessage):
            response = AIMessage(content=getattr(response, "content", str(response)))

        finish_reason = (response.response_metadata or {}).get("finish_reason")
        if finish_reason == "length":
            self.logger.warning("Model output truncated (finish_reason=length)")
        if getattr(response, "invalid_tool_calls", None):
            self.logger.warning(f"Model produced {len(response.invalid_tool_calls)} invalid tool calls")
        return response

    async def _run_tool_calls(self, turn: AgentTurn, tool_calls: List[Dict[str, Any]]) -> Optional[TurnSnapshot]:
        """Execute one round of tool calls in order.

        Returns:
            A terminal snapshot when the turn must end inside the round
        """
        for index, call in enumerate(tool_calls):
            turn.token.throw_if_cancelled()
            remaining = tool_calls[index + 1:]
            name = call.get("name", "")
            args = dict(call.get("args") or {})
            call_id = call.get("id") or f"call_{uuid.uuid4().hex[:8]}"

            if not self.registry.has_tool(name):
                correction = correct_tool_call(name, args, self.registry.tool_names())
                if correction is not None:
                    self._step(
                        StepType.TOOL_CALL,
                        f"已将工具 {name} 纠正为 {correction.tool_name}",
                        tool_name=correction.tool_name,
                        tool_args=correction.args,
                        extra={"corrected_from": name},
                    )
                    name, args = correction.tool_name, correction.args

            key = (name, canonical_args(args))
            if key in turn.seen_calls:
                outcome = self._handle_repeat(turn, name, args, call_id)
                if outcome == RepeatOutcome.RENDER_COMPLETE:
                    turn.completed = True
                    self._skip_calls(turn, remaining, "任务已完成")
                    return None
                if outcome == RepeatOutcome.HARD_STOP:
                    self._skip_calls(turn, remaining, "已停止执行")
                    error = RepeatedCallLoopError(name, turn.repeated_calls)
                    return self._fail(turn, error.user_message, str(error))
                continue

            self._step(StepType.TOOL_CALL, f"🔧 调用工具: {name}", tool_name=name, tool_args=args)
            try:
                observation = await self._execute_tool(turn, name, args, call_id)
            except ConfirmationRejectedError as e:
                turn.messages.append(ToolMessage(
                    content=f"操作被用户取消: {e.reason}",
                    tool_call_id=call_id,
                    name=name,
                    status="error",
                ))
                self._skip_calls(turn, remaining, "用户取消了操作")
                return self._rejected(turn, e.reason)
            turn.seen_calls.add(key)

            action = await self._reflect(turn, observation, remaining)
            if action == NextAction.ADJUST_STRATEGY:
                self._skip_calls(turn, remaining, "策略调整，本轮剩余调用未执行")
                return None
            if action == NextAction.COMPLETE:
                turn.completed = True
                self._skip_calls(turn, remaining, "任务已完成")
                return None
        return None

    def _handle_repeat(self, turn: AgentTurn, name: str, args: Dict[str, Any], call_id: str) -> RepeatOutcome:
        key_args = canonical_args(args)
        previous = next(
            (o for o in reversed(turn.observations) if o.tool_name == name and canonical_args(o.args) == key_args),
            None,
        )

        if previous is not None and previous.success and self.registry.is_render(name):
            self.logger.info(f"Repeated render call {name}; treating as completion")
            turn.messages.append(ToolMessage(
                content="结果已经展示给用户，无需重复渲染。",
                tool_call_id=call_id,
                name=name,
            ))
            return RepeatOutcome.RENDER_COMPLETE

        turn.repeated_calls += 1
        limit = self.settings.governance.max_repeated_calls
        self.logger.warning(f"Intercepted repeated call {name} {key_args} ({turn.repeated_calls}/{limit})")
        previous_result = previous.result if previous is not None else ""
        turn.messages.append(ToolMessage(
            content=json.dumps({
                "ok": False,
                "error": f"重复调用：本轮已经用相同参数调用过 {name}，不会再次执行。请直接使用之前的结果。",
                "previous_result": previous_result,
            }, ensure_ascii=False),
            tool_call_id=call_id,
            name=name,
            status="error",
        ))
        self._step(StepType.TOOL_RESULT, f"重复调用已拦截: {name}", tool_name=name, tool_args=args, success=False)

        if turn.repeated_calls >= limit:
            return RepeatOutcome.HARD_STOP
        return RepeatOutcome.INTERCEPTED

    async def _execute_tool(self, turn: AgentTurn, name: str, args: Dict[str, Any], call_id: str) -> StepObservation:
        started = time.monotonic()

        if not self.registry.has_tool(name):
            return self._observe(turn, name, args, call_id, started, error=ToolNotFoundError(name))

        intent_risk = turn.intent.risk_level.value if turn.intent is not None else None
        decision = self.permissions.check(name, args, intent_risk, turn.intent_confirmed)
        if not decision.allowed:
            return self._observe(
                turn, name, args, call_id, started, error=PermissionDeniedError(name, decision.block_reason)
            )

        if decision.requires_confirmation:
            request = ConfirmationRequest(
                tool_name=name,
                args=args,
                message=decision.confirmation_message or f"即将执行 {name}",
                risk_level=decision.risk_level,
                warnings=decision.warnings,
            )
            await self._await_confirmation(turn, request)
            started = time.monotonic()

        tool = self.registry.get_tool(name)
        log_tool_call(self.logger, name, args)
        self.permissions.record_call(name)
        try:
            raw = await with_cancellation(
                with_timeout(tool.ainvoke(args), self.settings.timeouts.tool_execute, f"工具 {name} 执行超时"),
                turn.token,
            )
        except CancellationError:
            raise
        except Exception as e:
            log_error(self.logger, e, f"tool={name} args={canonical_args(args)} iteration={turn.iteration}")
            return self._observe(turn, name, args, call_id, started, error=e)

        result = raw if isinstance(raw, str) else json.dumps(raw, ensure_ascii=False, default=str)
        return self._observe(turn, name, args, call_id, started, result=result)

    def _observe(
        self,
        turn: AgentTurn,
        name: str,
        args: Dict[str, Any],
        call_id: str,
        started: float,
        result: str = "",
        error: Optional[BaseException] = None,
    ) -> StepObservation:
        """Record the observation and answer the tool call in the history."""
        success = error is None
        content = result if success else format_tool_error(error)
        observation = StepObservation(
            step_id=f"step_{len(turn.observations) + 1}",
            tool_name=name,
            args=dict(args),
            result=content,
            success=success,
            error=None if success else (getattr(error, "user_message", None) or str(error)),
            duration=time.monotonic() - started,
        )
        turn.record(observation)
        if success and self.registry.is_render(name):
            turn.render_done = True

        turn.messages.append(ToolMessage(
            content=content,
            tool_call_id=call_id,
            name=name,
            status="success" if success else "error",
        ))
        log_tool_result(self.logger, name, content, success, observation.duration)
        self._step(
            StepType.TOOL_RESULT,
            content,
            tool_name=name,
            tool_args=args,
            tool_result=content,
            success=success,
        )
        return observation

    async def _reflect(
        self,
        turn: AgentTurn,
        observation: StepObservation,
        remaining: List[Dict[str, Any]],
    ) -> Optional[NextAction]:
        if not self.reflector.is_enabled() or not self.reflector.should_reflect(observation, len(remaining)):
            return None

        self.state_machine.transition(AgentState.REFLECTING)
        context = ReflectionContext(
            user_request=turn.user_request,
            plan=turn.plan,
            completed_steps=list(turn.observations[:-1]),
            current_observation=observation,
            remaining_calls=[{"name": c.get("name"), "args": c.get("args") or {}} for c in remaining],
        )
        try:
            result = await with_cancellation(self.reflector.reflect(context), turn.token)
        except CancellationError:
            raise
        except Exception as e:
            log_error(self.logger, e, f"reflection after {observation.tool_name}; continuing")
            self.state_machine.transition(AgentState.EXECUTING)
            return None

        self._callbacks.emit("on_reflection", result, logger=self.logger)
        self._step(StepType.REFLECTION, result.thought, reflection=result)

        action = result.next_action
        if action == NextAction.COMPLETE:
            if not turn.render_done:
                self.logger.info("Reflector reported completion before anything was rendered")
                turn.pending_injections.append(corrective_message(REFLECTION_COMPLETE_PROMPT))
                action = NextAction.CONTINUE
        elif action == NextAction.ADJUST_STRATEGY:
            hint = result.correction_hint or result.thought
            if result.suggested_tool:
                hint = f"{hint}（建议使用 {result.suggested_tool}）"
            turn.pending_injections.append(corrective_message(f"[反思] {hint}"))
        elif action == NextAction.ABORT:
            self.logger.warning(f"Reflector suggested abort: {result.thought}")

        self.state_machine.transition(AgentState.EXECUTING)
        return action

    async def _await_confirmation(self, turn: AgentTurn, request: ConfirmationRequest) -> None:
        """Suspend until the host answers. Raises ConfirmationRejectedError on reject."""
        self.state_machine.transition(AgentState.AWAITING_CONFIRMATION)
        self._rendezvous.open(request)
        self._callbacks.emit("on_confirmation_required", request, logger=self.logger)
        self._step(
            StepType.CONFIRMATION,
            request.message,
            tool_name=request.tool_name,
            tool_args=request.args,
            confirmation=request,
        )
        unsubscribe = turn.token.on_cancelled(self._rendezvous.cancel)
        try:
            await self._rendezvous.wait()
        finally:
            unsubscribe()
        self.state_machine.transition(AgentState.EXECUTING)

    # ========== Turn endings ==========

    def _complete(self, turn: AgentTurn, reason: str) -> TurnSnapshot:
        self.state_machine.transition(AgentState.SUMMARIZING)
        self.state_machine.transition(AgentState.COMPLETED)
        turn.plan.status = "completed"
        turn.completed = True
        for message in reversed(turn.messages):
            if isinstance(message, AIMessage):
                log_agent_response(self.logger, extract_text_content(message))
                break
        self.logger.info(f"Turn completed after {turn.iteration} rounds: {reason}")
        return TurnSnapshot(list(turn.messages), AgentState.COMPLETED)

    def _rejected(self, turn: AgentTurn, reason: str) -> TurnSnapshot:
        turn.messages.append(AIMessage(content=rejection_reply(reason)))
        self.state_machine.transition(AgentState.COMPLETED)
        turn.plan.status = "cancelled"
        turn.completed = True
        return TurnSnapshot(list(turn.messages), AgentState.COMPLETED)

    def _fail(self, turn: AgentTurn, user_message: str, reason: str) -> TurnSnapshot:
        self.logger.error(f"Turn failed: {reason}")
        turn.messages = clean_message_history(turn.messages)
        turn.messages.append(AIMessage(content=user_message))
        self.state_machine.transition(AgentState.ERROR)
        if turn.plan is not None:
            turn.plan.status = "failed"
        return TurnSnapshot(list(turn.messages), AgentState.ERROR)

    def _cancelled(self, turn: AgentTurn, reason: CancellationReason) -> TurnSnapshot:
        self._rendezvous.clear()
        self.state_machine.transition(AgentState.CANCELLED)
        self._step(StepType.CANCELLED, "已取消", extra={"reason": reason.value})
        if turn.plan is not None:
            turn.plan.status = "cancelled"
        self.state_machine.transition(AgentState.IDLE)
        turn.messages = clean_message_history(turn.messages)
        return TurnSnapshot(list(turn.messages), AgentState.CANCELLED)

    def _finish_turn(self, turn: AgentTurn) -> None:
        turn.finished = True
        if self._turn is not turn:
            return
        self._turn = None
        self._rendezvous.clear()
        if self.state_machine.is_active():
            self.logger.warning("Turn abandoned before it finished; cancelling")
            if not turn.token.is_cancelled:
                self._cancellation.cancel(CancellationReason.COMPONENT_UNMOUNTED)
            self.state_machine.transition(AgentState.CANCELLED)
        if self.state_machine.state == AgentState.CANCELLED:
            self.state_machine.transition(AgentState.IDLE)

    # ========== Helpers ==========

    def _skip_calls(self, turn: AgentTurn, calls: List[Dict[str, Any]], reason: str) -> None:
        for call in calls:
            turn.messages.append(ToolMessage(
                content=json.dumps({"ok": False, "skipped": True, "reason": reason}, ensure_ascii=False),
                tool_call_id=call.get("id") or f"call_{uuid.uuid4().hex[:8]}",
                name=call.get("name", ""),
                status="error",
            ))

    def _needs_presentation(self, observation: StepObservation) -> bool:
        """Business results the user should see through a render tool."""
        if self.registry.is_render(observation.tool_name):
            return False
        return self.permissions.classify(observation.tool_name, observation.args) != PermissionTier.DANGEROUS

    def _step(self, step_type: StepType, content: str = "", **fields: Any) -> None:
        self._callbacks.step(AgentStepEvent(type=step_type, content=content, **fields), logger=self.logger)

    def _on_state_change(self, old: AgentState, new: AgentState) -> None:
        self._callbacks.emit("on_state_change", old, new, logger=self.logger)
        self._step(StepType.STATE_CHANGE, STATE_DISPLAY_NAMES[new], state=new)
