"""Policy reflector: decides when to reflect and gives rule-based verdicts.

Subclasses can override :meth:`PolicyReflector.reflect` to consult a model;
the frequency policy and the reflection budget stay the same.
"""

from __future__ import annotations

import logging
from typing import Optional

from statefulAgent.config.settings import ReflectionSettings
from statefulAgent.graph.state import StepObservation
from statefulAgent.tools.registry import is_render_tool

from .interfaces import NextAction, ReflectionContext, ReflectionResult

LOGGER = logging.getLogger("statefulAgent.reflector")


class PolicyReflector:
    """Reflector driven by ``ReflectionSettings``.

    - every_step: reflect after every tool call
    - on_error: reflect after failed calls only
    - on_milestone: reflect on the last call of a round and every third reflection

    A successful render call always triggers a reflection, since it usually
    means the task is done.
    """

    def __init__(self, settings: Optional[ReflectionSettings] = None):
        self.settings = settings or ReflectionSettings()
        self.reflection_count = 0

    def initialize(self, credential: Optional[str] = None) -> None:
        return None

    def is_enabled(self) -> bool:
        return self.settings.enabled

    def should_reflect(self, observation: StepObservation, remaining_calls: int) -> bool:
        if not self.is_enabled():
            return False

        if self.reflection_count >= self.settings.max_reflections:
            LOGGER.warning("Max reflections reached, skipping")
            return False

        if observation.success and is_render_tool(observation.tool_name):
            return True

        frequency = self.settings.frequency
        if frequency == "every_step":
            return True
        if frequency == "on_error":
            return not observation.success
        if frequency == "on_milestone":
            return remaining_calls == 0 or self.reflection_count % 3 == 0
        return False

    async def reflect(self, context: ReflectionContext) -> ReflectionResult:
        self.reflection_count += 1
        observation = context.current_observation
        remaining = len(context.remaining_calls)
        total = len(context.completed_steps) + remaining + 1
        progress = round((len(context.completed_steps) + 1) / total * 100)

        if not observation.success:
            return ReflectionResult(
                step_success=False,
                thought=f"{observation.tool_name} 执行失败：{observation.error}",
                next_action=NextAction.ADJUST_STRATEGY,
                progress_percent=progress,
                correction_hint=(
                    f"工具 {observation.tool_name} 调用失败（{observation.error}）。"
                    "请检查参数是否正确，必要时先查询所需信息，再换一种方式完成任务。"
                ),
                confidence=0.6,
            )

        if is_render_tool(observation.tool_name) and remaining == 0:
            return ReflectionResult(
                step_success=True,
                thought="结果已展示给用户，任务完成。",
                next_action=NextAction.COMPLETE,
                is_task_complete=True,
                progress_percent=100,
                confidence=0.8,
            )

        return ReflectionResult(
            step_success=True,
            thought="步骤执行成功，继续下一步。",
            next_action=NextAction.CONTINUE,
            progress_percent=progress,
            confidence=0.7,
        )

    def reset(self) -> None:
        self.reflection_count = 0
