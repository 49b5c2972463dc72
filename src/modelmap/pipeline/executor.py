"""流水线执行器

按顺序执行多模型流水线的各个步骤，支持变量替换、条件步骤、
基于角色的模型解析，以及带工具调用的 Agentic 步骤。
"""

from dataclasses import dataclass, field

from loguru import logger

from modelmap.core.config import ModelMapSettings, get_settings
from modelmap.core.exceptions import ModelMapError, PipelineStepError, StepResolutionError
from modelmap.model_map.registry import ModelRegistry
from modelmap.model_map.router import TaskRouter
from modelmap.model_map.schema import PipelineDefinition, PipelineStep
from modelmap.pipeline.callbacks import EventSink, ToolConfirmer, emit_event
from modelmap.pipeline.context import PipelineContext, evaluate_condition, substitute_variables
from modelmap.pipeline.events import (
    error_event,
    step_complete_event,
    step_start_event,
    step_text_event,
    tool_call_event,
    tool_result_event,
)
from modelmap.providers.base import ChatMessage, ModelProvider
from modelmap.tools.base import ToolCall, ToolDefinition, ToolResult
from modelmap.tools.registry import ToolRegistry


@dataclass
class PipelineResult:
    """单次流水线执行结果"""

    output: str
    """最终输出"""
    steps: dict[str, str] = field(default_factory=dict)
    """各步骤输出（按步骤名）"""
    models_used: list[str] = field(default_factory=list)
    """使用过的模型（去重，按首次使用顺序）"""


class PipelineExecutor:
    """流水线执行器

    步骤严格顺序执行；任一步骤失败即中止整个流水线并向上抛出，
    不返回部分结果。
    """

    def __init__(
        self,
        registry: ModelRegistry,
        router: TaskRouter | None = None,
        tool_registry: ToolRegistry | None = None,
        settings: ModelMapSettings | None = None,
    ):
        """初始化执行器

        Args:
            registry: 模型注册表
            router: 任务路由器（用于角色解析）
            tool_registry: 工具注册表（用于 Agentic 步骤）
            settings: 运行时配置
        """
        self.registry = registry
        self.router = router
        self.tool_registry = tool_registry
        self.settings = settings or get_settings()

    async def execute(
        self,
        pipeline: PipelineDefinition,
        input: str,
        *,
        provider_context: str | None = None,
        model_override: str | None = None,
        sink: EventSink | None = None,
        confirm_tool: ToolConfirmer | None = None,
    ) -> PipelineResult:
        """执行流水线

        Args:
            pipeline: 流水线定义
            input: 输入文本
            provider_context: 角色解析的 provider 上下文
                （默认依次取 pipeline.provider、配置默认值）
            model_override: 覆盖步骤角色的模型名或角色名
            sink: 事件接收器
            confirm_tool: 破坏性工具确认回调（None 表示一律拒绝）

        Returns:
            PipelineResult

        Raises:
            StepResolutionError: 步骤模型无法解析
            PipelineStepError: 模型调用或工具执行失败
        """
        context_name = (
            provider_context or pipeline.provider or self.settings.default_provider_context
        )
        context = PipelineContext(input=input)
        step_outputs: dict[str, str] = {}
        models_used: list[str] = []

        for step in pipeline.steps:
            if step.condition and not evaluate_condition(step.condition, context.variables):
                logger.debug(f'跳过步骤 "{step.name}"（条件不满足: {step.condition}）')
                continue

            try:
                model_name = self.resolve_step_model(step, context_name, model_override)
            except StepResolutionError as e:
                await emit_event(sink, error_event(step.name, e))
                raise

            await emit_event(sink, step_start_event(step.name, model_name))

            try:
                output = await self._execute_step(step, model_name, context, sink, confirm_tool)
            except ModelMapError as e:
                await emit_event(sink, error_event(step.name, e))
                raise
            except Exception as e:
                await emit_event(sink, error_event(step.name, e))
                raise PipelineStepError(step.name, e) from e

            context.set(step.output, output)
            step_outputs[step.name] = output
            if model_name not in models_used:
                models_used.append(model_name)

            await emit_event(sink, step_complete_event(step.name, output))

        if pipeline.result:
            output = substitute_variables(pipeline.result, context.variables)
        else:
            output = context.variables.get(pipeline.steps[-1].output, "")

        return PipelineResult(output=output, steps=step_outputs, models_used=models_used)

    def resolve_step_model(
        self,
        step: PipelineStep,
        provider_context: str,
        model_override: str | None = None,
    ) -> str:
        """解析步骤使用的模型名

        优先级：步骤直接模型 > model_override > 步骤角色。
        model_override 可以是模型名，也可以是角色名（分诊建议）。

        Raises:
            StepResolutionError: 无法解析
        """
        if step.model:
            return step.model

        if model_override:
            overridden = self._resolve_override(model_override, provider_context)
            if overridden:
                return overridden
            logger.warning(f'模型覆盖 "{model_override}" 无法解析，回退到步骤角色')

        if step.role and self.router:
            resolved = self.router.resolve_role(step.role, provider_context)
            if resolved:
                logger.debug(
                    f'角色 "{step.role}" 在 "{provider_context}" 中解析为 "{resolved.name}"'
                )
                return resolved.name
            logger.warning(f'角色 "{step.role}" 在 "{provider_context}" 中无法解析，无可用回退')

        raise StepResolutionError(step.name, step.role, provider_context)

    def _resolve_override(self, override: str, provider_context: str) -> str | None:
        if self.registry.has_model(override):
            return override
        if self.router:
            resolved = self.router.resolve_role(override, provider_context)
            if resolved:
                return resolved.name
        return None

    async def _execute_step(
        self,
        step: PipelineStep,
        model_name: str,
        context: PipelineContext,
        sink: EventSink | None,
        confirm_tool: ToolConfirmer | None,
    ) -> str:
        provider = self.registry.get_provider(model_name)
        prompt = substitute_variables(step.prompt, context.variables)

        logger.debug(f'步骤 "{step.name}" 使用模型 "{model_name}"')
        logger.trace(f"Prompt: {prompt[:200]}...")

        definitions = self._resolve_tool_definitions(step)
        if step.allow_tool_use and definitions:
            return await self._execute_agentic_step(
                step, provider, prompt, definitions, sink, confirm_tool
            )
        if step.allow_tool_use:
            logger.debug(f'步骤 "{step.name}" 没有可用工具，按单轮执行')

        return await stream_text(provider, prompt, step.name, sink)

    def _resolve_tool_definitions(self, step: PipelineStep) -> list[ToolDefinition]:
        """按步骤声明的工具名筛选工具定义"""
        if not step.allow_tool_use or not step.tools or self.tool_registry is None:
            return []
        wanted = set(step.tools)
        definitions = [d for d in self.tool_registry.get_definitions() if d.name in wanted]
        missing = wanted - {d.name for d in definitions}
        if missing:
            logger.warning(f'步骤 "{step.name}" 声明的工具不存在: {sorted(missing)}')
        return definitions

    async def _execute_agentic_step(
        self,
        step: PipelineStep,
        provider: ModelProvider,
        prompt: str,
        definitions: list[ToolDefinition],
        sink: EventSink | None,
        confirm_tool: ToolConfirmer | None,
    ) -> str:
        """执行带工具循环的步骤

        模型不再请求工具时返回其文本；达到最大迭代次数时返回已有的最佳文本。
        """
        max_iterations = step.max_iterations or self.settings.max_tool_iterations
        by_name = {d.name: d for d in definitions}
        messages = [ChatMessage(role="user", content=prompt)]
        best_text = ""

        for iteration in range(1, max_iterations + 1):
            chunks: list[str] = []

            async def on_text(text: str) -> None:
                chunks.append(text)
                await emit_event(sink, step_text_event(step.name, text))

            response = await provider.stream_chat(messages, definitions, on_text)
            text = "".join(chunks) or response.content
            if text:
                best_text = text

            if not response.tool_calls:
                return text

            logger.debug(
                f'步骤 "{step.name}" 第 {iteration} 轮: {len(response.tool_calls)} 个工具调用'
            )
            messages.append(
                ChatMessage(role="assistant", content=text, tool_calls=list(response.tool_calls))
            )

            results: list[ToolResult] = []
            for call in response.tool_calls:
                await emit_event(sink, tool_call_event(step.name, call.name, call.input))
                result = await self._run_tool(call, by_name, confirm_tool)
                await emit_event(
                    sink, tool_result_event(step.name, call.name, result.content, result.is_error)
                )
                results.append(result)

            messages.append(ChatMessage(role="user", tool_results=results))

        logger.warning(f'步骤 "{step.name}" 达到最大工具迭代次数 ({max_iterations})')
        return best_text

    async def _run_tool(
        self,
        call: ToolCall,
        definitions: dict[str, ToolDefinition],
        confirm_tool: ToolConfirmer | None,
    ) -> ToolResult:
        definition = definitions.get(call.name)
        if definition is None:
            return ToolResult(
                tool_use_id=call.id,
                content=f"Tool {call.name} is not available for this step",
                is_error=True,
            )

        if definition.requires_confirmation:
            approved = await confirm_tool(call) if confirm_tool else False
            if not approved:
                logger.info(f"用户拒绝执行工具: {call.name}")
                return ToolResult(
                    tool_use_id=call.id,
                    content=f"User denied permission to run {call.name}",
                    is_error=True,
                )

        return await self.tool_registry.execute(call)


async def stream_text(
    provider: ModelProvider,
    prompt: str,
    step_name: str,
    sink: EventSink | None = None,
) -> str:
    """单轮流式调用模型，返回完整文本

    流式文本优先，没有流式输出时使用响应内容。
    """
    chunks: list[str] = []

    async def on_text(text: str) -> None:
        chunks.append(text)
        await emit_event(sink, step_text_event(step_name, text))

    response = await provider.stream_chat([ChatMessage(role="user", content=prompt)], None, on_text)
    return "".join(chunks) or response.content
