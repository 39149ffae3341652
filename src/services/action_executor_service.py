"""
Action Executor Service
Executes a single FlowAction and reports its effects as an ExecutorResult.
Executors never mutate conversation state; the flow walker applies the result.
"""
from typing import Any

# Utils
from utils.log_utils import LogUtil
from utils.interpolation_utils import interpolate_variables
from utils.time_utils import delay_to_timedelta

# Exceptions
from exceptions.flow_exception import FlowServiceException

# Models
from models.flow_data import (
    FlowAction,
    SendMessageAction,
    SendQuickRepliesAction,
    CollectInputAction,
    SetVariableAction,
    HandoffAction,
    GotoNodeAction,
    AiNodeAction,
    DelayAction,
    HttpRequestAction,
)
from models.execution_context import ExecutionContext
from models.executor_result import ExecutorResult, OutboundMessage, SuspendInstruction

# Services
from services.ai_node_service import AiNodeService
from services.http_request_service import HttpRequestService

# Messenger accepts at most 13 quick replies per message
MAX_QUICK_REPLIES = 13

DEFAULT_HANDOFF_REASON = "flow_handoff"


class ActionExecutorService:
    """
    Service for executing flow actions.
    """

    def __init__(
        self,
        log_util: LogUtil,
        ai_node_service: AiNodeService,
        http_request_service: HttpRequestService
    ):
        self.log_util = log_util
        self.ai_node_service = ai_node_service
        self.http_request_service = http_request_service

    async def execute(self, action: FlowAction, ctx: ExecutionContext) -> ExecutorResult:
        """
        Execute one action.

        Args:
            action: FlowAction (discriminated on type)
            ctx: ExecutionContext of the current step

        Returns:
            ExecutorResult

        Raises:
            FlowServiceException: Unknown action type
            ExternalCallException: ai_node call failed after retries
        """
        self.log_util.debug(
            service_name="ActionExecutorService",
            message=f"[ACTION] Executing {action.type}",
            **ctx.log_context()
        )

        if isinstance(action, SendMessageAction):
            return self._send_message(action, ctx)
        elif isinstance(action, SendQuickRepliesAction):
            return self._send_quick_replies(action, ctx)
        elif isinstance(action, CollectInputAction):
            return self._collect_input(action, ctx)
        elif isinstance(action, SetVariableAction):
            return self._set_variable(action, ctx)
        elif isinstance(action, HandoffAction):
            return self._handoff(action, ctx)
        elif isinstance(action, GotoNodeAction):
            return ExecutorResult(goto_node_id=action.config.targetNodeId)
        elif isinstance(action, AiNodeAction):
            return await self.ai_node_service.execute(action.config, ctx)
        elif isinstance(action, DelayAction):
            return self._delay(action)
        elif isinstance(action, HttpRequestAction):
            return await self.http_request_service.execute(action.config, ctx)

        raise FlowServiceException(message=f"Unsupported action type: {getattr(action, 'type', type(action).__name__)}")

    def _send_message(self, action: SendMessageAction, ctx: ExecutionContext) -> ExecutorResult:
        text = interpolate_variables(action.config.message, ctx.variables)
        if not text.strip():
            self.log_util.warning(
                service_name="ActionExecutorService",
                message="[ACTION] send_message rendered an empty message, nothing sent",
                **ctx.log_context()
            )
            return ExecutorResult()
        return ExecutorResult(outbound_messages=[OutboundMessage(text=text)])

    def _send_quick_replies(self, action: SendQuickRepliesAction, ctx: ExecutionContext) -> ExecutorResult:
        text = interpolate_variables(action.config.message, ctx.variables)
        replies = [interpolate_variables(reply, ctx.variables) for reply in action.config.replies]
        replies = [reply for reply in replies if reply and reply.strip()]
        if len(replies) > MAX_QUICK_REPLIES:
            self.log_util.warning(
                service_name="ActionExecutorService",
                message=f"[ACTION] {len(replies)} quick replies configured, sending the first {MAX_QUICK_REPLIES}",
                **ctx.log_context()
            )
            replies = replies[:MAX_QUICK_REPLIES]
        return ExecutorResult(outbound_messages=[OutboundMessage(text=text, quick_replies=replies)])

    def _collect_input(self, action: CollectInputAction, ctx: ExecutionContext) -> ExecutorResult:
        prompt = interpolate_variables(action.config.prompt, ctx.variables)
        outbound_messages = [OutboundMessage(text=prompt)] if prompt.strip() else []
        return ExecutorResult(
            outbound_messages=outbound_messages,
            suspend=SuspendInstruction(reason="input", input_name=action.config.inputName)
        )

    def _set_variable(self, action: SetVariableAction, ctx: ExecutionContext) -> ExecutorResult:
        value: Any = action.config.value
        if isinstance(value, str):
            value = interpolate_variables(value, ctx.variables)
        return ExecutorResult(variable_writes={action.config.variableName: value})

    def _handoff(self, action: HandoffAction, ctx: ExecutionContext) -> ExecutorResult:
        reason = interpolate_variables(action.config.reason or "", ctx.variables) or DEFAULT_HANDOFF_REASON
        return ExecutorResult(terminal=True, handoff_reason=reason)

    def _delay(self, action: DelayAction) -> ExecutorResult:
        duration = delay_to_timedelta(action.config.delayAmount, action.config.delayUnit)
        return ExecutorResult(
            suspend=SuspendInstruction(
                reason="delay",
                duration_ms=int(duration.total_seconds() * 1000),
                delay_amount=action.config.delayAmount,
                delay_unit=action.config.delayUnit
            )
        )
