"""
Flow Execution Service
Walks a flow graph node by node for one conversation turn.

A turn runs until a collect_input or delay action suspends it, a handoff action or a node
without a next node terminates it, or the step ceiling is exceeded.
"""
from typing import Optional, Tuple, TYPE_CHECKING

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import InfiniteLoopException, ExternalCallException

# Models
from models.flow_data import FlowData, FlowNode
from models.conversation_state_data import ConversationExecutionState, AwaitingInput
from models.execution_context import ExecutionContext
from models.turn_result import TurnResult

# Services
from services.action_executor_service import ActionExecutorService
from services.condition_evaluation_service import ConditionEvaluationService

if TYPE_CHECKING:
    from services.delay_scheduler_service import DelaySchedulerService

LOOP_HANDOFF_REASON = "flow loop detected"


class FlowExecutionService:
    """
    Service that drives ConversationExecutionState through a FlowData graph.
    The caller owns the state (and its persistence); this service only mutates it in memory.
    """

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        flow_db: FlowDB,
        action_executor_service: ActionExecutorService,
        condition_evaluation_service: ConditionEvaluationService,
        delay_scheduler_service: "DelaySchedulerService"
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.action_executor_service = action_executor_service
        self.condition_evaluation_service = condition_evaluation_service
        self.delay_scheduler_service = delay_scheduler_service
        self.max_steps = environment_utils.get_env_variable("MAX_STEPS_PER_TURN")

    async def start_flow(self, state: ConversationExecutionState, flow: FlowData, message: str) -> TurnResult:
        """
        Start flow from its entry node. Variables of any previous flow are cleared.
        """
        self.log_util.info(
            service_name="FlowExecutionService",
            message=f"[WALKER] Starting flow '{flow.name}' (version {flow.version})",
            flow_id=flow.id,
            node_id=flow.entryNodeId,
            conversation_id=state.conversationId
        )
        state.start(flow.id, flow.entryNodeId)
        return await self._run_turn(state, flow, flow.entryNodeId, 0, message)

    async def continue_flow(self, state: ConversationExecutionState, flow: FlowData, message: str) -> TurnResult:
        """
        Continue the active flow with a new user message.
        A pending collect_input binds the message to its variable and resumes after that action,
        otherwise the walker re-enters at the current node.
        """
        awaiting_input = state.awaitingInput
        state.status = "running"

        if awaiting_input is not None:
            state.variables[awaiting_input.inputName] = message
            state.awaitingInput = None
            self.log_util.info(
                service_name="FlowExecutionService",
                message=f"[WALKER] Bound user reply to '{awaiting_input.inputName}'",
                flow_id=flow.id,
                node_id=awaiting_input.nodeId,
                conversation_id=state.conversationId
            )
            return await self._run_turn(state, flow, awaiting_input.nodeId, awaiting_input.actionIndex + 1, message)

        return await self._run_turn(state, flow, state.currentNodeId, 0, message)

    async def resume_after_delay(
        self,
        state: ConversationExecutionState,
        flow: FlowData,
        node_id: str,
        action_index: int = 0
    ) -> TurnResult:
        """
        Continue the flow at the node recorded when the delay was scheduled.
        """
        if state.pendingDelay is not None:
            state.pendingDelay.status = "fired"
        state.status = "running"
        self.log_util.info(
            service_name="FlowExecutionService",
            message=f"[WALKER] Resuming after delay at action {action_index}",
            flow_id=flow.id,
            node_id=node_id,
            conversation_id=state.conversationId
        )
        return await self._run_turn(state, flow, node_id, action_index, state.lastUserMessage or "")

    async def _run_turn(
        self,
        state: ConversationExecutionState,
        flow: FlowData,
        start_node_id: Optional[str],
        start_action_index: int,
        message: str
    ) -> TurnResult:
        result = TurnResult(flow_id=flow.id, status="completed")
        node_id = start_node_id
        action_index = start_action_index
        steps = 0

        try:
            while True:
                if steps >= self.max_steps:
                    raise InfiniteLoopException(
                        message=f"Turn exceeded {self.max_steps} steps",
                        steps=steps
                    )
                steps += 1

                node = flow.get_node(node_id)
                if node is None:
                    self.log_util.error(
                        service_name="FlowExecutionService",
                        message=f"[WALKER] Node '{node_id}' not found, ending flow",
                        flow_id=flow.id,
                        node_id=node_id,
                        conversation_id=state.conversationId
                    )
                    await self._complete(state, flow, result)
                    break

                state.currentNodeId = node.id

                if node.type == "condition":
                    branch = self.condition_evaluation_service.evaluate_node(
                        node,
                        state.variables,
                        message,
                        log_context={"flow_id": flow.id, "node_id": node.id, "conversation_id": state.conversationId}
                    )
                    next_node_id = node.next_node_at(0 if branch else 1)
                else:
                    stopped, goto_node_id = await self._execute_actions(state, flow, node, action_index, message, result)
                    if stopped:
                        break
                    if goto_node_id is not None:
                        next_node_id = goto_node_id
                    elif node.type == "exit":
                        next_node_id = None
                    else:
                        next_node_id = node.next_node_at(0)

                action_index = 0
                if next_node_id is None:
                    await self._complete(state, flow, result)
                    break
                node_id = next_node_id

        except InfiniteLoopException as e:
            self.log_util.error(
                service_name="FlowExecutionService",
                message=f"[WALKER] {e.message}, handing off: {LOOP_HANDOFF_REASON}",
                flow_id=flow.id,
                node_id=state.currentNodeId,
                conversation_id=state.conversationId
            )
            state.hand_off(LOOP_HANDOFF_REASON)
            result.status = "handed_off"
            result.handoff_reason = LOOP_HANDOFF_REASON
            result.error = e.message

        except ExternalCallException as e:
            # The conversation stays on the failed node; the next user message re-enters it
            self.log_util.error(
                service_name="FlowExecutionService",
                message=f"[WALKER] External {e.call_type} call failed: {e.message}",
                flow_id=flow.id,
                node_id=state.currentNodeId,
                conversation_id=state.conversationId
            )
            state.status = "paused"
            state.lastError = e.message
            result.status = "failed"
            result.error = e.message

        result.steps = steps
        result.current_node_id = state.currentNodeId
        return result

    async def _execute_actions(
        self,
        state: ConversationExecutionState,
        flow: FlowData,
        node: FlowNode,
        start_index: int,
        message: str,
        result: TurnResult
    ) -> Tuple[bool, Optional[str]]:
        """
        Run node actions from start_index.

        Returns:
            (stopped, goto_node_id): stopped is True when the turn suspended or terminated
        """
        for index in range(start_index, len(node.actions)):
            action = node.actions[index]
            ctx = ExecutionContext(
                conversation_id=state.conversationId,
                page_id=state.pageId,
                flow_id=flow.id,
                node_id=node.id,
                variables=dict(state.variables),
                last_user_message=message or ""
            )
            action_result = await self.action_executor_service.execute(action, ctx)

            state.variables.update(action_result.variable_writes)
            result.outbound_messages.extend(action_result.outbound_messages)

            if action_result.terminal:
                state.hand_off(action_result.handoff_reason)
                result.status = "handed_off"
                result.handoff_reason = action_result.handoff_reason
                self.log_util.info(
                    service_name="FlowExecutionService",
                    message=f"[WALKER] Handed off: {action_result.handoff_reason}",
                    **ctx.log_context()
                )
                return True, None

            if action_result.goto_node_id is not None:
                return False, action_result.goto_node_id

            suspend = action_result.suspend
            if suspend is None:
                continue

            if suspend.reason == "input":
                state.awaitingInput = AwaitingInput(inputName=suspend.input_name, nodeId=node.id, actionIndex=index)
                state.status = "paused"
                result.status = "paused"
                result.suspended_reason = "input"
                self.log_util.info(
                    service_name="FlowExecutionService",
                    message=f"[WALKER] Waiting for input '{suspend.input_name}'",
                    **ctx.log_context()
                )
                return True, None

            # Delay: continue with the next action of this node, or the next node when it was the last one
            if index + 1 < len(node.actions):
                resume_node_id, resume_action_index = node.id, index + 1
            else:
                resume_node_id, resume_action_index = node.next_node_at(0), 0

            if resume_node_id is None:
                self.log_util.info(
                    service_name="FlowExecutionService",
                    message="[WALKER] Delay has nothing to resume, skipping",
                    **ctx.log_context()
                )
                continue

            await self.delay_scheduler_service.schedule_delay(
                state=state,
                flow_id=flow.id,
                delay_node_id=node.id,
                scheduled_node_id=resume_node_id,
                resume_action_index=resume_action_index,
                delay_amount=suspend.delay_amount,
                delay_unit=suspend.delay_unit
            )
            state.status = "paused"
            result.status = "paused"
            result.suspended_reason = "delay"
            return True, None

        return False, None

    async def _complete(self, state: ConversationExecutionState, flow: FlowData, result: TurnResult) -> None:
        self.log_util.info(
            service_name="FlowExecutionService",
            message=f"[WALKER] Flow '{flow.name}' completed",
            flow_id=flow.id,
            node_id=state.currentNodeId,
            conversation_id=state.conversationId
        )
        state.clear_flow("completed")
        result.status = "completed"
        await self.flow_db.increment_flow_counter(flow.id, "completionCount")
