"""
Conversation Service
Entry point of the engine: processes inbound messages and delayed resumptions for a conversation,
one turn at a time.
"""
from typing import Optional, Dict, Any, List

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from utils.conversation_lock import ConversationLockRegistry
from utils.time_utils import utcnow, to_naive_utc

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import WindowExpiredException, ExternalCallException

# Models
from models.conversation_state_data import ConversationExecutionState
from models.delay_data import DelayData
from models.executor_result import OutboundMessage
from models.flow_data import FlowData
from models.request.inbound_message_request import InboundMessageRequest
from models.turn_result import TurnResult

# Services
from services.trigger_identification_service import TriggerIdentificationService
from services.flow_execution_service import FlowExecutionService, LOOP_HANDOFF_REASON
from services.delay_scheduler_service import DelaySchedulerService
from services.handoff_service import HandoffService
from services.clients.messaging_client import MessagingClient

WINDOW_EXPIRED_REASON = "messaging_window_expired"


class ConversationService:
    """
    Service that runs conversation turns.

    Turns of one conversation are serialized by a per-conversation lock. Each turn:
    loads the execution state, rejects out-of-order deliveries, cancels pending delays,
    routes the message (continue the active flow or start a triggered one), delivers the
    outbound messages, records handoffs in the team inbox and saves the state.
    """

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        flow_db: FlowDB,
        trigger_identification_service: TriggerIdentificationService,
        flow_execution_service: FlowExecutionService,
        delay_scheduler_service: DelaySchedulerService,
        handoff_service: HandoffService,
        messaging_client: MessagingClient,
        lock_registry: Optional[ConversationLockRegistry] = None
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.trigger_identification_service = trigger_identification_service
        self.flow_execution_service = flow_execution_service
        self.delay_scheduler_service = delay_scheduler_service
        self.handoff_service = handoff_service
        self.messaging_client = messaging_client
        self.lock_registry = lock_registry or ConversationLockRegistry()
        self.fallback_message = environment_utils.get_env_variable("FALLBACK_MESSAGE")

    async def process_inbound_message(self, request: InboundMessageRequest) -> Dict[str, Any]:
        """
        Process one inbound user message.

        Returns:
            Dict matching InboundMessageResponse with status:
            success, failed, no_match, human_handling, out_of_order or error
        """
        async with self.lock_registry.hold(request.conversation_id):
            try:
                return await self._process_inbound_message(request)
            except Exception as e:
                self.log_util.error(
                    service_name="ConversationService",
                    message=f"Error processing inbound message: {str(e)}",
                    conversation_id=request.conversation_id
                )
                return {
                    "status": "error",
                    "message": "Error processing inbound message",
                    "automation_triggered": False,
                    "flow_id": None,
                    "current_node_id": None,
                    "conversation_status": None,
                    "responses": [],
                    "error_details": str(e)
                }

    async def _process_inbound_message(self, request: InboundMessageRequest) -> Dict[str, Any]:
        conversation_id = request.conversation_id
        message = request.message or ""

        self.log_util.info(
            service_name="ConversationService",
            message=f"[INBOUND] Message from {request.sender_id} on {request.platform} page {request.page_id}",
            conversation_id=conversation_id
        )

        # Step 1: Load (or create) the execution state
        state = await self.flow_db.get_conversation_state(conversation_id)
        if state is None:
            state = ConversationExecutionState(conversationId=conversation_id)
        state.pageId = request.page_id
        state.senderId = request.sender_id
        state.platform = request.platform

        # Step 2: Reject deliveries older than the last processed one
        if (
            request.sequence is not None
            and state.lastInboundSequence is not None
            and request.sequence <= state.lastInboundSequence
        ):
            self.log_util.warning(
                service_name="ConversationService",
                message=f"[INBOUND] Out-of-order delivery rejected (sequence {request.sequence} <= {state.lastInboundSequence})",
                flow_id=state.flowId,
                conversation_id=conversation_id
            )
            return self._build_response(
                status="out_of_order",
                message="Message is older than the last processed message",
                state=state
            )

        # Step 3: Any inbound message cancels a pending delay; the message is routed fresh
        had_scheduled_delay = state.has_scheduled_delay()
        await self.delay_scheduler_service.cancel_pending_delays(state)
        if had_scheduled_delay:
            self.log_util.info(
                service_name="ConversationService",
                message="[INBOUND] Delay cancelled by user message, leaving the waiting flow",
                flow_id=state.flowId,
                conversation_id=conversation_id
            )
            state.clear_flow("idle")

        state.lastUserMessage = message
        state.lastMessageAt = to_naive_utc(request.received_at) or utcnow()
        if request.sequence is not None:
            state.lastInboundSequence = request.sequence

        # Step 4: Conversations handed to a human are not automated
        if state.status == "handed_off":
            await self.flow_db.save_conversation_state(state)
            return self._build_response(
                status="human_handling",
                message="Conversation is handled by a human agent",
                state=state
            )

        # Step 5: Load the active flow, if any
        active_flow = await self._load_active_flow(state)

        # Step 6: Trigger matching (may pre-empt the active flow)
        triggered_flow = await self.trigger_identification_service.find_triggered_flow(
            page_id=request.page_id,
            message=message,
            active_flow=active_flow,
            conversation_id=conversation_id
        )

        if triggered_flow is not None:
            turn = await self.flow_execution_service.start_flow(state, triggered_flow, message)
        elif active_flow is not None:
            turn = await self.flow_execution_service.continue_flow(state, active_flow, message)
        else:
            # Step 7: Nothing to do, default behavior belongs to the caller
            await self.flow_db.save_conversation_state(state)
            return self._build_response(
                status="no_match",
                message="No flow matched the message",
                state=state
            )

        # Steps 8 to 11: deliver, hand off, save
        responses = await self._finish_turn(state, turn)

        return self._build_response(
            status="failed" if turn.status == "failed" else "success",
            message=f"Flow turn {turn.status}",
            state=state,
            turn=turn,
            automation_triggered=triggered_flow is not None,
            responses=responses
        )

    async def resume_delayed(self, delay: DelayData) -> str:
        """
        Resume the conversation of an elapsed delay.

        Returns:
            "fired" when the flow was resumed, "cancelled" when the conversation no longer waits on this delay
        """
        async with self.lock_registry.hold(delay.conversation_id):
            state = await self.flow_db.get_conversation_state(delay.conversation_id)
            if (
                state is None
                or state.pendingDelay is None
                or state.pendingDelay.delayId != delay.id
                or state.pendingDelay.status != "scheduled"
            ):
                self.log_util.info(
                    service_name="ConversationService",
                    message=f"[DELAY] Conversation no longer waits on delay {delay.id}",
                    flow_id=delay.flow_id,
                    conversation_id=delay.conversation_id
                )
                return "cancelled"

            flow = await self.flow_db.get_flow_by_id(delay.flow_id)
            if (
                flow is None
                or not flow.isActive
                or state.flowId != delay.flow_id
                or flow.get_node(delay.scheduled_node_id) is None
            ):
                self.log_util.warning(
                    service_name="ConversationService",
                    message=f"[DELAY] Flow is inactive or no longer contains the resume node, cancelling delay {delay.id}",
                    flow_id=delay.flow_id,
                    node_id=delay.scheduled_node_id,
                    conversation_id=delay.conversation_id
                )
                state.pendingDelay.status = "cancelled"
                state.clear_flow("idle")
                await self.flow_db.save_conversation_state(state)
                return "cancelled"

            turn = await self.flow_execution_service.resume_after_delay(
                state,
                flow,
                delay.scheduled_node_id,
                delay.resume_action_index
            )
            await self._finish_turn(state, turn)
            return "fired"

    async def reset_conversation(self, conversation_id: str) -> Dict[str, Any]:
        """
        Explicit reset: cancel pending delays and delete the execution state,
        returning the conversation to automation.
        """
        async with self.lock_registry.hold(conversation_id):
            cancelled = await self.flow_db.cancel_pending_delays(conversation_id)
            deleted = await self.flow_db.delete_conversation_state(conversation_id)
            self.log_util.info(
                service_name="ConversationService",
                message=f"[RESET] Conversation reset (state deleted: {deleted}, delays cancelled: {cancelled})",
                conversation_id=conversation_id
            )
            return {
                "status": "success",
                "message": "Conversation reset",
                "state_deleted": deleted,
                "cancelled_delays": cancelled
            }

    async def get_conversation_state(self, conversation_id: str) -> Optional[ConversationExecutionState]:
        return await self.flow_db.get_conversation_state(conversation_id)

    async def _load_active_flow(self, state: ConversationExecutionState) -> Optional[FlowData]:
        if not state.has_active_flow():
            return None
        flow = await self.flow_db.get_flow_by_id(state.flowId)
        if flow is None or not flow.isActive:
            self.log_util.warning(
                service_name="ConversationService",
                message="[INBOUND] Active flow is missing or deactivated, leaving it",
                flow_id=state.flowId,
                node_id=state.currentNodeId,
                conversation_id=state.conversationId
            )
            state.clear_flow("idle")
            return None
        return flow

    async def _finish_turn(self, state: ConversationExecutionState, turn: TurnResult) -> List[str]:
        """
        Deliver the turn's messages, record handoffs and save the state.

        Returns:
            Texts delivered to the user
        """
        outbound_messages = list(turn.outbound_messages)
        if turn.status == "failed":
            outbound_messages.append(OutboundMessage(text=self.fallback_message))

        delivered = await self._deliver(state, turn, outbound_messages)

        if turn.status == "handed_off":
            await self.handoff_service.create_handoff(
                state,
                reason=turn.handoff_reason,
                triggered_by=self._handoff_trigger(turn.handoff_reason)
            )

        await self.flow_db.save_conversation_state(state)
        return delivered

    async def _deliver(
        self,
        state: ConversationExecutionState,
        turn: TurnResult,
        outbound_messages: List[OutboundMessage]
    ) -> List[str]:
        delivered: List[str] = []
        for outbound_message in outbound_messages:
            try:
                await self.messaging_client.send_message(
                    conversation_id=state.conversationId,
                    recipient_id=state.senderId,
                    message=outbound_message,
                    page_id=state.pageId,
                    last_inbound_at=state.lastMessageAt
                )
                delivered.append(outbound_message.text)
            except WindowExpiredException as e:
                # Not retried: the conversation needs a human follow-up
                self.log_util.warning(
                    service_name="ConversationService",
                    message=f"[DELIVERY] Messaging window expired, handing off: {e.message}",
                    flow_id=turn.flow_id,
                    node_id=state.currentNodeId,
                    conversation_id=state.conversationId
                )
                state.hand_off(WINDOW_EXPIRED_REASON)
                turn.status = "handed_off"
                turn.handoff_reason = WINDOW_EXPIRED_REASON
                break
            except ExternalCallException as e:
                self.log_util.error(
                    service_name="ConversationService",
                    message=f"[DELIVERY] Message delivery failed, remaining messages dropped: {e.message}",
                    flow_id=turn.flow_id,
                    node_id=state.currentNodeId,
                    conversation_id=state.conversationId
                )
                state.lastError = e.message
                break
        return delivered

    @staticmethod
    def _handoff_trigger(reason: Optional[str]) -> str:
        if reason == LOOP_HANDOFF_REASON:
            return "loop"
        if reason == WINDOW_EXPIRED_REASON:
            return "window_expired"
        return "flow"

    @staticmethod
    def _build_response(
        status: str,
        message: str,
        state: ConversationExecutionState,
        turn: Optional[TurnResult] = None,
        automation_triggered: bool = False,
        responses: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        return {
            "status": status,
            "message": message,
            "automation_triggered": automation_triggered,
            "flow_id": turn.flow_id if turn else state.flowId,
            "current_node_id": state.currentNodeId,
            "conversation_status": state.status,
            "responses": responses or [],
            "error_details": turn.error if turn else None
        }
