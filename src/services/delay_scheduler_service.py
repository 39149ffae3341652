"""
Delay Scheduler Service
Durable timers for delay actions: schedules and cancels delay records, and runs a background
loop that resumes conversations whose delay has elapsed.
"""
import asyncio
import traceback
from typing import Optional, Callable, TYPE_CHECKING
from datetime import datetime

# Utils
from utils.log_utils import LogUtil
from utils.time_utils import utcnow, delay_to_timedelta

# Database
from database.flow_db import FlowDB

# Exceptions
from exceptions.flow_exception import FlowServiceException, FlowDBException

# Models
from models.delay_data import DelayData
from models.conversation_state_data import ConversationExecutionState, PendingDelay

if TYPE_CHECKING:
    from services.conversation_service import ConversationService


class DelaySchedulerService:
    """
    Background service that monitors delay records and resumes flows when the delay time expires.

    A delay moves scheduled -> processing -> fired, or scheduled -> cancelled. The scheduled ->
    processing claim is atomic in the database, so a delay fires at most once even with
    several workers polling. A database error during the resume puts the delay back to
    scheduled until max_attempts claims have been made.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB,
        check_interval_seconds: int = 20,
        batch_size: int = 100,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow
    ):
        self.log_util = log_util
        self.flow_db = flow_db
        self.check_interval_seconds = check_interval_seconds
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.clock = clock
        self.conversation_service: Optional["ConversationService"] = None
        self._running = False
        self._task = None

    def set_conversation_service(self, conversation_service: "ConversationService"):
        """
        Set the service used to resume conversations (after both services are constructed).
        """
        self.conversation_service = conversation_service

    async def schedule_delay(
        self,
        state: ConversationExecutionState,
        flow_id: str,
        delay_node_id: str,
        scheduled_node_id: str,
        resume_action_index: int,
        delay_amount: int,
        delay_unit: str
    ) -> DelayData:
        """
        Persist a delay record and point the conversation's pendingDelay at it.

        Args:
            state: Conversation state (mutated: pendingDelay is set)
            flow_id: Flow the delay belongs to
            delay_node_id: Node that executed the delay action
            scheduled_node_id: Node to continue from when the delay fires
            resume_action_index: Action index on scheduled_node_id to continue from
            delay_amount: Delay amount
            delay_unit: minutes, hours or days

        Returns:
            Saved DelayData
        """
        now = self.clock()
        resume_at = now + delay_to_timedelta(delay_amount, delay_unit)
        delay = await self.flow_db.save_delay(DelayData(
            conversation_id=state.conversationId,
            page_id=state.pageId,
            flow_id=flow_id,
            delay_node_id=delay_node_id,
            scheduled_node_id=scheduled_node_id,
            resume_action_index=resume_action_index,
            delay_amount=delay_amount,
            delay_unit=delay_unit,
            resume_at=resume_at,
            created_at=now,
            updated_at=now
        ))
        state.pendingDelay = PendingDelay(
            delayId=delay.id,
            resumeAt=resume_at,
            scheduledNodeId=scheduled_node_id,
            resumeActionIndex=resume_action_index,
            status="scheduled"
        )
        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Delay {delay.id} scheduled for {delay_amount} {delay_unit}, resumes at {resume_at.isoformat()}",
            flow_id=flow_id,
            node_id=delay_node_id,
            conversation_id=state.conversationId
        )
        return delay

    async def cancel_pending_delays(self, state: ConversationExecutionState) -> int:
        """
        Cancel every scheduled delay of the conversation (an inbound message arrived during the wait).

        Returns:
            Number of cancelled delay records
        """
        cancelled = await self.flow_db.cancel_pending_delays(state.conversationId)
        if state.has_scheduled_delay():
            state.pendingDelay.status = "cancelled"
        if cancelled:
            self.log_util.info(
                service_name="DelaySchedulerService",
                message=f"Cancelled {cancelled} pending delay(s) on inbound message",
                flow_id=state.flowId,
                conversation_id=state.conversationId
            )
        return cancelled

    async def cancel_pending_delays_for_flow(self, flow_id: str) -> int:
        """
        Cancel every scheduled delay of a flow (the flow was deactivated).
        """
        cancelled = await self.flow_db.cancel_pending_delays_for_flow(flow_id)
        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Cancelled {cancelled} pending delay(s) for deactivated flow",
            flow_id=flow_id
        )
        return cancelled

    async def start(self, reconcile: bool = True):
        """
        Start the background scheduler task.
        """
        if self._running:
            self.log_util.warning(
                service_name="DelaySchedulerService",
                message="Scheduler is already running"
            )
            return

        if reconcile:
            await self.reconcile_on_startup()

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Delay scheduler started, checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler task.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.log_util.info(
            service_name="DelaySchedulerService",
            message="Delay scheduler stopped"
        )

    async def _scheduler_loop(self):
        """
        Main scheduler loop that checks for elapsed delays and resumes their flows.
        """
        while self._running:
            try:
                await self.process_due_delays()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Error in scheduler loop: {str(e)}"
                )
                self.log_util.error(
                    service_name="DelaySchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)

    async def process_due_delays(self, now: Optional[datetime] = None) -> int:
        """
        Fire every scheduled delay whose resume time has passed.

        Args:
            now: Current time, defaults to the scheduler clock

        Returns:
            Number of delays that fired
        """
        now = now or self.clock()
        due_delays = await self.flow_db.get_due_delays(now, self.batch_size)
        if not due_delays:
            return 0

        self.log_util.info(
            service_name="DelaySchedulerService",
            message=f"Found {len(due_delays)} elapsed delay(s) to process"
        )

        fired = 0
        for delay in due_delays:
            if await self.process_delay(delay) == "fired":
                fired += 1
        return fired

    async def process_delay(self, delay: DelayData) -> str:
        """
        Claim one delay and resume its conversation.

        Returns:
            "fired", "cancelled", "rescheduled", "failed", or "skipped" when another worker claimed it first
        """
        claimed = await self.flow_db.claim_delay(delay.id)
        if claimed is None:
            return "skipped"

        try:
            if self.conversation_service is None:
                raise FlowServiceException(message="ConversationService not initialized, cannot resume delay")
            outcome = await self.conversation_service.resume_delayed(claimed)
            await self.flow_db.mark_delay_status(claimed.id, outcome)
            self.log_util.info(
                service_name="DelaySchedulerService",
                message=f"Delay {claimed.id} {outcome}",
                flow_id=claimed.flow_id,
                node_id=claimed.scheduled_node_id,
                conversation_id=claimed.conversation_id
            )
            return outcome
        except FlowDBException as e:
            if claimed.attempts < self.max_attempts:
                self.log_util.warning(
                    service_name="DelaySchedulerService",
                    message=f"Database error resuming delay {claimed.id} (attempt {claimed.attempts} of {self.max_attempts}), rescheduling: {e.message}",
                    flow_id=claimed.flow_id,
                    node_id=claimed.scheduled_node_id,
                    conversation_id=claimed.conversation_id
                )
                await self.flow_db.mark_delay_status(claimed.id, "scheduled", error=e.message)
                return "rescheduled"
            self.log_util.error(
                service_name="DelaySchedulerService",
                message=f"Giving up on delay {claimed.id} after {claimed.attempts} attempts: {e.message}",
                flow_id=claimed.flow_id,
                node_id=claimed.scheduled_node_id,
                conversation_id=claimed.conversation_id
            )
            await self.flow_db.mark_delay_status(claimed.id, "failed", error=e.message)
            return "failed"
        except Exception as e:
            self.log_util.error(
                service_name="DelaySchedulerService",
                message=f"Error processing delay {claimed.id}: {str(e)}",
                flow_id=claimed.flow_id,
                node_id=claimed.scheduled_node_id,
                conversation_id=claimed.conversation_id
            )
            await self.flow_db.mark_delay_status(claimed.id, "failed", error=str(e))
            return "failed"

    async def reconcile_on_startup(self) -> int:
        """
        Resolve delays left in processing by a crash.
        If the conversation still points at the delay the resume never committed, so the delay
        is rescheduled; otherwise the resume was saved and the delay is marked fired.

        Returns:
            Number of delays put back to scheduled
        """
        processing_delays = await self.flow_db.get_processing_delays()
        rescheduled = 0
        for delay in processing_delays:
            state = await self.flow_db.get_conversation_state(delay.conversation_id)
            still_pending = (
                state is not None
                and state.pendingDelay is not None
                and state.pendingDelay.delayId == delay.id
                and state.pendingDelay.status == "scheduled"
            )
            if still_pending:
                await self.flow_db.mark_delay_status(delay.id, "scheduled")
                rescheduled += 1
            else:
                await self.flow_db.mark_delay_status(delay.id, "fired")

        if processing_delays:
            self.log_util.info(
                service_name="DelaySchedulerService",
                message=f"Reconciled {len(processing_delays)} in-flight delay(s), {rescheduled} rescheduled"
            )
        return rescheduled
