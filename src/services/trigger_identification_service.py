import re
from typing import Optional, List

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.flow_data import FlowData, FlowTrigger


class TriggerIdentificationService:
    """
    Service for identifying which flow an inbound message triggers.
    Handles trigger matching, priority ordering and pre-emption of a running flow.
    """

    def __init__(
        self,
        log_util: LogUtil,
        flow_db: FlowDB
    ):
        self.log_util = log_util
        self.flow_db = flow_db

    async def find_triggered_flow(
        self,
        page_id: str,
        message: str,
        active_flow: Optional[FlowData] = None,
        conversation_id: Optional[str] = None
    ) -> Optional[FlowData]:
        """
        Load the page's active flows and select the one the message triggers.
        The winner's triggerCount is incremented.

        Args:
            page_id: Meta page ID the message was received on
            message: Inbound message text
            active_flow: Flow currently running for the conversation, if any
            conversation_id: Conversation ID (logging only)

        Returns:
            FlowData of the triggered flow, or None when nothing matched or the running flow continues
        """
        candidate_flows = await self.flow_db.get_active_flows(page_id)
        self.log_util.info(
            service_name="TriggerIdentificationService",
            message=f"[TRIGGER_IDENTIFY] Checking {len(candidate_flows)} active flows for page {page_id}",
            conversation_id=conversation_id
        )

        flow = self.match(message, candidate_flows, active_flow)
        if flow is None:
            self.log_util.info(
                service_name="TriggerIdentificationService",
                message="[TRIGGER_IDENTIFY] No trigger matched",
                conversation_id=conversation_id
            )
            return None

        self.log_util.info(
            service_name="TriggerIdentificationService",
            message=f"[TRIGGER_IDENTIFY] Trigger matched flow '{flow.name}' (priority {flow.priority}, type {flow.flowType})",
            flow_id=flow.id,
            conversation_id=conversation_id
        )
        await self.flow_db.increment_flow_counter(flow.id, "triggerCount")
        return flow

    def match(
        self,
        message: str,
        candidate_flows: List[FlowData],
        active_flow: Optional[FlowData] = None
    ) -> Optional[FlowData]:
        """
        Select the flow triggered by message.

        Matching flows are ordered by priority (highest first); ties go to the most recently
        created flow, then the highest id, so the choice is deterministic.
        With a running flow, a match only wins if it is an override flow pre-empting an
        automation flow, or has strictly greater priority. The running flow never re-triggers itself.

        Returns:
            The selected FlowData or None
        """
        matching_flows = [
            flow for flow in candidate_flows
            if flow.isActive and self.matches_any_trigger(message, flow.globalTriggers)
        ]
        if not matching_flows:
            return None

        matching_flows = self.sort_by_precedence(matching_flows)

        if active_flow is None:
            return matching_flows[0]

        for flow in matching_flows:
            if flow.id is not None and flow.id == active_flow.id:
                continue
            if flow.flowType == "override" and active_flow.flowType == "automation":
                return flow
            if flow.priority > active_flow.priority:
                return flow
        return None

    @staticmethod
    def sort_by_precedence(flows: List[FlowData]) -> List[FlowData]:
        return sorted(
            flows,
            key=lambda flow: (flow.priority, flow.createdAt, flow.id or ""),
            reverse=True
        )

    def matches_any_trigger(self, message: str, triggers: List[FlowTrigger]) -> bool:
        return any(self.matches_trigger(message, trigger) for trigger in triggers)

    def matches_trigger(self, message: str, trigger: FlowTrigger) -> bool:
        """
        Keyword triggers compare by matchMode, regex triggers search the message.
        Intent and event triggers are raised by other channels and never match free text.
        """
        if not message or not trigger.value:
            return False

        case_sensitive = bool(trigger.caseSensitive)

        if trigger.type == "keyword":
            text = message.strip() if case_sensitive else message.strip().lower()
            keyword = trigger.value.strip() if case_sensitive else trigger.value.strip().lower()
            match_mode = trigger.matchMode or "contains"
            if match_mode == "exact":
                return text == keyword
            if match_mode == "starts_with":
                return text.startswith(keyword)
            if match_mode == "ends_with":
                return text.endswith(keyword)
            return keyword in text

        if trigger.type == "regex":
            try:
                flags = 0 if case_sensitive else re.IGNORECASE
                return re.search(trigger.value, message, flags) is not None
            except re.error as e:
                self.log_util.warning(
                    service_name="TriggerIdentificationService",
                    message=f"[TRIGGER_CHECK] Invalid regex trigger '{trigger.value}': {str(e)}"
                )
                return False

        return False
