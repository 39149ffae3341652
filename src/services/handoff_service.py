from typing import Optional

# Utils
from utils.log_utils import LogUtil

# Database
from database.flow_db import FlowDB

# Models
from models.conversation_state_data import ConversationExecutionState
from models.team_inbox_data import TeamInboxItemData

# Handoffs raised by the engine itself are surfaced with high priority
HIGH_PRIORITY_TRIGGERS = ("loop", "window_expired", "error")


class HandoffService:
    """
    Service that hands conversations to human operators through the team inbox.
    """
    def __init__(self, log_util: LogUtil, flow_db: FlowDB):
        self.log_util = log_util
        self.flow_db = flow_db

    async def create_handoff(
        self,
        state: ConversationExecutionState,
        reason: str,
        triggered_by: str = "flow",
        node_id: Optional[str] = None
    ) -> TeamInboxItemData:
        """
        Open (or reopen) the conversation's team inbox item with the structured handoff reason.

        Args:
            state: Conversation state at the time of the handoff
            reason: Handoff reason shown to operators
            triggered_by: flow, keyword, user_request, loop, window_expired or error
            node_id: Node where the handoff happened, defaults to the state's current node
        """
        item = TeamInboxItemData(
            conversation_id=state.conversationId,
            page_id=state.pageId,
            flow_id=state.flowId,
            node_id=node_id or state.currentNodeId,
            priority="high" if triggered_by in HIGH_PRIORITY_TRIGGERS else "normal",
            handoff_reason=reason,
            handoff_triggered_by=triggered_by
        )
        saved_item = await self.flow_db.upsert_team_inbox_item(item)
        self.log_util.info(
            service_name="HandoffService",
            message=f"[HANDOFF] Conversation handed to team inbox ({triggered_by}): {reason}",
            flow_id=state.flowId,
            node_id=item.node_id,
            conversation_id=state.conversationId
        )
        return saved_item
