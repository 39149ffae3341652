from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, Literal
from datetime import datetime

# Utils
from utils.time_utils import utcnow


class PendingDelay(BaseModel):
    """
    Delay the conversation is waiting on. Kept with status "cancelled" or "fired"
    after it resolves so operators can see what happened to it.
    """
    delayId: Optional[str] = None
    resumeAt: datetime
    scheduledNodeId: str
    resumeActionIndex: int = 0
    status: Literal["scheduled", "cancelled", "fired"] = "scheduled"


class AwaitingInput(BaseModel):
    """
    collect_input suspension point: the next user message is bound to inputName
    and execution continues with the action after actionIndex on nodeId.
    """
    inputName: str
    nodeId: str
    actionIndex: int = 0


ConversationStatus = Literal["idle", "running", "paused", "completed", "handed_off"]


class ConversationExecutionState(BaseModel):
    """
    Mutable execution state of one live conversation.
    Owned exclusively by the conversation's current turn.
    """
    id: Optional[str] = None  # MongoDB _id
    conversationId: str
    pageId: Optional[str] = None
    senderId: Optional[str] = None  # Page-scoped recipient ID for outbound sends
    platform: Literal["messenger", "instagram"] = "messenger"
    flowId: Optional[str] = None
    currentNodeId: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    pendingDelay: Optional[PendingDelay] = None
    awaitingInput: Optional[AwaitingInput] = None
    status: ConversationStatus = "idle"
    handoffReason: Optional[str] = None
    lastUserMessage: Optional[str] = None
    lastMessageAt: Optional[datetime] = None
    lastInboundSequence: Optional[int] = None
    lastError: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    def has_active_flow(self) -> bool:
        return self.flowId is not None and self.status in ("running", "paused")

    def has_scheduled_delay(self) -> bool:
        return self.pendingDelay is not None and self.pendingDelay.status == "scheduled"

    def start(self, flow_id: str, entry_node_id: str) -> None:
        self.flowId = flow_id
        self.currentNodeId = entry_node_id
        self.variables = {}
        self.pendingDelay = None
        self.awaitingInput = None
        self.handoffReason = None
        self.lastError = None
        self.status = "running"

    def clear_flow(self, status: ConversationStatus) -> None:
        """
        Leave the current flow. Variables are kept until the next flow starts.
        """
        self.flowId = None
        self.currentNodeId = None
        self.awaitingInput = None
        self.status = status

    def hand_off(self, reason: str) -> None:
        self.awaitingInput = None
        self.handoffReason = reason
        self.status = "handed_off"
