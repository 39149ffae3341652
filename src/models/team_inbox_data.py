from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

# Utils
from utils.time_utils import utcnow


class TeamInboxItemData(BaseModel):
    """
    Operator-facing record created when a conversation is handed to a human.
    One item per conversation, reopened on repeated handoffs.
    """
    id: Optional[str] = None  # MongoDB _id
    conversation_id: str
    page_id: Optional[str] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None
    status: Literal["open", "resolved"] = "open"
    priority: Literal["low", "normal", "high"] = "normal"
    handoff_reason: str
    handoff_triggered_by: Literal["flow", "keyword", "user_request", "loop", "window_expired", "error"] = "flow"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
