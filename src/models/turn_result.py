from pydantic import BaseModel, Field
from typing import Optional, List, Literal

# Models
from models.executor_result import OutboundMessage


class TurnResult(BaseModel):
    """
    Result of one walker turn: everything emitted plus where the conversation ended up.
    """
    flow_id: Optional[str] = None
    status: Literal["paused", "completed", "handed_off", "failed"] = "completed"
    outbound_messages: List[OutboundMessage] = Field(default_factory=list)
    current_node_id: Optional[str] = None
    steps: int = 0
    suspended_reason: Optional[Literal["input", "delay"]] = None
    handoff_reason: Optional[str] = None
    error: Optional[str] = None
