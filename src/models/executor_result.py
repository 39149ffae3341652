from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal


class OutboundMessage(BaseModel):
    """
    Message the engine wants delivered to the user.
    quick_replies are rendered as buttons by the messaging client.
    """
    text: str
    quick_replies: List[str] = Field(default_factory=list)


class SuspendInstruction(BaseModel):
    reason: Literal["input", "delay"]
    duration_ms: Optional[int] = None
    input_name: Optional[str] = None
    delay_amount: Optional[int] = None
    delay_unit: Optional[str] = None


class ExecutorResult(BaseModel):
    """
    Outcome of executing a single FlowAction.
    """
    variable_writes: Dict[str, Any] = Field(default_factory=dict)
    outbound_messages: List[OutboundMessage] = Field(default_factory=list)
    suspend: Optional[SuspendInstruction] = None
    terminal: bool = False
    handoff_reason: Optional[str] = None
    goto_node_id: Optional[str] = None
