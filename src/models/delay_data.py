from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

# Utils
from utils.time_utils import utcnow


class DelayData(BaseModel):
    """
    Model for storing delay information when a delay action is executed.
    Durable timer record used by the background scheduler to resume the flow.
    """
    id: Optional[str] = None  # MongoDB _id
    conversation_id: str = Field(..., description="Conversation waiting on the delay")
    page_id: Optional[str] = Field(None, description="Meta page the conversation belongs to")
    flow_id: str = Field(..., description="Flow ID where the delay action exists")
    delay_node_id: str = Field(..., description="Node that executed the delay action")
    scheduled_node_id: str = Field(..., description="Node to continue from when the delay fires")
    resume_action_index: int = Field(default=0, description="Action index on scheduled_node_id to continue from")
    delay_amount: int = Field(..., description="Delay amount value")
    delay_unit: str = Field(..., description="Delay unit (minutes, hours, days)")
    resume_at: datetime = Field(..., description="When the delay should fire")
    status: Literal["scheduled", "processing", "fired", "cancelled", "failed"] = Field(
        default="scheduled",
        description="scheduled -> processing -> fired, or scheduled -> cancelled"
    )
    attempts: int = Field(default=0, description="Number of firing attempts")
    last_error: Optional[str] = Field(None, description="Last error message if firing failed")
    created_at: datetime = Field(default_factory=utcnow, description="Timestamp when delay record was created")
    updated_at: datetime = Field(default_factory=utcnow, description="Timestamp when delay record was last updated")
