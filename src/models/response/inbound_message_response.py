from typing import Optional, List
from pydantic import BaseModel, Field


class InboundMessageResponse(BaseModel):
    """
    Response model for inbound message processing.
    Indicates whether automation handled the message and where the conversation stands.
    """
    status: str = Field(..., description="Processing status (success, failed, no_match, human_handling, out_of_order, error)")
    message: str = Field(..., description="Human-readable message")
    automation_triggered: bool = Field(default=False, description="Whether a flow started on this message")
    flow_id: Optional[str] = Field(None, description="Flow ID if a flow handled the message")
    current_node_id: Optional[str] = Field(None, description="Current node ID if the flow is still active")
    conversation_status: Optional[str] = Field(None, description="Execution status of the conversation")
    responses: List[str] = Field(default_factory=list, description="Texts sent to the user during this turn")
    error_details: Optional[str] = Field(None, description="Error details if status is error")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "success",
                "message": "Flow turn processed",
                "automation_triggered": True,
                "flow_id": "6750f0c2a1b2c3d4e5f60718",
                "current_node_id": "collect-service",
                "conversation_status": "paused",
                "responses": ["Which service would you like to book?"],
                "error_details": None
            }
        }
