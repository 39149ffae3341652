from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

# Utils
from utils.time_utils import to_naive_utc


class InboundMessageRequest(BaseModel):
    """
    Request model for inbound user messages forwarded by the Messenger/Instagram webhook receiver.
    sequence is the per-conversation delivery order; deliveries older than the last
    processed sequence are rejected instead of being interleaved.
    """
    conversation_id: str = Field(..., description="Meta conversation ID")
    page_id: str = Field(..., description="Meta page ID that received the message")
    sender_id: str = Field(..., description="Page-scoped ID of the user who sent the message")
    message: str = Field(default="", description="Text of the message (quick reply title for quick reply taps)")
    platform: Literal["messenger", "instagram"] = Field(default="messenger", description="Originating platform")
    sequence: Optional[int] = Field(None, description="Monotonic per-conversation sequence number (e.g. Meta timestamp in ms)")
    received_at: Optional[datetime] = Field(None, description="When the platform received the message")

    @field_validator("received_at")
    @classmethod
    def normalize_received_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

    class Config:
        json_schema_extra = {
            "example": {
                "conversation_id": "t_10229384756",
                "page_id": "104857392011",
                "sender_id": "6543219870",
                "message": "I want to book",
                "platform": "messenger",
                "sequence": 1733212345678
            }
        }
