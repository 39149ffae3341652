from fastapi import APIRouter
from typing import Dict, Any

# Utils
from utils.log_utils import LogUtil

# Services
from services.conversation_service import ConversationService

# Models
from models.request.inbound_message_request import InboundMessageRequest
from models.response.inbound_message_response import InboundMessageResponse


def create_inbound_message_api(
    log_util: LogUtil,
    conversation_service: ConversationService
) -> APIRouter:
    """
    Create API router for inbound user messages.
    This is the entry point for the Messenger/Instagram webhook receiver to run flow automation.
    """
    router = APIRouter(
        prefix="/webhook",
        tags=["webhook"],
    )

    @router.post("/message", response_model=InboundMessageResponse)
    async def process_inbound_message(request: InboundMessageRequest) -> InboundMessageResponse:
        """
        Process an inbound message and run flow automation if applicable.

        This endpoint:
        1. Serializes the turn with other messages of the same conversation
        2. Rejects out-of-order deliveries
        3. Cancels pending delays of the conversation
        4. Continues the active flow or starts the triggered one
        5. Sends the flow's messages to the user
        6. Returns where the conversation stands
        """
        try:
            result = await conversation_service.process_inbound_message(request)
            return InboundMessageResponse(**result)

        except Exception as e:
            log_util.error(
                service_name="InboundMessageAPI",
                message=f"Error processing inbound message from {request.sender_id}: {str(e)}",
                conversation_id=request.conversation_id
            )

            # Return error response instead of raising exception
            # so the webhook receiver does not redeliver the message
            return InboundMessageResponse(
                status="error",
                message="Error processing inbound message",
                automation_triggered=False,
                error_details="Internal error"
            )

    @router.get("/health")
    async def webhook_health_check() -> Dict[str, Any]:
        """Health check endpoint for webhook API"""
        return {
            "status": "healthy",
            "api": "inbound_message_api",
            "service": "meta_flow_service"
        }

    return router
