from fastapi import APIRouter
from fastapi.exceptions import HTTPException

# Utils
from utils.log_utils import LogUtil

# Services
from services.conversation_service import ConversationService

# Exceptions
from exceptions.flow_exception import FlowException


def create_conversation_api(
    log_util: LogUtil,
    conversation_service: ConversationService
) -> APIRouter:
    router = APIRouter(
        prefix="/conversation",
        tags=["conversation"],
    )

    @router.get("/{conversation_id}/state")
    async def get_conversation_state(conversation_id: str):
        try:
            state = await conversation_service.get_conversation_state(conversation_id)
        except FlowException as e:
            log_util.error(service_name="ConversationAPI", message=f"Error getting state: {e.message}", conversation_id=conversation_id)
            raise HTTPException(status_code=e.status_code, detail=e.message)
        if state is None:
            raise HTTPException(status_code=404, detail=f"No execution state for conversation {conversation_id}")
        return state

    @router.post("/{conversation_id}/reset")
    async def reset_conversation(conversation_id: str):
        """
        Clear the conversation's execution state and pending delays, returning it to automation
        (e.g. after a human agent resolved a handoff).
        """
        try:
            return await conversation_service.reset_conversation(conversation_id)
        except FlowException as e:
            log_util.error(service_name="ConversationAPI", message=f"Error resetting conversation: {e.message}", conversation_id=conversation_id)
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
