from pydantic import BaseModel, Field
from typing import Optional, Dict, Any


class ExecutionContext(BaseModel):
    """
    What an action executor can see: the variable store snapshot, the identity
    of the conversation and the node being executed, and the latest user message.
    Collaborator clients are held by the executor services themselves.
    """
    conversation_id: str
    page_id: Optional[str] = None
    flow_id: str
    node_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    last_user_message: str = ""

    def log_context(self) -> Dict[str, str]:
        return {
            "flow_id": self.flow_id,
            "node_id": self.node_id,
            "conversation_id": self.conversation_id,
        }
