"""
In-memory collaborators for tests. FakeFlowDB follows FlowDB's async contract;
records are copied on the way in and out so tests see what was actually persisted.
"""
from typing import Optional, List, Dict, Any
import json
import os
from datetime import datetime
import itertools

# Utils
from utils.time_utils import utcnow

# Exceptions
from exceptions.flow_exception import ExternalCallException, WindowExpiredException, FlowDBException

# Models
from models.flow_data import FlowData
from models.conversation_state_data import ConversationExecutionState
from models.delay_data import DelayData
from models.executor_result import OutboundMessage
from models.team_inbox_data import TeamInboxItemData

# Services
from services.clients.ai_client import AiCompletion
from services.clients.http_fetch_client import HttpFetchResult

PAGE_ID = "page-1"

FLOWS_DIR = os.path.join(os.path.dirname(__file__), "..", "scripts", "flows")


class FakeFlowDB:
    """
    Set failing_flow_reads to make the next N get_flow_by_id calls raise like a lost connection.
    """
    def __init__(self):
        self.flows: Dict[str, FlowData] = {}
        self.states: Dict[str, ConversationExecutionState] = {}
        self.delays: Dict[str, DelayData] = {}
        self.inbox: Dict[str, TeamInboxItemData] = {}
        self._ids = itertools.count(1)
        self.failing_flow_reads = 0

    def _next_id(self) -> str:
        return f"{next(self._ids):024x}"

    def close(self):
        pass

    # Flows
    async def create_flow(self, flow: FlowData) -> Optional[FlowData]:
        stored = flow.model_copy(deep=True)
        if stored.id is None:
            stored.id = self._next_id()
        self.flows[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_flow_by_id(self, flow_id: str) -> Optional[FlowData]:
        if self.failing_flow_reads > 0:
            self.failing_flow_reads -= 1
            raise FlowDBException(message="Database connection error: connection reset", status_code=503)
        flow = self.flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def get_flows(self, page_id: str) -> List[FlowData]:
        flows = [flow for flow in self.flows.values() if flow.pageId == page_id]
        return [flow.model_copy(deep=True) for flow in sorted(flows, key=lambda f: f.createdAt, reverse=True)]

    async def get_active_flows(self, page_id: str) -> List[FlowData]:
        return [
            flow.model_copy(deep=True) for flow in self.flows.values()
            if flow.pageId == page_id and flow.isActive
        ]

    async def update_flow(self, flow_id: str, flow: FlowData) -> Optional[FlowData]:
        existing = self.flows.get(flow_id)
        if existing is None:
            return None
        updated = flow.model_copy(deep=True)
        updated.id = flow_id
        updated.triggerCount = existing.triggerCount
        updated.completionCount = existing.completionCount
        updated.createdAt = existing.createdAt
        updated.updatedAt = utcnow()
        self.flows[flow_id] = updated
        return updated.model_copy(deep=True)

    async def update_flow_active(self, flow_id: str, is_active: bool) -> Optional[FlowData]:
        flow = self.flows.get(flow_id)
        if flow is None:
            return None
        flow.isActive = is_active
        return flow.model_copy(deep=True)

    async def delete_flow(self, flow_id: str) -> bool:
        return self.flows.pop(flow_id, None) is not None

    async def increment_flow_counter(self, flow_id: str, field: str) -> bool:
        if field not in ("triggerCount", "completionCount"):
            raise ValueError(f"Unknown flow counter: {field}")
        flow = self.flows.get(flow_id)
        if flow is None:
            return False
        setattr(flow, field, getattr(flow, field) + 1)
        return True

    # Conversation states
    async def get_conversation_state(self, conversation_id: str) -> Optional[ConversationExecutionState]:
        state = self.states.get(conversation_id)
        return state.model_copy(deep=True) if state else None

    async def save_conversation_state(self, state: ConversationExecutionState) -> ConversationExecutionState:
        if state.id is None:
            state.id = self._next_id()
        state.updatedAt = utcnow()
        self.states[state.conversationId] = state.model_copy(deep=True)
        return state

    async def delete_conversation_state(self, conversation_id: str) -> bool:
        return self.states.pop(conversation_id, None) is not None

    # Delays
    async def save_delay(self, delay: DelayData) -> DelayData:
        stored = delay.model_copy(deep=True)
        stored.id = self._next_id()
        self.delays[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_due_delays(self, now: datetime, limit: int = 100) -> List[DelayData]:
        due = [
            delay for delay in self.delays.values()
            if delay.status == "scheduled" and delay.resume_at <= now
        ]
        due.sort(key=lambda delay: delay.resume_at)
        return [delay.model_copy(deep=True) for delay in due[:limit]]

    async def claim_delay(self, delay_id: str) -> Optional[DelayData]:
        delay = self.delays.get(delay_id)
        if delay is None or delay.status != "scheduled":
            return None
        delay.status = "processing"
        delay.attempts += 1
        return delay.model_copy(deep=True)

    async def mark_delay_status(self, delay_id: str, status: str, error: Optional[str] = None) -> bool:
        delay = self.delays.get(delay_id)
        if delay is None:
            return False
        delay.status = status
        if error is not None:
            delay.last_error = error
        return True

    async def cancel_pending_delays(self, conversation_id: str) -> int:
        cancelled = 0
        for delay in self.delays.values():
            if delay.conversation_id == conversation_id and delay.status == "scheduled":
                delay.status = "cancelled"
                cancelled += 1
        return cancelled

    async def cancel_pending_delays_for_flow(self, flow_id: str) -> int:
        cancelled = 0
        for delay in self.delays.values():
            if delay.flow_id == flow_id and delay.status == "scheduled":
                delay.status = "cancelled"
                cancelled += 1
        return cancelled

    async def get_processing_delays(self) -> List[DelayData]:
        return [delay.model_copy(deep=True) for delay in self.delays.values() if delay.status == "processing"]

    # Team inbox
    async def upsert_team_inbox_item(self, item: TeamInboxItemData) -> TeamInboxItemData:
        existing = self.inbox.get(item.conversation_id)
        stored = item.model_copy(deep=True)
        stored.id = existing.id if existing else self._next_id()
        if existing:
            stored.created_at = existing.created_at
        self.inbox[item.conversation_id] = stored
        return stored.model_copy(deep=True)


class FakeMessagingClient:
    """
    Records sent messages. Set window_expired or fail_with to simulate Send API errors.
    """
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.window_expired = False
        self.fail_with: Optional[Exception] = None

    @property
    def texts(self) -> List[str]:
        return [entry["message"].text for entry in self.sent]

    async def send_message(
        self,
        conversation_id: str,
        recipient_id: str,
        message: OutboundMessage,
        page_id: Optional[str] = None,
        last_inbound_at: Optional[datetime] = None
    ) -> Optional[str]:
        if self.window_expired:
            raise WindowExpiredException(message="Messaging window expired", conversation_id=conversation_id)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "conversation_id": conversation_id,
            "recipient_id": recipient_id,
            "page_id": page_id,
            "message": message,
        })
        return f"mid.{len(self.sent)}"


class FakeAiClient:
    """
    Returns queued completions in order; an Exception in the queue is raised instead.
    """
    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, operation, system_prompt, user_prompt, schema=None, model=None, temperature=0.7) -> AiCompletion:
        self.calls.append({
            "operation": operation,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "schema": schema,
            "model": model,
            "temperature": temperature,
        })
        if not self.responses:
            raise ExternalCallException(message="No AI response queued", call_type="ai")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, AiCompletion):
            return response
        if isinstance(response, dict):
            return AiCompletion(text="", structured=response)
        return AiCompletion(text=str(response))


class FakeHttpFetchClient:
    def __init__(self, result: Optional[HttpFetchResult] = None, error: Optional[Exception] = None):
        self.result = result or HttpFetchResult(status=200, body={})
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def fetch(self, method, url, headers=None, body=None, timeout=10) -> HttpFetchResult:
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.result


def make_flow(
    nodes: List[Dict[str, Any]],
    entry_node_id: str = "entry",
    flow_id: Optional[str] = "flow-1",
    triggers: Optional[List[Dict[str, Any]]] = None,
    **fields
) -> FlowData:
    definition = {
        "id": flow_id,
        "pageId": PAGE_ID,
        "name": fields.pop("name", "Test Flow"),
        "entryNodeId": entry_node_id,
        "globalTriggers": triggers or [],
        "nodes": nodes,
    }
    definition.update(fields)
    return FlowData.model_validate(definition).ensure_valid()


def load_flow_definition(file_name: str) -> Dict[str, Any]:
    with open(os.path.join(FLOWS_DIR, file_name), "r", encoding="utf-8") as file:
        return json.load(file)
