from pydantic import BaseModel, Field, Discriminator, ConfigDict, PrivateAttr, field_validator
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from datetime import datetime

# Utils
from utils.time_utils import utcnow

# Exceptions
from exceptions.flow_exception import FlowValidationException


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


class FlowNodePosition(BaseModel):
    x: float = 0
    y: float = 0

class FlowTrigger(BaseModel):
    type: Literal["keyword", "intent", "regex", "event"] = "keyword"
    value: str
    matchMode: Optional[Literal["exact", "contains", "starts_with", "ends_with"]] = "contains"
    caseSensitive: Optional[bool] = False

# Action configs
class BaseActionConfig(BaseModel):
    model_config = ConfigDict(extra='allow')  # Editor may store extra UI fields

class MessageActionConfig(BaseActionConfig):
    message: str = ""

class QuickRepliesActionConfig(BaseActionConfig):
    message: str = ""
    replies: List[str] = Field(default_factory=list)

    @field_validator("replies", mode="before")
    @classmethod
    def coerce_replies(cls, value: Any) -> Any:
        return _none_to_list(value)

class CollectInputActionConfig(BaseActionConfig):
    prompt: str = ""
    inputName: str

class SetVariableActionConfig(BaseActionConfig):
    variableName: str
    value: Any = None

class HandoffActionConfig(BaseActionConfig):
    reason: Optional[str] = "flow_handoff"

class GotoNodeActionConfig(BaseActionConfig):
    targetNodeId: str

class ExtractedField(BaseModel):
    name: str
    type: Literal["string", "number", "boolean", "array"] = "string"
    description: str = ""
    required: Optional[bool] = False

AiNodeOperation = Literal[
    "generate_response",
    "generate_content",
    "extract_data",
    "classify_intent",
    "analyze_sentiment",
    "summarize",
    "translate",
    "custom",
]

class AiNodeActionConfig(BaseActionConfig):
    operation: AiNodeOperation = "generate_response"
    outputVariable: Optional[str] = None
    sendAsMessage: Optional[bool] = None
    customSystemPrompt: Optional[str] = None
    customUserPrompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    extractionSchema: Optional[List[ExtractedField]] = None
    extractionSchemaJson: Optional[str] = None
    classificationCategories: Optional[List[str]] = None
    targetLanguage: Optional[str] = None

class DelayActionConfig(BaseActionConfig):
    delayAmount: int = Field(default=1, ge=0)
    delayUnit: Literal["minutes", "hours", "days"] = "days"

class HttpRequestActionConfig(BaseActionConfig):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None  # Raw string (may be JSON with placeholders) or an object
    responseVariable: Optional[str] = None

    @field_validator("headers", mode="before")
    @classmethod
    def coerce_headers(cls, value: Any) -> Any:
        return {} if value is None else value

# Actions, discriminated on "type"
class SendMessageAction(BaseModel):
    type: Literal["send_message"]
    config: MessageActionConfig

class SendQuickRepliesAction(BaseModel):
    type: Literal["send_quick_replies"]
    config: QuickRepliesActionConfig

class CollectInputAction(BaseModel):
    type: Literal["collect_input"]
    config: CollectInputActionConfig

class SetVariableAction(BaseModel):
    type: Literal["set_variable"]
    config: SetVariableActionConfig

class HandoffAction(BaseModel):
    type: Literal["handoff"]
    config: HandoffActionConfig = Field(default_factory=HandoffActionConfig)

class GotoNodeAction(BaseModel):
    type: Literal["goto_node"]
    config: GotoNodeActionConfig

class AiNodeAction(BaseModel):
    type: Literal["ai_node"]
    config: AiNodeActionConfig = Field(default_factory=AiNodeActionConfig)

class DelayAction(BaseModel):
    type: Literal["delay"]
    config: DelayActionConfig = Field(default_factory=DelayActionConfig)

class HttpRequestAction(BaseModel):
    type: Literal["http_request"]
    config: HttpRequestActionConfig

# Union of all action types with discriminator
FlowAction = Annotated[
    Union[
        SendMessageAction,
        SendQuickRepliesAction,
        CollectInputAction,
        SetVariableAction,
        HandoffAction,
        GotoNodeAction,
        AiNodeAction,
        DelayAction,
        HttpRequestAction
    ],
    Discriminator("type")
]

# Conditions
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
]

class SingleCondition(BaseModel):
    variable: str
    operator: ConditionOperator
    value: Optional[str] = ""

class FlowConditionGroup(BaseModel):
    logic: Literal["and", "or"] = "and"
    conditions: List[SingleCondition] = Field(default_factory=list)

class FlowCondition(BaseModel):
    expression: Optional[str] = None  # Legacy format: contains:X, equals:X, regex:X
    conditionGroup: Optional[FlowConditionGroup] = None  # Takes precedence over expression
    targetNodeId: Optional[str] = None  # Kept from the editor payload, branching uses nextNodes

class FlowNode(BaseModel):
    model_config = ConfigDict(extra='allow')

    id: str
    name: str = ""
    type: Literal["entry", "message", "condition", "action", "ai_node", "exit"]
    actions: List[FlowAction] = Field(default_factory=list)
    conditions: List[FlowCondition] = Field(default_factory=list)
    nextNodes: List[str] = Field(default_factory=list)
    triggers: Optional[List[FlowTrigger]] = None  # Editor-only, flow triggers live on the flow
    position: Optional[FlowNodePosition] = None  # Editor-only, ignored by the engine

    @field_validator("actions", "conditions", "nextNodes", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> Any:
        return _none_to_list(value)

    def next_node_at(self, index: int) -> Optional[str]:
        if index < len(self.nextNodes):
            return self.nextNodes[index] or None
        return None

class FlowData(BaseModel):
    """
    Immutable (per version) definition of one automation.
    Nodes are keyed by id; the engine never holds references between nodes.
    """
    id: Optional[str] = None
    pageId: Optional[str] = None
    name: str
    description: Optional[str] = None
    flowType: Literal["automation", "override"] = "automation"
    priority: int = 0
    isActive: bool = True
    entryNodeId: str
    globalTriggers: List[FlowTrigger] = Field(default_factory=list)
    nodes: List[FlowNode]
    triggerCount: int = 0
    completionCount: int = 0
    version: int = 1
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    _node_index: Dict[str, FlowNode] = PrivateAttr(default_factory=dict)

    @field_validator("globalTriggers", mode="before")
    @classmethod
    def coerce_triggers(cls, value: Any) -> Any:
        return _none_to_list(value)

    def model_post_init(self, context: Any) -> None:
        self._node_index = {node.id: node for node in self.nodes}

    def get_node(self, node_id: Optional[str]) -> Optional[FlowNode]:
        if not node_id:
            return None
        return self._node_index.get(node_id)

    def collect_validation_errors(self) -> List[str]:
        """
        Check graph invariants. Returns every problem found, empty list when valid.
        """
        errors = []

        seen_ids = set()
        for node in self.nodes:
            if node.id in seen_ids:
                errors.append(f"Duplicate node id '{node.id}'")
            seen_ids.add(node.id)

        entry_node = self.get_node(self.entryNodeId)
        if entry_node is None:
            errors.append(f"Entry node '{self.entryNodeId}' not found in nodes")
        elif entry_node.type != "entry":
            errors.append(f"Entry node '{self.entryNodeId}' must be of type 'entry', got '{entry_node.type}'")

        for node in self.nodes:
            for next_node_id in node.nextNodes:
                if next_node_id and next_node_id not in seen_ids:
                    errors.append(f"Node '{node.id}' references unknown next node '{next_node_id}'")
            for action in node.actions:
                if action.type == "goto_node" and action.config.targetNodeId not in seen_ids:
                    errors.append(f"Node '{node.id}' goto_node targets unknown node '{action.config.targetNodeId}'")
            for condition in node.conditions:
                if condition.targetNodeId and condition.targetNodeId not in seen_ids:
                    errors.append(f"Node '{node.id}' condition targets unknown node '{condition.targetNodeId}'")
            if node.type == "condition" and not node.conditions:
                errors.append(f"Condition node '{node.id}' has no conditions")

        return errors

    def ensure_valid(self) -> "FlowData":
        errors = self.collect_validation_errors()
        if errors:
            raise FlowValidationException(
                message=f"Flow '{self.name}' is invalid: {'; '.join(errors)}",
                errors=errors
            )
        return self
