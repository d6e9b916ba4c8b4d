from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


class FlowModel(BaseModel):
    """Base for everything that travels in a flow document (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NodeKind(str, Enum):
    START = "startNode"
    MESSAGE = "messageNode"
    CONDITION = "conditionNode"
    DELAY = "delayNode"
    API_CALL = "apiCallNode"
    TEMPLATE = "templateNode"
    KNOWLEDGE = "knowledgeNode"


class ConditionField(str, Enum):
    MESSAGE = "message"
    SENDER_ID = "senderId"


class ConditionOperator(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    NOT_CONTAINS = "notContains"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


class GraphModel(FlowModel):
    """Parts of a flow graph never change in place; operations build new ones."""
    model_config = ConfigDict(frozen=True)


class Position(GraphModel):
    x: float = 0
    y: float = 0


# Node payloads

class StartData(GraphModel):
    label: Optional[str] = None


class MessageData(GraphModel):
    # Older documents store the text under "message"
    text: str = Field("", validation_alias=AliasChoices("text", "message"))
    media_url: Optional[str] = None
    media_type: Optional[str] = None


class ConditionData(GraphModel):
    field: ConditionField = ConditionField.MESSAGE
    operator: ConditionOperator = ConditionOperator.CONTAINS
    value: str = ""


class DelayData(GraphModel):
    seconds: int = 1


class ApiCallData(GraphModel):
    method: HttpMethod = HttpMethod.GET
    url: str = ""


class TemplateData(GraphModel):
    template_id: Optional[str] = None
    template_name: Optional[str] = None

    @field_validator("template_id", mode="before")
    def blank_template_is_unset(cls, v):
        return v or None


class KnowledgeData(GraphModel):
    knowledge_base_id: Optional[str] = None
    knowledge_base_name: Optional[str] = None
    fallback_message: Optional[str] = None

    @field_validator("knowledge_base_id", mode="before")
    def blank_knowledge_base_is_unset(cls, v):
        return v or None


# Nodes

class BaseNode(GraphModel):
    PORTS: ClassVar[Tuple[str, ...]] = ("out",)

    id: str
    position: Position = Field(default_factory=Position)

    @property
    def kind(self) -> NodeKind:
        return NodeKind(self.type)


class StartNode(BaseNode):
    type: Literal["startNode"] = "startNode"
    data: StartData = Field(default_factory=StartData)


class MessageNode(BaseNode):
    type: Literal["messageNode"] = "messageNode"
    data: MessageData = Field(default_factory=MessageData)


class ConditionNode(BaseNode):
    PORTS: ClassVar[Tuple[str, ...]] = ("yes", "no")

    type: Literal["conditionNode"] = "conditionNode"
    data: ConditionData = Field(default_factory=ConditionData)


class DelayNode(BaseNode):
    type: Literal["delayNode"] = "delayNode"
    data: DelayData = Field(default_factory=DelayData)


class ApiCallNode(BaseNode):
    type: Literal["apiCallNode"] = "apiCallNode"
    data: ApiCallData = Field(default_factory=ApiCallData)


class TemplateNode(BaseNode):
    type: Literal["templateNode"] = "templateNode"
    data: TemplateData = Field(default_factory=TemplateData)


class KnowledgeNode(BaseNode):
    type: Literal["knowledgeNode"] = "knowledgeNode"
    data: KnowledgeData = Field(default_factory=KnowledgeData)


Node = Annotated[
    Union[StartNode, MessageNode, ConditionNode, DelayNode, ApiCallNode, TemplateNode, KnowledgeNode],
    Field(discriminator="type"),
]

NODE_CLASSES = {
    NodeKind.START: StartNode,
    NodeKind.MESSAGE: MessageNode,
    NodeKind.CONDITION: ConditionNode,
    NodeKind.DELAY: DelayNode,
    NodeKind.API_CALL: ApiCallNode,
    NodeKind.TEMPLATE: TemplateNode,
    NodeKind.KNOWLEDGE: KnowledgeNode,
}


class FlowEdge(GraphModel):
    id: str
    source: str
    source_handle: str = "out"
    target: str
    target_handle: str = "in"

    @field_validator("source_handle", mode="before")
    def default_source_handle(cls, v):
        return v or "out"

    @field_validator("target_handle", mode="before")
    def default_target_handle(cls, v):
        return v or "in"


class FlowGraph(GraphModel):
    """The node/edge document persisted for one chatbot."""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[BaseNode]:
        return next((node for node in self.nodes if node.id == node_id), None)

    def get_edge(self, edge_id: str) -> Optional[FlowEdge]:
        return next((edge for edge in self.edges if edge.id == edge_id), None)

    def start_nodes(self) -> List[StartNode]:
        return [node for node in self.nodes if node.type == NodeKind.START.value]

    def outgoing(self, node_id: str, handle: Optional[str] = None) -> List[FlowEdge]:
        return [
            edge for edge in self.edges
            if edge.source == node_id and (handle is None or edge.source_handle == handle)
        ]


# Validation report

class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationFinding(FlowModel):
    severity: Severity
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationReport(FlowModel):
    findings: List[ValidationFinding] = Field(default_factory=list)

    @property
    def errors(self) -> List[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @computed_field(alias="isValid")
    @property
    def is_valid(self) -> bool:
        return not self.errors


# Execution

class FlowExecutionContext(BaseModel):
    """Context for one run of a flow against an inbound message."""
    message: str
    sender_id: str
    contact_name: Optional[str] = None
    device_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list)


class OutboundMessage(FlowModel):
    node_id: str
    text: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    from_knowledge: bool = False


class FlowExecutionResult(BaseModel):
    """Result of flow execution."""
    success: bool
    responses: List[OutboundMessage] = Field(default_factory=list)
    messages_sent: int = 0
    visited: List[str] = Field(default_factory=list)
    budget_exhausted: bool = False
    error_message: Optional[str] = None
    finished_at: datetime = Field(default_factory=datetime.now)
