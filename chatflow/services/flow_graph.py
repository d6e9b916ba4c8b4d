"""
Operations on the chatbot flow graph.

Every function here is pure: it takes a FlowGraph and hands back a new one,
the graph passed in is left as it was. Structural mistakes raise one of the
errors in chatflow.core.exceptions, while content problems a user still has
to fix are reported by validate() as findings.
"""
import logging
from collections import Counter, deque
from typing import Any, Dict, List, Mapping, Optional, Set
from uuid import uuid4

from pydantic import AliasChoices, AnyHttpUrl, TypeAdapter, ValidationError

from chatflow.core.exceptions import (
    CorruptGraphError,
    InvalidConnectionError,
    InvalidOperationError,
    NotFoundError,
)
from chatflow.schemas.flow import (
    NODE_CLASSES,
    ApiCallNode,
    BaseNode,
    ConditionNode,
    DelayNode,
    FlowEdge,
    FlowGraph,
    KnowledgeNode,
    MessageNode,
    NodeKind,
    Position,
    Severity,
    TemplateNode,
    ValidationFinding,
    ValidationReport,
)

logger = logging.getLogger(__name__)

MIN_DELAY_SECONDS = 1
MAX_DELAY_SECONDS = 300

_http_url = TypeAdapter(AnyHttpUrl)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def create_node(kind: NodeKind, position: Optional[Position] = None) -> BaseNode:
    """Build a node of the given kind with a fresh id and the kind's default payload."""
    kind = NodeKind(kind)
    return NODE_CLASSES[kind](id=_new_id(kind.value), position=position or Position())


def new_graph() -> FlowGraph:
    """The graph every chatbot starts with: a lone Start node."""
    return FlowGraph(nodes=[create_node(NodeKind.START, Position(x=250, y=50))], edges=[])


def _require_node(graph: FlowGraph, node_id: str) -> BaseNode:
    node = graph.get_node(node_id)
    if node is None:
        raise NotFoundError(f"Node {node_id} not found")
    return node


def _replace_node(graph: FlowGraph, updated: BaseNode) -> FlowGraph:
    nodes = [updated if node.id == updated.id else node for node in graph.nodes]
    return FlowGraph(nodes=nodes, edges=list(graph.edges))


def add_node(graph: FlowGraph, node: BaseNode) -> FlowGraph:
    if graph.get_node(node.id) is not None:
        raise InvalidOperationError(f"Node id {node.id} is already in use")
    if node.kind == NodeKind.START and graph.start_nodes():
        raise InvalidOperationError("Flow already has a Start node")

    return FlowGraph(nodes=[*graph.nodes, node], edges=list(graph.edges))


def _payload_field_name(payload_cls, key: str) -> Optional[str]:
    """Map a partial-update key to a payload field, accepting every key the loader accepts."""
    for name, info in payload_cls.model_fields.items():
        keys = {name, info.alias}
        if isinstance(info.validation_alias, str):
            keys.add(info.validation_alias)
        elif isinstance(info.validation_alias, AliasChoices):
            keys.update(choice for choice in info.validation_alias.choices if isinstance(choice, str))
        if key in keys:
            return name
    return None


def update_node_payload(graph: FlowGraph, node_id: str, partial: Mapping[str, Any]) -> FlowGraph:
    """
    Shallow-merge `partial` into the node's data. Fields not named in
    `partial` keep their current values; edges are not touched.
    """
    node = _require_node(graph, node_id)
    payload_cls = type(node.data)

    merged = node.data.model_dump()
    for key, value in partial.items():
        name = _payload_field_name(payload_cls, key)
        if name is None:
            raise InvalidOperationError(f"{node.type} has no payload field '{key}'")
        merged[name] = value

    try:
        data = payload_cls.model_validate(merged)
    except ValidationError as e:
        raise InvalidOperationError(f"Invalid payload for node {node_id}: {e}") from e

    return _replace_node(graph, node.model_copy(update={"data": data}))


def move_node(graph: FlowGraph, node_id: str, position: Position) -> FlowGraph:
    node = _require_node(graph, node_id)
    return _replace_node(graph, node.model_copy(update={"position": position}))


def delete_node(graph: FlowGraph, node_id: str) -> FlowGraph:
    """Remove a node together with every edge that starts or ends at it."""
    node = _require_node(graph, node_id)
    if node.kind == NodeKind.START:
        raise InvalidOperationError("The Start node cannot be deleted")

    nodes = [n for n in graph.nodes if n.id != node_id]
    edges = [e for e in graph.edges if e.source != node_id and e.target != node_id]
    logger.debug(f"Deleted node {node_id} and {len(graph.edges) - len(edges)} edge(s)")
    return FlowGraph(nodes=nodes, edges=edges)


def connect(graph: FlowGraph, source_id: str, source_handle: str, target_id: str) -> FlowGraph:
    """
    Add an edge from `source_handle` on the source node to the target's input.
    A port that already carries an edge is rejected; callers disconnect the
    old edge first.
    """
    source = graph.get_node(source_id)
    if source is None:
        raise InvalidConnectionError(f"Source node {source_id} not found")
    target = graph.get_node(target_id)
    if target is None:
        raise InvalidConnectionError(f"Target node {target_id} not found")

    if source_handle not in source.PORTS:
        raise InvalidConnectionError(
            f"{source.type} has no '{source_handle}' port (ports: {', '.join(source.PORTS)})"
        )
    if target.kind == NodeKind.START:
        raise InvalidConnectionError("The Start node cannot have incoming edges")
    if graph.outgoing(source_id, source_handle):
        raise InvalidConnectionError(f"Port '{source_handle}' on node {source_id} is already connected")

    edge = FlowEdge(
        id=_new_id("edge"),
        source=source_id,
        source_handle=source_handle,
        target=target_id,
        target_handle="in",
    )
    return FlowGraph(nodes=list(graph.nodes), edges=[*graph.edges, edge])


def disconnect(graph: FlowGraph, edge_id: str) -> FlowGraph:
    if graph.get_edge(edge_id) is None:
        raise NotFoundError(f"Edge {edge_id} not found")
    return FlowGraph(nodes=list(graph.nodes), edges=[e for e in graph.edges if e.id != edge_id])


# Validation

def _finding(severity: Severity, code: str, message: str, node_id=None, edge_id=None) -> ValidationFinding:
    return ValidationFinding(severity=severity, code=code, message=message, node_id=node_id, edge_id=edge_id)


def _reachable_from(graph: FlowGraph, roots: List[str]) -> Set[str]:
    seen = set(roots)
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        for edge in graph.outgoing(current):
            if edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen


def is_absolute_http_url(url: Optional[str]) -> bool:
    if not url or not url.strip():
        return False
    try:
        _http_url.validate_python(url.strip())
    except ValidationError:
        return False
    return True


def _check_payload(node: BaseNode) -> List[ValidationFinding]:
    if isinstance(node, MessageNode):
        if not node.data.text.strip() and not node.data.media_url:
            return [_finding(Severity.ERROR, "empty_message", "Message node has no text or media", node.id)]
    elif isinstance(node, ApiCallNode):
        if not is_absolute_http_url(node.data.url):
            return [_finding(Severity.ERROR, "invalid_url", "API call node needs an absolute http(s) URL", node.id)]
    elif isinstance(node, DelayNode):
        if not MIN_DELAY_SECONDS <= node.data.seconds <= MAX_DELAY_SECONDS:
            return [_finding(
                Severity.ERROR,
                "delay_out_of_range",
                f"Delay must be between {MIN_DELAY_SECONDS} and {MAX_DELAY_SECONDS} seconds",
                node.id,
            )]
    elif isinstance(node, ConditionNode):
        if not node.data.value.strip():
            return [_finding(Severity.WARNING, "empty_condition", "Condition node compares against an empty value", node.id)]
    elif isinstance(node, TemplateNode):
        if node.data.template_id is None:
            return [_finding(Severity.ERROR, "missing_template", "Template node has no template selected", node.id)]
    elif isinstance(node, KnowledgeNode):
        if node.data.knowledge_base_id is None:
            return [_finding(Severity.ERROR, "missing_knowledge_base", "Knowledge node has no knowledge base selected", node.id)]
    return []


def _check_edges(graph: FlowGraph) -> List[ValidationFinding]:
    findings = []
    port_usage = Counter()

    for edge in graph.edges:
        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if source is None or target is None:
            missing = edge.source if source is None else edge.target
            findings.append(_finding(
                Severity.ERROR, "dangling_edge", f"Edge points at missing node {missing}", edge_id=edge.id
            ))
            continue

        if edge.source_handle not in source.PORTS:
            findings.append(_finding(
                Severity.ERROR, "invalid_port",
                f"{source.type} has no '{edge.source_handle}' port", source.id, edge.id,
            ))
        if target.kind == NodeKind.START:
            findings.append(_finding(
                Severity.ERROR, "start_has_incoming", "The Start node cannot have incoming edges", target.id, edge.id,
            ))

        port_usage[(edge.source, edge.source_handle)] += 1
        if port_usage[(edge.source, edge.source_handle)] > 1:
            findings.append(_finding(
                Severity.ERROR, "port_fan_out",
                f"Port '{edge.source_handle}' has more than one outgoing edge", source.id, edge.id,
            ))

    return findings


def validate(graph: FlowGraph) -> ValidationReport:
    """
    Check a graph before it may be activated.

    Findings come out in a fixed order: Start node count, reachability,
    node payloads, then edges. Errors block activation, warnings do not.
    """
    findings = []

    starts = graph.start_nodes()
    if not starts:
        findings.append(_finding(Severity.ERROR, "missing_start", "Flow must have a Start node"))
    for extra in starts[1:]:
        findings.append(_finding(Severity.ERROR, "multiple_start", "Flow has more than one Start node", extra.id))

    if starts:
        reachable = _reachable_from(graph, [start.id for start in starts])
        for node in graph.nodes:
            if node.kind != NodeKind.START and node.id not in reachable:
                findings.append(_finding(
                    Severity.WARNING, "unreachable", "Node cannot be reached from the Start node", node.id
                ))

    for node in graph.nodes:
        findings.extend(_check_payload(node))

    findings.extend(_check_edges(graph))

    return ValidationReport(findings=findings)


# Persistence

def serialize(graph: FlowGraph) -> Dict[str, List[Dict[str, Any]]]:
    return graph.model_dump(by_alias=True, mode="json")


def _check_unique(ids: List[str], what: str):
    duplicates = sorted(item for item, count in Counter(ids).items() if count > 1)
    if duplicates:
        raise CorruptGraphError(f"Duplicate {what} id(s): {', '.join(duplicates)}")


def deserialize(document: Mapping[str, Any]) -> FlowGraph:
    """
    Rebuild a graph from its stored form. Nothing is repaired: a document
    without a Start node, with duplicated ids or with edges pointing at
    missing nodes is rejected.
    """
    if not isinstance(document, Mapping):
        raise CorruptGraphError("Flow document must be an object")

    nodes = document.get("nodes")
    edges = document.get("edges")
    if edges is None:
        edges = []
    if not isinstance(nodes, list) or not isinstance(edges, list):
        raise CorruptGraphError("Flow document needs 'nodes' and 'edges' lists")

    try:
        graph = FlowGraph.model_validate({"nodes": nodes, "edges": edges})
    except ValidationError as e:
        raise CorruptGraphError(f"Flow document does not parse ({e.error_count()} problem(s)): {e}") from e

    _check_unique([node.id for node in graph.nodes], "node")
    _check_unique([edge.id for edge in graph.edges], "edge")

    node_ids = {node.id for node in graph.nodes}
    for edge in graph.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            raise CorruptGraphError(f"Edge {edge.id} references a missing node")

    if not graph.start_nodes():
        raise CorruptGraphError("Flow document has no Start node")

    return graph
