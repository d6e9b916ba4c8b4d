"""Unit tests for flow graph editing operations."""

import pytest
from pydantic import ValidationError

from chatflow.core.exceptions import InvalidConnectionError, InvalidOperationError, NotFoundError
from chatflow.schemas.flow import (
    ConditionField,
    ConditionOperator,
    HttpMethod,
    MessageNode,
    NodeKind,
    Position,
    StartNode,
)
from chatflow.services.flow_graph import (
    add_node,
    connect,
    create_node,
    delete_node,
    disconnect,
    move_node,
    new_graph,
    update_node_payload,
)

from conftest import build_node


class TestCreateNode:
    """Tests for node construction."""

    def test_new_graph_has_only_start(self):
        graph = new_graph()

        assert len(graph.nodes) == 1
        assert isinstance(graph.nodes[0], StartNode)
        assert graph.edges == []

    def test_ids_are_unique(self):
        ids = {create_node(NodeKind.MESSAGE).id for _ in range(50)}
        assert len(ids) == 50

    def test_id_is_prefixed_with_type(self):
        assert create_node(NodeKind.DELAY).id.startswith("delayNode-")

    def test_condition_defaults(self):
        node = create_node(NodeKind.CONDITION)

        assert node.data.field == ConditionField.MESSAGE
        assert node.data.operator == ConditionOperator.CONTAINS
        assert node.data.value == ""

    def test_other_defaults(self):
        assert create_node(NodeKind.DELAY).data.seconds == 1
        assert create_node(NodeKind.MESSAGE).data.text == ""
        assert create_node(NodeKind.API_CALL).data.method == HttpMethod.GET
        assert create_node(NodeKind.TEMPLATE).data.template_id is None
        assert create_node(NodeKind.KNOWLEDGE).data.knowledge_base_id is None

    def test_position_is_kept(self):
        node = create_node(NodeKind.MESSAGE, Position(x=10, y=20))
        assert (node.position.x, node.position.y) == (10, 20)

    def test_second_start_rejected(self):
        with pytest.raises(InvalidOperationError):
            add_node(new_graph(), create_node(NodeKind.START))

    def test_duplicate_id_rejected(self):
        graph = new_graph()
        clash = MessageNode(id=graph.nodes[0].id)

        with pytest.raises(InvalidOperationError):
            add_node(graph, clash)


class TestUpdateNodePayload:
    """Tests for shallow payload merges."""

    def test_merge_keeps_other_fields(self):
        graph, node_id = build_node(new_graph(), NodeKind.CONDITION, value="price")
        graph = update_node_payload(graph, node_id, {"operator": "equals"})

        data = graph.get_node(node_id).data
        assert data.operator == ConditionOperator.EQUALS
        assert data.value == "price"
        assert data.field == ConditionField.MESSAGE

    def test_camel_case_keys(self):
        graph, node_id = build_node(new_graph(), NodeKind.MESSAGE, text="Hi")
        graph = update_node_payload(graph, node_id, {"mediaUrl": "https://cdn.example.com/a.jpg"})

        data = graph.get_node(node_id).data
        assert data.media_url == "https://cdn.example.com/a.jpg"
        assert data.text == "Hi"

    def test_input_graph_unchanged(self):
        graph, node_id = build_node(new_graph(), NodeKind.MESSAGE, text="before")
        update_node_payload(graph, node_id, {"text": "after"})

        assert graph.get_node(node_id).data.text == "before"

    def test_edges_untouched(self, pricing_flow):
        graph = update_node_payload(pricing_flow.graph, pricing_flow.hello, {"text": "Hello"})
        assert graph.edges == pricing_flow.graph.edges

    def test_missing_node(self):
        with pytest.raises(NotFoundError):
            update_node_payload(new_graph(), "nope", {"text": "x"})

    def test_invalid_value(self):
        graph, node_id = build_node(new_graph(), NodeKind.CONDITION)

        with pytest.raises(InvalidOperationError):
            update_node_payload(graph, node_id, {"operator": "regex"})

    def test_unknown_field(self):
        graph, node_id = build_node(new_graph(), NodeKind.DELAY)

        with pytest.raises(InvalidOperationError):
            update_node_payload(graph, node_id, {"minutes": 3})


class TestDeleteNode:
    """Tests for node deletion."""

    def test_cascades_edges(self, pricing_flow):
        graph = delete_node(pricing_flow.graph, pricing_flow.condition)

        assert graph.get_node(pricing_flow.condition) is None
        assert all(
            pricing_flow.condition not in (edge.source, edge.target)
            for edge in graph.edges
        )
        assert len(graph.edges) == 1

    def test_start_is_permanent(self, pricing_flow):
        before = pricing_flow.graph.model_copy(deep=True)

        with pytest.raises(InvalidOperationError):
            delete_node(pricing_flow.graph, pricing_flow.start)

        assert pricing_flow.graph == before

    def test_missing_node(self):
        with pytest.raises(NotFoundError):
            delete_node(new_graph(), "nope")


class TestConnect:
    """Tests for edge creation rules."""

    def test_connect_sets_handles(self, pricing_flow):
        edge = pricing_flow.graph.outgoing(pricing_flow.condition, "yes")[0]

        assert edge.target == pricing_flow.price
        assert edge.target_handle == "in"

    def test_second_edge_on_same_condition_port(self, pricing_flow):
        graph, other = build_node(pricing_flow.graph, NodeKind.MESSAGE, text="other")

        with pytest.raises(InvalidConnectionError):
            connect(graph, pricing_flow.condition, "yes", other)

    def test_yes_and_no_may_diverge(self, pricing_flow):
        graph, other = build_node(pricing_flow.graph, NodeKind.MESSAGE, text="other")
        graph = connect(graph, pricing_flow.condition, "no", other)

        assert graph.outgoing(pricing_flow.condition, "no")[0].target == other
        assert graph.outgoing(pricing_flow.condition, "yes")[0].target == pricing_flow.price

    def test_second_out_edge(self, pricing_flow):
        with pytest.raises(InvalidConnectionError):
            connect(pricing_flow.graph, pricing_flow.hello, "out", pricing_flow.price)

    def test_same_edge_twice(self):
        graph, message = build_node(new_graph(), NodeKind.MESSAGE, text="Hi")
        start = graph.start_nodes()[0].id
        graph = connect(graph, start, "out", message)

        with pytest.raises(InvalidConnectionError):
            connect(graph, start, "out", message)

    def test_condition_port_on_plain_node(self, pricing_flow):
        graph, other = build_node(pricing_flow.graph, NodeKind.MESSAGE, text="other")

        with pytest.raises(InvalidConnectionError):
            connect(graph, other, "yes", pricing_flow.hello)

    def test_out_port_on_condition(self, pricing_flow):
        with pytest.raises(InvalidConnectionError):
            connect(pricing_flow.graph, pricing_flow.condition, "out", pricing_flow.hello)

    def test_missing_endpoints(self, pricing_flow):
        with pytest.raises(InvalidConnectionError):
            connect(pricing_flow.graph, "ghost", "out", pricing_flow.hello)
        with pytest.raises(InvalidConnectionError):
            connect(pricing_flow.graph, pricing_flow.price, "out", "ghost")

    def test_start_cannot_be_targeted(self, pricing_flow):
        with pytest.raises(InvalidConnectionError):
            connect(pricing_flow.graph, pricing_flow.price, "out", pricing_flow.start)

    def test_cycles_allowed(self, pricing_flow):
        graph = connect(pricing_flow.graph, pricing_flow.condition, "no", pricing_flow.hello)
        assert graph.outgoing(pricing_flow.condition, "no")[0].target == pricing_flow.hello

    def test_self_loop_allowed(self):
        graph, message = build_node(new_graph(), NodeKind.MESSAGE, text="again?")
        graph = connect(graph, message, "out", message)

        assert graph.outgoing(message)[0].target == message

    def test_disconnect(self, pricing_flow):
        edge = pricing_flow.graph.outgoing(pricing_flow.condition, "yes")[0]
        graph = disconnect(pricing_flow.graph, edge.id)

        assert graph.get_edge(edge.id) is None
        graph, other = build_node(graph, NodeKind.MESSAGE, text="other")
        graph = connect(graph, pricing_flow.condition, "yes", other)
        assert graph.outgoing(pricing_flow.condition, "yes")[0].target == other

    def test_disconnect_missing(self):
        with pytest.raises(NotFoundError):
            disconnect(new_graph(), "edge-missing")


def test_move_node(pricing_flow):
    graph = move_node(pricing_flow.graph, pricing_flow.hello, Position(x=400, y=300))

    assert graph.get_node(pricing_flow.hello).position == Position(x=400, y=300)
    assert graph.get_node(pricing_flow.hello).data.text == "Hi"


def test_legacy_message_key(pricing_flow):
    graph = update_node_payload(pricing_flow.graph, pricing_flow.hello, {"message": "Welcome back"})

    assert graph.get_node(pricing_flow.hello).data.text == "Welcome back"


class TestImmutability:
    """Graphs handed out by operations cannot be edited behind their back."""

    def test_node_id_cannot_be_reassigned(self, pricing_flow):
        node = pricing_flow.graph.get_node(pricing_flow.hello)

        with pytest.raises(ValidationError):
            node.id = "renamed"

        assert pricing_flow.graph.get_node(pricing_flow.hello) is node

    def test_payload_and_edges_are_frozen(self, pricing_flow):
        with pytest.raises(ValidationError):
            pricing_flow.graph.get_node(pricing_flow.hello).data.text = "after"
        with pytest.raises(ValidationError):
            pricing_flow.graph.edges[0].target = "ghost"
        with pytest.raises(ValidationError):
            pricing_flow.graph.nodes = []

    def test_result_shares_nothing_editable_with_input(self):
        graph, message = build_node(new_graph(), NodeKind.MESSAGE, text="before")
        connected = connect(graph, graph.start_nodes()[0].id, "out", message)

        with pytest.raises(ValidationError):
            connected.get_node(message).data.text = "after"

        assert graph.get_node(message).data.text == "before"
        assert graph.get_node(message).id == message
