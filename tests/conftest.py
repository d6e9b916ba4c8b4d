"""Shared pytest fixtures."""

import os
from types import SimpleNamespace

# Keep the app away from postgres while testing
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import chatflow.models.chatbot  # noqa: F401
from chatflow.db.session import get_db
from chatflow.main import app
from chatflow.models.base import Base
from chatflow.schemas.flow import NodeKind
from chatflow.services.flow_graph import add_node, connect, create_node, new_graph, update_node_payload


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = TestingSession()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def build_node(graph, kind, **payload):
    node = create_node(kind)
    graph = add_node(graph, node)
    if payload:
        graph = update_node_payload(graph, node.id, payload)
    return graph, node.id


@pytest.fixture
def pricing_flow():
    """Start -> Message("Hi") -> Condition(message contains "price"), yes -> Message("$10/mo")."""
    graph = new_graph()
    start_id = graph.start_nodes()[0].id

    graph, hello_id = build_node(graph, NodeKind.MESSAGE, text="Hi")
    graph, condition_id = build_node(graph, NodeKind.CONDITION, field="message", operator="contains", value="price")
    graph, price_id = build_node(graph, NodeKind.MESSAGE, text="$10/mo")

    graph = connect(graph, start_id, "out", hello_id)
    graph = connect(graph, hello_id, "out", condition_id)
    graph = connect(graph, condition_id, "yes", price_id)

    return SimpleNamespace(
        graph=graph,
        start=start_id,
        hello=hello_id,
        condition=condition_id,
        price=price_id,
    )
