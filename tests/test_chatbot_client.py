"""Tests for the HTTP client used by editor sessions."""

import json

import httpx
import pytest

from chatflow.services.chatbot_client import ChatbotClient
from chatflow.services.editor_session import EditorSession
from chatflow.services.flow_graph import new_graph, serialize
from chatflow.schemas.flow import NodeKind


def make_client(handler):
    transport = httpx.MockTransport(handler)
    return ChatbotClient(http_client=httpx.AsyncClient(transport=transport, base_url="http://store.test/api/v1"))


@pytest.mark.asyncio
async def test_get_chatbot():
    record = {"id": 5, "name": "Sales", **serialize(new_graph())}

    def handler(request):
        assert request.method == "GET"
        assert request.url.path == "/api/v1/chatbots/5"
        return httpx.Response(200, json=record)

    client = make_client(handler)
    try:
        assert await client.get_chatbot(5) == record
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_put_chatbot_sends_whole_body():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(200, json=received[-1])

    client = make_client(handler)
    body = {"name": "Sales", **serialize(new_graph())}
    try:
        await client.put_chatbot(5, body)
    finally:
        await client.close()

    assert received == [body]


@pytest.mark.asyncio
async def test_missing_chatbot_raises():
    client = make_client(lambda request: httpx.Response(404, json={"detail": "Chatbot not found"}))
    try:
        with pytest.raises(httpx.HTTPStatusError):
            await client.get_chatbot(99)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_session_round_trip_through_client():
    stored = {"id": 5, "name": "Sales", "triggerType": "all", "triggerKeywords": "", **serialize(new_graph())}

    def handler(request):
        if request.method == "PUT":
            stored.update(json.loads(request.content))
        return httpx.Response(200, json=stored)

    client = make_client(handler)
    try:
        session = await EditorSession.load(client, 5)
        session.add_node(NodeKind.MESSAGE)
        assert await session.save() is True

        reloaded = await EditorSession.load(client, 5)
    finally:
        await client.close()

    assert len(reloaded.graph.nodes) == 2
    assert reloaded.graph == session.graph
