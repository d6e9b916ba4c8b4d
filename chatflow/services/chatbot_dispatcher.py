"""
Live runs: an inbound message for a device is offered to that device's
active chatbots, and replies go out through the WhatsApp gateway.
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from chatflow.core.config import settings
from chatflow.core.exceptions import CorruptGraphError
from chatflow.models.chatbot import Chatbot
from chatflow.schemas.chatbot import ChatbotDispatchResponse
from chatflow.schemas.flow import FlowExecutionContext, OutboundMessage
from chatflow.services import flow_graph
from chatflow.services.flow_engine import FlowEngine, SendCallback, matches_trigger

logger = logging.getLogger(__name__)


class GatewaySender:
    """
    Send callback for FlowEngine that delivers replies through the gateway's
    /messages/send and /messages/send-media endpoints.
    """

    def __init__(self, device_id: str, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.device_id = device_id
        self.http_client = http_client or httpx.AsyncClient(
            base_url=base_url or settings.MESSAGE_GATEWAY_URL,
            timeout=settings.API_CALL_TIMEOUT,
        )

    async def __call__(self, context: FlowExecutionContext, message: OutboundMessage):
        if message.media_url:
            response = await self.http_client.post("/messages/send-media", json={
                "deviceId": self.device_id,
                "to": context.sender_id,
                "type": message.media_type or "image",
                "mediaUrl": message.media_url,
                "caption": message.text,
            })
        else:
            response = await self.http_client.post("/messages/send", json={
                "deviceId": self.device_id,
                "to": context.sender_id,
                "message": message.text,
            })
        response.raise_for_status()

    async def close(self):
        await self.http_client.aclose()


async def dispatch_message(
        db: Session,
        device_id: str,
        sender_id: str,
        message: str,
        send: Optional[SendCallback] = None,
        contact_name: Optional[str] = None,
) -> Optional[ChatbotDispatchResponse]:
    """
    Offer a message to the active chatbots bound to the device or to no
    device, in id order. Each one whose trigger matches runs and has the run
    recorded. The first that answers wins and later chatbots are not tried.

    With a send callback a chatbot answers when a reply was delivered;
    without one, when its flow produced any reply at all.
    """
    for chatbot in Chatbot.get_active_for_device(db, device_id):
        if not matches_trigger(chatbot.trigger_type, chatbot.trigger_keywords, message):
            continue

        try:
            graph = flow_graph.deserialize({"nodes": chatbot.nodes or [], "edges": chatbot.edges or []})
        except CorruptGraphError as e:
            logger.error(f"Skipping chatbot {chatbot.id} with a corrupt flow: {e}")
            continue

        logger.info(f"Running chatbot {chatbot.id} '{chatbot.name}' for {sender_id}")
        context = FlowExecutionContext(
            message=message,
            sender_id=sender_id,
            contact_name=contact_name,
            device_id=device_id,
        )

        engine = FlowEngine(send=send)
        try:
            result = await engine.execute_flow(graph, context)
        finally:
            await engine.close()

        Chatbot.record_execution(db, chatbot.id)

        answered = result.messages_sent > 0 if send is not None else bool(result.responses)
        if answered:
            return ChatbotDispatchResponse(
                triggered=True,
                chatbot_id=chatbot.id,
                chatbot_name=chatbot.name,
                messages_sent=result.messages_sent,
                responses=result.responses,
            )

    return None
