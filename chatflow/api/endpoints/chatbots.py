# chatflow/api/endpoints/chatbots.py
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from chatflow.core.config import settings
from chatflow.core.exceptions import CorruptGraphError
from chatflow.db.session import get_db
from chatflow.models.chatbot import Chatbot
from chatflow.schemas.chatbot import (
    ChatbotActivate,
    ChatbotCreate,
    ChatbotDispatchResponse,
    ChatbotExecuteRequest,
    ChatbotExecuteResponse,
    ChatbotIncomingMessage,
    ChatbotResponse,
    ChatbotUpdate,
)
from chatflow.schemas.flow import FlowExecutionContext, FlowGraph, ValidationReport
from chatflow.services import flow_graph
from chatflow.services.chatbot_dispatcher import GatewaySender, dispatch_message
from chatflow.services.flow_engine import FlowEngine, matches_trigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chatbots", tags=["chatbots"])


def _get_chatbot_or_404(db: Session, chatbot_id: int) -> Chatbot:
    chatbot = Chatbot.get_by_id(db, chatbot_id)
    if not chatbot:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Chatbot not found"
        )
    return chatbot


def _parse_graph(document: Dict[str, Any]) -> FlowGraph:
    try:
        return flow_graph.deserialize(document)
    except CorruptGraphError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )


def _stored_graph(chatbot: Chatbot) -> FlowGraph:
    return _parse_graph({"nodes": chatbot.nodes or [], "edges": chatbot.edges or []})


def _chatbot_fields(body) -> Dict[str, Any]:
    return body.model_dump(mode="json", exclude={"nodes", "edges"})


@router.get("", response_model=List[ChatbotResponse])
def list_chatbots(skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    """
    Get all chatbots, newest first.
    """
    return Chatbot.get_all(db, skip=skip, limit=limit)


@router.get("/{chatbot_id}", response_model=ChatbotResponse)
def get_chatbot(chatbot_id: int, db: Session = Depends(get_db)):
    return _get_chatbot_or_404(db, chatbot_id)


@router.post("", response_model=ChatbotResponse, status_code=status.HTTP_201_CREATED)
def create_chatbot(chatbot_data: ChatbotCreate, db: Session = Depends(get_db)):
    """
    Create a chatbot. Without nodes it gets a flow holding only the Start node.
    """
    if chatbot_data.nodes is None:
        graph = flow_graph.new_graph()
    else:
        graph = _parse_graph({"nodes": chatbot_data.nodes, "edges": chatbot_data.edges or []})

    data = _chatbot_fields(chatbot_data)
    data.update(flow_graph.serialize(graph))
    chatbot = Chatbot.create(db, data)
    logger.info(f"Created chatbot {chatbot.id} '{chatbot.name}'")
    return chatbot


@router.put("/{chatbot_id}", response_model=ChatbotResponse)
def update_chatbot(chatbot_id: int, chatbot_data: ChatbotUpdate, db: Session = Depends(get_db)):
    """
    Replace a chatbot's settings and flow graph wholesale.
    """
    _get_chatbot_or_404(db, chatbot_id)
    graph = _parse_graph({"nodes": chatbot_data.nodes, "edges": chatbot_data.edges})

    data = _chatbot_fields(chatbot_data)
    data.update(flow_graph.serialize(graph))
    return Chatbot.update(db, chatbot_id, data)


@router.delete("/{chatbot_id}")
def delete_chatbot(chatbot_id: int, db: Session = Depends(get_db)):
    _get_chatbot_or_404(db, chatbot_id)
    Chatbot.delete(db, chatbot_id)
    return {"message": "Chatbot deleted successfully"}


@router.post("/{chatbot_id}/validate", response_model=ValidationReport)
def validate_chatbot(chatbot_id: int, db: Session = Depends(get_db)):
    chatbot = _get_chatbot_or_404(db, chatbot_id)
    return flow_graph.validate(_stored_graph(chatbot))


@router.post("/{chatbot_id}/activate", response_model=ChatbotResponse)
def activate_chatbot(chatbot_id: int, body: ChatbotActivate, db: Session = Depends(get_db)):
    """
    Switch a chatbot on or off. A flow with error findings cannot go live.
    """
    chatbot = _get_chatbot_or_404(db, chatbot_id)

    if body.is_active:
        report = flow_graph.validate(_stored_graph(chatbot))
        if not report.is_valid:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "message": "Flow has errors and cannot be activated",
                    "findings": [f.model_dump(by_alias=True, mode="json") for f in report.errors],
                }
            )

    return Chatbot.update(db, chatbot_id, {"is_active": body.is_active})


@router.post("/{chatbot_id}/duplicate", response_model=ChatbotResponse, status_code=status.HTTP_201_CREATED)
def duplicate_chatbot(chatbot_id: int, db: Session = Depends(get_db)):
    original = _get_chatbot_or_404(db, chatbot_id)

    return Chatbot.create(db, {
        "name": f"{original.name} (Copy)",
        "description": original.description,
        "device_id": original.device_id,
        "trigger_type": original.trigger_type,
        "trigger_keywords": original.trigger_keywords,
        "nodes": original.nodes,
        "edges": original.edges,
        "is_active": False,
    })


@router.post("/{chatbot_id}/execute", response_model=ChatbotExecuteResponse)
async def execute_chatbot(chatbot_id: int, request: ChatbotExecuteRequest, db: Session = Depends(get_db)):
    """
    Run the flow for a message and return the replies it would send.
    Nothing is delivered, delays are not waited out and API call nodes
    make no requests.
    """
    chatbot = _get_chatbot_or_404(db, chatbot_id)
    graph = _stored_graph(chatbot)

    if not matches_trigger(chatbot.trigger_type, chatbot.trigger_keywords, request.message):
        return ChatbotExecuteResponse(chatbot_id=chatbot_id, triggered=False)

    context = FlowExecutionContext(
        message=request.message,
        sender_id=request.sender_id,
        contact_name=request.contact_name,
        device_id=chatbot.device_id,
    )

    engine = FlowEngine(dry_run=True)
    try:
        result = await engine.execute_flow(graph, context)
    finally:
        await engine.close()

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=result.error_message
        )

    Chatbot.record_execution(db, chatbot_id)
    return ChatbotExecuteResponse(
        chatbot_id=chatbot_id,
        triggered=True,
        responses=result.responses,
        visited=result.visited,
        budget_exhausted=result.budget_exhausted,
    )


@router.post("/incoming", response_model=ChatbotDispatchResponse)
async def incoming_message(incoming: ChatbotIncomingMessage, db: Session = Depends(get_db)):
    """
    Gateway hook for an inbound WhatsApp message. The device's active
    chatbots get the message in turn and the first one to answer replies.
    Replies go out through the gateway when MESSAGE_GATEWAY_URL is set and
    are returned in the response either way.
    """
    sender = GatewaySender(incoming.device_id) if settings.MESSAGE_GATEWAY_URL else None
    try:
        result = await dispatch_message(
            db,
            incoming.device_id,
            incoming.sender_id,
            incoming.message,
            send=sender,
            contact_name=incoming.contact_name,
        )
    finally:
        if sender is not None:
            await sender.close()

    if result is None:
        return ChatbotDispatchResponse(triggered=False)
    logger.info(f"Chatbot {result.chatbot_id} answered {incoming.sender_id} on device {incoming.device_id}")
    return result
