from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, ConfigDict, Field, StrictBool, field_validator

from chatflow.schemas.flow import FlowModel, OutboundMessage


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    EXACT = "exact"
    REGEX = "regex"
    ALL = "all"


class ChatbotBase(FlowModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    device_id: Optional[str] = None
    trigger_type: TriggerType = TriggerType.KEYWORD
    trigger_keywords: str = ""

    @field_validator("device_id", mode="before")
    def blank_device_is_any(cls, v):
        return v or None

    @field_validator("trigger_keywords", mode="before")
    def keywords_not_null(cls, v):
        return v or ""


class ChatbotCreate(ChatbotBase):
    """Schema for creating a chatbot. Without a graph the chatbot starts with a lone Start node."""
    nodes: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None


class ChatbotUpdate(ChatbotBase):
    """Full replacement body for PUT; there is no partial update."""
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]]


class ChatbotResponse(ChatbotBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]]
    is_active: bool
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ChatbotActivate(FlowModel):
    is_active: StrictBool


class ChatbotExecuteRequest(FlowModel):
    message: str
    sender_id: str
    # Also accepted as "name"
    contact_name: Optional[str] = Field(None, validation_alias=AliasChoices("contactName", "contact_name", "name"))


class ChatbotExecuteResponse(FlowModel):
    chatbot_id: int
    triggered: bool
    responses: List[OutboundMessage] = Field(default_factory=list)
    visited: List[str] = Field(default_factory=list)
    budget_exhausted: bool = False


class ChatbotIncomingMessage(FlowModel):
    """Inbound WhatsApp message as the gateway reports it."""
    device_id: str
    sender_id: str = Field(..., validation_alias=AliasChoices("senderId", "sender_id", "from"))
    message: str
    contact_name: Optional[str] = Field(None, validation_alias=AliasChoices("contactName", "contact_name", "pushName"))


class ChatbotDispatchResponse(FlowModel):
    triggered: bool
    chatbot_id: Optional[int] = None
    chatbot_name: Optional[str] = None
    messages_sent: int = 0
    responses: List[OutboundMessage] = Field(default_factory=list)
