"""
One user's editing session over a chatbot's flow graph.

The session starts Clean, becomes Dirty on the first edit and is Saving
while a PUT is in flight. A successful save brings it back to Clean unless
edits landed in the meantime; a failed save leaves it Dirty with every edit
kept, and the error goes back to the caller so the user can retry.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from chatflow.schemas.flow import BaseNode, FlowEdge, FlowGraph, NodeKind, Position, ValidationReport
from chatflow.services import flow_graph

logger = logging.getLogger(__name__)

# Chatbot settings sent with every save, and what the store assumes when one is missing
DETAIL_DEFAULTS = {
    "name": None,
    "description": None,
    "deviceId": None,
    "triggerType": "keyword",
    "triggerKeywords": "",
}
DETAIL_FIELDS = tuple(DETAIL_DEFAULTS)


class SessionState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"


class EditorSession:

    def __init__(self, chatbot_id: int, graph: FlowGraph, store, details: Optional[Dict[str, Any]] = None):
        self.chatbot_id = chatbot_id
        self.graph = graph
        self.store = store
        self.details = self._with_defaults(details or {})

        self._persisted_graph = graph
        self._persisted_details = dict(self.details)
        self._revision = 0
        self._saved_revision = 0
        self._saving = False
        self._save_lock = asyncio.Lock()

    @classmethod
    async def load(cls, store, chatbot_id: int) -> "EditorSession":
        record = await store.get_chatbot(chatbot_id)
        graph = flow_graph.deserialize(record)
        return cls(chatbot_id, graph, store, details=record)

    @staticmethod
    def _with_defaults(details: Mapping[str, Any]) -> Dict[str, Any]:
        values = {}
        for field, default in DETAIL_DEFAULTS.items():
            value = details.get(field)
            values[field] = default if value is None else value
        return values

    @property
    def dirty(self) -> bool:
        return self._revision != self._saved_revision

    @property
    def state(self) -> SessionState:
        if self._saving:
            return SessionState.SAVING
        return SessionState.DIRTY if self.dirty else SessionState.CLEAN

    def _apply(self, graph: FlowGraph):
        self.graph = graph
        self._revision += 1

    # Edits

    def add_node(self, kind: NodeKind, position: Optional[Position] = None) -> BaseNode:
        node = flow_graph.create_node(kind, position)
        self._apply(flow_graph.add_node(self.graph, node))
        return node

    def update_node(self, node_id: str, partial: Mapping[str, Any]):
        self._apply(flow_graph.update_node_payload(self.graph, node_id, partial))

    def move_node(self, node_id: str, position: Position):
        self._apply(flow_graph.move_node(self.graph, node_id, position))

    def delete_node(self, node_id: str):
        self._apply(flow_graph.delete_node(self.graph, node_id))

    def connect(self, source_id: str, source_handle: str, target_id: str) -> FlowEdge:
        graph = flow_graph.connect(self.graph, source_id, source_handle, target_id)
        self._apply(graph)
        return graph.edges[-1]

    def disconnect(self, edge_id: str):
        self._apply(flow_graph.disconnect(self.graph, edge_id))

    def update_details(self, **fields):
        unknown = set(fields) - set(DETAIL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown chatbot field(s): {', '.join(sorted(unknown))}")
        self.details = self._with_defaults({**self.details, **fields})
        self._revision += 1

    def validate(self) -> ValidationReport:
        return flow_graph.validate(self.graph)

    def discard(self):
        """Drop local edits and go back to the last persisted version."""
        self.graph = self._persisted_graph
        self.details = dict(self._persisted_details)
        self._revision += 1
        self._saved_revision = self._revision

    # Persistence

    def build_body(self) -> Dict[str, Any]:
        return {**self.details, **flow_graph.serialize(self.graph)}

    async def save(self) -> bool:
        """
        Persist the whole graph. Saves never overlap: a call made while
        another is in flight waits for it, and returns False without a
        request if that save already covered every edit.
        """
        async with self._save_lock:
            if not self.dirty:
                logger.debug(f"Chatbot {self.chatbot_id} has nothing to save")
                return False
            if not (self.details["name"] or "").strip():
                raise ValueError("Chatbot name is required")

            revision = self._revision
            graph, details = self.graph, dict(self.details)
            body = self.build_body()

            self._saving = True
            try:
                await self.store.put_chatbot(self.chatbot_id, body)
            except Exception as e:
                logger.error(f"Saving chatbot {self.chatbot_id} failed: {e}")
                raise
            finally:
                self._saving = False

            self._saved_revision = revision
            self._persisted_graph = graph
            self._persisted_details = details
            logger.info(f"Chatbot {self.chatbot_id} saved at revision {revision}")
            return True
