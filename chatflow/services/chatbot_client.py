import logging
from typing import Any, Dict, Optional

import httpx

from chatflow.core.config import settings

logger = logging.getLogger(__name__)


class ChatbotClient:
    """
    Talks to the chatbot store: GET loads a record, PUT replaces it wholesale.
    """

    def __init__(self, base_url: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client or httpx.AsyncClient(
            base_url=base_url or settings.CHATBOT_API_URL,
            timeout=settings.API_CALL_TIMEOUT,
        )

    async def get_chatbot(self, chatbot_id: int) -> Dict[str, Any]:
        response = await self.http_client.get(f"/chatbots/{chatbot_id}")
        response.raise_for_status()
        return response.json()

    async def put_chatbot(self, chatbot_id: int, body: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Saving chatbot {chatbot_id} ({len(body.get('nodes', []))} nodes)")
        response = await self.http_client.put(f"/chatbots/{chatbot_id}", json=body)
        response.raise_for_status()
        return response.json()

    async def close(self):
        await self.http_client.aclose()
