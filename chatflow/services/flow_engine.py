import asyncio
import logging
import re
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from chatflow.core.config import settings
from chatflow.schemas.chatbot import TriggerType
from chatflow.schemas.flow import (
    ApiCallNode,
    BaseNode,
    ConditionField,
    ConditionNode,
    ConditionOperator,
    DelayNode,
    FlowExecutionContext,
    FlowExecutionResult,
    FlowGraph,
    KnowledgeNode,
    MessageNode,
    OutboundMessage,
    StartNode,
    TemplateNode,
)

logger = logging.getLogger(__name__)

SendCallback = Callable[[FlowExecutionContext, OutboundMessage], Awaitable[Any]]
TemplateResolver = Callable[[str], Awaitable[Optional[str]]]
KnowledgeResolver = Callable[[str, str], Awaitable[Optional[str]]]


def matches_trigger(trigger_type: str, trigger_keywords: str, message: str) -> bool:
    """Decide whether an inbound message starts a chatbot."""
    trigger_type = TriggerType(trigger_type)
    if trigger_type == TriggerType.ALL:
        return True
    if not trigger_keywords:
        return False

    if trigger_type == TriggerType.REGEX:
        try:
            return bool(re.search(trigger_keywords, message, re.IGNORECASE))
        except re.error:
            return False

    keywords = [k.strip().lower() for k in trigger_keywords.split(",") if k.strip()]
    text = message.lower()
    if trigger_type == TriggerType.EXACT:
        return text.strip() in keywords
    return any(keyword in text for keyword in keywords)


def evaluate_condition(subject: str, operator: ConditionOperator, value: str) -> bool:
    """Case-insensitive comparison used by condition nodes."""
    subject = (subject or "").lower()
    value = (value or "").lower()

    if operator == ConditionOperator.CONTAINS:
        return value in subject
    elif operator == ConditionOperator.EQUALS:
        return subject == value
    elif operator == ConditionOperator.STARTS_WITH:
        return subject.startswith(value)
    elif operator == ConditionOperator.ENDS_WITH:
        return subject.endswith(value)
    elif operator == ConditionOperator.NOT_CONTAINS:
        return value not in subject
    return False


class FlowEngine:
    """
    Runs a chatbot flow graph for one inbound message.

    The walk starts at the Start node and follows one edge per step. Each
    run has a step budget because flows may loop.
    """

    def __init__(
            self,
            send: Optional[SendCallback] = None,
            template_resolver: Optional[TemplateResolver] = None,
            knowledge_resolver: Optional[KnowledgeResolver] = None,
            max_steps: Optional[int] = None,
            http_client: Optional[aiohttp.ClientSession] = None,
            sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
            dry_run: bool = False,
    ):
        self.send = send
        self.template_resolver = template_resolver
        self.knowledge_resolver = knowledge_resolver
        self.max_steps = max_steps or settings.FLOW_MAX_STEPS
        self.http_client = http_client  # Will be created when needed
        self._owns_http_client = http_client is None
        self.sleep = sleep
        # Dry runs skip delays and outbound API calls
        self.dry_run = dry_run

    async def execute_flow(self, graph: FlowGraph, context: FlowExecutionContext) -> FlowExecutionResult:
        """
        Execute a flow with the given context.
        """
        starts = graph.start_nodes()
        if not starts:
            return FlowExecutionResult(success=False, error_message="No Start node found")

        result = FlowExecutionResult(success=True)
        current: Optional[BaseNode] = starts[0]
        steps = 0

        try:
            while current is not None:
                if steps >= self.max_steps:
                    logger.warning(f"Flow stopped after {steps} steps at node {current.id}")
                    result.budget_exhausted = True
                    break
                steps += 1

                result.visited.append(current.id)
                handle = await self._execute_node(current, context, result)
                self._update_history(context, current, handle)
                if handle is None:
                    break

                edges = graph.outgoing(current.id, handle)
                if not edges:
                    break
                current = graph.get_node(edges[0].target)

        except Exception as e:
            logger.exception(f"Flow execution error: {e}")
            result.success = False
            result.error_message = f"Flow execution error: {str(e)}"

        result.finished_at = datetime.now()
        return result

    def _update_history(self, context: FlowExecutionContext, node: BaseNode, handle: Optional[str]):
        context.history.append({
            "timestamp": datetime.now().isoformat(),
            "node_id": node.id,
            "type": node.type,
            "handle": handle,
        })

    async def _execute_node(
            self,
            node: BaseNode,
            context: FlowExecutionContext,
            result: FlowExecutionResult
    ) -> Optional[str]:
        """
        Execute one node and return the port to leave it through.
        """
        if isinstance(node, StartNode):
            return "out"
        elif isinstance(node, MessageNode):
            return await self._execute_message_node(node, context, result)
        elif isinstance(node, ConditionNode):
            return self._execute_condition_node(node, context)
        elif isinstance(node, DelayNode):
            if not self.dry_run:
                await self.sleep(node.data.seconds)
            return "out"
        elif isinstance(node, ApiCallNode):
            return await self._execute_api_call_node(node, context)
        elif isinstance(node, TemplateNode):
            return await self._execute_template_node(node, context, result)
        elif isinstance(node, KnowledgeNode):
            return await self._execute_knowledge_node(node, context, result)

        logger.error(f"No handler for node type {node.type}")
        return None

    async def _execute_message_node(self, node: MessageNode, context, result) -> str:
        text = self._interpolate_variables(node.data.text, self._placeholders(context))
        await self._emit(
            context, result,
            OutboundMessage(
                node_id=node.id,
                text=text,
                media_url=node.data.media_url or None,
                media_type=node.data.media_type,
            ),
        )
        return "out"

    def _execute_condition_node(self, node: ConditionNode, context) -> str:
        subject = context.message if node.data.field == ConditionField.MESSAGE else context.sender_id
        condition_met = evaluate_condition(subject, node.data.operator, node.data.value)
        logger.debug(f"Condition {node.id}: {node.data.operator.value} '{node.data.value}' -> {condition_met}")
        return "yes" if condition_met else "no"

    async def _execute_api_call_node(self, node: ApiCallNode, context) -> str:
        """
        Fire the HTTP request and move on through "out" whatever the outcome.
        """
        method = node.data.method.value
        url = node.data.url

        if self.dry_run:
            logger.info(f"Dry run: skipping API call {method} {url}")
            return "out"

        if self.http_client is None:
            timeout = aiohttp.ClientTimeout(total=settings.API_CALL_TIMEOUT)
            self.http_client = aiohttp.ClientSession(timeout=timeout)

        kwargs = {}
        if method in ("POST", "PUT"):
            kwargs["json"] = {
                "message": context.message,
                "senderId": context.sender_id,
                "variables": context.variables,
            }

        try:
            async with self.http_client.request(method, url, **kwargs) as response:
                logger.info(f"API call {method} {url} returned {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"API call {method} {url} failed: {e}")

        return "out"

    async def _execute_template_node(self, node: TemplateNode, context, result) -> str:
        template_id = node.data.template_id
        if not template_id or self.template_resolver is None:
            logger.warning(f"Template node {node.id} has nothing to send")
            return "out"

        try:
            content = await self.template_resolver(template_id)
        except Exception as e:
            logger.error(f"Template {template_id} could not be loaded: {e}")
            content = None

        if content:
            text = self._interpolate_variables(content, self._placeholders(context))
            await self._emit(context, result, OutboundMessage(node_id=node.id, text=text))
        return "out"

    async def _execute_knowledge_node(self, node: KnowledgeNode, context, result) -> str:
        answer = None
        knowledge_base_id = node.data.knowledge_base_id

        if knowledge_base_id and self.knowledge_resolver is not None:
            try:
                answer = await self.knowledge_resolver(knowledge_base_id, context.message)
            except Exception as e:
                logger.error(f"Knowledge base {knowledge_base_id} query failed: {e}")

        if answer:
            await self._emit(context, result, OutboundMessage(node_id=node.id, text=answer, from_knowledge=True))
        elif node.data.fallback_message:
            await self._emit(context, result, OutboundMessage(node_id=node.id, text=node.data.fallback_message))
        return "out"

    async def _emit(self, context: FlowExecutionContext, result: FlowExecutionResult, message: OutboundMessage):
        result.responses.append(message)
        if self.send is None:
            return

        try:
            await self.send(context, message)
            result.messages_sent += 1
        except Exception as e:
            logger.error(f"Failed to send message from node {message.node_id}: {e}")

    def _placeholders(self, context: FlowExecutionContext) -> Dict[str, Any]:
        values = dict(context.variables)
        values.update({
            "name": context.contact_name or "",
            "phone": context.sender_id.split("@")[0],
            "date": date.today().isoformat(),
            "message": context.message,
            "senderId": context.sender_id,
        })
        return values

    def _interpolate_variables(self, text: str, variables: Dict[str, Any]) -> str:
        """Replace variable placeholders in text with actual values."""
        if not text or not variables:
            return text

        # Replace {{variable_name}} with actual values
        for var_name, var_value in variables.items():
            placeholder = f"{{{{{var_name}}}}}"
            text = text.replace(placeholder, str(var_value))

        return text

    async def close(self):
        """Close the HTTP client."""
        if self.http_client and self._owns_http_client:
            await self.http_client.close()
