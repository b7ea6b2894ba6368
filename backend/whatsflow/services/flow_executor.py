# /whatsflow/services/flow_executor.py

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Dict, Optional, Protocol, runtime_checkable

from whatsflow.config.settings import settings
from whatsflow.models.execution import (
    ErrorKind,
    ExecutionContext,
    FlowRunError,
    RunOutcome,
    RunStatus,
    SentMessage,
)
from whatsflow.models.flow import (
    ActionNode,
    Connection,
    ConditionNode,
    FlowGraph,
    MessageNode,
    NodeType,
)
from whatsflow.services.action_service import ACTION_HANDLERS, ActionHandler
from whatsflow.services.flow_store import FlowNotFoundError, FlowStore, flow_store
from whatsflow.services.media_service import media_service
from whatsflow.services.whatsapp_service import whatsapp_service
from whatsflow.utils.alerting import AlertingService, alerting_service
from whatsflow.utils.metrics import (
    active_runs_gauge,
    condition_errors_counter,
    flow_runs_counter,
    node_executions_counter,
    run_duration_histogram,
)
from whatsflow.workflows.conditions import evaluate
from whatsflow.workflows.engine import (
    check_progress,
    next_connection,
    select_branch,
    transition_delay,
)
from whatsflow.workflows.template import find_placeholders, substitute
from whatsflow.workflows.validator import validate_flow

logger = logging.getLogger(__name__)


@runtime_checkable
class MessagingChannel(Protocol):
    """Sends one message and returns the provider message id, or None if it was not delivered."""

    async def send_text(self, instance_id: str, to_phone: str, text: str) -> Optional[str]: ...

    async def send_media(
        self, instance_id: str, to_phone: str, media_url: str, caption: str = "", media_type: str = "image"
    ) -> Optional[str]: ...


@runtime_checkable
class MediaResolver(Protocol):
    async def resolve(self, media_ref: str) -> Optional[str]: ...


class FlowExecutor:
    """
    Runs a flow graph node by node against one recipient.

    A run starts at the start node and repeats "execute node, pick the next
    connection, wait its delay" until it reaches an end node, a condition
    with no matching branch, a cancellation or an error. Nodes of one run
    never overlap; separate runs share nothing but the collaborators.

    Node failures never escape `execute`; they come back as a RunOutcome.
    """

    def __init__(
        self,
        store: FlowStore,
        channel: MessagingChannel,
        media_resolver: MediaResolver,
        action_handlers: Optional[Dict[str, ActionHandler]] = None,
        max_steps: Optional[int] = None,
        send_timeout: Optional[float] = None,
        validate_before_execute: Optional[bool] = None,
        reachability_policy: Optional[str] = None,
        alerting: Optional[AlertingService] = None,
    ):
        self.store = store
        self.channel = channel
        self.media_resolver = media_resolver
        self.action_handlers = dict(ACTION_HANDLERS if action_handlers is None else action_handlers)
        self.max_steps = max_steps or settings.max_steps_per_run
        self.send_timeout = send_timeout or settings.messaging_timeout_seconds
        self.validate_before_execute = (
            settings.validate_before_execute if validate_before_execute is None else validate_before_execute
        )
        self.reachability_policy = reachability_policy or settings.reachability_policy
        self.alerting = alerting or alerting_service

    # ==================== Entry points ====================

    async def execute(
        self,
        flow_id: str,
        instance_id: str,
        phone_number: str,
        initial_variables: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
    ) -> RunOutcome:
        """Loads the flow and runs it against `phone_number` through `instance_id`."""
        context = ExecutionContext(
            run_id=run_id or uuid.uuid4().hex,
            flow_id=flow_id,
            instance_id=instance_id,
            phone_number=phone_number,
            variables=dict(initial_variables or {}),
        )
        context.variables.setdefault("phone_number", phone_number)

        try:
            graph = await self.store.load_flow(flow_id)
        except FlowNotFoundError as e:
            return self._outcome(context, RunStatus.ERROR, ErrorKind.FLOW_NOT_FOUND, str(e))
        except Exception as e:
            logger.error(f"Failed to load flow {flow_id} for run {context.run_id}: {e}", exc_info=True)
            outcome = self._outcome(
                context, RunStatus.ERROR, ErrorKind.FLOW_LOAD_FAILED, f"Flow '{flow_id}' could not be loaded: {e}"
            )
            await self.alerting.run_failed(outcome)
            return outcome

        return await self.run_graph(graph, context, cancel_event)

    async def run_graph(
        self,
        graph: FlowGraph,
        context: ExecutionContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunOutcome:
        """Runs an already loaded graph; used directly to test-run draft flows."""
        if self.validate_before_execute:
            result = validate_flow(graph, self.reachability_policy)
            if not result["is_valid"]:
                return self._outcome(
                    context, RunStatus.ERROR, ErrorKind.INVALID_FLOW, result["message"],
                    node_id=result["node_id"], validation_error=result["error_code"].value
                )

        start = graph.start_node()
        if start is None:
            return self._outcome(
                context, RunStatus.ERROR, ErrorKind.INVALID_FLOW, "Flow must have a start node",
                validation_error="MissingStartNode"
            )

        logger.info(f"Flow run {context.run_id} started: flow={graph.flow.id} phone={context.phone_number}")
        active_runs_gauge.inc()
        try:
            outcome = await self._walk(graph, start.id, context, cancel_event)
        finally:
            active_runs_gauge.dec()
        await self.alerting.run_failed(outcome)
        return outcome

    # ==================== Main loop ====================

    async def _walk(
        self,
        graph: FlowGraph,
        node_id: str,
        context: ExecutionContext,
        cancel_event: Optional[asyncio.Event],
    ) -> RunOutcome:
        seen: set = set()
        steps = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return self._outcome(context, RunStatus.CANCELLED, message="Run cancelled", node_id=node_id)

            node = graph.get_node(node_id)
            try:
                if node is None:
                    raise FlowRunError(ErrorKind.NODE_NOT_FOUND, f"Node '{node_id}' not found")
                check_progress(seen, node_id, context.variables, steps, self.max_steps)
                steps += 1
                context.current_node_id = node.id
                context.visited.append(node.id)
                node_executions_counter.labels(node_type=node.type).inc()
                conn = await self._execute_node(graph, node, context)
            except FlowRunError as e:
                if e.kind == ErrorKind.NO_MATCHING_BRANCH:
                    return self._outcome(context, RunStatus.NO_MATCHING_BRANCH, e.kind, e.message, node_id=node_id)
                logger.error(f"Error executing node {node_id} of run {context.run_id}: {e.kind.value} - {e.message}")
                return self._outcome(context, RunStatus.ERROR, e.kind, e.message, node_id=node_id)

            if conn is None:
                return self._outcome(context, RunStatus.COMPLETED, node_id=node.id)

            delay = transition_delay(node, conn)
            if delay > 0 and await self._wait(delay, cancel_event):
                return self._outcome(
                    context, RunStatus.CANCELLED, message="Run cancelled during delay", node_id=node.id
                )
            node_id = conn.target_node_id

    async def _execute_node(self, graph: FlowGraph, node: Any, context: ExecutionContext) -> Optional[Connection]:
        """Runs one node; returns the connection to follow, or None at an end node."""
        if node.type == NodeType.START:
            return next_connection(graph, node.id)
        if node.type == NodeType.MESSAGE:
            await self._execute_message(node, context)
            return next_connection(graph, node.id)
        if node.type == NodeType.CONDITION:
            return self._execute_condition(graph, node, context)
        if node.type == NodeType.ACTION:
            await self._execute_action(node, context)
            return next_connection(graph, node.id)
        return None

    # ==================== Node types ====================

    async def _execute_message(self, node: MessageNode, context: ExecutionContext) -> None:
        text = substitute(node.message, context.variables)
        unresolved = find_placeholders(text)
        if unresolved:
            self._warn(context, f"Message node '{node.id}' has unresolved placeholders: {', '.join(unresolved)}")

        media_url = None
        if node.media_url:
            media_ref = substitute(node.media_url, context.variables)
            media_url = await self._resolve_media(media_ref, node)
            message_id = await self._deliver(
                self.channel.send_media(
                    context.instance_id, context.phone_number, media_url, text, node.media_type.value
                ),
                node.id, context
            )
        else:
            message_id = await self._deliver(
                self.channel.send_text(context.instance_id, context.phone_number, text),
                node.id, context
            )

        context.messages_sent.append(SentMessage(
            node_id=node.id,
            text=text,
            media_url=media_url,
            media_type=node.media_type.value if media_url else None,
            message_id=str(message_id),
        ))

    def _execute_condition(self, graph: FlowGraph, node: ConditionNode, context: ExecutionContext) -> Connection:
        def _on_error(exc: Exception):
            condition_errors_counter.inc()
            self._warn(context, f"Condition on node '{node.id}' failed to evaluate, treating as false: {exc}")

        result = evaluate(node.condition, context.variables, on_error=_on_error)
        logger.debug(f"Condition node {node.id} evaluated {node.condition!r} -> {result}")
        return select_branch(graph, node.id, result)

    async def _execute_action(self, node: ActionNode, context: ExecutionContext) -> None:
        handler = self.action_handlers.get(node.action)
        if handler is None:
            raise FlowRunError(ErrorKind.UNKNOWN_ACTION_KIND, f"Unknown action type: {node.action}")

        params = {
            key: substitute(value, context.variables) if isinstance(value, str) else value
            for key, value in node.params.items()
        }
        await handler(context, params)

    # ==================== Collaborator calls ====================

    async def _resolve_media(self, media_ref: str, node: MessageNode) -> str:
        try:
            url = await asyncio.wait_for(self.media_resolver.resolve(media_ref), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Media resolution for node {node.id} timed out after {self.send_timeout}s")
            url = None
        except Exception as e:
            logger.error(f"Media resolution for node {node.id} failed: {e}", exc_info=True)
            url = None
        if not url:
            raise FlowRunError(
                ErrorKind.MEDIA_RESOLUTION_FAILED,
                f"Could not resolve media '{media_ref}' for node '{node.id}'"
            )
        return url

    async def _deliver(self, send: Awaitable, node_id: str, context: ExecutionContext) -> str:
        try:
            message_id = await asyncio.wait_for(send, timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Delivery for node {node_id} to {context.phone_number} timed out after {self.send_timeout}s")
            message_id = None
        except Exception as e:
            logger.error(f"Delivery for node {node_id} to {context.phone_number} raised: {e}", exc_info=True)
            message_id = None
        if not message_id:
            raise FlowRunError(
                ErrorKind.DELIVERY_FAILED,
                f"Message from node '{node_id}' was not delivered to {context.phone_number} "
                f"via instance {context.instance_id}"
            )
        return message_id

    @staticmethod
    async def _wait(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleeps for `delay` seconds; returns True if the run was cancelled meanwhile."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # ==================== Outcome ====================

    @staticmethod
    def _warn(context: ExecutionContext, warning: str) -> None:
        context.warnings.append(warning)
        logger.warning(f"Flow run {context.run_id}: {warning}")

    def _outcome(
        self,
        context: ExecutionContext,
        status: RunStatus,
        error_kind: Optional[ErrorKind] = None,
        message: Optional[str] = None,
        node_id: Optional[str] = None,
        validation_error: Optional[str] = None,
    ) -> RunOutcome:
        duration = (datetime.utcnow() - context.started_at).total_seconds()
        flow_runs_counter.labels(status=status.value, error_kind=error_kind.value if error_kind else "").inc()
        run_duration_histogram.observe(duration)

        summary = (
            f"Flow run {context.run_id} finished: flow={context.flow_id} phone={context.phone_number} "
            f"status={status.value} node={node_id}"
        )
        if status == RunStatus.ERROR:
            logger.error(f"{summary} error={error_kind.value if error_kind else None}: {message}")
        elif status == RunStatus.COMPLETED:
            logger.info(summary)
        else:
            logger.warning(f"{summary}: {message}")

        return {
            "run_id": context.run_id,
            "flow_id": context.flow_id,
            "instance_id": context.instance_id,
            "phone_number": context.phone_number,
            "status": status,
            "error_kind": error_kind,
            "validation_error": validation_error,
            "message": message,
            "node_id": node_id,
            "visited": list(context.visited),
            "variables": dict(context.variables),
            "messages_sent": list(context.messages_sent),
            "warnings": list(context.warnings),
            "duration_seconds": duration,
        }

# Globally accessible instance
flow_executor = FlowExecutor(flow_store, whatsapp_service, media_service)
