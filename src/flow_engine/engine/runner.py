"""
Flow run state machine.

Drives a run from its current node until it suspends, completes or fails,
then persists the RunState. Resuming rebuilds everything from the persisted
state, so a run may continue on any worker.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from opentelemetry import trace

from ..core.errors import (
    FlowEngineError,
    InfiniteLoopSuspected,
    NoMatchingEdge,
    NodeExecutionError,
    RunNotResumableError,
)
from ..core.graph import FlowGraph
from ..core.interface import Collaborators, RunStore
from ..core.variables import VariableStore
from ..executors import (
    Advance,
    Complete,
    EngineSettings,
    ExecutionResult,
    Fail,
    RunContext,
    Suspend,
    get_executor,
)
from ..models.flow import FlowDefinition, Node
from ..models.run import (
    EventKind,
    Outcome,
    ResumeEvent,
    RunState,
    RunStatus,
    TriggerContext,
    utcnow,
)
from .trace import ExecutionTrace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# (run_id, update_type, data), same shape as the WebSocket broadcaster
RunListener = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

_EVENTS_FOR_STATUS = {
    RunStatus.WAITING_INPUT: (EventKind.INPUT, EventKind.BUTTON),
    RunStatus.WAITING_DELAY: (EventKind.TIMER,),
}


def initial_variables(flow: FlowDefinition, trigger: TriggerContext) -> VariableStore:
    """Seed a run's variable store from the trigger."""
    contact = dict(trigger.contact)
    if trigger.contact_id:
        contact.setdefault("id", trigger.contact_id)
    conversation = dict(trigger.conversation)
    if trigger.conversation_id:
        conversation.setdefault("id", trigger.conversation_id)
    user = dict(trigger.user)
    if trigger.message is not None:
        user.setdefault("input", trigger.message)

    store = VariableStore(namespaces={
        "contact": contact,
        "conversation": conversation,
        "user": user,
        "flow": {"id": flow.id, "name": flow.name, "version": flow.version},
    })
    store.merge(trigger.variables)
    return store


class FlowRunner:
    """
    Executes flow runs node by node.

    Node execution inside one invocation is a tight awaited chain; the only
    points where control returns to the caller are waiting_input and
    waiting_delay suspensions and terminal states.
    """

    def __init__(
        self,
        run_store: RunStore,
        collaborators: Collaborators,
        settings: Optional[EngineSettings] = None,
        listeners: Optional[List[RunListener]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize runner.

        Args:
            run_store: Durable run state storage
            collaborators: Messaging, HTTP, contact and scheduling collaborators
            settings: Engine limits
            listeners: Async callbacks receiving status and node updates
            clock: Source of the current time
        """
        self.run_store = run_store
        self.collaborators = collaborators
        self.settings = settings or EngineSettings()
        self.listeners = list(listeners or [])
        self.clock = clock

    def add_listener(self, listener: RunListener):
        self.listeners.append(listener)

    async def start(
        self,
        flow: FlowDefinition,
        trigger: TriggerContext,
        graph: Optional[FlowGraph] = None,
        run_id: Optional[str] = None,
    ) -> RunState:
        """
        Start a new run at the flow's start node.

        Raises:
            FlowValidationError: if the definition is malformed (no run is created)
        """
        graph = graph or FlowGraph(flow)
        store = initial_variables(flow, trigger)
        now = self.clock()

        state = RunState(
            run_id=run_id or str(uuid.uuid4()),
            flow_id=flow.id,
            flow_version=flow.version,
            conversation_id=trigger.conversation_id,
            contact_id=trigger.contact_id,
            mode=trigger.mode,
            current_node_id=graph.start_node_id,
            status=RunStatus.RUNNING,
            variables=store.snapshot(),
            execution_path=[graph.start_node_id],
            created_at=now,
            updated_at=now,
        )
        logger.info(f"Starting run {state.run_id} of flow {flow.id} v{flow.version}")
        await self._notify(state, "status", {"status": state.status.value})

        return await self._run(state, graph, store, event=None)

    async def resume(self, state: RunState, flow: FlowDefinition, event: ResumeEvent) -> RunState:
        """
        Continue a suspended run with an external event.

        Raises:
            RunNotResumableError: if the run is not waiting for this kind of
                event, or a delay is resumed before it is due
        """
        if not state.status.is_waiting:
            raise RunNotResumableError(
                f"Run {state.run_id} is {state.status.value}, not waiting",
                node_id=state.current_node_id,
            )
        if event.kind not in _EVENTS_FOR_STATUS[state.status]:
            raise RunNotResumableError(
                f"Run {state.run_id} is {state.status.value} and cannot accept a {event.kind.value} event",
                node_id=state.current_node_id,
            )
        # A caller's timestamp can delay a timer but never bring it forward
        fired_at = min(event.received_at, self.clock())
        if state.status == RunStatus.WAITING_DELAY and state.resume_at and fired_at < state.resume_at:
            raise RunNotResumableError(
                f"Run {state.run_id} is not due until {state.resume_at.isoformat()}",
                node_id=state.current_node_id,
            )

        graph = FlowGraph(flow)
        store = VariableStore.from_snapshot(state.variables)
        if event.kind != EventKind.TIMER and event.value is not None:
            store.update_namespace("user", {"input": event.value})

        state.status = RunStatus.RUNNING
        state.resume_at = None
        state.awaiting_variable = None
        logger.info(f"Resuming run {state.run_id} at node {state.current_node_id} with {event.kind.value} event")
        await self._notify(state, "status", {"status": state.status.value})

        return await self._run(state, graph, store, event=event)

    async def cancel(self, state: RunState, reason: str = "Cancelled") -> RunState:
        """Move a non-terminal run to cancelled. Terminal runs are returned unchanged."""
        if state.status.is_terminal:
            return state

        if state.status == RunStatus.WAITING_DELAY and self.collaborators.scheduler is not None:
            await self.collaborators.scheduler.cancel_resume(state.run_id)

        state.status = RunStatus.CANCELLED
        state.error = reason
        state.resume_at = None
        state.awaiting_variable = None
        state.completed_at = self.clock()
        await self._persist(state)
        logger.info(f"Run {state.run_id} cancelled")
        await self._notify(state, "status", {"status": state.status.value, "error": reason})
        return state

    async def _run(
        self,
        state: RunState,
        graph: FlowGraph,
        store: VariableStore,
        event: Optional[ResumeEvent],
    ) -> RunState:
        ctx = RunContext(
            state=state,
            graph=graph,
            store=store,
            collaborators=self.collaborators,
            settings=self.settings,
            event=event,
            clock=self.clock,
        )
        log = ExecutionTrace(state, clock=self.clock)
        visits = 0

        while True:
            node = graph.node(state.current_node_id)
            if node is None:
                # Only reachable when a run resumes against an edited definition
                return await self._fail(state, store, NodeExecutionError(
                    f"Node '{state.current_node_id}' not found in flow {state.flow_id} v{state.flow_version}",
                    node_id=state.current_node_id,
                ))
            started_at = self.clock()

            if visits >= self.settings.max_node_visits:
                error = InfiniteLoopSuspected(
                    f"Run exceeded {self.settings.max_node_visits} node visits in one invocation",
                    node_id=node.id,
                )
                log.record(node, Outcome.ERROR, started_at, store, error=str(error))
                return await self._fail(state, store, error)
            visits += 1

            ctx.resolved_config = {}
            result = await self._execute(node, ctx)

            if isinstance(result, Advance):
                try:
                    target = result.target_node_id or graph.next_node_id(
                        node.id, result.label, result.fallback_unlabeled,
                    )
                except NoMatchingEdge as e:
                    result = Fail(e)
                else:
                    outcome = Outcome.BRANCH if result.label is not None else Outcome.SUCCESS
                    entry = log.record(node, outcome, started_at, store, ctx.resolved_config, branch=result.label)
                    state.current_node_id = target
                    state.execution_path.append(target)
                    await self._notify(state, "node_complete", {
                        "node_id": node.id,
                        "node_type": node.type.value,
                        "outcome": entry.outcome.value,
                        "branch": entry.branch,
                        "next_node_id": target,
                    })
                    continue

            if isinstance(result, Suspend):
                log.record(node, Outcome.SUSPENDED, started_at, store, ctx.resolved_config)
                state.status = result.status
                state.resume_at = result.resume_at
                state.awaiting_variable = result.awaiting_variable
                await self._persist(state, store)
                logger.info(f"Run {state.run_id} suspended at {node.id} ({state.status.value})")
                await self._notify(state, "status", {
                    "status": state.status.value,
                    "node_id": node.id,
                    "resume_at": state.resume_at.isoformat() if state.resume_at else None,
                    "awaiting_variable": state.awaiting_variable,
                })
                return state

            if isinstance(result, Complete):
                log.record(node, Outcome.COMPLETED, started_at, store, ctx.resolved_config)
                state.status = RunStatus.COMPLETED
                state.completed_at = self.clock()
                await self._persist(state, store)
                logger.info(f"Run {state.run_id} completed")
                await self._notify(state, "status", {"status": state.status.value})
                return state

            log.record(node, Outcome.ERROR, started_at, store, ctx.resolved_config, error=str(result.error))
            return await self._fail(state, store, result.error)

    async def _execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        with tracer.start_as_current_span(f"flow.node.{node.type.value}") as span:
            span.set_attribute("flow.run_id", ctx.state.run_id)
            span.set_attribute("flow.id", ctx.state.flow_id or "")
            span.set_attribute("flow.node_id", node.id)
            span.set_attribute("flow.node_type", node.type.value)

            try:
                result = await get_executor(node.type).execute(node, ctx)
            except FlowEngineError as e:
                result = Fail(e)
            except Exception as e:
                logger.exception(f"Unexpected error in node {node.id} ({node.type.value})")
                result = Fail(NodeExecutionError(
                    f"Unexpected error in {node.type.value} node: {e}",
                    node_id=node.id,
                ))

            span.set_attribute("flow.result", type(result).__name__)
            if isinstance(result, Fail):
                span.set_attribute("flow.error", str(result.error))
            return result

    async def _fail(self, state: RunState, store: VariableStore, error: FlowEngineError) -> RunState:
        state.status = RunStatus.FAILED
        state.error = str(error)
        state.completed_at = self.clock()
        await self._persist(state, store)
        logger.error(f"Run {state.run_id} failed at {state.current_node_id}: {error}")
        await self._notify(state, "error", {"status": state.status.value, "error": state.error})
        return state

    async def _persist(self, state: RunState, store: Optional[VariableStore] = None):
        if store is not None:
            state.variables = store.snapshot()
        state.updated_at = self.clock()
        await self.run_store.save_run_state(state)

    async def _notify(self, state: RunState, update_type: str, data: Dict[str, Any]):
        for listener in self.listeners:
            try:
                await listener(state.run_id, update_type, data)
            except Exception as e:
                logger.warning(f"Run listener failed for {state.run_id}: {e}")
