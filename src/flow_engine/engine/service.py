"""
Flow engine service: the operations exposed to the API, webhook ingress and
scheduler.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..adapters.memory import RecordingContactMutator, RecordingMessageSender
from ..core.errors import (
    FlowNotFoundError,
    FlowValidationError,
    RunLockedError,
    RunNotFoundError,
    RunNotResumableError,
)
from ..core.graph import FlowGraph
from ..core.interface import Collaborators, FlowStore, RunLock, RunStore
from ..executors import EngineSettings
from ..models.flow import FlowDefinition
from ..models.run import (
    EventKind,
    ExecutionReplay,
    FlowRunResult,
    ResumeEvent,
    RunMode,
    RunState,
    RunStatus,
    RunSummary,
    TriggerContext,
    utcnow,
)
from ..persistence.memory import InMemoryRunStore
from .runner import FlowRunner, RunListener, initial_variables
from .trace import build_replay
from .triggers import TriggerMatcher

logger = logging.getLogger(__name__)


class _PreviewClock:
    """Wall clock that preview runs fast-forward past their delays."""

    def __init__(self, clock: Callable[[], datetime]):
        self.clock = clock
        self.skipped = None

    def __call__(self) -> datetime:
        now = self.clock()
        return max(now, self.skipped) if self.skipped else now

    def skip_to(self, when: datetime):
        self.skipped = when


class FlowEngineService:
    """
    Entry point for starting, resuming, cancelling and testing flow runs.

    Resume and cancel hold the per-run lock so a duplicate webhook delivery
    and a firing timer can never advance the same run twice.
    """

    def __init__(
        self,
        flow_store: FlowStore,
        run_store: RunStore,
        collaborators: Collaborators,
        run_lock: RunLock,
        settings: Optional[EngineSettings] = None,
        listeners: Optional[List[RunListener]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.flow_store = flow_store
        self.run_store = run_store
        self.collaborators = collaborators
        self.run_lock = run_lock
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.matcher = TriggerMatcher()
        self.runner = FlowRunner(run_store, collaborators, self.settings, listeners, clock)

    # Lookups

    async def load_flow(self, flow_id: str, version: Optional[int] = None) -> FlowDefinition:
        flow = await self.flow_store.load_flow_definition(flow_id, version)
        if flow is None:
            suffix = f" v{version}" if version is not None else ""
            raise FlowNotFoundError(f"Flow {flow_id}{suffix} not found")
        return flow

    async def get_run(self, run_id: str) -> RunState:
        state = await self.run_store.load_run_state(run_id)
        if state is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return state

    async def list_runs(self, conversation_id: Optional[str] = None, limit: int = 100) -> List[RunSummary]:
        runs = await self.run_store.list_runs(conversation_id=conversation_id, limit=limit)
        return [
            RunSummary(
                run_id=state.run_id,
                flow_id=state.flow_id,
                conversation_id=state.conversation_id,
                status=state.status,
                current_node_id=state.current_node_id,
                created_at=state.created_at,
                updated_at=state.updated_at,
            )
            for state in runs
        ]

    async def get_replay(self, run_id: str) -> ExecutionReplay:
        state = await self.get_run(run_id)
        flow = None
        if state.flow_id:
            flow = await self.flow_store.load_flow_definition(state.flow_id, state.flow_version)
        return build_replay(state, flow)

    def validate_flow(self, flow: FlowDefinition) -> List[str]:
        """Problems that would stop the flow from running; empty when valid."""
        try:
            FlowGraph(flow)
        except FlowValidationError as e:
            return e.problems
        return []

    # Run lifecycle

    async def start_flow(self, flow_id: str, trigger: TriggerContext) -> FlowRunResult:
        """
        Start the latest version of a stored flow.

        Raises:
            FlowNotFoundError: if there is no such flow
        """
        flow = await self.load_flow(flow_id)
        return await self.start_definition(flow, trigger)

    async def start_definition(self, flow: FlowDefinition, trigger: TriggerContext) -> FlowRunResult:
        """Start a run of `flow`. A malformed flow is rejected without creating a run."""
        try:
            graph = FlowGraph(flow)
        except FlowValidationError as e:
            logger.warning(f"Rejected start of flow {flow.id}: {e}")
            return FlowRunResult.rejected(str(e), initial_variables(flow, trigger).snapshot())

        state = await self.runner.start(flow, trigger, graph=graph)
        return FlowRunResult.from_state(state)

    async def resume_flow(self, run_id: str, event: ResumeEvent) -> FlowRunResult:
        """
        Deliver an event to a suspended run.

        Raises:
            RunNotFoundError: if the run does not exist
            RunNotResumableError: if the run is not waiting for this event
            RunLockedError: if another worker is processing the run
        """
        async with self.run_lock.hold(run_id):
            state = await self.get_run(run_id)
            flow = await self.load_flow(state.flow_id, state.flow_version)
            state = await self.runner.resume(state, flow, event)
        return FlowRunResult.from_state(state)

    async def cancel_run(self, run_id: str, reason: str = "Cancelled") -> FlowRunResult:
        async with self.run_lock.hold(run_id):
            state = await self.get_run(run_id)
            state = await self.runner.cancel(state, reason)
        return FlowRunResult.from_state(state)

    async def test_flow(
        self,
        flow: FlowDefinition,
        variables: Optional[Dict[str, Any]] = None,
        inputs: Optional[Dict[str, Any]] = None,
        contact: Optional[Dict[str, Any]] = None,
    ) -> FlowRunResult:
        """
        Dry-run a flow for the builder's test panel.

        Messages and contact mutations are recorded, not delivered; unresolved
        placeholders stay literal. Delays elapse immediately, and replies to
        input/button nodes come from `inputs` keyed by variable name. The run
        stops waiting at the first reply that `inputs` does not provide.
        """
        sender = RecordingMessageSender()
        collaborators = Collaborators(
            message_sender=sender,
            http_caller=self.collaborators.http_caller,
            contact_mutator=RecordingContactMutator(),
            scheduler=None,
        )
        clock = _PreviewClock(self.clock)
        runner = FlowRunner(InMemoryRunStore(), collaborators, self.settings, clock=clock)
        trigger = TriggerContext(
            conversation_id="preview",
            contact_id=(contact or {}).get("id", "preview"),
            contact=contact or {},
            variables=variables or {},
            mode=RunMode.PREVIEW,
        )

        try:
            graph = FlowGraph(flow)
        except FlowValidationError as e:
            return FlowRunResult.rejected(str(e), initial_variables(flow, trigger).snapshot())

        inputs = inputs or {}
        state = await runner.start(flow, trigger, graph=graph)
        for _ in range(self.settings.max_node_visits):
            if state.status == RunStatus.WAITING_DELAY:
                if state.resume_at:
                    clock.skip_to(state.resume_at)
                event = ResumeEvent(kind=EventKind.TIMER, received_at=clock())
            elif state.status == RunStatus.WAITING_INPUT and state.awaiting_variable in inputs:
                event = ResumeEvent(kind=EventKind.INPUT, value=inputs[state.awaiting_variable])
            else:
                break
            state = await runner.resume(state, flow, event)

        result = FlowRunResult.from_state(state)
        result.outbound = sender.sent
        return result

    # Ingress

    async def handle_inbound_message(
        self,
        conversation_id: str,
        contact_id: Optional[str],
        text: str,
        contact: Optional[Dict[str, Any]] = None,
        is_new_conversation: bool = False,
        kind: EventKind = EventKind.INPUT,
    ) -> Optional[FlowRunResult]:
        """
        Route an inbound WhatsApp message.

        A run of this conversation waiting for a reply gets the message;
        otherwise the first active flow whose trigger matches is started.
        Returns None when nothing handles the message.
        """
        waiting = await self.run_store.find_waiting_run(conversation_id)
        if waiting is not None:
            return await self.resume_flow(waiting.run_id, ResumeEvent(kind=kind, value=text))

        flow = self.matcher.match_message(
            await self.flow_store.list_active_flows(), text, is_new_conversation,
        )
        if flow is None:
            return None

        logger.info(f"Triggering flow {flow.id} for conversation {conversation_id}")
        trigger = TriggerContext(
            conversation_id=conversation_id,
            contact_id=contact_id,
            contact=contact or {},
            message=text,
            variables={"trigger_message": text},
        )
        return await self.start_definition(flow, trigger)

    async def handle_webhook_event(
        self,
        payload: Dict[str, Any],
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> List[FlowRunResult]:
        """Start every active webhook-triggered flow whose conditions match `payload`."""
        flows = self.matcher.match_webhook(await self.flow_store.list_active_flows(), payload)
        results = []
        for flow in flows:
            logger.info(f"Triggering webhook flow {flow.id}")
            trigger = TriggerContext(
                conversation_id=conversation_id,
                contact_id=contact_id,
                variables={"webhook": payload},
            )
            results.append(await self.start_definition(flow, trigger))
        return results

    async def resume_due_runs(self, now: Optional[datetime] = None, limit: int = 100) -> List[FlowRunResult]:
        """
        Resume every delayed run that is due. Called by an external tick.

        A run held by another worker is rescheduled for the next tick.
        """
        scheduler = self.collaborators.scheduler
        if scheduler is None:
            return []

        now = now or self.clock()
        results = []
        for run_id in await scheduler.claim_due_runs(now, limit):
            try:
                results.append(await self.resume_flow(run_id, ResumeEvent(kind=EventKind.TIMER, received_at=now)))
            except RunLockedError:
                logger.info(f"Run {run_id} is locked; retrying on next tick")
                await scheduler.schedule_resume(run_id, now)
            except (RunNotFoundError, RunNotResumableError, FlowNotFoundError) as e:
                logger.warning(f"Dropping scheduled resume of run {run_id}: {e}")
        return results
