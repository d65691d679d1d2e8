"""
Unit tests for the flow run state machine.
"""
import httpx
import pytest
from datetime import datetime, timedelta, timezone

from flow_engine.adapters import HttpxCaller
from flow_engine.core import Collaborators, FlowValidationError, RunNotResumableError
from flow_engine.engine import FlowRunner
from flow_engine.executors import EXECUTORS, EngineSettings, NodeExecutor
from flow_engine.models import (
    EventKind,
    NodeType,
    Outcome,
    ResumeEvent,
    RunMode,
    RunStatus,
    TriggerContext,
)


START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end"}


def message(node_id, text):
    return {"id": node_id, "type": "message", "config": {"message": text}}


class TestScenarios:
    """End-to-end runs over small flows."""

    @pytest.mark.asyncio
    async def test_message_flow_completes(self, runner, make_flow, sender):
        flow = make_flow([START, message("message", "Hi {{contact.name}}"), END])
        state = await runner.start(flow, TriggerContext(conversation_id="c1", contact={"name": "Ana"}))

        assert state.status == RunStatus.COMPLETED
        assert state.execution_path == ["start", "message", "end"]
        assert state.logs[1].resolved_config == {"message": "Hi Ana"}
        assert [entry.outcome for entry in state.logs] == [Outcome.SUCCESS, Outcome.SUCCESS, Outcome.COMPLETED]
        assert sender.sent[0]["content"] == "Hi Ana"
        assert state.completed_at is not None

    @pytest.mark.asyncio
    async def test_condition_takes_true_edge(self, runner, make_flow):
        flow = make_flow(
            [
                START,
                {
                    "id": "check",
                    "type": "condition",
                    "config": {"logic": "AND", "rules": [{"variable": "{{age}}", "operator": "greater_than", "value": "18"}]},
                },
                message("A", "adult"),
                message("B", "minor"),
                END,
            ],
            edges=[
                {"id": "e1", "source": "start", "target": "check"},
                {"id": "e2", "source": "check", "target": "A", "sourceHandle": "true"},
                {"id": "e3", "source": "check", "target": "B", "sourceHandle": "false"},
                {"id": "e4", "source": "A", "target": "end"},
                {"id": "e5", "source": "B", "target": "end"},
            ],
        )
        state = await runner.start(flow, TriggerContext(variables={"age": "20"}))

        assert state.execution_path == ["start", "check", "A", "end"]
        assert state.logs[1].outcome == Outcome.BRANCH
        assert state.logs[1].branch == "true"

    @pytest.mark.asyncio
    async def test_delay_suspends_and_resumes(self, runner, make_flow, clock, scheduler, sender):
        flow = make_flow([
            START,
            {"id": "wait", "type": "delay", "config": {"duration": 5, "unit": "minutes"}},
            message("after", "Still there?"),
            END,
        ])
        state = await runner.start(flow, TriggerContext(conversation_id="c1"))

        assert state.status == RunStatus.WAITING_DELAY
        assert state.resume_at == clock() + timedelta(seconds=300)
        assert state.current_node_id == "wait"
        assert scheduler.due[state.run_id] == state.resume_at
        assert sender.sent == []

        clock.advance(minutes=5)
        state = await runner.resume(state, flow, ResumeEvent(kind=EventKind.TIMER, received_at=clock()))

        assert state.status == RunStatus.COMPLETED
        assert state.execution_path == ["start", "wait", "after", "end"]
        assert sender.sent[0]["content"] == "Still there?"

    @pytest.mark.asyncio
    async def test_input_suspends_and_resumes(self, runner, make_flow):
        flow = make_flow([START, {"id": "ask", "type": "input", "config": {"variableName": "favColor"}}, END])
        state = await runner.start(flow, TriggerContext(conversation_id="c1"))

        assert state.status == RunStatus.WAITING_INPUT
        assert state.awaiting_variable == "favColor"

        state = await runner.resume(state, flow, ResumeEvent(value="blue"))

        assert state.status == RunStatus.COMPLETED
        assert state.variables["favColor"] == "blue"
        assert state.variables["user"]["input"] == "blue"
        assert state.awaiting_variable is None

    @pytest.mark.asyncio
    async def test_api_bad_host_fails(self, run_store, make_flow, sender, mutator):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Name or service not known", request=request)

        collaborators = Collaborators(
            message_sender=sender,
            http_caller=HttpxCaller(transport=httpx.MockTransport(handler)),
            contact_mutator=mutator,
        )
        runner = FlowRunner(run_store, collaborators)
        flow = make_flow([
            START,
            {"id": "api", "type": "api", "config": {"url": "https://no-such-host.invalid/x", "timeout": 1000}},
            END,
        ])
        state = await runner.start(flow, TriggerContext())

        assert state.status == RunStatus.FAILED
        assert "APICallFailed" in state.error
        assert state.execution_path == ["start", "api"]
        assert state.logs[-1].node_id == "api"
        assert state.logs[-1].outcome == Outcome.ERROR
        assert "APICallFailed" in state.logs[-1].error


class TestTermination:
    """Runs never loop unbounded."""

    @pytest.mark.asyncio
    async def test_jump_cycle_hits_visit_cap(self, run_store, collaborators, clock, make_flow):
        runner = FlowRunner(run_store, collaborators, EngineSettings(max_node_visits=25), clock=clock)
        flow = make_flow(
            [START, message("ping", "ping"), {"id": "loop", "type": "jump", "config": {"targetNodeId": "ping"}}],
        )
        state = await runner.start(flow, TriggerContext())

        assert state.status == RunStatus.FAILED
        assert state.error.startswith("InfiniteLoopSuspected:")
        assert len(state.logs) == 26
        assert state.logs[-1].outcome == Outcome.ERROR

    @pytest.mark.asyncio
    async def test_missing_edge_fails_run(self, runner, make_flow):
        flow = make_flow([START, message("orphan", "bye"), END], edges=[
            {"id": "e1", "source": "start", "target": "orphan"},
        ])
        state = await runner.start(flow, TriggerContext())

        assert state.status == RunStatus.FAILED
        assert state.error.startswith("NoMatchingEdge:")
        assert state.execution_path == ["start", "orphan"]

    @pytest.mark.asyncio
    async def test_malformed_flow_rejected(self, runner, make_flow, run_store):
        with pytest.raises(FlowValidationError):
            await runner.start(make_flow([message("m", "x"), END]), TriggerContext())
        assert await run_store.list_runs() == []

    @pytest.mark.asyncio
    async def test_unexpected_executor_error(self, runner, make_flow, monkeypatch):
        class Exploding(NodeExecutor):
            async def execute(self, node, ctx):
                raise KeyError("boom")

        monkeypatch.setitem(EXECUTORS, NodeType.MESSAGE, Exploding())
        state = await runner.start(make_flow([START, message("m", "x"), END]), TriggerContext())

        assert state.status == RunStatus.FAILED
        assert state.error.startswith("NodeExecutionError:")


class TestResume:
    """Resume rules and idempotence."""

    @pytest.fixture
    def input_flow(self, make_flow):
        return make_flow([
            START,
            {"id": "ask", "type": "input", "config": {"variableName": "email", "inputType": "email"}},
            message("thanks", "Thanks {{email}}"),
            END,
        ])

    @pytest.mark.asyncio
    async def test_resume_completed_run_rejected(self, runner, input_flow):
        state = await runner.start(input_flow, TriggerContext())
        state = await runner.resume(state, input_flow, ResumeEvent(value="ana@example.com"))
        assert state.status == RunStatus.COMPLETED
        path = list(state.execution_path)

        with pytest.raises(RunNotResumableError):
            await runner.resume(state, input_flow, ResumeEvent(value="again@example.com"))
        assert state.execution_path == path

    @pytest.mark.asyncio
    async def test_timer_cannot_resume_input(self, runner, input_flow, clock):
        state = await runner.start(input_flow, TriggerContext())
        with pytest.raises(RunNotResumableError):
            await runner.resume(state, input_flow, ResumeEvent(kind=EventKind.TIMER, received_at=clock()))

    @pytest.mark.asyncio
    async def test_early_timer_rejected(self, runner, make_flow, clock):
        flow = make_flow([START, {"id": "wait", "type": "delay", "config": {"duration": 1, "unit": "days"}}, END])
        state = await runner.start(flow, TriggerContext())

        clock.advance(hours=23)
        with pytest.raises(RunNotResumableError):
            await runner.resume(state, flow, ResumeEvent(kind=EventKind.TIMER, received_at=clock()))
        assert state.status == RunStatus.WAITING_DELAY

    @pytest.mark.asyncio
    async def test_future_timestamp_does_not_skip_delay(self, runner, make_flow, clock):
        flow = make_flow([START, {"id": "wait", "type": "delay", "config": {"duration": 3, "unit": "days"}}, END])
        state = await runner.start(flow, TriggerContext())

        with pytest.raises(RunNotResumableError):
            await runner.resume(state, flow, ResumeEvent(
                kind=EventKind.TIMER,
                received_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
            ))
        assert state.status == RunStatus.WAITING_DELAY

        clock.advance(days=3)
        state = await runner.resume(state, flow, ResumeEvent(
            kind=EventKind.TIMER,
            received_at=datetime(2099, 1, 1, tzinfo=timezone.utc),
        ))
        assert state.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_naive_timestamp_treated_as_utc(self, runner, make_flow, clock):
        flow = make_flow([START, {"id": "wait", "type": "delay", "config": {"duration": 5, "unit": "minutes"}}, END])
        state = await runner.start(flow, TriggerContext())

        naive = datetime(2099, 1, 1)
        event = ResumeEvent(kind=EventKind.TIMER, received_at=naive)
        assert event.received_at == naive.replace(tzinfo=timezone.utc)
        with pytest.raises(RunNotResumableError):
            await runner.resume(state, flow, event)

        clock.advance(minutes=5)
        event = ResumeEvent.model_validate({"kind": "timer", "received_at": clock().replace(tzinfo=None).isoformat()})
        state = await runner.resume(state, flow, event)
        assert state.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_reply_keeps_waiting(self, runner, input_flow, sender):
        state = await runner.start(input_flow, TriggerContext())
        state = await runner.resume(state, input_flow, ResumeEvent(value="not-an-email"))

        assert state.status == RunStatus.WAITING_INPUT
        assert state.current_node_id == "ask"
        assert state.attempts == 1
        assert sender.sent[-1]["content"] == "Invalid input. Please try again."

        state = await runner.resume(state, input_flow, ResumeEvent(value="ana@example.com"))
        assert state.status == RunStatus.COMPLETED
        assert sender.sent[-1]["content"] == "Thanks ana@example.com"

    @pytest.mark.asyncio
    async def test_retries_exhausted_fail_run(self, runner, input_flow, settings):
        state = await runner.start(input_flow, TriggerContext())
        for _ in range(settings.input_max_attempts):
            state = await runner.resume(state, input_flow, ResumeEvent(value="nope"))

        assert state.status == RunStatus.FAILED
        assert state.error.startswith("InputRetriesExhausted:")

    @pytest.mark.asyncio
    async def test_resume_on_another_worker(self, run_store, collaborators, clock, input_flow):
        first = FlowRunner(run_store, collaborators, clock=clock)
        started = await first.start(input_flow, TriggerContext(conversation_id="c1"))

        second = FlowRunner(run_store, collaborators, clock=clock)
        persisted = await run_store.load_run_state(started.run_id)
        state = await second.resume(persisted, input_flow, ResumeEvent(value="ana@example.com"))

        assert state.status == RunStatus.COMPLETED
        assert state.execution_path == ["start", "ask", "thanks", "end"]
        assert len(state.logs) == 5
        assert (await run_store.load_run_state(started.run_id)).status == RunStatus.COMPLETED


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_waiting_delay_withdraws_schedule(self, runner, make_flow, scheduler):
        flow = make_flow([START, {"id": "wait", "type": "delay", "config": {"duration": 1, "unit": "hours"}}, END])
        state = await runner.start(flow, TriggerContext())
        assert state.run_id in scheduler.due

        state = await runner.cancel(state, "Contact opted out")

        assert state.status == RunStatus.CANCELLED
        assert state.error == "Contact opted out"
        assert state.resume_at is None
        assert scheduler.due == {}

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, runner, make_flow):
        state = await runner.start(make_flow([START, END]), TriggerContext())
        assert (await runner.cancel(state)).status == RunStatus.COMPLETED


class TestObservability:
    """Listeners, variables seeding and preview mode."""

    @pytest.mark.asyncio
    async def test_listeners_receive_updates(self, runner, make_flow):
        updates = []

        async def listener(run_id, update_type, data):
            updates.append((update_type, data.get("status"), data.get("node_id")))

        async def broken(run_id, update_type, data):
            raise RuntimeError("socket closed")

        runner.add_listener(broken)
        runner.add_listener(listener)
        state = await runner.start(make_flow([START, message("m", "hi"), END]), TriggerContext())

        assert state.status == RunStatus.COMPLETED
        assert updates == [
            ("status", "running", None),
            ("node_complete", None, "start"),
            ("node_complete", None, "m"),
            ("status", "completed", None),
        ]

    @pytest.mark.asyncio
    async def test_initial_variables(self, runner, make_flow):
        flow = make_flow([START, END], version=3)
        state = await runner.start(flow, TriggerContext(
            conversation_id="c1",
            contact_id="k1",
            contact={"name": "Ana"},
            message="pricing",
            variables={"campaign": "spring"},
        ))

        assert state.variables["contact"] == {"name": "Ana", "id": "k1"}
        assert state.variables["conversation"] == {"id": "c1"}
        assert state.variables["user"] == {"input": "pricing"}
        assert state.variables["flow"] == {"id": "flow-1", "name": "Test flow", "version": 3}
        assert state.variables["campaign"] == "spring"
        assert state.flow_version == 3

    @pytest.mark.asyncio
    async def test_log_snapshots_are_per_step(self, runner, make_flow):
        flow = make_flow([START, {"id": "ask", "type": "input", "config": {"variableName": "name"}}, END])
        state = await runner.start(flow, TriggerContext())
        state = await runner.resume(state, flow, ResumeEvent(value="Ana"))

        assert "name" not in state.logs[1].context_snapshot
        assert state.logs[2].context_snapshot["name"] == "Ana"

    @pytest.mark.asyncio
    async def test_preview_mode(self, runner, make_flow, sender):
        flow = make_flow([START, message("m", "Hi {{contact.name}}"), END])
        await runner.start(flow, TriggerContext(mode=RunMode.PREVIEW))
        assert sender.sent[0]["content"] == "Hi {{contact.name}}"
