"""
Shared fixtures for flow engine tests.
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flow_engine.adapters import (
    InMemoryResumeScheduler,
    InMemoryRunLock,
    RecordingContactMutator,
    RecordingMessageSender,
)
from flow_engine.core import Collaborators, HttpCaller, HttpResponse
from flow_engine.engine import FlowEngineService, FlowRunner
from flow_engine.executors import EngineSettings
from flow_engine.models import FlowDefinition
from flow_engine.persistence import InMemoryFlowStore, InMemoryRunStore


FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; advance it to simulate elapsed delays."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StubHttpCaller(HttpCaller):
    """Returns a canned response (or raises `error`) and records every call."""

    def __init__(self, response: Optional[HttpResponse] = None, error: Optional[Exception] = None):
        self.response = response or HttpResponse(status_code=200, body={"ok": True})
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def perform_http_call(self, method, url, headers, body, timeout_ms) -> HttpResponse:
        self.calls.append({
            "method": method,
            "url": url,
            "headers": headers,
            "body": body,
            "timeout_ms": timeout_ms,
        })
        if self.error is not None:
            raise self.error
        return self.response


def build_flow(nodes: List[Dict[str, Any]], edges: Optional[List[Dict[str, Any]]] = None, **fields) -> FlowDefinition:
    """
    Build a flow from builder-shaped node dicts.

    Without `edges`, nodes are chained in order with unlabeled edges.
    """
    if edges is None:
        edges = [
            {"id": f"e{i}", "source": a["id"], "target": b["id"]}
            for i, (a, b) in enumerate(zip(nodes, nodes[1:]), start=1)
        ]
    data = {"id": "flow-1", "name": "Test flow", "nodes": nodes, "edges": edges}
    data.update(fields)
    return FlowDefinition.model_validate(data)


@pytest.fixture
def make_flow():
    return build_flow


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingMessageSender:
    return RecordingMessageSender()


@pytest.fixture
def mutator() -> RecordingContactMutator:
    return RecordingContactMutator()


@pytest.fixture
def http_caller() -> StubHttpCaller:
    return StubHttpCaller()


@pytest.fixture
def scheduler() -> InMemoryResumeScheduler:
    return InMemoryResumeScheduler()


@pytest.fixture
def collaborators(sender, http_caller, mutator, scheduler) -> Collaborators:
    return Collaborators(
        message_sender=sender,
        http_caller=http_caller,
        contact_mutator=mutator,
        scheduler=scheduler,
    )


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def flow_store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def run_lock() -> InMemoryRunLock:
    return InMemoryRunLock()


@pytest.fixture
def runner(run_store, collaborators, settings, clock) -> FlowRunner:
    return FlowRunner(run_store, collaborators, settings, clock=clock)


@pytest.fixture
def service(flow_store, run_store, collaborators, run_lock, settings, clock) -> FlowEngineService:
    return FlowEngineService(
        flow_store=flow_store,
        run_store=run_store,
        collaborators=collaborators,
        run_lock=run_lock,
        settings=settings,
        clock=clock,
    )
