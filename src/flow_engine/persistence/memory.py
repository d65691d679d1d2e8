"""
In-process flow and run stores.

Used for preview runs, tests and single-process deployments without
PostgreSQL.
"""

import asyncio
import uuid
from typing import Dict, List, Optional

from ..core.interface import FlowStore, RunStore
from ..models.flow import FlowDefinition, FlowStatus
from ..models.run import RunState, RunStatus, utcnow


class InMemoryFlowStore(FlowStore):
    """Versioned flow definitions kept in a dict."""

    def __init__(self, flows: Optional[List[FlowDefinition]] = None):
        self._versions: Dict[str, Dict[int, FlowDefinition]] = {}
        self._lock = asyncio.Lock()
        for flow in flows or []:
            self._put(flow.model_copy(deep=True))

    def _put(self, flow: FlowDefinition):
        self._versions.setdefault(flow.id, {})[flow.version] = flow

    async def load_flow_definition(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        versions = self._versions.get(flow_id)
        if not versions:
            return None
        flow = versions.get(version if version is not None else max(versions))
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self) -> List[FlowDefinition]:
        latest = [versions[max(versions)] for versions in self._versions.values() if versions]
        return [flow.model_copy(deep=True) for flow in sorted(latest, key=lambda f: f.name or f.id)]

    async def list_active_flows(self) -> List[FlowDefinition]:
        return [flow for flow in await self.list_flows() if flow.status == FlowStatus.ACTIVE]

    async def save_flow_definition(self, flow: FlowDefinition) -> FlowDefinition:
        async with self._lock:
            now = utcnow()
            flow = flow.model_copy(deep=True)
            if not flow.id:
                flow.id = str(uuid.uuid4())
            versions = self._versions.get(flow.id, {})
            flow.version = max(versions) + 1 if versions else flow.version
            flow.created_at = versions[min(versions)].created_at if versions else now
            flow.updated_at = now
            self._put(flow)
            return flow.model_copy(deep=True)

    async def delete_flow(self, flow_id: str) -> bool:
        async with self._lock:
            return self._versions.pop(flow_id, None) is not None


class InMemoryRunStore(RunStore):
    """Run states kept in a dict, copied on every read and write."""

    def __init__(self):
        self._runs: Dict[str, RunState] = {}

    async def load_run_state(self, run_id: str) -> Optional[RunState]:
        state = self._runs.get(run_id)
        return state.model_copy(deep=True) if state else None

    async def save_run_state(self, state: RunState) -> None:
        self._runs[state.run_id] = state.model_copy(deep=True)

    async def find_waiting_run(self, conversation_id: str) -> Optional[RunState]:
        waiting = [
            state for state in self._runs.values()
            if state.conversation_id == conversation_id and state.status == RunStatus.WAITING_INPUT
        ]
        if not waiting:
            return None
        return max(waiting, key=lambda s: s.updated_at).model_copy(deep=True)

    async def list_runs(self, conversation_id: Optional[str] = None, limit: int = 100) -> List[RunState]:
        runs = [
            state for state in self._runs.values()
            if conversation_id is None or state.conversation_id == conversation_id
        ]
        runs.sort(key=lambda s: s.created_at, reverse=True)
        return [state.model_copy(deep=True) for state in runs[:limit]]
