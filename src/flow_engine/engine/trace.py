"""
Execution log entries and run replay.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..core.variables import VariableStore
from ..models.flow import FlowDefinition, Node
from ..models.run import (
    ExecutionLogEntry,
    ExecutionReplay,
    Outcome,
    ReplayStep,
    RunState,
    utcnow,
)

logger = logging.getLogger(__name__)


class ExecutionTrace:
    """
    Append-only trace of node visits for one run.

    Entries are written onto the RunState so they are persisted with it.
    """

    def __init__(self, state: RunState, clock: Callable[[], datetime] = utcnow):
        self.state = state
        self.clock = clock

    def record(
        self,
        node: Node,
        outcome: Outcome,
        started_at: datetime,
        store: VariableStore,
        resolved_config: Optional[Dict[str, Any]] = None,
        branch: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ExecutionLogEntry:
        """Append an entry for a finished node visit."""
        now = self.clock()
        entry = ExecutionLogEntry(
            node_id=node.id,
            node_type=node.type.value,
            node_label=node.label,
            resolved_config=dict(resolved_config or {}),
            outcome=outcome,
            branch=branch,
            error=error,
            timestamp=now,
            duration_ms=max(0, int((now - started_at).total_seconds() * 1000)),
            context_snapshot=store.snapshot(),
        )
        self.state.logs.append(entry)
        logger.debug(f"Run {self.state.run_id}: {node.id} ({node.type.value}) -> {outcome.value}")
        return entry

    @property
    def last(self) -> Optional[ExecutionLogEntry]:
        return self.state.logs[-1] if self.state.logs else None


def build_replay(state: RunState, flow: Optional[FlowDefinition] = None) -> ExecutionReplay:
    """
    Step-by-step replay of a run, one step per recorded node visit.

    Args:
        state: Run to replay
        flow: Definition the run executed, for names and the builder graph

    Returns:
        ExecutionReplay
    """
    steps = [
        ReplayStep(
            step=position,
            node_id=entry.node_id,
            node_type=entry.node_type,
            node_label=entry.node_label,
            outcome=entry.outcome,
            branch=entry.branch,
            error=entry.error,
            resolved_config=entry.resolved_config,
            timestamp=entry.timestamp,
            duration_ms=entry.duration_ms,
            context=entry.context_snapshot,
        )
        for position, entry in enumerate(state.logs, start=1)
    ]

    return ExecutionReplay(
        run_id=state.run_id,
        flow_id=state.flow_id,
        flow_name=flow.name if flow else None,
        flow_version=state.flow_version,
        flow_data=flow.export() if flow else None,
        status=state.status,
        contact_id=state.contact_id,
        steps=steps,
        final_context=state.variables,
        error=state.error,
        started_at=state.created_at,
        completed_at=state.completed_at,
    )
