"""
Node executor contract.

An executor runs one node and returns what the runner should do next:
advance along an edge, suspend the run, complete it, or fail it. Executors
never touch persistence; the runner owns RunState transitions.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Type, Union

from ..core.conditions import ConditionEvaluator
from ..core.errors import FlowEngineError, MutationError, NodeExecutionError, SendFailed
from ..core.graph import FlowGraph
from ..core.interface import Collaborators, ContactOperation, MessageKind
from ..core.resolver import TemplateResolver, UnresolvedPolicy
from ..core.variables import VariableStore
from ..models.flow import Node, NodeType
from ..models.run import ResumeEvent, RunMode, RunState, RunStatus, utcnow

logger = logging.getLogger(__name__)


# Execution results

@dataclass
class Advance:
    """Follow the outgoing edge labelled `label` (None for the unlabeled edge)."""
    label: Optional[str] = None
    fallback_unlabeled: bool = False
    target_node_id: Optional[str] = None


@dataclass
class Suspend:
    """Halt and persist until an external event arrives."""
    status: RunStatus
    resume_at: Optional[datetime] = None
    awaiting_variable: Optional[str] = None


@dataclass
class Complete:
    pass


@dataclass
class Fail:
    error: FlowEngineError


ExecutionResult = Union[Advance, Suspend, Complete, Fail]


@dataclass
class EngineSettings:
    """Engine limits, normally taken from `flow_engine.config`."""
    max_node_visits: int = 1000
    input_max_attempts: int = 3
    default_api_timeout_ms: int = 30000


@dataclass
class RunContext:
    """Everything an executor may read or touch while running a node."""
    state: RunState
    graph: FlowGraph
    store: VariableStore
    collaborators: Collaborators
    settings: EngineSettings = field(default_factory=EngineSettings)
    event: Optional[ResumeEvent] = None
    clock: Callable[[], datetime] = utcnow
    resolved_config: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        policy = UnresolvedPolicy.LITERAL if self.state.mode == RunMode.PREVIEW else UnresolvedPolicy.EMPTY
        self.resolver = TemplateResolver(policy)
        self.evaluator = ConditionEvaluator()

    @property
    def conversation_id(self) -> Optional[str]:
        return self.state.conversation_id

    @property
    def contact_id(self) -> Optional[str]:
        return self.state.contact_id

    def take_event(self) -> Optional[ResumeEvent]:
        """Consume the pending resume event. Only the resumed node sees it."""
        event, self.event = self.event, None
        return event

    def note(self, **resolved: Any) -> None:
        """Record resolved configuration for the current node's trace entry."""
        self.resolved_config.update(resolved)

    def resolve(self, text: Optional[str]) -> str:
        return self.resolver.resolve(text or "", self.store)

    async def send(self, node: Node, content: Any, kind: MessageKind = MessageKind.TEXT) -> str:
        """
        Send through the message collaborator.

        Raises:
            SendFailed: if the collaborator rejects the message
        """
        try:
            return await self.collaborators.message_sender.send_message(self.conversation_id, content, kind)
        except Exception as e:
            logger.error(f"Send failed at node {node.id}: {e}")
            raise SendFailed(f"Failed to send {kind.value} message: {e}", node_id=node.id) from e

    async def mutate(self, node: Node, operation: ContactOperation) -> Optional[Dict[str, Any]]:
        """
        Apply a contact mutation.

        Raises:
            MutationError: if the collaborator rejects the operation
        """
        if operation.conversation_id is None:
            operation.conversation_id = self.conversation_id
        try:
            return await self.collaborators.contact_mutator.mutate_contact(self.contact_id, operation)
        except Exception as e:
            logger.error(f"Contact mutation {operation.type.value} failed at node {node.id}: {e}")
            raise MutationError(f"Contact {operation.type.value} failed: {e}", node_id=node.id) from e


class NodeExecutor(ABC):
    """Base class for per-type node executors."""

    @abstractmethod
    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        """
        Execute a node.

        Collaborator failures are returned as Fail with the matching engine
        error; anything raised is treated by the runner as unexpected.
        """
        pass


# Registry

EXECUTORS: Dict[NodeType, NodeExecutor] = {}


def register_executor(*node_types: NodeType):
    """Class decorator registering an executor for one or more node types."""
    def decorator(cls: Type[NodeExecutor]) -> Type[NodeExecutor]:
        instance = cls()
        for node_type in node_types:
            EXECUTORS[node_type] = instance
        return cls
    return decorator


def get_executor(node_type: NodeType) -> NodeExecutor:
    executor = EXECUTORS.get(node_type)
    if executor is None:
        raise NodeExecutionError(f"No executor registered for node type '{node_type}'")
    return executor
