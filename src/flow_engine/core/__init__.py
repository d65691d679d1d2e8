"""
Engine core: variables, templating, conditions, graph validation and the
collaborator interfaces.
"""

from .errors import (
    FlowEngineError,
    FlowValidationError,
    SendFailed,
    APICallFailed,
    MutationError,
    NoMatchingEdge,
    InfiniteLoopSuspected,
    InputValidationFailed,
    InputRetriesExhausted,
    NodeExecutionError,
    VariableError,
    FlowNotFoundError,
    RunNotFoundError,
    RunNotResumableError,
    RunLockedError,
)
from .variables import VariableStore
from .resolver import TemplateResolver, UnresolvedPolicy
from .conditions import ConditionEvaluator
from .graph import FlowGraph
from .interface import (
    FlowStore,
    RunStore,
    MessageSender,
    MessageKind,
    HttpCaller,
    HttpResponse,
    ContactMutator,
    ContactOperation,
    ContactOperationType,
    ResumeScheduler,
    RunLock,
    Collaborators,
)

__all__ = [
    "FlowEngineError",
    "FlowValidationError",
    "SendFailed",
    "APICallFailed",
    "MutationError",
    "NoMatchingEdge",
    "InfiniteLoopSuspected",
    "InputValidationFailed",
    "InputRetriesExhausted",
    "NodeExecutionError",
    "VariableError",
    "FlowNotFoundError",
    "RunNotFoundError",
    "RunNotResumableError",
    "RunLockedError",
    "VariableStore",
    "TemplateResolver",
    "UnresolvedPolicy",
    "ConditionEvaluator",
    "FlowGraph",
    "FlowStore",
    "RunStore",
    "MessageSender",
    "MessageKind",
    "HttpCaller",
    "HttpResponse",
    "ContactMutator",
    "ContactOperation",
    "ContactOperationType",
    "ResumeScheduler",
    "RunLock",
    "Collaborators",
]
