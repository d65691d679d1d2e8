"""
Flow engine data models.
"""

from .flow import (
    FlowDefinition,
    FlowStatus,
    Node,
    NodeType,
    NodeConfig,
    Edge,
    Rule,
    Logic,
    Operator,
    TriggerConfig,
    TriggerType,
    NODE_CONFIG_TYPES,
)
from .run import (
    RunState,
    RunStatus,
    RunMode,
    RunSummary,
    Outcome,
    EventKind,
    ExecutionLogEntry,
    TriggerContext,
    ResumeEvent,
    FlowRunResult,
    ReplayStep,
    ExecutionReplay,
)
from .requests import (
    InboundMessage,
    FlowTestRequest,
    WebhookTriggerRequest,
    ValidationReport,
    FlowSummary,
)

__all__ = [
    "FlowDefinition",
    "FlowStatus",
    "Node",
    "NodeType",
    "NodeConfig",
    "Edge",
    "Rule",
    "Logic",
    "Operator",
    "TriggerConfig",
    "TriggerType",
    "NODE_CONFIG_TYPES",
    "RunState",
    "RunStatus",
    "RunMode",
    "RunSummary",
    "Outcome",
    "EventKind",
    "ExecutionLogEntry",
    "TriggerContext",
    "ResumeEvent",
    "FlowRunResult",
    "ReplayStep",
    "ExecutionReplay",
    "InboundMessage",
    "FlowTestRequest",
    "WebhookTriggerRequest",
    "ValidationReport",
    "FlowSummary",
]
