"""
Run orchestration: state machine, trace, triggers and the service facade.
"""

from .runner import FlowRunner, RunListener, initial_variables
from .trace import ExecutionTrace, build_replay
from .triggers import TriggerMatcher, keyword_matches, webhook_conditions_match
from .service import FlowEngineService

__all__ = [
    "FlowRunner",
    "RunListener",
    "initial_variables",
    "ExecutionTrace",
    "build_replay",
    "TriggerMatcher",
    "keyword_matches",
    "webhook_conditions_match",
    "FlowEngineService",
]
