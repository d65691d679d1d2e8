"""
WhatsApp CRM conversation flow engine.
"""

from .engine import FlowEngineService, FlowRunner
from .models import FlowDefinition, RunState, TriggerContext, ResumeEvent, FlowRunResult

__version__ = "1.0.0"

__all__ = [
    "FlowEngineService",
    "FlowRunner",
    "FlowDefinition",
    "RunState",
    "TriggerContext",
    "ResumeEvent",
    "FlowRunResult",
]
