"""
Node executors, one per node type.

Importing this package registers every executor.
"""

from .base import (
    Advance,
    Suspend,
    Complete,
    Fail,
    ExecutionResult,
    EngineSettings,
    RunContext,
    NodeExecutor,
    EXECUTORS,
    register_executor,
    get_executor,
)
from . import messaging, control, http, contact  # noqa: F401

__all__ = [
    "Advance",
    "Suspend",
    "Complete",
    "Fail",
    "ExecutionResult",
    "EngineSettings",
    "RunContext",
    "NodeExecutor",
    "EXECUTORS",
    "register_executor",
    "get_executor",
]
