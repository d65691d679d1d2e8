"""
Flow engine persistence layer.
"""

from .repository import FlowRepository
from .memory import InMemoryFlowStore, InMemoryRunStore

__all__ = ["FlowRepository", "InMemoryFlowStore", "InMemoryRunStore"]
