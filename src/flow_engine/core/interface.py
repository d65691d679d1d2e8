"""
Collaborator interfaces consumed by the engine.

Everything with a side effect outside the run (storage, messaging, HTTP,
contact records, timers, locking) sits behind one of these interfaces so the
engine can be embedded in a request handler, a worker, or a test.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from ..models.flow import FlowDefinition
from ..models.run import RunState


class MessageKind(str, Enum):
    """Outbound message kinds."""
    TEXT = "text"
    TEMPLATE = "template"
    BUTTONS = "buttons"


@dataclass
class HttpResponse:
    """Response from an outbound HTTP call."""
    status_code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ContactOperationType(str, Enum):
    ASSIGN = "assign"
    ADD_TAGS = "add_tags"
    REMOVE_TAGS = "remove_tags"
    UPDATE_FIELDS = "update_fields"


@dataclass
class ContactOperation:
    """A mutation applied to a contact/conversation record."""
    type: ContactOperationType
    conversation_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class FlowStore(ABC):
    """Source of flow definitions. Every save creates a new immutable version."""

    @abstractmethod
    async def load_flow_definition(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        """Return the flow (latest version unless `version` is given) or None."""
        pass

    @abstractmethod
    async def list_active_flows(self) -> List[FlowDefinition]:
        """Latest version of every active flow, in trigger priority order."""
        pass

    @abstractmethod
    async def save_flow_definition(self, flow: FlowDefinition) -> FlowDefinition:
        """Store `flow` as a new version (assigning an id if it has none) and return it."""
        pass

    @abstractmethod
    async def list_flows(self) -> List[FlowDefinition]:
        """Latest version of every flow."""
        pass

    @abstractmethod
    async def delete_flow(self, flow_id: str) -> bool:
        pass


class RunStore(ABC):
    """Durable run state."""

    @abstractmethod
    async def load_run_state(self, run_id: str) -> Optional[RunState]:
        pass

    @abstractmethod
    async def save_run_state(self, state: RunState) -> None:
        pass

    @abstractmethod
    async def find_waiting_run(self, conversation_id: str) -> Optional[RunState]:
        """The conversation's most recent run in waiting_input, if any."""
        pass

    @abstractmethod
    async def list_runs(self, conversation_id: Optional[str] = None, limit: int = 100) -> List[RunState]:
        pass


class MessageSender(ABC):
    """Outbound messaging channel."""

    @abstractmethod
    async def send_message(self, conversation_id: Optional[str], content: Any, kind: MessageKind) -> str:
        """
        Send a message to the conversation.

        Returns:
            Provider message id

        Raises:
            Exception: on any delivery failure
        """
        pass


class HttpCaller(ABC):
    """Outbound HTTP for API and webhook nodes."""

    @abstractmethod
    async def perform_http_call(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any,
        timeout_ms: int,
    ) -> HttpResponse:
        """
        Perform one HTTP call with a hard deadline.

        Raises:
            TimeoutError: when the deadline passes
            ConnectionError: on transport failures
        """
        pass


class ContactMutator(ABC):
    """Contact/conversation record updates."""

    @abstractmethod
    async def mutate_contact(self, contact_id: Optional[str], operation: ContactOperation) -> Optional[Dict[str, Any]]:
        """
        Apply `operation`. May return the updated contact fields.

        Raises:
            Exception: when the mutation is rejected
        """
        pass


class ResumeScheduler(ABC):
    """Durable record of when delayed runs are due."""

    @abstractmethod
    async def schedule_resume(self, run_id: str, resume_at: datetime) -> None:
        pass

    @abstractmethod
    async def cancel_resume(self, run_id: str) -> None:
        pass

    @abstractmethod
    async def claim_due_runs(self, now: datetime, limit: int = 100) -> List[str]:
        """Remove and return run ids whose resume time is at or before `now`."""
        pass


class RunLock(ABC):
    """Exclusive per-run lease. A second holder is rejected, never queued."""

    @abstractmethod
    async def acquire(self, run_id: str) -> Optional[str]:
        """Return a lease token, or None when the run is already held."""
        pass

    @abstractmethod
    async def release(self, run_id: str, token: str) -> None:
        pass

    @asynccontextmanager
    async def hold(self, run_id: str) -> AsyncIterator[str]:
        """
        Hold the run for the duration of the block.

        Raises:
            RunLockedError: if another worker holds the run
        """
        from .errors import RunLockedError

        token = await self.acquire(run_id)
        if token is None:
            raise RunLockedError(f"Run {run_id} is being processed by another worker")
        try:
            yield token
        finally:
            await self.release(run_id, token)


@dataclass
class Collaborators:
    """Side-effecting collaborators handed to node executors."""
    message_sender: MessageSender
    http_caller: HttpCaller
    contact_mutator: ContactMutator
    scheduler: Optional[ResumeScheduler] = None
