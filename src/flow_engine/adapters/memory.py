"""
In-process collaborators: recording doubles for previews and tests, plus a
lock and scheduler for single-process deployments.
"""

import asyncio
import copy
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.interface import (
    ContactMutator,
    ContactOperation,
    ContactOperationType,
    MessageKind,
    MessageSender,
    ResumeScheduler,
    RunLock,
)


class RecordingMessageSender(MessageSender):
    """Keeps every message instead of delivering it."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with = fail_with

    async def send_message(self, conversation_id: Optional[str], content: Any, kind: MessageKind) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        message_id = f"preview-{len(self.sent) + 1}"
        self.sent.append({
            "id": message_id,
            "conversation_id": conversation_id,
            "kind": kind.value,
            "content": copy.deepcopy(content),
        })
        return message_id


class RecordingContactMutator(ContactMutator):
    """Applies mutations to an in-memory contact table and records them."""

    def __init__(
        self,
        contacts: Optional[Dict[str, Dict[str, Any]]] = None,
        fail_with: Optional[Exception] = None,
    ):
        self.contacts: Dict[str, Dict[str, Any]] = copy.deepcopy(contacts or {})
        self.operations: List[Dict[str, Any]] = []
        self.fail_with = fail_with

    async def mutate_contact(self, contact_id: Optional[str], operation: ContactOperation) -> Optional[Dict[str, Any]]:
        if self.fail_with is not None:
            raise self.fail_with
        self.operations.append({
            "contact_id": contact_id,
            "conversation_id": operation.conversation_id,
            "type": operation.type.value,
            "payload": copy.deepcopy(operation.payload),
        })

        contact = self.contacts.setdefault(contact_id or "", {})
        if operation.type == ContactOperationType.UPDATE_FIELDS:
            contact.update(operation.payload.get("fields", {}))
            return dict(contact)
        if operation.type == ContactOperationType.ADD_TAGS:
            tags = contact.setdefault("tags", [])
            tags.extend(tag for tag in operation.payload.get("tags", []) if tag not in tags)
        elif operation.type == ContactOperationType.REMOVE_TAGS:
            removed = operation.payload.get("tags", [])
            contact["tags"] = [tag for tag in contact.get("tags", []) if tag not in removed]
        elif operation.type == ContactOperationType.ASSIGN:
            contact["assigned_agent_id"] = operation.payload.get("agent_id")
            contact["assigned_team_id"] = operation.payload.get("team_id")
        return None


class InMemoryResumeScheduler(ResumeScheduler):
    def __init__(self):
        self.due: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def schedule_resume(self, run_id: str, resume_at: datetime) -> None:
        async with self._lock:
            self.due[run_id] = resume_at

    async def cancel_resume(self, run_id: str) -> None:
        async with self._lock:
            self.due.pop(run_id, None)

    async def claim_due_runs(self, now: datetime, limit: int = 100) -> List[str]:
        async with self._lock:
            ready = sorted((at, run_id) for run_id, at in self.due.items() if at <= now)[:limit]
            for _, run_id in ready:
                del self.due[run_id]
            return [run_id for _, run_id in ready]


class InMemoryRunLock(RunLock):
    """Per-run lease for a single process."""

    def __init__(self):
        self._held: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, run_id: str) -> Optional[str]:
        async with self._lock:
            if run_id in self._held:
                return None
            token = uuid.uuid4().hex
            self._held[run_id] = token
            return token

    async def release(self, run_id: str, token: str) -> None:
        async with self._lock:
            if self._held.get(run_id) == token:
                del self._held[run_id]
