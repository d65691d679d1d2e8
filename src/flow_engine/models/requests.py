"""
Request and response bodies for the REST API.
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from .run import EventKind


class InboundMessage(BaseModel):
    """Inbound WhatsApp message forwarded by the webhook ingress."""
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="conversationId")
    contact_id: Optional[str] = Field(default=None, alias="contactId")
    text: str
    contact: Dict[str, Any] = Field(default_factory=dict)
    is_new_conversation: bool = Field(default=False, alias="isNewConversation")
    kind: EventKind = EventKind.INPUT


class FlowTestRequest(BaseModel):
    """Builder test-panel run."""
    variables: Dict[str, Any] = Field(default_factory=dict, description="Seed variables, dotted namespace keys allowed")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Replies keyed by input/button variable name")
    contact: Dict[str, Any] = Field(default_factory=dict)


class WebhookTriggerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payload: Dict[str, Any] = Field(default_factory=dict)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    contact_id: Optional[str] = Field(default=None, alias="contactId")


class ValidationReport(BaseModel):
    valid: bool
    problems: List[str] = Field(default_factory=list)


class FlowSummary(BaseModel):
    """Flow listing entry."""
    id: str
    version: int
    name: Optional[str] = None
    description: Optional[str] = None
    status: str
    trigger: Optional[str] = None
