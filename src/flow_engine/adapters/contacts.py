"""
CRM contact mutation client.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..core.interface import ContactMutator, ContactOperation, ContactOperationType

logger = logging.getLogger(__name__)


class CrmContactMutator(ContactMutator):
    """
    Applies flow mutations through the CRM's REST API.

    Endpoints:
    - PATCH /contacts/{id}                     custom fields
    - POST/DELETE /contacts/{id}/tags          tag add/remove
    - POST /conversations/{id}/assign          agent/team assignment
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self.transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def mutate_contact(self, contact_id: Optional[str], operation: ContactOperation) -> Optional[Dict[str, Any]]:
        client = await self._get_client()
        payload = operation.payload

        if operation.type == ContactOperationType.ASSIGN:
            if not operation.conversation_id:
                raise ValueError("Assignment requires a conversation")
            response = await client.post(
                f"/conversations/{operation.conversation_id}/assign",
                json={"agentId": payload.get("agent_id"), "teamId": payload.get("team_id")},
            )
        else:
            if not contact_id:
                raise ValueError(f"{operation.type.value} requires a contact")
            if operation.type == ContactOperationType.UPDATE_FIELDS:
                response = await client.patch(f"/contacts/{contact_id}", json={"customFields": payload.get("fields", {})})
            elif operation.type == ContactOperationType.ADD_TAGS:
                response = await client.post(f"/contacts/{contact_id}/tags", json={"tags": payload.get("tags", [])})
            else:
                response = await client.request(
                    "DELETE", f"/contacts/{contact_id}/tags", json={"tags": payload.get("tags", [])},
                )

        response.raise_for_status()
        logger.info(f"Applied {operation.type.value} to contact {contact_id}")

        if operation.type == ContactOperationType.UPDATE_FIELDS and response.content:
            data = response.json()
            if isinstance(data, dict):
                fields = data.get("customFields")
                return {**payload.get("fields", {}), **fields} if isinstance(fields, dict) else None
        return None
