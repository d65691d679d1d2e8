"""
WhatsApp Cloud API message sender.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..core.interface import MessageKind, MessageSender

logger = logging.getLogger(__name__)

# WhatsApp caps reply buttons at 3 and list rows at 10
MAX_REPLY_BUTTONS = 3
MAX_LIST_ROWS = 10
MAX_BUTTON_TITLE = 20

RecipientResolver = Callable[[str], Awaitable[str]]


async def _conversation_is_recipient(conversation_id: str) -> str:
    return conversation_id


def build_payload(to: str, content: Any, kind: MessageKind) -> Dict[str, Any]:
    """Graph API message body for a flow message."""
    payload: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to.lstrip("+"),
    }

    if kind == MessageKind.TEMPLATE:
        template: Dict[str, Any] = {
            "name": content["name"],
            "language": {"code": content.get("language", "en_US")},
        }
        parameters = content.get("parameters") or []
        if parameters:
            template["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": value} for value in parameters],
            }]
        payload.update({"type": "template", "template": template})

    elif kind == MessageKind.BUTTONS:
        buttons = content.get("buttons", [])
        if len(buttons) <= MAX_REPLY_BUTTONS:
            action = {
                "buttons": [
                    {"type": "reply", "reply": {"id": str(index), "title": text[:MAX_BUTTON_TITLE]}}
                    for index, text in enumerate(buttons)
                ]
            }
            interactive_type = "button"
        else:
            action = {
                "button": "Choose",
                "sections": [{
                    "title": "Options",
                    "rows": [
                        {"id": str(index), "title": text[:24]}
                        for index, text in enumerate(buttons[:MAX_LIST_ROWS])
                    ],
                }],
            }
            interactive_type = "list"
        payload.update({
            "type": "interactive",
            "interactive": {
                "type": interactive_type,
                "body": {"text": content.get("text") or " "},
                "action": action,
            },
        })

    else:
        payload.update({"type": "text", "text": {"preview_url": False, "body": str(content)}})

    return payload


class WhatsAppCloudSender(MessageSender):
    """
    Sends flow messages through the WhatsApp Cloud API.

    Conversations are addressed by the customer's WhatsApp id unless a
    recipient resolver maps conversation ids to phone numbers.
    """

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v21.0",
        recipient_resolver: Optional[RecipientResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize the sender.

        Args:
            access_token: System User access token with messaging permissions
            phone_number_id: WhatsApp Cloud API phone number ID
            api_version: Graph API version
            recipient_resolver: Maps a conversation id to the recipient number
            transport: Optional httpx transport
            timeout: Request timeout in seconds
        """
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.base_url = f"https://graph.facebook.com/{api_version}"
        self.recipient_resolver = recipient_resolver or _conversation_is_recipient
        self.transport = transport
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self.transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_message(self, conversation_id: Optional[str], content: Any, kind: MessageKind) -> str:
        if not conversation_id:
            raise ValueError("conversation_id required for WhatsApp messaging")

        to = await self.recipient_resolver(conversation_id)
        client = await self._get_client()
        response = await client.post(
            f"/{self.phone_number_id}/messages",
            json=build_payload(to, content, kind),
        )

        result = response.json()
        if response.status_code != 200:
            logger.error(f"WhatsApp send failed: {result}")
            raise Exception(f"WhatsApp API error: {result.get('error', {}).get('message', 'Unknown')}")

        message_id = result.get("messages", [{}])[0].get("id", "")
        logger.info(f"WhatsApp {kind.value} message sent to {to}: {message_id}")
        return message_id
