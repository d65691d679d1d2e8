"""
Selects which active flow an inbound event should start.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from ..models.flow import FlowDefinition, FlowStatus, TriggerType

logger = logging.getLogger(__name__)


def keyword_matches(keyword: str, message: str) -> bool:
    """Case-insensitive exact match or whole-word match inside the message."""
    keyword = (keyword or "").strip().lower()
    message = (message or "").strip().lower()
    if not keyword or not message:
        return False
    if message == keyword:
        return True
    return re.search(rf"\b{re.escape(keyword)}\b", message) is not None


def _payload_value(payload: Dict[str, Any], key: str) -> Any:
    value: Any = payload
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def webhook_conditions_match(conditions: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """Every configured condition must equal the payload's value. No conditions matches all."""
    return all(_payload_value(payload, key) == expected for key, expected in (conditions or {}).items())


class TriggerMatcher:
    """Picks flows for inbound messages, new conversations and webhook events."""

    def _candidates(self, flows: Iterable[FlowDefinition], trigger_type: TriggerType) -> List[FlowDefinition]:
        return [
            flow for flow in flows
            if flow.status == FlowStatus.ACTIVE and flow.trigger and flow.trigger.type == trigger_type
        ]

    def match_message(
        self,
        flows: Iterable[FlowDefinition],
        message: str,
        is_new_conversation: bool = False,
    ) -> Optional[FlowDefinition]:
        """
        First flow to start for an inbound message.

        Keyword triggers win; a welcome flow is used only for a new
        conversation that matched no keyword. At most one flow starts per
        message.
        """
        flows = list(flows)
        for flow in self._candidates(flows, TriggerType.KEYWORD):
            if any(keyword_matches(keyword, message) for keyword in flow.trigger.keywords):
                logger.info(f"Message matched keyword trigger of flow {flow.id}")
                return flow

        if is_new_conversation:
            welcome = self._candidates(flows, TriggerType.WELCOME)
            if welcome:
                logger.info(f"New conversation starts welcome flow {welcome[0].id}")
                return welcome[0]
        return None

    def match_webhook(self, flows: Iterable[FlowDefinition], payload: Dict[str, Any]) -> List[FlowDefinition]:
        return [
            flow for flow in self._candidates(flows, TriggerType.WEBHOOK)
            if webhook_conditions_match(flow.trigger.conditions, payload)
        ]
