"""
Entry/exit and outbound messaging nodes.
"""

import logging
from typing import Optional

from ..core.errors import InputRetriesExhausted, SendFailed
from ..core.graph import button_labels
from ..core.interface import MessageKind
from ..models.flow import ButtonConfig, Node, NodeType
from ..models.run import RunStatus
from .base import (
    Advance,
    Complete,
    ExecutionResult,
    Fail,
    NodeExecutor,
    RunContext,
    Suspend,
    register_executor,
)

logger = logging.getLogger(__name__)


@register_executor(NodeType.START)
class StartExecutor(NodeExecutor):
    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        return Advance()


@register_executor(NodeType.END)
class EndExecutor(NodeExecutor):
    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        return Complete()


@register_executor(NodeType.MESSAGE)
class MessageExecutor(NodeExecutor):
    """Send a plain text message with placeholders resolved."""

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        text = ctx.resolve(node.config.message)
        ctx.note(message=text)
        try:
            await ctx.send(node, text, MessageKind.TEXT)
        except SendFailed as e:
            return Fail(e)
        return Advance()


@register_executor(NodeType.TEMPLATE)
class TemplateExecutor(NodeExecutor):
    """
    Send an approved WhatsApp template.

    Sample values are resolved and bound as run-local numbered variables
    ("1", "2", ...) so later nodes can reference what was sent.
    """

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        values = {key: ctx.resolve(value) for key, value in config.sample_values.items()}
        for key, value in values.items():
            ctx.store.set(key, value)

        ordered = sorted(values, key=lambda k: (0, int(k)) if k.isdigit() else (1, k))
        content = {
            "name": config.template_name,
            "language": config.language,
            "parameters": [values[key] for key in ordered],
        }
        ctx.note(**content)

        try:
            await ctx.send(node, content, MessageKind.TEMPLATE)
        except SendFailed as e:
            return Fail(e)
        return Advance()


def match_button(config: ButtonConfig, value: Optional[object]) -> Optional[int]:
    """Index of the chosen button: 1-based number or case-insensitive text."""
    if value is None:
        return None
    choice = str(value).strip()
    if choice.isdigit() and 1 <= int(choice) <= len(config.buttons):
        return int(choice) - 1
    for index, text in enumerate(config.buttons):
        if text.strip().lower() == choice.lower():
            return index
    return None


@register_executor(NodeType.BUTTON)
class ButtonExecutor(NodeExecutor):
    """Present quick-reply options and branch on the selection."""

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        suspend = Suspend(RunStatus.WAITING_INPUT, awaiting_variable=config.variable_name)
        event = ctx.take_event()

        if event is None:
            ctx.state.attempts = 0
            content = {"text": ctx.resolve(config.message), "buttons": list(config.buttons)}
            ctx.note(**content)
            try:
                await ctx.send(node, content, MessageKind.BUTTONS)
            except SendFailed as e:
                return Fail(e)
            return suspend

        index = match_button(config, event.value)
        ctx.note(selection=event.value)

        if index is None:
            ctx.state.attempts += 1
            max_attempts = config.max_attempts or ctx.settings.input_max_attempts
            if ctx.state.attempts >= max_attempts:
                return Fail(InputRetriesExhausted(
                    f"No valid option chosen after {ctx.state.attempts} attempts",
                    node_id=node.id,
                ))
            content = {"text": ctx.resolve(config.error_message), "buttons": list(config.buttons)}
            try:
                await ctx.send(node, content, MessageKind.BUTTONS)
            except SendFailed as e:
                return Fail(e)
            return suspend

        ctx.state.attempts = 0
        selected = config.buttons[index]
        if config.variable_name:
            ctx.store.set(config.variable_name, selected)

        by_index, by_text = button_labels(config, index)
        label = by_index if ctx.graph.has_edge(node.id, by_index) else by_text
        ctx.note(selected=selected)
        return Advance(label=label)
