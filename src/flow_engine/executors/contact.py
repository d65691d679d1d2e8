"""
Contact and conversation mutation nodes.
"""

import logging

from ..core.errors import MutationError
from ..core.interface import ContactOperation, ContactOperationType
from ..models.flow import Node, NodeType
from .base import Advance, ExecutionResult, Fail, NodeExecutor, RunContext, register_executor

logger = logging.getLogger(__name__)


@register_executor(NodeType.ASSIGNMENT)
class AssignmentExecutor(NodeExecutor):
    """Assign the conversation to an agent and/or team."""

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        payload = {"agent_id": config.agent_id, "team_id": config.team_id}
        ctx.note(**payload)
        try:
            await ctx.mutate(node, ContactOperation(ContactOperationType.ASSIGN, payload=payload))
        except MutationError as e:
            return Fail(e)
        return Advance()


@register_executor(NodeType.TAG)
class TagExecutor(NodeExecutor):
    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        tags = [ctx.resolve(tag) for tag in config.tags]
        operation_type = ContactOperationType.ADD_TAGS if config.action == "add" else ContactOperationType.REMOVE_TAGS
        ctx.note(action=config.action, tags=tags)
        try:
            await ctx.mutate(node, ContactOperation(operation_type, payload={"tags": tags}))
        except MutationError as e:
            return Fail(e)

        current = ctx.store.get("contact.tags")
        if isinstance(current, list):
            if config.action == "add":
                updated = current + [tag for tag in tags if tag not in current]
            else:
                updated = [tag for tag in current if tag not in tags]
            ctx.store.update_namespace("contact", {"tags": updated})
        return Advance()


@register_executor(NodeType.CUSTOM_FIELD)
class CustomFieldExecutor(NodeExecutor):
    """Write resolved values into contact fields and refresh `contact.*`."""

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        fields = ctx.resolver.resolve_value(node.config.fields, ctx.store)
        ctx.note(fields=fields)
        try:
            updated = await ctx.mutate(
                node,
                ContactOperation(ContactOperationType.UPDATE_FIELDS, payload={"fields": fields}),
            )
        except MutationError as e:
            return Fail(e)

        ctx.store.update_namespace("contact", updated if updated else fields)
        return Advance()
