"""
Control-flow nodes: branching, jumps, delays and captured replies.
"""

import logging
import re
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

from ..core.errors import InputRetriesExhausted, InputValidationFailed, SendFailed
from ..core.interface import MessageKind
from ..models.flow import InputConfig, InputType, Node, NodeType
from ..models.run import RunMode, RunStatus
from .base import (
    Advance,
    ExecutionResult,
    Fail,
    NodeExecutor,
    RunContext,
    Suspend,
    register_executor,
)

logger = logging.getLogger(__name__)

INPUT_ERROR_VARIABLE = "input_error"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]+$")


@register_executor(NodeType.CONDITION)
class ConditionExecutor(NodeExecutor):
    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        result = ctx.evaluator.evaluate(config.rules, config.logic, ctx.store)
        ctx.note(
            logic=config.logic.value,
            rules=[
                {
                    "variable": rule.variable,
                    "operator": rule.operator.value,
                    "value": ctx.resolve(rule.value) if rule.value else rule.value,
                    "actual": ctx.resolver.lookup(rule.variable, ctx.store),
                }
                for rule in config.rules
            ],
            result=result,
        )
        return Advance(label="true" if result else "false")


@register_executor(NodeType.JUMP)
class JumpExecutor(NodeExecutor):
    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        ctx.note(target_node_id=node.config.target_node_id)
        return Advance(target_node_id=node.config.target_node_id)


@register_executor(NodeType.DELAY)
class DelayExecutor(NodeExecutor):
    """
    Suspend until `duration x unit` has elapsed.

    The engine never sleeps: the scheduler records the due time and an
    external tick resumes the run with a timer event.
    """

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        event = ctx.take_event()
        if event is not None:
            ctx.note(resumed_at=event.received_at.isoformat())
            return Advance()

        config = node.config
        resume_at = ctx.clock() + timedelta(seconds=config.total_seconds)
        ctx.note(duration=config.duration, unit=config.unit.value, resume_at=resume_at.isoformat())

        scheduler = ctx.collaborators.scheduler
        if scheduler is not None:
            await scheduler.schedule_resume(ctx.state.run_id, resume_at)
        elif ctx.state.mode == RunMode.LIVE:
            logger.warning(f"No scheduler configured; run {ctx.state.run_id} must be resumed externally")

        return Suspend(RunStatus.WAITING_DELAY, resume_at=resume_at)


def validate_input(value: Any, config: InputConfig) -> str:
    """
    Check a reply against the node's input type and validation rules.

    Returns:
        The reply as stripped text

    Raises:
        InputValidationFailed: describing the first rule that failed
    """
    text = "" if value is None else str(value).strip()
    rules = config.validation

    if not text:
        if rules.required:
            raise InputValidationFailed("A reply is required")
        return text

    input_type = config.input_type
    if input_type == InputType.EMAIL and not EMAIL_PATTERN.match(text):
        raise InputValidationFailed(f"'{text}' is not a valid email address")
    if input_type == InputType.PHONE and not PHONE_PATTERN.match(text):
        raise InputValidationFailed(f"'{text}' is not a valid phone number")
    if input_type == InputType.NUMBER:
        try:
            float(text)
        except ValueError:
            raise InputValidationFailed(f"'{text}' is not a number")
    if input_type == InputType.URL:
        parsed = urlparse(text)
        if not parsed.scheme or not parsed.netloc:
            raise InputValidationFailed(f"'{text}' is not a valid URL")

    if rules.min_length is not None and len(text) < rules.min_length:
        raise InputValidationFailed(f"Reply must be at least {rules.min_length} characters")
    if rules.max_length is not None and len(text) > rules.max_length:
        raise InputValidationFailed(f"Reply must be at most {rules.max_length} characters")
    if rules.pattern:
        try:
            matched = re.fullmatch(rules.pattern, text)
        except re.error as e:
            raise InputValidationFailed(f"Invalid validation pattern: {e}")
        if not matched:
            raise InputValidationFailed("Reply does not match the expected format")

    return text


@register_executor(NodeType.INPUT)
class InputExecutor(NodeExecutor):
    """
    Capture a reply into `variableName`.

    Invalid replies re-prompt with `errorMessage` (also bound as
    `input_error`) and keep the run waiting on this node, up to
    `maxAttempts` invalid replies.
    """

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        suspend = Suspend(RunStatus.WAITING_INPUT, awaiting_variable=config.variable_name)
        event = ctx.take_event()

        if event is None:
            ctx.state.attempts = 0
            prompt = ctx.resolve(config.prompt) if config.prompt else None
            ctx.note(prompt=prompt, variable_name=config.variable_name, input_type=config.input_type.value)
            if prompt:
                try:
                    await ctx.send(node, prompt, MessageKind.TEXT)
                except SendFailed as e:
                    return Fail(e)
            return suspend

        try:
            value = validate_input(event.value, config)
        except InputValidationFailed as e:
            ctx.state.attempts += 1
            max_attempts = config.max_attempts or ctx.settings.input_max_attempts
            ctx.note(reply=event.value, invalid=e.message, attempts=ctx.state.attempts)
            if ctx.state.attempts >= max_attempts:
                return Fail(InputRetriesExhausted(
                    f"Input '{config.variable_name}' still invalid after {ctx.state.attempts} attempts: {e.message}",
                    node_id=node.id,
                ))

            message = ctx.resolve(config.error_message)
            ctx.store.set(INPUT_ERROR_VARIABLE, message)
            try:
                await ctx.send(node, message, MessageKind.TEXT)
            except SendFailed as send_error:
                return Fail(send_error)
            return suspend

        ctx.state.attempts = 0
        ctx.store.set(config.variable_name, value)
        ctx.note(reply=value, variable_name=config.variable_name)
        return Advance()
