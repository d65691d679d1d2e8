"""
API and webhook nodes.
"""

import asyncio
import json
import logging
from typing import Any

from ..core.errors import APICallFailed
from ..core.graph import ERROR_HANDLE
from ..models.flow import Node, NodeType
from .base import Advance, ExecutionResult, Fail, NodeExecutor, RunContext, register_executor

logger = logging.getLogger(__name__)

API_ERROR_VARIABLE = "api_error"
SUCCESS_HANDLE = "success"


def _decode_body(body: Any) -> Any:
    # Builders store JSON bodies as text with placeholders inside
    if isinstance(body, str) and body.strip()[:1] in ("{", "["):
        try:
            return json.loads(body)
        except ValueError:
            return body
    return body


@register_executor(NodeType.API, NodeType.WEBHOOK)
class HttpCallExecutor(NodeExecutor):
    """
    Call an external endpoint with a hard deadline.

    A 2xx response binds the body to `responseVariable` and follows the
    "success" edge (or the plain edge). Any failure follows the node's
    "error" edge when it has one, otherwise the run fails with
    APICallFailed. Calls are never retried.
    """

    async def execute(self, node: Node, ctx: RunContext) -> ExecutionResult:
        config = node.config
        url = ctx.resolve(config.url)
        headers = {key: ctx.resolve(value) for key, value in config.headers.items()}
        body = _decode_body(ctx.resolver.resolve_value(config.body, ctx.store))
        timeout_ms = config.timeout or ctx.settings.default_api_timeout_ms

        ctx.note(method=config.method, url=url, headers=headers, body=body, timeout_ms=timeout_ms)

        try:
            response = await ctx.collaborators.http_caller.perform_http_call(
                config.method, url, headers, body, timeout_ms,
            )
        except (TimeoutError, asyncio.TimeoutError):
            error = APICallFailed(
                f"{config.method} {url} timed out after {timeout_ms} ms",
                node_id=node.id,
                reason="timeout",
            )
        except Exception as e:
            error = APICallFailed(
                f"{config.method} {url} failed: {e}",
                node_id=node.id,
                reason="transport",
            )
        else:
            ctx.note(status_code=response.status_code)
            if response.ok:
                if config.response_variable:
                    ctx.store.set(config.response_variable, response.body)
                return Advance(label=SUCCESS_HANDLE, fallback_unlabeled=True)
            error = APICallFailed(
                f"{config.method} {url} returned HTTP {response.status_code}",
                node_id=node.id,
                reason="status",
                status_code=response.status_code,
            )

        logger.warning(f"HTTP call at node {node.id} failed: {error}")
        if ctx.graph.has_edge(node.id, ERROR_HANDLE):
            ctx.store.set(API_ERROR_VARIABLE, {
                "message": error.message,
                "reason": error.reason,
                "status_code": error.status_code,
            })
            ctx.note(error=str(error))
            return Advance(label=ERROR_HANDLE)
        return Fail(error)
