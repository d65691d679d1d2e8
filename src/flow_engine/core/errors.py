"""
Flow engine error types.
"""

from typing import List, Optional


class FlowEngineError(Exception):
    """Base exception for flow engine errors."""

    code = "FlowEngineError"

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.message = message
        self.node_id = node_id
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class FlowValidationError(FlowEngineError):
    """Raised when a flow definition is malformed. Detected before any run starts."""

    code = "ValidationError"

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class SendFailed(FlowEngineError):
    """Raised when the outbound message collaborator rejects a message."""
    code = "SendFailed"


class APICallFailed(FlowEngineError):
    """Raised when an API or webhook call times out, fails or returns non-2xx."""

    code = "APICallFailed"

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        reason: str = "status",
        status_code: Optional[int] = None,
    ):
        super().__init__(message, node_id)
        self.reason = reason
        self.status_code = status_code


class MutationError(FlowEngineError):
    """Raised when a contact mutation fails."""
    code = "MutationError"


class NoMatchingEdge(FlowEngineError):
    """Raised when a node advances with a label that has no outgoing edge."""
    code = "NoMatchingEdge"


class InfiniteLoopSuspected(FlowEngineError):
    """Raised when a run exceeds the node-visit cap within one invocation."""
    code = "InfiniteLoopSuspected"


class InputValidationFailed(FlowEngineError):
    """Raised for an invalid reply. Recoverable: the input node re-prompts."""
    code = "InputValidationFailed"


class InputRetriesExhausted(FlowEngineError):
    """Raised when an input or button node runs out of re-prompt attempts."""
    code = "InputRetriesExhausted"


class NodeExecutionError(FlowEngineError):
    """Raised when an executor fails unexpectedly."""
    code = "NodeExecutionError"


class VariableError(FlowEngineError):
    """Raised when flow code writes to a read-only variable namespace."""
    code = "VariableError"


class FlowNotFoundError(FlowEngineError):
    code = "FlowNotFound"


class RunNotFoundError(FlowEngineError):
    code = "RunNotFound"


class RunNotResumableError(FlowEngineError):
    """Raised when resuming a run that is not waiting for an event."""
    code = "RunNotResumable"


class RunLockedError(FlowEngineError):
    """Raised when another worker holds the run."""
    code = "RunLocked"
