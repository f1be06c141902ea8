"""Error taxonomy for the approval workflow engine.

Every error carries a stable ``code`` so callers can render context specific
guidance, and a ``user_message`` that is safe to show without leaking
internals. Driver and connection errors raised by repository backends are not
wrapped and propagate as-is.
"""

from __future__ import annotations

from typing import Iterable, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    code = "workflow_error"
    user_message = "The request could not be processed."

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.user_message
        super().__init__(self.detail)


class InstanceNotFoundError(WorkflowError):
    code = "instance_not_found"
    user_message = "This approval workflow no longer exists."


class DefinitionNotFoundError(WorkflowError):
    code = "definition_not_found"
    user_message = "No approval workflow is configured for this organization."


class PaymentRequestNotFoundError(WorkflowError):
    code = "payment_request_not_found"
    user_message = "The payment request could not be found."


class UserNotFoundError(WorkflowError):
    code = "user_not_found"
    user_message = "Your account could not be found."


class InstanceTerminalError(WorkflowError):
    """Raised for any transition attempted on a finished instance."""

    code = "instance_terminal"
    user_message = "This request has already been processed."


class WorkflowAlreadyRunningError(WorkflowError):
    """A live instance already exists for the payment request."""

    code = "workflow_already_running"
    user_message = "An approval workflow is already in progress for this request."

    def __init__(self, instance_id: str, detail: Optional[str] = None) -> None:
        self.instance_id = instance_id
        super().__init__(detail or f"instance {instance_id} is still running")


class NoCurrentNodeError(WorkflowError):
    """The instance is not waiting on an approval step."""

    code = "no_current_node"
    user_message = "This request is not awaiting approval."


class NotAuthorizedError(WorkflowError):
    """The acting identity may not act on the current step.

    This is an expected outcome ("not your turn"), not a system fault.
    """

    code = "not_authorized"
    user_message = "You are not allowed to act on this step."

    def __init__(self, reason: str, detail: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(detail or f"not authorized: {reason}")


class GraphInvalidError(WorkflowError):
    """The workflow definition is broken; an administrator must fix it."""

    code = "graph_invalid"
    user_message = (
        "The approval workflow is misconfigured. An administrator has been notified."
    )

    def __init__(self, problems: Iterable[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class ConcurrentModificationError(WorkflowError):
    """Optimistic-lock conflict or a decision aimed at a step that moved on."""

    code = "concurrent_modification"
    user_message = "This request was updated by someone else. Refresh and retry."


def to_user_message(exc: BaseException) -> str:
    """Map any exception to a message that is safe to show to a user."""
    if isinstance(exc, WorkflowError):
        return exc.user_message
    return "Something went wrong. Please try again later."


__all__ = [
    "WorkflowError",
    "InstanceNotFoundError",
    "DefinitionNotFoundError",
    "PaymentRequestNotFoundError",
    "UserNotFoundError",
    "InstanceTerminalError",
    "WorkflowAlreadyRunningError",
    "NoCurrentNodeError",
    "NotAuthorizedError",
    "GraphInvalidError",
    "ConcurrentModificationError",
    "to_user_message",
]
