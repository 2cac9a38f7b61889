"""
Domain exceptions for ExpenseFlow.

Every error raised by the intake and approval core derives from
ExpenseFlowError and carries the HTTP status it maps to, so the API layer can
surface it without a per-endpoint translation table.
"""

from typing import Optional

from fastapi import status


class ExpenseFlowError(Exception):
    """Base class for recoverable-by-caller errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(ExpenseFlowError):
    """Malformed or missing submission fields."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Validation error"


class NoApprovalPath(ExpenseFlowError):
    """No approver can be found and the amount is above the auto-approval ceiling."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "No approval workflow found and no manager assigned"


class NotAuthorized(ExpenseFlowError):
    """Acting user is not the approver of the current step."""
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You are not authorized to act on this expense at this step"


class InvalidState(ExpenseFlowError):
    """Operation is not legal in the current expense or step state."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Expense is not in a state that allows this operation"


class NotFound(ExpenseFlowError):
    """Unknown expense, rule, user or company."""
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"
