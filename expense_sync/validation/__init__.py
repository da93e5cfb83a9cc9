"""Request validation package."""

from expense_sync.validation.validator import (
    RequestValidationError,
    SyncRequestValidator,
    issues_from_pydantic,
)

__all__ = ["RequestValidationError", "SyncRequestValidator", "issues_from_pydantic"]
