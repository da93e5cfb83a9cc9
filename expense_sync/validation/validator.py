"""
Two-Stage Request Validation

DESIGN DECISION: Requests are validated in two distinct stages before
anything touches storage:

STAGE 1 - SHAPE VALIDATION:
- Required keys present (deviceId, conflicts...)
- Container types (changes is an object, each collection is a list)
- Enum membership (resolution, platform, entity type)
- Batch size limits
- This catches malformed clients early with precise field paths

STAGE 2 - SCHEMA VALIDATION:
- Full pydantic parsing of every field (timestamps, ids...)
- This catches everything stage 1 doesn't know about

WHY TWO STAGES:
1. Stage 1 messages are written for client developers
2. Stage 2 is exhaustive without hand-written rules
3. Skip stage 2 if stage 1 fails

IMPORTANT: Validation NEVER silently fixes requests.
A rejected request has written nothing.
"""

from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from expense_sync.config import get_settings
from expense_sync.models.records import EntityKind
from expense_sync.models.sync import (
    Platform,
    PushRequest,
    RegisterDeviceRequest,
    ResolutionStrategy,
    ResolveRequest,
)
from expense_sync.models.validation import ValidationIssue, ValidationResult


ModelT = TypeVar("ModelT", bound=BaseModel)

CHANGE_COLLECTIONS = tuple(kind.collection for kind in EntityKind)


class RequestValidationError(Exception):
    """A request failed validation. Carries field-level issues."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        summary = "; ".join(f"{i.field}: {i.message}" for i in issues[:3])
        super().__init__(f"Invalid request: {summary}")

    def to_response(self) -> dict:
        return {"errors": [issue.model_dump(exclude_none=True) for issue in self.issues]}


def _missing(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, issue_type="missing", message=message)


def _invalid_type(field: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, issue_type="invalid_type", message=message)


def _invalid_value(field: str, message: str, suggested_fix: Optional[str] = None) -> ValidationIssue:
    return ValidationIssue(
        field=field,
        issue_type="invalid_value",
        message=message,
        suggested_fix=suggested_fix,
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class SyncRequestValidator:
    """
    Validates sync request bodies through a two-stage pipeline.

    Each validate_* method returns the parsed request model or raises
    RequestValidationError.
    """

    def __init__(self, max_batch_size: Optional[int] = None):
        """
        Initialize validator.

        Args:
            max_batch_size: Maximum changes per push.
                           Defaults to SYNC_MAX_BATCH_SIZE.
        """
        self._max_batch_size = max_batch_size or get_settings().sync.max_batch_size

    # -------------------------------------------------------------------------
    # Stage 1 rules
    # -------------------------------------------------------------------------

    def _check_push_shape(self, body: Any) -> list[ValidationIssue]:
        if not isinstance(body, dict):
            return [_invalid_type("body", "Request body must be a JSON object")]

        issues = []
        if _is_blank(body.get("deviceId")):
            issues.append(_missing("deviceId", "Device ID is required"))

        changes = body.get("changes")
        if not isinstance(changes, dict):
            issues.append(_invalid_type("changes", "Changes must be an object"))
            return issues

        total = 0
        for collection in CHANGE_COLLECTIONS:
            items = changes.get(collection)
            if items is None:
                continue
            if not isinstance(items, list):
                issues.append(_invalid_type(
                    f"changes.{collection}",
                    f"{collection.capitalize()} must be an array",
                ))
                continue
            total += len(items)
            for index, item in enumerate(items):
                path = f"changes.{collection}.{index}"
                if not isinstance(item, dict):
                    issues.append(_invalid_type(path, "Each change must be an object"))
                    continue
                if _is_blank(item.get("id")):
                    issues.append(_missing(f"{path}.id", "Change ID is required"))
                data = item.get("data")
                if data is not None and not isinstance(data, dict):
                    issues.append(_invalid_type(f"{path}.data", "Change data must be an object"))

        if total > self._max_batch_size:
            issues.append(_invalid_value(
                "changes",
                f"Push contains {total} changes; the limit is {self._max_batch_size}",
                suggested_fix="Split the push into smaller batches",
            ))
        return issues

    def _check_resolve_shape(self, body: Any) -> list[ValidationIssue]:
        if not isinstance(body, dict):
            return [_invalid_type("body", "Request body must be a JSON object")]

        conflicts = body.get("conflicts")
        if not isinstance(conflicts, list):
            return [_invalid_type("conflicts", "Conflicts must be an array")]

        issues = []
        strategies = {s.value for s in ResolutionStrategy}
        kinds = {k.value for k in EntityKind}
        for index, item in enumerate(conflicts):
            path = f"conflicts.{index}"
            if not isinstance(item, dict):
                issues.append(_invalid_type(path, "Each conflict must be an object"))
                continue
            if _is_blank(item.get("id")):
                issues.append(_missing(f"{path}.id", "Conflict ID is required"))
            if item.get("type") not in kinds:
                issues.append(_invalid_value(
                    f"{path}.type",
                    "Invalid entity type",
                    suggested_fix=f"Use one of: {', '.join(sorted(kinds))}",
                ))
            resolution = item.get("resolution")
            if resolution not in strategies:
                issues.append(_invalid_value(
                    f"{path}.resolution",
                    "Invalid resolution strategy",
                    suggested_fix=f"Use one of: {', '.join(sorted(strategies))}",
                ))
                continue
            if resolution in ("remote", "merge") and not isinstance(item.get("remoteData"), dict):
                issues.append(_missing(
                    f"{path}.remoteData",
                    f"remoteData is required for '{resolution}' resolution",
                ))
            local_data = item.get("localData")
            if local_data is not None and not isinstance(local_data, dict):
                issues.append(_invalid_type(f"{path}.localData", "localData must be an object"))
        return issues

    def _check_register_shape(self, body: Any) -> list[ValidationIssue]:
        if not isinstance(body, dict):
            return [_invalid_type("body", "Request body must be a JSON object")]

        issues = []
        if _is_blank(body.get("deviceId")):
            issues.append(_missing("deviceId", "Device ID is required"))
        if _is_blank(body.get("deviceName")):
            issues.append(_missing("deviceName", "Device name is required"))
        platforms = {p.value for p in Platform}
        if body.get("platform") not in platforms:
            issues.append(_invalid_value(
                "platform",
                "Invalid platform",
                suggested_fix=f"Use one of: {', '.join(sorted(platforms))}",
            ))
        return issues

    # -------------------------------------------------------------------------
    # Stage 2
    # -------------------------------------------------------------------------

    def _parse(self, model: type[ModelT], body: dict) -> tuple[Optional[ModelT], list[ValidationIssue]]:
        try:
            return model.model_validate(body), []
        except ValidationError as e:
            return None, issues_from_pydantic(e)

    def _run(self, body: Any, shape_issues: list[ValidationIssue], model: type[ModelT]) -> ModelT:
        if shape_issues:
            result = ValidationResult(shape_valid=False, schema_valid=False, issues=shape_issues)
            raise RequestValidationError(result.issues)

        parsed, schema_issues = self._parse(model, body)
        result = ValidationResult(
            shape_valid=True,
            schema_valid=parsed is not None,
            issues=schema_issues,
        )
        if not result.is_valid:
            raise RequestValidationError(result.issues)
        return parsed

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def validate_push(self, body: Any) -> PushRequest:
        return self._run(body, self._check_push_shape(body), PushRequest)

    def validate_resolve(self, body: Any) -> ResolveRequest:
        return self._run(body, self._check_resolve_shape(body), ResolveRequest)

    def validate_register(self, body: Any) -> RegisterDeviceRequest:
        return self._run(body, self._check_register_shape(body), RegisterDeviceRequest)


def issues_from_pydantic(error: ValidationError) -> list[ValidationIssue]:
    """Convert pydantic errors to ValidationIssues with dotted field paths."""
    return [
        ValidationIssue(
            field=".".join(str(part) for part in err["loc"]) or "body",
            issue_type=err["type"],
            message=err["msg"],
        )
        for err in error.errors()
    ]
