from __future__ import annotations

from typing import Any


class ECAError(Exception):
    """Request-level failure with a stable wire code."""

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ECAError):
    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, errors: list[dict[str, Any]], message: str | None = None) -> None:
        self.errors = errors
        fields = ", ".join(str(item.get("field")) for item in errors)
        super().__init__(message or f"Invalid payload: {fields}", details={"errors": errors})


class TenantNotFound(ECAError):
    code = "TENANT_NOT_FOUND"
    http_status = 404

    def __init__(self, organization_id: str) -> None:
        self.organization_id = organization_id
        super().__init__(
            f"Organization not found: {organization_id}",
            details={"organization_id": organization_id},
        )


class InvalidStateTransition(ECAError):
    code = "INVALID_STATE_TRANSITION"
    http_status = 409

    def __init__(self, from_state: str | None, to_state: str, transaction_type: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.transaction_type = transaction_type
        super().__init__(
            f"Invalid transition from '{from_state}' to '{to_state}' for {transaction_type}",
            details={"from": from_state, "to": to_state, "transaction_type": transaction_type},
        )


class TransactionNotFound(ECAError):
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction not found: {transaction_id}",
            details={"transaction_id": transaction_id},
        )


class StorageError(ECAError):
    code = "STORAGE_ERROR"
    http_status = 500
    retryable = True

    def __init__(self, operation: str, error: Exception | str) -> None:
        self.operation = operation
        super().__init__(f"Storage failure during {operation}: {error}", details={"operation": operation})


class RecordProcessingError(ECAError):
    """Failure isolated to one line item. Never aborts sibling records on its own."""

    code = "RECORD_PROCESSING_ERROR"
    http_status = 422

    def __init__(self, index: int, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
        self.index = index
        super().__init__(message, details={"index": index, "errors": errors or []})


class BatchRejected(ECAError):
    code = "RECORD_PROCESSING_FAILED"
    http_status = 422

    def __init__(self, failures: list[RecordProcessingError], reason: str) -> None:
        self.failures = failures
        super().__init__(
            f"Batch rejected ({reason}): {len(failures)} record(s) failed",
            details={"reason": reason, "failures": [failure_detail(f) for f in failures]},
        )


class DeadlineExceeded(ECAError):
    code = "DEADLINE_EXCEEDED"
    http_status = 504
    retryable = True

    def __init__(self, stage: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Deadline of {timeout_seconds}s exceeded before {stage}",
            details={"stage": stage, "timeout_seconds": timeout_seconds},
        )


HTTP_STATUS_BY_CODE: dict[str, int] = {
    cls.code: cls.http_status
    for cls in (
        ECAError,
        ValidationError,
        TenantNotFound,
        InvalidStateTransition,
        TransactionNotFound,
        StorageError,
        RecordProcessingError,
        BatchRejected,
        DeadlineExceeded,
    )
}


def http_status_for_code(code: str | None) -> int:
    if code is None:
        return 200
    return HTTP_STATUS_BY_CODE.get(code, 500)


def failure_detail(exc: RecordProcessingError) -> dict[str, Any]:
    return {"index": exc.index, "message": exc.message, "errors": exc.details.get("errors", [])}


def eca_error_detail(exc: ECAError) -> dict[str, Any]:
    details = dict(exc.details)
    if exc.retryable:
        details["retryable"] = True
    return {"code": exc.code, "message": exc.message, "details": details}
