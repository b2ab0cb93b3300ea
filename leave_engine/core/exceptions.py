from typing import Any, Dict, Optional

class AppException(Exception):
    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "BUSINESS_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)

class ValidationError(AppException):
    """Malformed input: missing rejection reason, inverted date range, and so on."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=details
        )

class InsufficientBalanceError(AppException):
    def __init__(self, requested: float, remaining: float, leave_type: str = ""):
        super().__init__(
            message=f"Insufficient balance{f' for {leave_type}' if leave_type else ''}. "
                    f"Requested: {requested}, Remaining: {remaining}",
            status_code=409,
            error_code="INSUFFICIENT_BALANCE",
            details={"requested": requested, "remaining": remaining}
        )

class OverlappingRequestError(AppException):
    def __init__(self, conflicting_request_id: int):
        super().__init__(
            message=f"Dates overlap with existing leave request #{conflicting_request_id}",
            status_code=409,
            error_code="OVERLAPPING_REQUEST",
            details={"conflicting_request_id": conflicting_request_id}
        )

class InvalidStateTransitionError(AppException):
    def __init__(self, message: str = "Leave request was already processed by another approver", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=409,
            error_code="INVALID_STATE_TRANSITION",
            details=details
        )

class NotAuthorizedError(AppException):
    def __init__(self, message: str = "You are not allowed to act on this leave request"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="NOT_AUTHORIZED"
        )

class NotFoundError(AppException):
    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details={"entity": entity, "id": entity_id}
        )

class OperationCancelledError(AppException):
    """Caller withdrew the operation before any change was applied."""
    def __init__(self):
        super().__init__(
            message="Operation was cancelled before any change was applied",
            status_code=499,
            error_code="OPERATION_CANCELLED"
        )

class AuthenticationError(AppException):
    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTH_FAILED"
        )
