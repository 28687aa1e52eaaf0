"""
Error Handling Module

Provides centralized error handling, custom exceptions, and error formatting
for the ReWear exchange API.

Errors fall into four families that callers treat differently:
validation errors (never retried, shown to the user), concurrency losses
(the user should refresh), partial failures (compensated, logged as errors),
and reconciliation failures (compensation failed, logged as critical).
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List
import traceback
import os

logger = logging.getLogger(__name__)


class ReWearError(Exception):
    """Base exception class for exchange errors"""

    def __init__(self, message: str, error_code: str = None, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code or "GENERAL_ERROR"
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ReWearError):
    """Raised when data validation fails"""

    def __init__(self, message: str, field: str = None, value: Any = None, error_code: str = "VALIDATION_ERROR"):
        self.field = field
        self.value = value
        details = {}
        if field:
            details['field'] = field
        if value is not None:
            details['value'] = str(value)
        super().__init__(message, error_code, details)


class SelfTransactionError(ValidationError):
    """Raised when a user tries to swap for or redeem their own item"""

    def __init__(self, item_id: str, user_id: str):
        self.item_id = item_id
        self.user_id = user_id
        super().__init__(
            "You cannot exchange your own item",
            field="itemId",
            value=item_id,
            error_code="SELF_TRANSACTION",
        )


class DuplicateRequestError(ValidationError):
    """Raised when the requester already has a pending request on the item"""

    def __init__(self, item_id: str, existing_request_id: str):
        self.item_id = item_id
        self.existing_request_id = existing_request_id
        super().__init__(
            "You already have a pending swap request for this item",
            field="itemId",
            value=item_id,
            error_code="DUPLICATE_REQUEST",
        )
        self.details['existing_request_id'] = existing_request_id


class InsufficientPointsError(ValidationError):
    """Raised when a redemption costs more than the requester's balance"""

    def __init__(self, user_id: str, balance: int, required: int):
        self.user_id = user_id
        self.balance = balance
        self.required = required
        self.shortfall = required - balance
        super().__init__(
            f"You need {self.shortfall} more points to redeem this item",
            field="points",
            value=balance,
            error_code="INSUFFICIENT_POINTS",
        )
        self.details.update({'balance': balance, 'required': required, 'shortfall': self.shortfall})


class InvalidRequestStateError(ValidationError):
    """Raised when a swap request is not in a state that allows the action"""

    def __init__(self, request_id: str, current_status: str, action: str):
        self.request_id = request_id
        self.current_status = current_status
        super().__init__(
            f"Cannot {action} swap request '{request_id}' (status: {current_status})",
            field="status",
            value=current_status,
            error_code="INVALID_REQUEST_STATE",
        )


class ItemNotFoundError(ReWearError):
    """Raised when an item is not found"""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(
            f"Item with ID '{item_id}' not found",
            "ITEM_NOT_FOUND",
            {"item_id": item_id}
        )


class UserNotFoundError(ReWearError):
    """Raised when a user is not found"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            f"User with ID '{user_id}' not found",
            "USER_NOT_FOUND",
            {"user_id": user_id}
        )


class SwapRequestNotFoundError(ReWearError):
    """Raised when a swap request is not found"""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"Swap request with ID '{request_id}' not found",
            "SWAP_REQUEST_NOT_FOUND",
            {"request_id": request_id}
        )


class NotAuthorizedError(ReWearError):
    """Raised when the acting user may not perform the action"""

    def __init__(self, message: str = "Not authorized", user_id: str = None):
        self.user_id = user_id
        super().__init__(message, "NOT_AUTHORIZED", {"user_id": user_id} if user_id else {})


class ItemUnavailableError(ReWearError):
    """Raised when an item is no longer available (another exchange won)"""

    def __init__(self, item_id: str, current_status: str, required_status: str = "available"):
        self.item_id = item_id
        self.current_status = current_status
        self.required_status = required_status

        message = (
            f"Item '{item_id}' is no longer available (status: {current_status}). "
            "Please refresh and try again"
        )

        super().__init__(
            message,
            "ITEM_UNAVAILABLE",
            {
                "item_id": item_id,
                "current_status": current_status,
                "required_status": required_status
            }
        )


class PartialFailureError(ReWearError):
    """Raised when a multi-step mutation failed and was rolled back"""

    def __init__(self, message: str, request_id: str = None, cause: Exception = None):
        self.request_id = request_id
        self.cause = cause
        details = {}
        if request_id:
            details['request_id'] = request_id
        if cause is not None:
            details['cause'] = str(cause)
        super().__init__(message, "PARTIAL_FAILURE", details)


class ReconciliationRequiredError(PartialFailureError):
    """Raised when compensation itself failed; records need manual repair"""

    def __init__(self, message: str, request_id: str = None, item_ids: List[str] = None,
                 cause: Exception = None, rollback_error: Exception = None):
        super().__init__(message, request_id, cause)
        self.error_code = "RECONCILIATION_REQUIRED"
        self.item_ids = item_ids or []
        self.rollback_error = rollback_error
        self.details['item_ids'] = self.item_ids
        if rollback_error is not None:
            self.details['rollback_error'] = str(rollback_error)


class DatabaseError(ReWearError):
    """Raised when database operations fail"""

    def __init__(self, message: str, operation: str = None, collection: str = None):
        self.operation = operation
        self.collection = collection
        details = {}
        if operation:
            details['operation'] = operation
        if collection:
            details['collection'] = collection
        super().__init__(message, "DATABASE_ERROR", details)


class WriteConflictError(DatabaseError):
    """Raised when a conditional write finds an unexpected current value"""

    def __init__(self, collection: str, doc_id: str, field: str, expected: Any, actual: Any):
        self.doc_id = doc_id
        self.field = field
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conditional write on {collection}/{doc_id} failed: {field} is {actual!r}, expected {expected!r}",
            "conditional_update",
            collection,
        )
        self.error_code = "WRITE_CONFLICT"


class ErrorHandler:
    """Centralized error handling and logging"""

    @staticmethod
    def log_error(error: Exception, context: Dict[str, Any] = None):
        """Log an error with context information at a level matching its family"""
        context = context or {}

        error_info = {
            'error_type': type(error).__name__,
            'error_message': str(error),
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'context': context
        }

        if isinstance(error, ReWearError):
            error_info['error_code'] = error.error_code
            error_info['details'] = error.details

        if isinstance(error, ReconciliationRequiredError):
            logger.critical(f"MANUAL RECONCILIATION REQUIRED: {error_info}")
        elif isinstance(error, PartialFailureError):
            logger.error(f"Partial failure rolled back: {error_info}")
        elif isinstance(error, (ValidationError, ItemUnavailableError, NotAuthorizedError,
                                ItemNotFoundError, UserNotFoundError, SwapRequestNotFoundError,
                                HTTPException)):
            logger.warning(f"Request rejected: {error_info}")
        else:
            if os.getenv("ENVIRONMENT", "development") == "development":
                error_info['stack_trace'] = traceback.format_exc()
            logger.error(f"Error occurred: {error_info}")

        return error_info

    @staticmethod
    def format_error_response(error: Exception, request: Request = None) -> Dict[str, Any]:
        """Format an error for API response"""
        timestamp = datetime.now(timezone.utc).isoformat()

        if isinstance(error, ReWearError):
            return {
                "error": {
                    "code": error.error_code,
                    "message": error.message,
                    "details": error.details,
                    "timestamp": timestamp
                }
            }
        elif isinstance(error, HTTPException):
            return {
                "error": {
                    "code": "HTTP_ERROR",
                    "message": error.detail,
                    "status_code": error.status_code,
                    "timestamp": timestamp
                }
            }
        else:
            return {
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An internal error occurred",
                    "timestamp": timestamp
                }
            }

    @staticmethod
    def get_http_status_code(error: Exception) -> int:
        """Get appropriate HTTP status code for an error"""
        if isinstance(error, HTTPException):
            return error.status_code
        elif isinstance(error, DuplicateRequestError):
            return status.HTTP_409_CONFLICT
        elif isinstance(error, InvalidRequestStateError):
            return status.HTTP_409_CONFLICT
        elif isinstance(error, (SelfTransactionError, InsufficientPointsError)):
            return status.HTTP_422_UNPROCESSABLE_ENTITY
        elif isinstance(error, ValidationError):
            return status.HTTP_400_BAD_REQUEST
        elif isinstance(error, (ItemNotFoundError, UserNotFoundError, SwapRequestNotFoundError)):
            return status.HTTP_404_NOT_FOUND
        elif isinstance(error, NotAuthorizedError):
            return status.HTTP_403_FORBIDDEN
        elif isinstance(error, ItemUnavailableError):
            return status.HTTP_409_CONFLICT
        elif isinstance(error, PartialFailureError):
            return status.HTTP_500_INTERNAL_SERVER_ERROR
        elif isinstance(error, DatabaseError):
            return status.HTTP_503_SERVICE_UNAVAILABLE
        else:
            return status.HTTP_500_INTERNAL_SERVER_ERROR


# Global exception handler for FastAPI
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for the FastAPI application"""

    context = {
        "method": request.method,
        "url": str(request.url),
        "user_agent": request.headers.get("user-agent", "unknown")
    }

    ErrorHandler.log_error(exc, context)

    error_response = ErrorHandler.format_error_response(exc, request)
    status_code = ErrorHandler.get_http_status_code(exc)

    return JSONResponse(
        status_code=status_code,
        content=error_response
    )


# Context manager for database operations
class DatabaseOperationContext:
    """Context manager that converts storage client failures into DatabaseError"""

    def __init__(self, operation: str, collection: str = None):
        self.operation = operation
        self.collection = collection
        self.start_time = None

    def __enter__(self):
        self.start_time = datetime.now()
        logger.debug(f"Starting database operation: {self.operation} on {self.collection}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = datetime.now() - self.start_time

        if exc_type is None:
            logger.debug(f"Database operation completed: {self.operation} on {self.collection} in {duration.total_seconds():.3f}s")
            return False

        if issubclass(exc_type, (ReWearError, HTTPException)):
            return False

        logger.error(f"Database operation failed: {self.operation} on {self.collection} after {duration.total_seconds():.3f}s")
        raise DatabaseError(
            f"Database operation failed: {str(exc_val)}",
            self.operation,
            self.collection
        ) from exc_val


# Response helpers
class ResponseHelpers:
    """Helper functions for creating consistent API responses"""

    @staticmethod
    def success_response(message: str, data: Any = None) -> Dict[str, Any]:
        """Create a success response"""
        response = {
            "success": True,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        if data is not None:
            response["data"] = data

        return response

    @staticmethod
    def paginated_response(items: List[Any], total: int, page: int, per_page: int) -> Dict[str, Any]:
        """Create a paginated response"""
        total_pages = (total + per_page - 1) // per_page

        return {
            "success": True,
            "data": items,
            "pagination": {
                "total": total,
                "page": page,
                "per_page": per_page,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1
            },
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
