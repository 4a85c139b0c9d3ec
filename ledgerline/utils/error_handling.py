"""
Error Handling Module for Ledgerline

This module provides centralized error handling with:
- Custom exception hierarchy for the posting, period and matching domains
- Standardized error responses
- Error logging
- Database error translation
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID
import logging

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import (
    SQLAlchemyError,
    IntegrityError,
    OperationalError,
    DataError,
)

from ledgerline.models.base import utcnow

logger = logging.getLogger("ledgerline.errors")


def _isoformat(moment) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    LEDGER_VALIDATION_ERROR = "LEDGER_VALIDATION_ERROR"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"

    # Resource Errors (404/409)
    NOT_FOUND = "NOT_FOUND"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    FISCAL_PERIOD_NOT_FOUND = "FISCAL_PERIOD_NOT_FOUND"
    MATCH_NOT_FOUND = "MATCH_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"

    # Business Logic Errors (422/423)
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    PERIOD_LOCKED = "PERIOD_LOCKED"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    MATCH_REJECTED = "MATCH_REJECTED"
    APPROVAL_TIER_INSUFFICIENT = "APPROVAL_TIER_INSUFFICIENT"
    ACCOUNT_IN_USE = "ACCOUNT_IN_USE"

    # Database Errors (500/503)
    DATABASE_ERROR = "DATABASE_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    STORE_COMMIT_FAILED = "STORE_COMMIT_FAILED"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = utcnow()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": _isoformat(self.timestamp),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class LedgerValidationError(ValidationException):
    """
    Proposed ledger lines violate a double-entry invariant.

    Always caller-fixable; never retried by the engine.
    """

    def __init__(
        self,
        message: str,
        rule: str,
        line_index: Optional[int] = None,
        imbalance: Optional[Decimal] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["violated_rule"] = rule
        if line_index is not None:
            _details["line_index"] = line_index
        if imbalance is not None:
            _details["imbalance"] = str(imbalance)
        self.rule = rule
        self.line_index = line_index
        self.imbalance = imbalance
        super().__init__(
            message=message,
            field="lines",
            details=_details,
            code=ErrorCode.LEDGER_VALIDATION_ERROR,
        )


class InvalidDateRangeException(ValidationException):
    """Invalid date range"""

    def __init__(self, start_date: str, end_date: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid date range: {start_date} to {end_date}. Start date must not be after end date.",
            code=ErrorCode.INVALID_DATE_RANGE,
            details={"start_date": start_date, "end_date": end_date},
        )


# ============================================================================
# Resource Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found exception"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Union[str, UUID]] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        if message is None:
            if resource_id:
                message = f"{resource_type} with ID '{resource_id}' not found"
            else:
                message = f"{resource_type} not found"
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class AccountNotFoundException(NotFoundException):
    """Account not found"""

    def __init__(self, account_id: Optional[Union[str, UUID]] = None, code: Optional[str] = None):
        if code:
            super().__init__(
                resource_type="Account",
                message=f"Account with code '{code}' not found",
                code=ErrorCode.ACCOUNT_NOT_FOUND,
            )
        else:
            super().__init__(
                resource_type="Account",
                resource_id=account_id,
                code=ErrorCode.ACCOUNT_NOT_FOUND,
            )


class TransactionNotFoundException(NotFoundException):
    """Transaction not found"""

    def __init__(self, transaction_id: Union[str, UUID]):
        super().__init__(
            resource_type="Transaction",
            resource_id=transaction_id,
            code=ErrorCode.TRANSACTION_NOT_FOUND,
        )


class FiscalPeriodNotFoundError(NotFoundException):
    """No fiscal period exists for an id or covers a date"""

    def __init__(self, period_id: Optional[Union[str, UUID]] = None, on_date: Optional[Any] = None):
        if on_date is not None:
            super().__init__(
                resource_type="FiscalPeriod",
                message=f"No fiscal period covers {on_date}",
                code=ErrorCode.FISCAL_PERIOD_NOT_FOUND,
            )
        else:
            super().__init__(
                resource_type="FiscalPeriod",
                resource_id=period_id,
                code=ErrorCode.FISCAL_PERIOD_NOT_FOUND,
            )


class MatchNotFoundException(NotFoundException):
    """Three-way or reconciliation match not found"""

    def __init__(self, match_id: Union[str, UUID], resource_type: str = "ThreeWayMatch"):
        super().__init__(
            resource_type=resource_type,
            resource_id=match_id,
            code=ErrorCode.MATCH_NOT_FOUND,
        )


class ConflictException(AppException):
    """Resource conflict exception"""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        code: ErrorCode = ErrorCode.RESOURCE_CONFLICT,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if resource_type:
            _details["resource_type"] = resource_type
        super().__init__(
            code=code,
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=_details,
        )


class DuplicateEntryException(ConflictException):
    """Duplicate entry exception"""

    def __init__(
        self,
        resource_type: str,
        field: str,
        value: str,
    ):
        super().__init__(
            message=f"{resource_type} with {field} '{value}' already exists",
            resource_type=resource_type,
            code=ErrorCode.DUPLICATE_ENTRY,
            details={"field": field, "value": value},
        )


class DuplicateSubmissionError(ConflictException):
    """
    A genuine duplicate business document.

    True idempotent replays return the prior result instead of raising.
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        prior_id: Optional[Union[str, UUID]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        if prior_id is not None:
            _details["prior_id"] = str(prior_id)
        self.prior_id = prior_id
        super().__init__(
            message=message,
            resource_type=resource_type,
            code=ErrorCode.DUPLICATE_SUBMISSION,
            details=_details,
        )


# ============================================================================
# Business Logic Exceptions
# ============================================================================

class BusinessRuleException(AppException):
    """Business rule violation exception"""

    def __init__(
        self,
        message: str,
        rule: Optional[str] = None,
        code: ErrorCode = ErrorCode.BUSINESS_RULE_VIOLATION,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
    ):
        _details = details or {}
        if rule:
            _details["violated_rule"] = rule
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details=_details,
        )


class PeriodLockedError(BusinessRuleException):
    """Posting or amendment attempted outside an OPEN period"""

    def __init__(self, period_code: str, period_status: str, operation: str = "posting"):
        self.period_code = period_code
        self.period_status = period_status
        super().__init__(
            message=f"Cannot perform {operation} in fiscal period {period_code}: period is {period_status.upper()}",
            rule="PERIOD_OPEN",
            code=ErrorCode.PERIOD_LOCKED,
            details={"period": period_code, "status": period_status, "operation": operation},
            status_code=status.HTTP_423_LOCKED,
        )


class InvalidStateTransitionError(BusinessRuleException):
    """Requested status change is not part of the lifecycle"""

    def __init__(self, resource_type: str, current: str, requested: str):
        super().__init__(
            message=f"{resource_type} cannot move from {current.upper()} to {requested.upper()}",
            rule="STATE_MACHINE",
            code=ErrorCode.INVALID_STATE_TRANSITION,
            details={"resource_type": resource_type, "current": current, "requested": requested},
        )


class MatchRejectedError(BusinessRuleException):
    """
    Documents cannot be three-way matched at all.

    Tolerance breaches are not errors; they leave the match
    AWAITING_APPROVAL.
    """

    def __init__(self, reason: str, po_id: Optional[Union[str, UUID]] = None):
        details = {"reason": reason}
        if po_id is not None:
            details["po_id"] = str(po_id)
        super().__init__(
            message=f"Three-way match rejected: {reason}",
            rule="THREE_WAY_MATCH_PRECONDITION",
            code=ErrorCode.MATCH_REJECTED,
            details=details,
        )


class InsufficientApprovalTierError(BusinessRuleException):
    """Approver tier is below the tier the match requires"""

    def __init__(self, required_tier: int, approver_tier: int):
        super().__init__(
            message=f"Approval requires tier {required_tier}; approver holds tier {approver_tier}",
            rule="APPROVAL_TIER",
            code=ErrorCode.APPROVAL_TIER_INSUFFICIENT,
            details={"required_tier": required_tier, "approver_tier": approver_tier},
        )


class AccountInUseError(BusinessRuleException):
    """Account metadata cannot change once posted lines reference it"""

    def __init__(self, account_code: str, fields: list):
        super().__init__(
            message=f"Account {account_code} is referenced by posted lines; cannot change {', '.join(fields)}",
            rule="ACCOUNT_IMMUTABLE",
            code=ErrorCode.ACCOUNT_IN_USE,
            details={"account_code": account_code, "fields": fields},
        )


# ============================================================================
# Database Exceptions
# ============================================================================

class DatabaseException(AppException):
    """Database error exception"""

    def __init__(
        self,
        message: str = "A database error occurred",
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        original_error: Optional[Exception] = None,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            original_error=original_error,
            details=details,
        )


class StoreCommitError(DatabaseException):
    """
    Atomic commit failed and was rolled back.

    Safe to retry with the same idempotency key.
    """

    def __init__(
        self,
        operation: str,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        _details = details or {}
        _details["operation"] = operation
        _details["retryable"] = True
        super().__init__(
            message=f"Commit failed during {operation}; no changes were applied",
            code=ErrorCode.STORE_COMMIT_FAILED,
            original_error=original_error,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=_details,
        )


# ============================================================================
# Exception Handlers
# ============================================================================

def create_error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Create a standardized error response"""
    content = {
        "detail": {
            "code": code.value,
            "message": message,
            "timestamp": _isoformat(utcnow()),
        }
    }
    if field:
        content["detail"]["field"] = field
    if details:
        content["detail"]["details"] = details

    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle AppException"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"AppException: {exc.code.value} - {exc.message}",
        extra={
            "code": exc.code.value,
            "path": request.url.path,
            "method": request.method,
            "details": exc.details,
        },
        exc_info=exc.original_error,
    )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        field=exc.field,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException"""
    code_map = {
        400: ErrorCode.INVALID_INPUT,
        404: ErrorCode.NOT_FOUND,
        409: ErrorCode.RESOURCE_CONFLICT,
        422: ErrorCode.VALIDATION_ERROR,
        500: ErrorCode.INTERNAL_ERROR,
    }

    error_code = code_map.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTPException: {exc.status_code} - {message}",
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        code=error_code,
        message=message,
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    logger.warning(
        f"ValidationError: {len(errors)} validation errors",
        extra={"path": request.url.path, "method": request.method, "errors": errors},
    )

    return create_error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message="Request validation failed",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        details={"errors": errors},
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy errors that escaped the services"""
    error_message = "A database error occurred"
    error_code = ErrorCode.DATABASE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(exc, IntegrityError):
        error_message = "Data integrity constraint violated"
        error_code = ErrorCode.DATA_INTEGRITY_ERROR
        error_str = str(exc.orig).lower() if exc.orig else ""
        if "unique" in error_str or "duplicate" in error_str:
            error_message = "A record with this value already exists"
            error_code = ErrorCode.DUPLICATE_ENTRY
            status_code = status.HTTP_409_CONFLICT
        elif "foreign key" in error_str:
            error_message = "Referenced record does not exist"
            status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, OperationalError):
        error_message = "Database operation failed"
        error_code = ErrorCode.CONNECTION_ERROR
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, DataError):
        error_message = "Invalid data format for database"
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    logger.error(
        f"SQLAlchemyError: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=error_code,
        message=error_message,
        status_code=status_code,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions"""
    logger.critical(
        f"UnhandledException: {type(exc).__name__} - {str(exc)}",
        extra={"path": request.url.path, "method": request.method},
        exc_info=True,
    )

    return create_error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI application"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
