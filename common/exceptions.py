from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class DomainError(APIException):
    """Base class for back-office workflow errors.

    Subclasses carry a stable ``default_code`` and HTTP status. ``field`` names
    the violated input, when there is one, so API clients can highlight it.
    """

    status_code = status.HTTP_409_CONFLICT
    default_code = "domain_error"
    default_detail = "The requested operation is not allowed."

    def __init__(self, message: str | None = None, *, field: str | None = None, extra: dict[str, Any] | None = None):
        self.message = message or str(self.default_detail)
        self.field = field
        self.extra = extra or {}
        super().__init__(detail=self.message, code=self.default_code)

    @property
    def errors(self) -> Any:
        errors: dict[str, Any] = {}
        if self.field:
            errors[self.field] = [self.message]
        errors.update(self.extra)
        return errors or None


class InvalidTransition(DomainError):
    default_code = "invalid_transition"
    default_detail = "Status transition is not allowed."


class IncompleteReceiving(DomainError):
    default_code = "incomplete_receiving"
    default_detail = "Every line must be received before the order can be marked received."


class OrderLocked(DomainError):
    default_code = "order_locked"
    default_detail = "The purchase order can no longer be changed."


class InvalidReceivedQuantity(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_received_quantity"
    default_detail = "Received quantity must be greater than zero and no more than the ordered quantity."


class InvalidDateRange(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_date_range"
    default_detail = "Expiry date must be after the manufacturing date and in the future."


class AlreadyReceived(DomainError):
    default_code = "already_received"
    default_detail = "This purchase order line has already been received."


class ReceivingFailed(DomainError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "receiving_failed"
    default_detail = "Receiving failed and was rolled back. The line can be received again."

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None, **kwargs):
        self.cause = cause
        super().__init__(message, **kwargs)


class InvalidAmount(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_amount"
    default_detail = "Payment amount must be greater than zero."


class OverpaymentNotConfirmed(DomainError):
    default_code = "overpayment_not_confirmed"
    default_detail = "Payment amount exceeds the remaining balance."


class PaymentLocked(DomainError):
    default_code = "payment_locked"
    default_detail = "The payment can no longer be changed."


class RefundNotAllowed(DomainError):
    default_code = "refund_not_allowed"
    default_detail = "Only completed purchase-order payments can be refunded."


class InvalidPaymentTransition(DomainError):
    default_code = "invalid_payment_transition"
    default_detail = "Payment status transition is not allowed."


EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
    }


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(
            code=code,
            message=message,
            errors=errors,
            status_code=status_code,
        ),
        status=status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    if isinstance(exc, DomainError):
        if isinstance(exc, ReceivingFailed):
            logger.error("Receiving failed: %s", exc.message, exc_info=exc.cause)
        return error_response(
            code=exc.default_code,
            message=exc.message,
            errors=exc.errors,
            status_code=exc.status_code,
        )

    response = drf_exception_handler(exc, context)

    if response is None:
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.exception("Unhandled API exception in %s", view_name)
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            errors=None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    status_code = response.status_code
    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    response.data = build_error_envelope(
        code=code,
        message=message,
        errors=errors,
        status_code=status_code,
    )
    return response


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code

    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))

    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return data

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None
