"""
Error taxonomy shared by the inventory and order services.

Every business rejection raised by the core derives from FulfillmentError,
which carries a stable ``kind`` plus enough context for a calling surface to
explain the failure. Internal details (stack traces, expected OTP values)
never appear in ``to_dict()``.
"""
import logging
from typing import Any, Dict, Optional

from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    """Base class for all business rule violations."""
    kind = 'FulfillmentError'
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {'error': self.kind, 'detail': self.message}
        payload.update(self.context)
        return payload


class ValidationError(FulfillmentError):
    """Malformed input; ``field`` names the offending attribute."""
    kind = 'ValidationError'
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field: Optional[str] = None, **context: Any):
        self.field = field
        super().__init__(message, field=field, **context)


class CapacityExceeded(ValidationError):
    """Adding stock would push a bin above its item capacity."""

    def __init__(self, bin_code: str, capacity: int, current: int, requested: int):
        self.bin_code = bin_code
        self.capacity = capacity
        self.current = current
        self.requested = requested
        super().__init__(
            f"Bin {bin_code} cannot take {requested} more items "
            f"({current}/{capacity} in use)",
            field='quantity',
            bin_code=bin_code,
            capacity=capacity,
            current=current,
            requested=requested,
        )


class InsufficientStock(FulfillmentError):
    """Not enough stock for the requested quantity."""
    kind = 'InsufficientStock'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, product_id, requested: int, available: int, bin_code: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.bin_code = bin_code
        where = f" in bin {bin_code}" if bin_code else ""
        context = {'product_id': product_id, 'requested': requested, 'available': available}
        if bin_code:
            context['bin_code'] = bin_code
        super().__init__(
            f"Insufficient stock for product {product_id}{where}: "
            f"requested {requested}, available {available}",
            **context,
        )


class IllegalTransition(FulfillmentError):
    """The requested transition is not valid from the current state."""
    kind = 'IllegalTransition'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current: str, attempted: str, message: Optional[str] = None):
        current, attempted = str(current), str(attempted)
        self.current = current
        self.attempted = attempted
        super().__init__(
            message or f"Cannot move from '{current}' to '{attempted}'",
            current=current,
            attempted=attempted,
        )


class AuthorizationMismatch(FulfillmentError):
    """Wrong actor for an assignment, or a delivery OTP mismatch."""
    kind = 'AuthorizationMismatch'
    status_code = status.HTTP_403_FORBIDDEN


class AlreadyClaimed(FulfillmentError):
    """
    Another actor won the claim race.

    Claim services return this instead of raising it: losing a race is an
    expected outcome and callers are expected to re-poll.
    """
    kind = 'AlreadyClaimed'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, order_number: str, role: str):
        self.order_number = order_number
        self.role = role
        super().__init__(
            f"Order {order_number} is already assigned to a {role}",
            order_number=order_number,
            role=role,
        )


class NotFound(FulfillmentError):
    kind = 'NotFound'
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} {identifier} not found",
            resource=resource,
            identifier=str(identifier),
        )


def error_response(exc: FulfillmentError) -> Response:
    """Render a business rejection for the HTTP surface."""
    return Response(exc.to_dict(), status=exc.status_code)


def server_error_response(exc: Exception) -> Response:
    """Log an unexpected failure and answer without internal detail."""
    logger.exception(f"Unexpected error: {exc}")
    return Response(
        {'error': 'Server Error', 'detail': 'An unexpected error occurred'},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


def actor_id(request) -> str:
    """Identity of the authenticated actor as an opaque string."""
    return str(request.user.pk)
