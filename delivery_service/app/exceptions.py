"""
Exception taxonomy for the delivery service.

Every domain failure carries the HTTP status it maps to, so routes can let
them propagate and the application-level handler renders one error shape.
"""
from typing import Any, Dict, Optional

from fastapi import status


class FulfillmentError(Exception):
    """Base class for delivery service errors"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(FulfillmentError):
    """Malformed input or missing required fields"""

    def __init__(self, message: str, field: str = None, details: Optional[Dict[str, Any]] = None):
        if field:
            details = details or {}
            details["field"] = field
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InvalidTransition(ValidationError):
    """Requested status is not reachable from the current one"""

    def __init__(self, current_status, new_status):
        current = getattr(current_status, "value", current_status)
        new = getattr(new_status, "value", new_status)
        super().__init__(
            f"Invalid status transition from {current} to {new}",
            details={"current_status": current, "new_status": new},
        )


class NotReady(ValidationError):
    """Order has not been confirmed ready by the order service"""

    def __init__(self, order_id: str, order_status: Optional[str] = None):
        super().__init__(
            "Cannot pick up order that is not ready",
            details={"order_id": order_id, "order_status": order_status},
        )


class NoCourierAvailable(FulfillmentError):
    """No courier can take the delivery right now; callers may retry later"""

    def __init__(self, delivery_id=None):
        super().__init__(
            "No available couriers",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"delivery_id": str(delivery_id)} if delivery_id else None,
        )


class NotFound(FulfillmentError):
    def __init__(self, resource: str, identifier, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"{resource} with identifier '{identifier}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class Forbidden(FulfillmentError):
    def __init__(self, message: str = "Not authorized to update this delivery", details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class Conflict(FulfillmentError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, status_code=status.HTTP_409_CONFLICT, details=details)


class AlreadyAssigned(Conflict):
    pass


class DuplicateDelivery(Conflict):
    def __init__(self, order_id: str, delivery_id=None):
        super().__init__(
            f"Delivery already exists for order {order_id}",
            details={"order_id": order_id, "delivery_id": str(delivery_id) if delivery_id else None},
        )


class StaleState(Conflict):
    """Stored status moved on since the caller read it"""

    def __init__(self, delivery_id, expected_status):
        expected = getattr(expected_status, "value", expected_status)
        super().__init__(
            f"Delivery {delivery_id} is no longer in status {expected}",
            details={"delivery_id": str(delivery_id), "expected_status": expected},
        )


class CollaboratorUnavailable(FulfillmentError):
    """An upstream service could not be reached; the call is safe to retry"""

    retry_after = 5

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"External service '{service}' unavailable: {message}",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class EventPublishError(FulfillmentError):
    def __init__(self, routing_key: str, message: str):
        super().__init__(
            message=f"Failed to publish {routing_key}: {message}",
            details={"routing_key": routing_key},
        )


# Failures a redelivered message may get past.
RETRIABLE_ERRORS = (CollaboratorUnavailable, StaleState)
