from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from .database import get_db
from .exceptions import ValidationError
from .fulfillment import FulfillmentOrchestrator


def get_publisher(request: Request):
    return request.app.state.gateway


def get_order_client(request: Request):
    return request.app.state.order_client


def get_restaurant_client(request: Request):
    return request.app.state.restaurant_client


def get_orchestrator(
    db: Session = Depends(get_db),
    publisher=Depends(get_publisher),
    orders=Depends(get_order_client),
    restaurants=Depends(get_restaurant_client),
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(db, publisher, orders, restaurants)


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity, injected by the gateway after authentication."""
    if not x_user_id:
        raise ValidationError("X-User-Id header is required", field="X-User-Id")
    return x_user_id
