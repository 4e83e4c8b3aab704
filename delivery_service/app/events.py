"""
Event payload schemas, one per routing key.

Payloads travel as camelCase JSON. Incoming messages are validated against
the schema registered for their routing key before any handler sees them.
"""
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Type
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field
from pydantic.alias_generators import to_camel

from .models import DeliveryStatus


class Payload(BaseModel):
    """camelCase JSON object; nested parts of events use it directly."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class Event(Payload):
    routing_key: ClassVar[str] = ""

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Consumed

class Customer(Payload):
    name: Optional[str] = None
    phone: Optional[str] = None


class DeliveryAddress(Payload):
    address: str = ""
    coordinates: Any = None


class OrderConfirmed(Event):
    routing_key: ClassVar[str] = "order.confirmed"

    order_id: str = Field(min_length=1)
    order_number: Optional[str] = None
    restaurant_id: str = Field(min_length=1)
    delivery_address: Optional[DeliveryAddress] = None
    customer: Optional[Customer] = None


class OrderCancelled(Event):
    routing_key: ClassVar[str] = "order.cancelled"

    order_id: str = Field(min_length=1)
    reason: Optional[str] = None


class OrderReady(Event):
    routing_key: ClassVar[str] = "order.ready"

    order_id: str = Field(min_length=1)


class UserRegistered(Event):
    routing_key: ClassVar[str] = "user.registered"

    user_id: str = Field(min_length=1)
    role: str
    name: str = ""
    email: str = ""
    phone: str = ""


class DeliveryStatusUpdate(Event):
    routing_key: ClassVar[str] = "delivery.status.update"

    delivery_id: UUID
    status: DeliveryStatus
    courier_id: Optional[UUID] = None
    note: Optional[str] = None


class DeliveryLocationUpdate(Event):
    routing_key: ClassVar[str] = "delivery.location.update"

    courier_id: UUID = Field(validation_alias=AliasChoices("courierId", "courier_id", "deliveryPersonId"))
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    timestamp: Optional[datetime] = None


# Published

class DeliveryCreated(Event):
    routing_key: ClassVar[str] = "delivery.created"

    delivery_id: UUID
    order_id: str
    order_number: str
    restaurant_id: str
    status: DeliveryStatus
    estimated_delivery_time: Optional[datetime] = None


class DeliveryAssigned(Event):
    routing_key: ClassVar[str] = "delivery.assigned"

    delivery_id: UUID
    order_id: str
    courier_id: UUID
    courier_name: str
    assigned_at: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None


class DeliveryPickedUp(Event):
    routing_key: ClassVar[str] = "delivery.picked_up"

    delivery_id: UUID
    order_id: str
    courier_id: Optional[UUID] = None
    picked_up_at: Optional[datetime] = None


class DeliveryStatusUpdated(Event):
    routing_key: ClassVar[str] = "delivery.status_updated"

    delivery_id: UUID
    order_id: str
    status: DeliveryStatus
    courier_id: Optional[UUID] = None
    timestamp: datetime
    actual_delivery_time: Optional[datetime] = None


class DeliveryCancelled(Event):
    routing_key: ClassVar[str] = "delivery.cancelled"

    delivery_id: UUID
    order_id: str
    courier_id: Optional[UUID] = None
    reason: Optional[str] = None


class DeliveryTrackingUpdated(Event):
    routing_key: ClassVar[str] = "delivery.tracking_updated"

    delivery_id: UUID
    courier_id: UUID
    latitude: float
    longitude: float
    timestamp: datetime


class CourierProfileUpdated(Event):
    routing_key: ClassVar[str] = "courier.profile_updated"

    courier_id: UUID
    user_id: str
    is_profile_complete: bool
    vehicle_type: Optional[str] = None


CONSUMED: Dict[str, Type[Event]] = {
    schema.routing_key: schema
    for schema in (OrderConfirmed, OrderCancelled, OrderReady, UserRegistered,
                   DeliveryStatusUpdate, DeliveryLocationUpdate)
}

PUBLISHED: Dict[str, Type[Event]] = {
    schema.routing_key: schema
    for schema in (DeliveryCreated, DeliveryAssigned, DeliveryPickedUp, DeliveryStatusUpdated,
                   DeliveryCancelled, DeliveryTrackingUpdated, CourierProfileUpdated)
}

COURIER_ROLES = frozenset({"courier", "delivery_person"})
