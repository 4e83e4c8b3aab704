import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Index,
                        Integer, String, Text)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base
from .geo import Point


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DeliveryStatus(str, enum.Enum):
    PENDING_ASSIGNMENT = "pending_assignment"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED})


class VehicleType(str, enum.Enum):
    BICYCLE = "bicycle"
    MOTORCYCLE = "motorcycle"
    CAR = "car"
    SCOOTER = "scooter"


class FailedEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Courier(Base):
    __tablename__ = "couriers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, default="")
    phone = Column(String, nullable=False, default="")

    is_available = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)
    is_profile_complete = Column(Boolean, nullable=False, default=False)

    vehicle_type = Column(Enum(VehicleType, values_callable=_values), nullable=True)
    vehicle_model = Column(String, nullable=True)
    vehicle_color = Column(String, nullable=True)
    license_plate = Column(String, nullable=True)
    license_number = Column(String, nullable=True)
    license_expiry = Column(DateTime, nullable=True)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime, nullable=True)

    current_delivery_id = Column(UUID(as_uuid=True), nullable=True)

    rating_average = Column(Float, nullable=False, default=0.0)
    rating_count = Column(Integer, nullable=False, default=0)

    created_date = Column(DateTime, nullable=False, default=utcnow)
    updated_date = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_couriers_location", "latitude", "longitude"),
        Index("ix_couriers_availability", "is_available", "is_active", "is_verified"),
    )

    @property
    def location(self):
        if self.latitude is None or self.longitude is None:
            return None
        return Point(self.latitude, self.longitude)


class Delivery(Base):
    __tablename__ = "deliveries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(String, nullable=False, unique=True)
    order_number = Column(String, nullable=False)
    restaurant_id = Column(String, nullable=False, index=True)
    restaurant_name = Column(String, nullable=False)

    pickup_address = Column(String, nullable=False, default="")
    pickup_latitude = Column(Float, nullable=True)
    pickup_longitude = Column(Float, nullable=True)
    dropoff_address = Column(String, nullable=False, default="")
    dropoff_latitude = Column(Float, nullable=True)
    dropoff_longitude = Column(Float, nullable=True)

    customer_name = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False, default="")
    items = Column(JSON, nullable=False, default=list)
    special_instructions = Column(Text, nullable=True)

    status = Column(
        Enum(DeliveryStatus, values_callable=_values),
        nullable=False,
        default=DeliveryStatus.PENDING_ASSIGNMENT,
        index=True,
    )
    courier_id = Column(UUID(as_uuid=True), ForeignKey("couriers.id"), nullable=True, index=True)
    courier_name = Column(String, nullable=True)
    courier_phone = Column(String, nullable=True)

    assigned_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    estimated_delivery_time = Column(DateTime, nullable=True)
    actual_delivery_time = Column(DateTime, nullable=True)
    distance_km = Column(Float, nullable=True)

    created_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_date = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    courier = relationship("Courier", lazy="joined")
    tracking_history = relationship(
        "TrackingEntry",
        order_by="TrackingEntry.id",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pickup_point(self):
        if self.pickup_latitude is None or self.pickup_longitude is None:
            return None
        return Point(self.pickup_latitude, self.pickup_longitude)

    @property
    def dropoff_point(self):
        if self.dropoff_latitude is None or self.dropoff_longitude is None:
            return None
        return Point(self.dropoff_latitude, self.dropoff_longitude)


class TrackingEntry(Base):
    """One row per tracking event; rows are only ever inserted."""

    __tablename__ = "tracking_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    delivery_id = Column(UUID(as_uuid=True), ForeignKey("deliveries.id"), nullable=False, index=True)
    status = Column(String, nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    note = Column(String, nullable=True)


class FailedEvent(Base):
    """Outgoing event that could not be published, kept for replay."""

    __tablename__ = "failed_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    routing_key = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=False, default="")
    retry_count = Column(Integer, nullable=False, default=0)
    status = Column(
        Enum(FailedEventStatus, values_callable=_values),
        nullable=False,
        default=FailedEventStatus.PENDING,
        index=True,
    )
    next_retry_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    created_date = Column(DateTime, nullable=False, default=utcnow)
