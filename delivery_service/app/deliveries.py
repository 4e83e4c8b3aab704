"""
Delivery store: delivery records, their lifecycle and tracking history.

Every status change is a conditional UPDATE on the status the caller last
read. A caller holding a stale view gets StaleState instead of silently
overwriting a newer state.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .exceptions import AlreadyAssigned, DuplicateDelivery, InvalidTransition, NotFound, StaleState
from .geo import Point, distance_km, estimated_delivery_time
from .models import DeliveryStatus

logger = logging.getLogger(__name__)

TRANSITIONS = {
    DeliveryStatus.PENDING_ASSIGNMENT: {DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED},
    DeliveryStatus.ASSIGNED: {DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED},
    DeliveryStatus.PICKED_UP: {DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED},
    DeliveryStatus.IN_TRANSIT: {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED},
    DeliveryStatus.DELIVERED: set(),
    DeliveryStatus.FAILED: set(),
    DeliveryStatus.CANCELLED: set(),
}


def can_transition(current: DeliveryStatus, new: DeliveryStatus) -> bool:
    return new in TRANSITIONS.get(current, set())


class DeliveryStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, delivery_id: UUID) -> models.Delivery:
        delivery = self.db.query(models.Delivery).filter(models.Delivery.id == delivery_id).first()
        if not delivery:
            raise NotFound("Delivery", delivery_id)
        return delivery

    def get_by_order(self, order_id: str) -> Optional[models.Delivery]:
        return self.db.query(models.Delivery).filter(models.Delivery.order_id == order_id).first()

    def create(self, facts: schemas.DeliveryCreate, strict: bool = False) -> Tuple[models.Delivery, bool]:
        """
        Insert a pending delivery for facts.order_id.

        Returns (delivery, created). An existing delivery for the order is
        returned unchanged unless strict is set, in which case
        DuplicateDelivery is raised.
        """
        existing = self.get_by_order(facts.order_id)
        if existing:
            if strict:
                raise DuplicateDelivery(facts.order_id, existing.id)
            return existing, False

        now = models.utcnow()
        pickup = None
        if facts.pickup_latitude is not None and facts.pickup_longitude is not None:
            pickup = Point(facts.pickup_latitude, facts.pickup_longitude)
        dropoff = None
        if facts.dropoff_latitude is not None and facts.dropoff_longitude is not None:
            dropoff = Point(facts.dropoff_latitude, facts.dropoff_longitude)

        delivery_id = uuid.uuid4()
        delivery = models.Delivery(
            id=delivery_id,
            order_id=facts.order_id,
            order_number=facts.order_number,
            restaurant_id=facts.restaurant_id,
            restaurant_name=facts.restaurant_name,
            pickup_address=facts.pickup_address,
            pickup_latitude=facts.pickup_latitude,
            pickup_longitude=facts.pickup_longitude,
            dropoff_address=facts.dropoff_address,
            dropoff_latitude=facts.dropoff_latitude,
            dropoff_longitude=facts.dropoff_longitude,
            customer_name=facts.customer_name,
            customer_phone=facts.customer_phone,
            items=[item.model_dump() for item in facts.items],
            special_instructions=facts.special_instructions,
            status=DeliveryStatus.PENDING_ASSIGNMENT,
            estimated_delivery_time=estimated_delivery_time(now, pickup, dropoff),
            distance_km=round(distance_km(pickup, dropoff), 3) if pickup and dropoff else None,
            created_date=now,
            updated_date=now,
        )
        self.db.add(delivery)
        self.db.add(models.TrackingEntry(
            delivery_id=delivery_id,
            status=DeliveryStatus.PENDING_ASSIGNMENT.value,
            timestamp=now,
            note="Delivery created and pending assignment",
        ))
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race on the unique order_id.
            self.db.rollback()
            existing = self.get_by_order(facts.order_id)
            if existing is None:
                raise
            if strict:
                raise DuplicateDelivery(facts.order_id, existing.id)
            return existing, False

        self.db.refresh(delivery)
        logger.info(f"Created delivery {delivery.id} for order {facts.order_id}")
        return delivery, True

    def transition(
        self,
        delivery_id: UUID,
        new_status: DeliveryStatus,
        expected_status: DeliveryStatus,
        location: Optional[Point] = None,
        note: Optional[str] = None,
    ) -> models.Delivery:
        new_status = DeliveryStatus(new_status)
        expected_status = DeliveryStatus(expected_status)
        # assigned is only reachable through assign_courier.
        if new_status == DeliveryStatus.ASSIGNED or not can_transition(expected_status, new_status):
            raise InvalidTransition(expected_status, new_status)

        now = models.utcnow()
        values = {models.Delivery.status: new_status, models.Delivery.updated_date: now}
        if new_status == DeliveryStatus.PICKED_UP:
            values[models.Delivery.picked_up_at] = now
        elif new_status == DeliveryStatus.DELIVERED:
            values[models.Delivery.delivered_at] = now
            values[models.Delivery.actual_delivery_time] = now

        updated = (
            self.db.query(models.Delivery)
            .filter(models.Delivery.id == delivery_id, models.Delivery.status == expected_status)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            self.get(delivery_id)
            raise StaleState(delivery_id, expected_status)

        self.db.add(models.TrackingEntry(
            delivery_id=delivery_id,
            status=new_status.value,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            timestamp=now,
            note=note or f"Status updated to {new_status.value}",
        ))
        self.db.commit()
        logger.info(f"Delivery {delivery_id}: {expected_status.value} -> {new_status.value}")
        return self._reload(delivery_id)

    def assign_courier(
        self,
        delivery_id: UUID,
        courier_id: UUID,
        courier_name: str,
        courier_phone: str = "",
    ) -> models.Delivery:
        now = models.utcnow()
        updated = (
            self.db.query(models.Delivery)
            .filter(
                models.Delivery.id == delivery_id,
                models.Delivery.status == DeliveryStatus.PENDING_ASSIGNMENT,
                models.Delivery.courier_id.is_(None),
            )
            .update(
                {
                    models.Delivery.status: DeliveryStatus.ASSIGNED,
                    models.Delivery.courier_id: courier_id,
                    models.Delivery.courier_name: courier_name,
                    models.Delivery.courier_phone: courier_phone,
                    models.Delivery.assigned_at: now,
                    models.Delivery.updated_date: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            delivery = self.get(delivery_id)
            raise AlreadyAssigned(
                "Delivery is not awaiting assignment",
                details={"delivery_id": str(delivery_id), "status": delivery.status.value},
            )

        self.db.add(models.TrackingEntry(
            delivery_id=delivery_id,
            status=DeliveryStatus.ASSIGNED.value,
            timestamp=now,
            note=f"Assigned to {courier_name}",
        ))
        self.db.commit()
        logger.info(f"Delivery {delivery_id} assigned to courier {courier_id}")
        return self._reload(delivery_id)

    def append_tracking(
        self,
        delivery_id: UUID,
        status: str,
        location: Optional[Point] = None,
        timestamp: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> models.TrackingEntry:
        entry = models.TrackingEntry(
            delivery_id=delivery_id,
            status=getattr(status, "value", status),
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            timestamp=timestamp or models.utcnow(),
            note=note,
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def list_for_restaurant(
        self,
        restaurant_id: str,
        status: Optional[DeliveryStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[models.Delivery]:
        query = self.db.query(models.Delivery).filter(models.Delivery.restaurant_id == restaurant_id)
        if status:
            query = query.filter(models.Delivery.status == status)
        if start:
            query = query.filter(models.Delivery.created_date >= start)
        if end:
            query = query.filter(models.Delivery.created_date <= end)
        return query.order_by(models.Delivery.created_date.desc()).all()

    def list_active(self, status: Optional[DeliveryStatus] = None) -> List[models.Delivery]:
        query = self.db.query(models.Delivery)
        if status:
            query = query.filter(models.Delivery.status == status)
        else:
            query = query.filter(models.Delivery.status.notin_(list(models.TERMINAL_STATUSES)))
        return query.order_by(models.Delivery.created_date.desc()).all()

    def list_history_for_courier(self, courier_id: UUID, page: int = 1, limit: int = 10) -> Tuple[List[models.Delivery], int]:
        """Terminal deliveries of a courier, newest first. Returns (page_items, total)."""
        query = self.db.query(models.Delivery).filter(
            models.Delivery.courier_id == courier_id,
            models.Delivery.status.in_(list(models.TERMINAL_STATUSES)),
        )
        total = query.count()
        items = (
            query.order_by(models.Delivery.created_date.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def _reload(self, delivery_id: UUID) -> models.Delivery:
        self.db.expire_all()
        return self.get(delivery_id)
