"""
Courier registry: availability, location and reservation of couriers.

`reserve` is the only way a courier becomes busy with a delivery. It is a
single conditional UPDATE, so two concurrent reservations of one courier
cannot both succeed.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .deliveries import DeliveryStore
from .exceptions import AlreadyAssigned, NotFound, ValidationError
from .geo import Point, bounding_box, distance_km

logger = logging.getLogger(__name__)


class CourierRegistry:
    def __init__(self, db: Session):
        self.db = db

    def _eligible(self):
        return self.db.query(models.Courier).filter(
            models.Courier.is_available.is_(True),
            models.Courier.is_active.is_(True),
            models.Courier.is_verified.is_(True),
            models.Courier.is_profile_complete.is_(True),
            models.Courier.current_delivery_id.is_(None),
        )

    def get(self, courier_id: UUID) -> models.Courier:
        courier = self.db.query(models.Courier).filter(models.Courier.id == courier_id).first()
        if not courier:
            raise NotFound("Courier", courier_id)
        return courier

    def get_by_user(self, user_id: str) -> Optional[models.Courier]:
        return self.db.query(models.Courier).filter(models.Courier.user_id == user_id).first()

    def find_available(self, key: Optional[Callable[[models.Courier], object]] = None) -> List[models.Courier]:
        couriers = self._eligible().order_by(models.Courier.created_date).all()
        if key is not None:
            couriers.sort(key=key)
        return couriers

    def find_without_location(self) -> List[models.Courier]:
        return (
            self._eligible()
            .filter((models.Courier.latitude.is_(None)) | (models.Courier.longitude.is_(None)))
            .order_by(models.Courier.created_date)
            .all()
        )

    def find_nearby(self, point: Point, max_distance_m: float, limit: int) -> List[Tuple[models.Courier, float]]:
        """
        Eligible couriers within max_distance_m of point, nearest first.

        The bounding box narrows the rows through the location index; the
        exact Haversine distance decides membership and order. Returns
        (courier, distance_km) pairs.
        """
        radius_km = max_distance_m / 1000.0
        min_lat, max_lat, min_lon, max_lon = bounding_box(point, radius_km)
        rows = (
            self._eligible()
            .filter(
                models.Courier.latitude.isnot(None),
                models.Courier.longitude.isnot(None),
                models.Courier.latitude.between(min_lat, max_lat),
                models.Courier.longitude.between(min_lon, max_lon),
            )
            .order_by(models.Courier.created_date)
            .all()
        )

        ranked = []
        for courier in rows:
            dist = distance_km(point, Point(courier.latitude, courier.longitude))
            if dist <= radius_km:
                ranked.append((courier, dist))
        ranked.sort(key=lambda pair: pair[1])
        return ranked[:limit]

    def reserve(self, courier_id: UUID, delivery_id: UUID) -> models.Courier:
        updated = (
            self.db.query(models.Courier)
            .filter(
                models.Courier.id == courier_id,
                models.Courier.is_available.is_(True),
                models.Courier.current_delivery_id.is_(None),
            )
            .update(
                {
                    models.Courier.is_available: False,
                    models.Courier.current_delivery_id: delivery_id,
                    models.Courier.updated_date: models.utcnow(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            courier = self.get(courier_id)
            raise AlreadyAssigned(
                "Courier is not available",
                details={
                    "courier_id": str(courier_id),
                    "current_delivery_id": str(courier.current_delivery_id) if courier.current_delivery_id else None,
                },
            )
        self.db.commit()
        logger.info(f"Courier {courier_id} reserved for delivery {delivery_id}")
        return self.get(courier_id)

    def release(self, courier_id: UUID, delivery_id: Optional[UUID] = None) -> bool:
        """
        Free the courier. Returns False when there was nothing to release.
        With delivery_id, only a courier still holding that delivery is freed.
        """
        query = self.db.query(models.Courier).filter(models.Courier.id == courier_id)
        if delivery_id is not None:
            query = query.filter(models.Courier.current_delivery_id == delivery_id)
        else:
            query = query.filter(
                (models.Courier.is_available.is_(False)) | (models.Courier.current_delivery_id.isnot(None))
            )
        updated = query.update(
            {
                models.Courier.is_available: True,
                models.Courier.current_delivery_id: None,
                models.Courier.updated_date: models.utcnow(),
            },
            synchronize_session=False,
        )
        self.db.commit()
        if updated:
            logger.info(f"Courier {courier_id} released")
        return bool(updated)

    def update_location(self, courier_id: UUID, point: Point, timestamp: datetime) -> models.Courier:
        courier = self.get(courier_id)
        courier.latitude = point.latitude
        courier.longitude = point.longitude
        courier.location_updated_at = timestamp
        self.db.commit()
        self.db.refresh(courier)

        if courier.current_delivery_id:
            try:
                delivery = (
                    self.db.query(models.Delivery)
                    .filter(models.Delivery.id == courier.current_delivery_id)
                    .first()
                )
                if delivery:
                    DeliveryStore(self.db).append_tracking(
                        delivery.id, delivery.status, point, timestamp, note="Location updated"
                    )
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Could not record location for delivery {courier.current_delivery_id}: {e}")
        return courier

    def register(self, user_id: str, name: str, email: str = "", phone: str = "") -> Tuple[models.Courier, bool]:
        """Create a courier for user_id unless one exists. Returns (courier, created)."""
        existing = self.get_by_user(user_id)
        if existing:
            return existing, False

        courier = models.Courier(
            user_id=user_id,
            name=name or "Delivery Driver",
            email=email or "",
            phone=phone or "",
            is_available=True,
            is_active=True,
            is_verified=False,
            is_profile_complete=False,
        )
        self.db.add(courier)
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker registered the same user first.
            self.db.rollback()
            return self.get_by_user(user_id), False
        self.db.refresh(courier)
        logger.info(f"Created courier {courier.id} for user {user_id}")
        return courier, True

    def get_or_create_profile(self, user_id: str, name: str = "", email: str = "", phone: str = "") -> models.Courier:
        courier, _ = self.register(user_id, name, email, phone)
        return courier

    def complete_profile(
        self,
        courier_id: UUID,
        phone: str,
        vehicle: Optional[dict] = None,
        driver_license: Optional[dict] = None,
    ) -> models.Courier:
        if not phone or not phone.strip():
            raise ValidationError("Phone number is required", field="phone")

        courier = self.get(courier_id)
        courier.phone = phone.strip()

        if vehicle and driver_license:
            courier.vehicle_type = models.VehicleType(vehicle["type"])
            courier.vehicle_model = vehicle["model"]
            courier.vehicle_color = vehicle["color"]
            courier.license_plate = vehicle["license_plate"]
            courier.license_number = driver_license["number"]
            courier.license_expiry = driver_license["expiry_date"]
            courier.is_profile_complete = True

        self.db.commit()
        self.db.refresh(courier)
        return courier

    def set_availability(self, courier_id: UUID, available: bool) -> models.Courier:
        updated = (
            self.db.query(models.Courier)
            .filter(models.Courier.id == courier_id, models.Courier.current_delivery_id.is_(None))
            .update(
                {models.Courier.is_available: available, models.Courier.updated_date: models.utcnow()},
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            self.get(courier_id)
            raise ValidationError("Cannot change availability while having an active delivery")
        self.db.commit()
        return self.get(courier_id)

    def set_verified(self, courier_id: UUID, verified: bool) -> models.Courier:
        courier = self.get(courier_id)
        courier.is_verified = verified
        self.db.commit()
        self.db.refresh(courier)
        return courier
