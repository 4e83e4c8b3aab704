"""
Fulfillment orchestration: reacts to order events and courier actions.

Every handler is safe to run again for the same message. Idempotence comes
from the conditional updates in the store and the registry: a replayed
create finds the existing delivery, a replayed transition finds the status
already moved and stops.

Store and registry calls block on the database, so they run in the thread
pool. Publishing happens after the state change is committed; a publish that
fails is written to the failed-event ledger and never undoes the change.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import events, models, schemas
from .clients import OrderServiceClient, RestaurantServiceClient
from .config import settings
from .couriers import CourierRegistry
from .deliveries import DeliveryStore, can_transition
from .exceptions import (AlreadyAssigned, Conflict, EventPublishError, Forbidden, InvalidTransition,
                         NoCourierAvailable, NotReady, StaleState, ValidationError)
from .failed_events import record_failed_event
from .geo import Point, point_from_coordinates, validate_point
from .matching import CourierMatcher, Match
from .models import DeliveryStatus

logger = logging.getLogger(__name__)

# Statuses a courier may report for their own delivery.
COURIER_STATUSES = frozenset({
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED,
    DeliveryStatus.FAILED,
})

RELEASING_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED})

CANCEL_ATTEMPTS = 3


class FulfillmentOrchestrator:
    def __init__(
        self,
        db: Session,
        publisher,
        orders: Optional[OrderServiceClient] = None,
        restaurants: Optional[RestaurantServiceClient] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.publisher = publisher
        self.orders = orders
        self.restaurants = restaurants
        self.deliveries = DeliveryStore(db)
        self.couriers = CourierRegistry(db)
        self.matcher = CourierMatcher(self.couriers, rng=rng)

    async def _call(self, func, *args, **kwargs):
        return await run_in_threadpool(func, *args, **kwargs)

    async def _announce(self, event: events.Event):
        try:
            await self.publisher.publish(event)
        except EventPublishError as e:
            logger.error(f"Publishing {event.routing_key} failed: {e.message}")
            await self._call(record_failed_event, self.db, event.routing_key, event.to_payload(), e.message)

    # Order events

    async def handle_order_confirmed(self, event: events.OrderConfirmed) -> models.Delivery:
        existing = await self._call(self.deliveries.get_by_order, event.order_id)
        if existing:
            logger.info(f"Delivery {existing.id} already exists for order {event.order_id}")
            if existing.status == DeliveryStatus.PENDING_ASSIGNMENT and settings.AUTO_ASSIGNMENT_ENABLED:
                return await self._try_auto_assign(existing)
            return existing

        restaurant = await self.restaurants.get_restaurant(event.restaurant_id)
        order = await self.orders.get_order(event.order_id)

        dropoff = None
        dropoff_address = order.delivery_address
        if event.delivery_address is not None:
            dropoff = point_from_coordinates(event.delivery_address.coordinates)
            dropoff_address = event.delivery_address.address or dropoff_address
        dropoff = dropoff or order.dropoff

        customer = event.customer or events.Customer()
        facts = self._facts(
            order_id=event.order_id,
            order_number=event.order_number or order.order_number,
            restaurant=restaurant,
            dropoff_address=dropoff_address,
            dropoff=dropoff,
            customer_name=customer.name or order.customer_name,
            customer_phone=customer.phone or order.customer_phone,
            items=order.items,
        )
        delivery, created = await self._call(self.deliveries.create, facts)
        if created:
            await self._announce_created(delivery)

        if settings.AUTO_ASSIGNMENT_ENABLED and delivery.status == DeliveryStatus.PENDING_ASSIGNMENT:
            delivery = await self._try_auto_assign(delivery)
        return delivery

    async def handle_order_cancelled(self, event: events.OrderCancelled) -> Optional[models.Delivery]:
        note = f"Order was cancelled: {event.reason}" if event.reason else "Order was cancelled"
        for _ in range(CANCEL_ATTEMPTS):
            delivery = await self._call(self.deliveries.get_by_order, event.order_id)
            if delivery is None:
                logger.info(f"No delivery found for cancelled order {event.order_id}")
                return None
            if delivery.is_terminal:
                logger.info(f"Delivery {delivery.id} already {delivery.status.value}; ignoring cancellation")
                return delivery
            try:
                cancelled = await self._call(
                    self.deliveries.transition, delivery.id, DeliveryStatus.CANCELLED, delivery.status, note=note
                )
            except StaleState:
                logger.info(f"Delivery {delivery.id} changed while cancelling, re-reading")
                continue
            break
        else:
            raise StaleState(delivery.id, delivery.status)

        announcement = events.DeliveryCancelled(
            delivery_id=cancelled.id,
            order_id=cancelled.order_id,
            courier_id=cancelled.courier_id,
            reason=event.reason,
        )
        if cancelled.courier_id:
            await self._call(self.couriers.release, cancelled.courier_id, cancelled.id)
        await self._announce(announcement)
        logger.info(f"Delivery {announcement.delivery_id} cancelled for order {event.order_id}")
        return cancelled

    async def handle_order_ready(self, event: events.OrderReady) -> Optional[models.Delivery]:
        delivery = await self._call(self.deliveries.get_by_order, event.order_id)
        if delivery is None:
            logger.warning(f"No delivery found for ready order {event.order_id}; dropping")
            return None

        if delivery.status in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED):
            return delivery
        if delivery.status != DeliveryStatus.ASSIGNED:
            logger.warning(
                f"Order {event.order_id} ready but delivery {delivery.id} is {delivery.status.value}; dropping"
            )
            return delivery

        delivery = await self._call(
            self.deliveries.transition,
            delivery.id,
            DeliveryStatus.PICKED_UP,
            DeliveryStatus.ASSIGNED,
            note="Order picked up from restaurant",
        )
        await self._announce(events.DeliveryPickedUp(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            courier_id=delivery.courier_id,
            picked_up_at=delivery.picked_up_at,
        ))
        return delivery

    async def handle_user_registered(self, event: events.UserRegistered) -> Optional[models.Courier]:
        if event.role.lower() not in events.COURIER_ROLES:
            return None
        courier, created = await self._call(
            self.couriers.register, event.user_id, event.name, event.email, event.phone
        )
        if created:
            logger.info(f"Registered courier {courier.id} for user {event.user_id}")
        return courier

    async def handle_status_update(self, event: events.DeliveryStatusUpdate) -> models.Delivery:
        return await self.update_status(event.delivery_id, event.status, courier_id=event.courier_id, note=event.note)

    async def handle_location_update(self, event: events.DeliveryLocationUpdate) -> models.Courier:
        return await self.update_location(event.courier_id, Point(event.latitude, event.longitude), event.timestamp)

    # Delivery creation

    def _facts(self, order_id, order_number, restaurant, dropoff_address, dropoff, customer_name, customer_phone, items):
        pickup = restaurant.location
        return schemas.DeliveryCreate(
            order_id=order_id,
            order_number=order_number or f"ORD-{order_id}",
            restaurant_id=restaurant.id,
            restaurant_name=restaurant.name,
            pickup_address=restaurant.address,
            pickup_latitude=pickup.latitude if pickup else None,
            pickup_longitude=pickup.longitude if pickup else None,
            dropoff_address=dropoff_address or "",
            dropoff_latitude=dropoff.latitude if dropoff else None,
            dropoff_longitude=dropoff.longitude if dropoff else None,
            customer_name=customer_name or "Customer",
            customer_phone=customer_phone or "",
            items=list(items),
        )

    async def _announce_created(self, delivery: models.Delivery):
        await self._announce(events.DeliveryCreated(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            order_number=delivery.order_number,
            restaurant_id=delivery.restaurant_id,
            status=delivery.status,
            estimated_delivery_time=delivery.estimated_delivery_time,
        ))

    async def create_for_order(self, order_id: str, authorization: Optional[str] = None) -> Tuple[models.Delivery, bool]:
        existing = await self._call(self.deliveries.get_by_order, order_id)
        if existing:
            return existing, False

        order = await self.orders.get_order(order_id, authorization)
        if not order.restaurant_id:
            raise ValidationError("Order does not reference a restaurant", field="restaurantId")
        if not order.delivery_address:
            raise ValidationError("Order does not have a delivery address", field="deliveryAddress")
        restaurant = await self.restaurants.get_restaurant(order.restaurant_id, authorization)

        facts = self._facts(
            order_id=order_id,
            order_number=order.order_number,
            restaurant=restaurant,
            dropoff_address=order.delivery_address,
            dropoff=order.dropoff,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            items=order.items,
        )
        delivery, created = await self._call(self.deliveries.create, facts)
        if created:
            await self._announce_created(delivery)
        return delivery, created

    # Assignment

    async def _attach(self, delivery_id: UUID, courier: models.Courier) -> models.Delivery:
        """Second half of an assignment; the courier is already reserved."""
        try:
            delivery = await self._call(
                self.deliveries.assign_courier, delivery_id, courier.id, courier.name, courier.phone
            )
        except Exception:
            released = await self._call(self.couriers.release, courier.id, delivery_id)
            logger.warning(f"Assignment of delivery {delivery_id} failed; released courier {courier.id}: {released}")
            raise

        await self._announce(events.DeliveryAssigned(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            courier_id=courier.id,
            courier_name=courier.name,
            assigned_at=delivery.assigned_at,
            estimated_delivery_time=delivery.estimated_delivery_time,
        ))
        return delivery

    async def auto_assign(self, delivery_id: UUID) -> Tuple[models.Delivery, Match]:
        delivery = await self._call(self.deliveries.get, delivery_id)
        self._require_pending(delivery)

        tried = set()
        for _ in range(settings.ASSIGNMENT_MAX_ATTEMPTS):
            match = await self._call(self.matcher.select_courier, delivery, tried)
            if match is None:
                break
            try:
                await self._call(self.couriers.reserve, match.courier.id, delivery_id)
            except AlreadyAssigned:
                logger.info(f"Courier {match.courier.id} was taken before reservation; trying the next one")
                tried.add(match.courier.id)
                continue
            delivery = await self._attach(delivery_id, match.courier)
            logger.info(f"Delivery {delivery.id} auto-assigned to courier {match.courier.id}")
            return delivery, match

        raise NoCourierAvailable(delivery_id)

    async def _try_auto_assign(self, delivery: models.Delivery) -> models.Delivery:
        """Auto-assignment from an event: an unassignable delivery stays pending."""
        delivery_id = delivery.id
        try:
            delivery, _ = await self.auto_assign(delivery_id)
        except NoCourierAvailable:
            logger.info(f"Could not auto-assign delivery {delivery_id}: no available couriers")
        except AlreadyAssigned:
            logger.info(f"Delivery {delivery_id} was assigned concurrently")
        return await self._call(self.deliveries.get, delivery_id)

    async def assign_specific(self, delivery_id: UUID, courier_id: UUID) -> models.Delivery:
        delivery = await self._call(self.deliveries.get, delivery_id)
        self._require_pending(delivery)
        courier = await self._call(self.couriers.get, courier_id)
        if not courier.is_active:
            raise Conflict("Courier is not active", details={"courier_id": str(courier_id)})

        await self._call(self.couriers.reserve, courier_id, delivery_id)
        return await self._attach(delivery_id, courier)

    @staticmethod
    def _require_pending(delivery: models.Delivery):
        if delivery.status != DeliveryStatus.PENDING_ASSIGNMENT or delivery.courier_id is not None:
            raise AlreadyAssigned(
                "Delivery already assigned",
                details={"delivery_id": str(delivery.id), "status": delivery.status.value},
            )

    # Courier actions

    async def courier_for_user(self, user_id: str) -> models.Courier:
        courier = await self._call(self.couriers.get_by_user, user_id)
        if courier is None:
            raise Forbidden("No courier profile for this user")
        return courier

    async def update_status(
        self,
        delivery_id: UUID,
        new_status: DeliveryStatus,
        courier_id: Optional[UUID] = None,
        location: Optional[Point] = None,
        note: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> models.Delivery:
        """
        Status change reported by a courier.

        With courier_id, the delivery must belong to that courier. A pickup
        is only accepted once the order service reports the order ready.
        """
        new_status = DeliveryStatus(new_status)
        delivery = await self._call(self.deliveries.get, delivery_id)
        if courier_id is not None and delivery.courier_id != courier_id:
            raise Forbidden(details={"delivery_id": str(delivery_id)})
        if new_status not in COURIER_STATUSES or not can_transition(delivery.status, new_status):
            raise InvalidTransition(delivery.status, new_status)
        if location is not None:
            validate_point(location)

        if new_status == DeliveryStatus.PICKED_UP:
            order = await self.orders.get_order(delivery.order_id, authorization)
            if (order.status or "").lower() != "ready":
                raise NotReady(delivery.order_id, order.status)

        updated = await self._call(
            self.deliveries.transition, delivery.id, new_status, delivery.status, location=location, note=note
        )
        if new_status in RELEASING_STATUSES and updated.courier_id:
            await self._call(self.couriers.release, updated.courier_id, updated.id)

        await self._announce(events.DeliveryStatusUpdated(
            delivery_id=updated.id,
            order_id=updated.order_id,
            status=updated.status,
            courier_id=updated.courier_id,
            timestamp=updated.updated_date,
            actual_delivery_time=updated.actual_delivery_time,
        ))
        if new_status == DeliveryStatus.PICKED_UP:
            await self._announce(events.DeliveryPickedUp(
                delivery_id=updated.id,
                order_id=updated.order_id,
                courier_id=updated.courier_id,
                picked_up_at=updated.picked_up_at,
            ))
        return updated

    async def update_location(self, courier_id: UUID, point: Point, timestamp: Optional[datetime] = None) -> models.Courier:
        validate_point(point)
        timestamp = timestamp or models.utcnow()
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
        courier = await self._call(self.couriers.update_location, courier_id, point, timestamp)
        if courier.current_delivery_id:
            await self._announce(events.DeliveryTrackingUpdated(
                delivery_id=courier.current_delivery_id,
                courier_id=courier.id,
                latitude=point.latitude,
                longitude=point.longitude,
                timestamp=timestamp,
            ))
        return courier

    async def complete_profile(
        self,
        courier_id: UUID,
        phone: str,
        vehicle: Optional[dict] = None,
        driver_license: Optional[dict] = None,
    ) -> models.Courier:
        courier = await self._call(self.couriers.complete_profile, courier_id, phone, vehicle, driver_license)
        await self._announce(events.CourierProfileUpdated(
            courier_id=courier.id,
            user_id=courier.user_id,
            is_profile_complete=courier.is_profile_complete,
            vehicle_type=courier.vehicle_type.value if courier.vehicle_type else None,
        ))
        return courier
