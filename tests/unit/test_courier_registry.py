import pytest
from datetime import datetime
from uuid import uuid4

from delivery_service.app import models
from delivery_service.app.couriers import CourierRegistry
from delivery_service.app.exceptions import AlreadyAssigned, NotFound, ValidationError
from delivery_service.app.geo import Point


class TestCourierRegistry:
    """Тесты реестра курьеров"""

    def test_find_available_filters_ineligible(self, db, make_courier):
        eligible = make_courier(location=(0, 0))
        make_courier(location=(0, 0), available=False)
        make_courier(location=(0, 0), verified=False)
        make_courier(location=(0, 0), complete=False)
        make_courier(location=(0, 0), active=False)

        found = CourierRegistry(db).find_available()
        assert [c.id for c in found] == [eligible.id]

    def test_find_available_with_ranking(self, db, make_courier):
        first = make_courier(name="Zed")
        second = make_courier(name="Amy")

        found = CourierRegistry(db).find_available(key=lambda c: c.name)
        assert [c.id for c in found] == [second.id, first.id]

    def test_find_nearby_orders_by_distance_and_respects_radius(self, db, make_courier):
        far = make_courier(location=(0, 0.05))
        near = make_courier(location=(0, 0.001))
        make_courier(location=(0, 1.0))  # ~111 km
        make_courier()  # no location

        found = CourierRegistry(db).find_nearby(Point(0, 0), 10000, 5)
        assert [c.id for c, _ in found] == [near.id, far.id]
        assert found[0][1] == pytest.approx(0.111, abs=0.001)

    def test_find_nearby_limit(self, db, make_courier):
        for i in range(4):
            make_courier(location=(0, 0.001 * (i + 1)))

        found = CourierRegistry(db).find_nearby(Point(0, 0), 10000, 2)
        assert len(found) == 2
        assert found[0][1] < found[1][1]

    def test_find_without_location(self, db, make_courier):
        make_courier(location=(0, 0))
        lost = make_courier()

        assert [c.id for c in CourierRegistry(db).find_without_location()] == [lost.id]

    def test_reserve_marks_courier_busy(self, db, make_courier):
        courier = make_courier(location=(0, 0))
        delivery_id = uuid4()

        reserved = CourierRegistry(db).reserve(courier.id, delivery_id)

        assert reserved.is_available is False
        assert reserved.current_delivery_id == delivery_id

    def test_reserve_busy_courier_fails_without_mutation(self, db, make_courier):
        """Повторное резервирование занятого курьера не меняет запись"""
        registry = CourierRegistry(db)
        courier = make_courier(location=(0, 0))
        first = uuid4()
        registry.reserve(courier.id, first)

        with pytest.raises(AlreadyAssigned):
            registry.reserve(courier.id, uuid4())

        db.expire_all()
        courier = registry.get(courier.id)
        assert courier.current_delivery_id == first
        assert courier.is_available is False

    def test_reserve_unknown_courier(self, db):
        with pytest.raises(NotFound):
            CourierRegistry(db).reserve(uuid4(), uuid4())

    def test_release_is_idempotent(self, db, make_courier):
        registry = CourierRegistry(db)
        courier = make_courier()
        delivery_id = uuid4()
        registry.reserve(courier.id, delivery_id)

        assert registry.release(courier.id) is True
        assert registry.release(courier.id) is False

        courier = registry.get(courier.id)
        assert courier.is_available is True
        assert courier.current_delivery_id is None

    def test_release_for_other_delivery_keeps_courier(self, db, make_courier):
        """Повторное освобождение по старой доставке не трогает нового заказа"""
        registry = CourierRegistry(db)
        courier = make_courier()
        current = uuid4()
        registry.reserve(courier.id, current)

        assert registry.release(courier.id, uuid4()) is False
        assert registry.get(courier.id).current_delivery_id == current

    def test_update_location_appends_tracking_for_active_delivery(self, db, make_courier, make_delivery):
        registry = CourierRegistry(db)
        courier = make_courier(location=(0, 0))
        delivery = make_delivery()
        registry.reserve(courier.id, delivery.id)
        timestamp = datetime(2024, 5, 1, 10, 0, 0)

        updated = registry.update_location(courier.id, Point(0.5, 0.5), timestamp)

        assert (updated.latitude, updated.longitude) == (0.5, 0.5)
        assert updated.location_updated_at == timestamp
        entries = (
            db.query(models.TrackingEntry)
            .filter(models.TrackingEntry.delivery_id == delivery.id)
            .order_by(models.TrackingEntry.id)
            .all()
        )
        assert entries[-1].note == "Location updated"
        assert (entries[-1].latitude, entries[-1].longitude) == (0.5, 0.5)

    def test_update_location_without_delivery(self, db, make_courier):
        courier = make_courier()
        CourierRegistry(db).update_location(courier.id, Point(1, 1), datetime(2024, 5, 1))
        assert db.query(models.TrackingEntry).count() == 0

    def test_register_is_idempotent_on_user(self, db):
        registry = CourierRegistry(db)
        first, created = registry.register("user-42", "Ivan", "ivan@example.com", "+1")
        again, created_again = registry.register("user-42", "Other name")

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert again.is_verified is False
        assert again.is_profile_complete is False

    def test_complete_profile(self, db, make_courier):
        courier = make_courier(complete=False)
        updated = CourierRegistry(db).complete_profile(
            courier.id,
            " +15551234 ",
            vehicle={"type": "bicycle", "model": "Trek", "color": "red", "license_plate": "B-1"},
            driver_license={"number": "DL-1", "expiry_date": datetime(2030, 1, 1)},
        )
        assert updated.phone == "+15551234"
        assert updated.vehicle_type == models.VehicleType.BICYCLE
        assert updated.is_profile_complete is True

    def test_complete_profile_requires_phone(self, db, make_courier):
        courier = make_courier(complete=False)
        with pytest.raises(ValidationError):
            CourierRegistry(db).complete_profile(courier.id, "  ")

    def test_availability_locked_while_delivering(self, db, make_courier):
        registry = CourierRegistry(db)
        courier = make_courier()
        assert registry.set_availability(courier.id, False).is_available is False
        assert registry.set_availability(courier.id, True).is_available is True

        registry.reserve(courier.id, uuid4())
        with pytest.raises(ValidationError):
            registry.set_availability(courier.id, True)
