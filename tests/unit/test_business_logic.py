import pytest
from datetime import datetime, timedelta

from pydantic import ValidationError as SchemaError

from delivery_service.app import events
from delivery_service.app.deliveries import TRANSITIONS, can_transition
from delivery_service.app.exceptions import ValidationError
from delivery_service.app.geo import (Point, bounding_box, distance_km, estimated_delivery_time,
                                      point_from_coordinates, validate_point)
from delivery_service.app.models import TERMINAL_STATUSES, DeliveryStatus


class TestBusinessLogic:
    """Основные тесты бизнес-логики"""

    def test_delivery_status_transitions(self):
        """Тест валидных переходов статусов доставки"""
        assert can_transition(DeliveryStatus.PENDING_ASSIGNMENT, DeliveryStatus.ASSIGNED)
        assert can_transition(DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP)
        assert can_transition(DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT)
        assert can_transition(DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED)

        assert not can_transition(DeliveryStatus.PICKED_UP, DeliveryStatus.PENDING_ASSIGNMENT)
        assert not can_transition(DeliveryStatus.ASSIGNED, DeliveryStatus.DELIVERED)
        assert not can_transition(DeliveryStatus.PENDING_ASSIGNMENT, DeliveryStatus.PICKED_UP)

    def test_failed_and_cancelled_reachable_from_every_active_status(self):
        """Отмена и неудача доступны из любого нетерминального статуса"""
        for status in DeliveryStatus:
            if status in TERMINAL_STATUSES:
                continue
            assert can_transition(status, DeliveryStatus.CANCELLED)
            assert can_transition(status, DeliveryStatus.FAILED)

    def test_terminal_statuses_have_no_exits(self):
        """Из терминальных статусов переходов нет"""
        for status in TERMINAL_STATUSES:
            assert TRANSITIONS[status] == set()
            for target in DeliveryStatus:
                assert not can_transition(status, target)


class TestGeoMath:
    """Тесты расчета расстояний и времени доставки"""

    def test_one_degree_of_longitude_at_equator(self):
        assert distance_km(Point(0, 0), Point(0, 1)) == pytest.approx(111.19, abs=0.01)

    def test_distance_to_itself_is_zero(self):
        point = Point(55.7558, 37.6173)
        assert distance_km(point, point) == 0

    def test_distance_is_symmetric(self):
        a, b = Point(48.8566, 2.3522), Point(51.5074, -0.1278)
        assert distance_km(a, b) == pytest.approx(distance_km(b, a))
        assert distance_km(a, b) == pytest.approx(343.5, abs=1.0)

    def test_bounding_box_contains_radius(self):
        center = Point(10.0, 20.0)
        min_lat, max_lat, min_lon, max_lon = bounding_box(center, 10.0)
        assert min_lat < center.latitude < max_lat
        assert min_lon < center.longitude < max_lon
        assert distance_km(center, Point(max_lat, center.longitude)) == pytest.approx(10.0, rel=1e-3)
        assert distance_km(center, Point(center.latitude, max_lon)) >= 10.0 * 0.999

    def test_bounding_box_is_clamped_near_poles_and_antimeridian(self):
        min_lat, max_lat, min_lon, max_lon = bounding_box(Point(89.99, 179.99), 50.0)
        assert max_lat == 90.0
        assert min_lon >= -180.0
        assert max_lon == 180.0

    def test_estimated_delivery_time_is_prep_plus_transit(self):
        now = datetime(2024, 1, 1, 12, 0, 0)
        assert estimated_delivery_time(now) == now + timedelta(minutes=50)
        assert estimated_delivery_time(now, Point(0, 0), Point(1, 1)) == now + timedelta(minutes=50)

    def test_validate_point_rejects_out_of_range(self):
        with pytest.raises(ValidationError):
            validate_point(Point(91, 0))
        with pytest.raises(ValidationError):
            validate_point(Point(0, -181))
        assert validate_point(Point(-90, 180)) == Point(-90, 180)

    def test_coordinates_in_geojson_order(self):
        """Координаты ресторана приходят как [lon, lat]"""
        assert point_from_coordinates([37.6, 55.7]) == Point(55.7, 37.6)

    def test_coordinates_as_mapping(self):
        assert point_from_coordinates({"latitude": 1.5, "longitude": 2.5}) == Point(1.5, 2.5)
        assert point_from_coordinates({"lat": "1.5", "lng": "2.5"}) == Point(1.5, 2.5)

    def test_unusable_coordinates(self):
        assert point_from_coordinates(None) is None
        assert point_from_coordinates([1.0]) is None
        assert point_from_coordinates({"latitude": 1.0}) is None
        assert point_from_coordinates({"latitude": "north", "longitude": 1}) is None
        assert point_from_coordinates([200.0, 10.0]) is None


class TestEventSchemas:
    """Тесты схем событий"""

    def test_order_confirmed_from_camel_case(self):
        event = events.OrderConfirmed.model_validate({
            "orderId": "o-1",
            "orderNumber": "ORD-1",
            "restaurantId": "r-1",
            "deliveryAddress": {"address": "1 Main St", "coordinates": {"latitude": 1, "longitude": 2}},
            "customer": {"name": "Anna", "phone": "+1"},
        })
        assert event.order_id == "o-1"
        assert event.delivery_address.address == "1 Main St"
        assert event.customer.name == "Anna"

    def test_order_confirmed_requires_order_and_restaurant(self):
        with pytest.raises(SchemaError):
            events.OrderConfirmed.model_validate({"orderId": "o-1"})
        with pytest.raises(SchemaError):
            events.OrderConfirmed.model_validate({"orderId": "", "restaurantId": "r-1"})

    def test_location_update_accepts_delivery_person_id(self):
        courier_id = "6f1c1a52-9f4e-4c55-b8b2-6c3c2d0f8a11"
        event = events.DeliveryLocationUpdate.model_validate(
            {"deliveryPersonId": courier_id, "latitude": 1, "longitude": 2}
        )
        assert str(event.courier_id) == courier_id

    def test_published_payload_is_camel_case(self):
        event = events.DeliveryCancelled(
            delivery_id="6f1c1a52-9f4e-4c55-b8b2-6c3c2d0f8a11", order_id="o-1", reason="customer request"
        )
        payload = event.to_payload()
        assert payload == {
            "deliveryId": "6f1c1a52-9f4e-4c55-b8b2-6c3c2d0f8a11",
            "orderId": "o-1",
            "courierId": None,
            "reason": "customer request",
        }

    def test_every_routing_key_has_one_schema(self):
        assert set(events.CONSUMED) == {
            "order.confirmed", "order.cancelled", "order.ready", "user.registered",
            "delivery.status.update", "delivery.location.update",
        }
        assert "delivery.assigned" in events.PUBLISHED
        assert not set(events.CONSUMED) & set(events.PUBLISHED)

    def test_nested_parts_are_not_events(self):
        """Вложенные части заказа разбираются в camelCase, но сами событиями не являются"""
        for part in (events.Customer, events.DeliveryAddress):
            assert not issubclass(part, events.Event)
            assert not hasattr(part, "routing_key")
            assert part not in events.CONSUMED.values()

        event = events.OrderConfirmed.model_validate({
            "orderId": "o-1",
            "restaurantId": "r-1",
            "deliveryAddress": {"address": "1 Main St", "coordinates": [30.5, 50.4]},
            "customer": {"name": "Anna", "phone": "+10000000000"},
        })
        assert event.delivery_address.address == "1 Main St"
        assert event.customer.phone == "+10000000000"
        assert event.to_payload()["deliveryAddress"]["coordinates"] == [30.5, 50.4]
