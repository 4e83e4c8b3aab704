"""
HTTP clients for the order and restaurant services.

Both unwrap the `{"data": ...}` envelope the collaborators answer with and
map failures onto the service's own errors: 404 becomes NotFound, anything
that suggests the peer is down becomes CollaboratorUnavailable.
"""
import logging
from typing import List, NamedTuple, Optional

import httpx

from .config import settings
from .exceptions import CollaboratorUnavailable, NotFound
from .geo import Point, point_from_coordinates
from .schemas import DeliveryItem

logger = logging.getLogger(__name__)


class OrderDetails(NamedTuple):
    id: str
    order_number: Optional[str]
    status: Optional[str]
    restaurant_id: Optional[str]
    items: List[DeliveryItem]
    customer_name: Optional[str]
    customer_phone: Optional[str]
    delivery_address: str
    dropoff: Optional[Point]


class RestaurantDetails(NamedTuple):
    id: str
    name: str
    address: str
    location: Optional[Point]


class ServiceClient:
    service_name = "service"

    def __init__(self, base_url: str, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.COLLABORATOR_TIMEOUT,
            transport=transport,
        )

    async def _get(self, path: str, resource: str, identifier: str, authorization: Optional[str] = None) -> dict:
        headers = {"Authorization": authorization} if authorization else {}
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"{self.service_name} request to {url} failed: {e}")
            raise CollaboratorUnavailable(self.service_name, str(e))

        if response.status_code == 404:
            raise NotFound(resource, identifier)
        if response.status_code >= 500:
            raise CollaboratorUnavailable(self.service_name, f"HTTP {response.status_code}")
        try:
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise CollaboratorUnavailable(self.service_name, str(e))

        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            return body["data"]
        return body if isinstance(body, dict) else {}

    async def aclose(self):
        await self.client.aclose()


class OrderServiceClient(ServiceClient):
    service_name = "order-service"

    def __init__(self, base_url: str = None, **kwargs):
        super().__init__(base_url or settings.ORDER_SERVICE_URL, **kwargs)

    async def get_order(self, order_id: str, authorization: Optional[str] = None) -> OrderDetails:
        data = await self._get(f"/orders/{order_id}", "Order", order_id, authorization)
        customer = data.get("customer")
        if not isinstance(customer, dict):
            customer = {}
        address = data.get("deliveryAddress") or {}
        if not isinstance(address, dict):
            address = {"address": str(address)}
        address_line = address.get("address") or ", ".join(
            str(address[part]) for part in ("street", "city", "state", "zipCode") if address.get(part)
        )

        items = []
        for item in data.get("items") or []:
            if isinstance(item, dict) and item.get("name"):
                items.append(DeliveryItem(name=item["name"], quantity=int(item.get("quantity") or 1)))

        restaurant = data.get("restaurantId") or data.get("restaurant")
        if isinstance(restaurant, dict):
            restaurant = restaurant.get("id") or restaurant.get("_id")

        return OrderDetails(
            id=str(data.get("id") or data.get("_id") or order_id),
            order_number=data.get("orderNumber"),
            status=data.get("status"),
            restaurant_id=str(restaurant) if restaurant else None,
            items=items,
            customer_name=customer.get("name") or data.get("customerName"),
            customer_phone=customer.get("phone") or data.get("contactPhone"),
            delivery_address=address_line,
            dropoff=point_from_coordinates(address.get("coordinates") or address),
        )


class RestaurantServiceClient(ServiceClient):
    service_name = "restaurant-service"

    def __init__(self, base_url: str = None, **kwargs):
        super().__init__(base_url or settings.RESTAURANT_SERVICE_URL, **kwargs)

    async def get_restaurant(self, restaurant_id: str, authorization: Optional[str] = None) -> RestaurantDetails:
        data = await self._get(f"/restaurants/{restaurant_id}", "Restaurant", restaurant_id, authorization)
        location = data.get("location") or {}
        coordinates = location.get("coordinates") if isinstance(location, dict) else None
        address = data.get("address") or ""
        if isinstance(address, dict):
            address = ", ".join(str(part) for part in address.values() if part)
        return RestaurantDetails(
            id=str(data.get("id") or data.get("_id") or restaurant_id),
            name=data.get("name") or "Restaurant",
            address=address,
            location=point_from_coordinates(coordinates),
        )
