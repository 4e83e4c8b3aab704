from pydantic import AliasChoices, BaseModel, Field
from pydantic.alias_generators import to_camel
from uuid import UUID
from datetime import datetime

from .models import DeliveryStatus, VehicleType


class CamelModel(BaseModel):
    """Request bodies accept both camelCase and snake_case keys."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class DeliveryItem(BaseModel):
    name: str
    quantity: int = 1


class DeliveryCreate(BaseModel):
    order_id: str
    order_number: str
    restaurant_id: str
    restaurant_name: str
    pickup_address: str = ""
    pickup_latitude: float | None = Field(None, ge=-90, le=90)
    pickup_longitude: float | None = Field(None, ge=-180, le=180)
    dropoff_address: str = ""
    dropoff_latitude: float | None = Field(None, ge=-90, le=90)
    dropoff_longitude: float | None = Field(None, ge=-180, le=180)
    customer_name: str = "Customer"
    customer_phone: str = ""
    items: list[DeliveryItem] = []
    special_instructions: str | None = None


class CreateForOrderRequest(CamelModel):
    order_id: str = Field(min_length=1)


class AssignSpecificRequest(CamelModel):
    courier_id: UUID


class StatusUpdateRequest(BaseModel):
    status: DeliveryStatus
    latitude: float | None = Field(None, ge=-90, le=90, validation_alias=AliasChoices("lat", "latitude"))
    longitude: float | None = Field(None, ge=-180, le=180, validation_alias=AliasChoices("lon", "longitude"))
    note: str | None = None


class NearestRequest(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    max_distance: float = Field(10000, gt=0)


class LocationUpdateRequest(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class AvailabilityRequest(CamelModel):
    is_available: bool


class VerificationRequest(CamelModel):
    is_verified: bool = True


class VehicleInfo(CamelModel):
    type: VehicleType
    model: str = Field(min_length=1)
    color: str = Field(min_length=1)
    license_plate: str = Field(min_length=1)


class LicenseInfo(CamelModel):
    number: str = Field(min_length=1)
    expiry_date: datetime


class CompleteProfileRequest(CamelModel):
    phone: str
    vehicle: VehicleInfo | None = None
    license: LicenseInfo | None = None


class TrackingEntryResponse(BaseModel):
    status: str
    latitude: float | None = None
    longitude: float | None = None
    timestamp: datetime
    note: str | None = None

    class Config:
        from_attributes = True


class DeliveryResponse(BaseModel):
    id: UUID
    order_id: str
    order_number: str
    restaurant_id: str
    restaurant_name: str
    pickup_address: str
    pickup_latitude: float | None = None
    pickup_longitude: float | None = None
    dropoff_address: str
    dropoff_latitude: float | None = None
    dropoff_longitude: float | None = None
    customer_name: str
    customer_phone: str
    items: list[DeliveryItem] = []
    special_instructions: str | None = None
    status: DeliveryStatus
    courier_id: UUID | None = None
    courier_name: str | None = None
    courier_phone: str | None = None
    assigned_at: datetime | None = None
    picked_up_at: datetime | None = None
    delivered_at: datetime | None = None
    estimated_delivery_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    distance_km: float | None = None
    created_date: datetime
    updated_date: datetime
    tracking_history: list[TrackingEntryResponse] = []

    class Config:
        from_attributes = True


class CourierResponse(BaseModel):
    id: UUID
    user_id: str
    name: str
    email: str
    phone: str
    is_available: bool
    is_active: bool
    is_verified: bool
    is_profile_complete: bool
    vehicle_type: VehicleType | None = None
    vehicle_model: str | None = None
    vehicle_color: str | None = None
    license_plate: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_updated_at: datetime | None = None
    current_delivery_id: UUID | None = None
    rating_average: float
    rating_count: int

    class Config:
        from_attributes = True


class NearbyCourierResponse(BaseModel):
    courier: CourierResponse
    distance_km: float


class CourierContact(BaseModel):
    id: UUID
    name: str
    phone: str
    latitude: float | None = None
    longitude: float | None = None
    location_updated_at: datetime | None = None

    class Config:
        from_attributes = True


class TrackingResponse(BaseModel):
    delivery_id: UUID
    status: DeliveryStatus
    estimated_delivery_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    dropoff_address: str
    dropoff_latitude: float | None = None
    dropoff_longitude: float | None = None
    courier: CourierContact | None = None
    tracking_history: list[TrackingEntryResponse] = []


class AssignmentResponse(BaseModel):
    delivery_id: UUID
    status: DeliveryStatus
    courier_id: UUID
    courier_name: str


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class DeliveryHistoryResponse(BaseModel):
    data: list[DeliveryResponse]
    pagination: Pagination


class LocationAckResponse(BaseModel):
    courier_id: UUID
    latitude: float
    longitude: float
    location_updated_at: datetime
    current_delivery_id: UUID | None = None
