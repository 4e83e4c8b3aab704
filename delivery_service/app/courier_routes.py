import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from . import schemas
from .couriers import CourierRegistry
from .database import get_db
from .deliveries import DeliveryStore
from .dependencies import get_orchestrator, get_user_id
from .fulfillment import FulfillmentOrchestrator
from .geo import Point

router = APIRouter(prefix="/couriers")


def current_courier(
    user_id: str = Depends(get_user_id),
    x_user_name: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_phone: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Courier profile of the caller, created on first access."""
    return CourierRegistry(db).get_or_create_profile(user_id, x_user_name, x_user_email, x_user_phone)


@router.get("/me", response_model=schemas.CourierResponse)
def get_profile(courier=Depends(current_courier)):
    return courier


@router.post("/me/complete-profile", response_model=schemas.CourierResponse)
async def complete_profile(
    request: schemas.CompleteProfileRequest,
    courier=Depends(current_courier),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.complete_profile(
        courier.id,
        request.phone,
        vehicle=request.vehicle.model_dump() if request.vehicle else None,
        driver_license=request.license.model_dump() if request.license else None,
    )


@router.post("/me/location", response_model=schemas.LocationAckResponse)
async def update_location(
    request: schemas.LocationUpdateRequest,
    courier=Depends(current_courier),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    courier = await orchestrator.update_location(courier.id, Point(request.latitude, request.longitude))
    return schemas.LocationAckResponse(
        courier_id=courier.id,
        latitude=courier.latitude,
        longitude=courier.longitude,
        location_updated_at=courier.location_updated_at,
        current_delivery_id=courier.current_delivery_id,
    )


@router.get("/me/current-delivery", response_model=Optional[schemas.DeliveryResponse])
def get_current_delivery(courier=Depends(current_courier), db: Session = Depends(get_db)):
    if not courier.current_delivery_id:
        return None
    return DeliveryStore(db).get(courier.current_delivery_id)


@router.get("/me/history", response_model=schemas.DeliveryHistoryResponse)
def get_delivery_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    courier=Depends(current_courier),
    db: Session = Depends(get_db),
):
    items, total = DeliveryStore(db).list_history_for_courier(courier.id, page, limit)
    return schemas.DeliveryHistoryResponse(
        data=[schemas.DeliveryResponse.model_validate(item) for item in items],
        pagination=schemas.Pagination(total=total, page=page, limit=limit, pages=math.ceil(total / limit)),
    )


@router.put("/me/availability", response_model=schemas.CourierResponse)
def update_availability(
    request: schemas.AvailabilityRequest,
    courier=Depends(current_courier),
    db: Session = Depends(get_db),
):
    return CourierRegistry(db).set_availability(courier.id, request.is_available)


@router.put("/{courier_id}/verification", response_model=schemas.CourierResponse)
def update_verification(courier_id: UUID, request: schemas.VerificationRequest, db: Session = Depends(get_db)):
    return CourierRegistry(db).set_verified(courier_id, request.is_verified)
