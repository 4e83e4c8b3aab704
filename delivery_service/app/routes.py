from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Response
from sqlalchemy.orm import Session

from . import schemas
from .couriers import CourierRegistry
from .database import get_db
from .deliveries import DeliveryStore
from .dependencies import get_orchestrator, get_user_id
from .exceptions import NotFound
from .fulfillment import FulfillmentOrchestrator
from .geo import Point
from .models import DeliveryStatus

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "delivery-service"}


@router.post("/deliveries/create-for-order", response_model=schemas.DeliveryResponse, status_code=201)
async def create_for_order(
    request: schemas.CreateForOrderRequest,
    response: Response,
    authorization: Optional[str] = Header(None),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    delivery, created = await orchestrator.create_for_order(request.order_id, authorization)
    if not created:
        response.status_code = 200
    return delivery


@router.get("/deliveries", response_model=list[schemas.DeliveryResponse])
def get_active_deliveries(status: Optional[DeliveryStatus] = None, db: Session = Depends(get_db)):
    return DeliveryStore(db).list_active(status)


@router.get("/deliveries/available-couriers", response_model=list[schemas.CourierResponse])
def get_available_couriers(db: Session = Depends(get_db)):
    return CourierRegistry(db).find_available()


@router.post("/deliveries/nearest", response_model=list[schemas.NearbyCourierResponse])
def find_nearest(request: schemas.NearestRequest, db: Session = Depends(get_db)):
    nearby = CourierRegistry(db).find_nearby(Point(request.latitude, request.longitude), request.max_distance, 5)
    return [schemas.NearbyCourierResponse(courier=courier, distance_km=round(dist, 3)) for courier, dist in nearby]


@router.get("/deliveries/order/{order_id}", response_model=schemas.DeliveryResponse)
def get_delivery_by_order(order_id: str, db: Session = Depends(get_db)):
    delivery = DeliveryStore(db).get_by_order(order_id)
    if not delivery:
        raise NotFound("Delivery for order", order_id)
    return delivery


@router.get("/deliveries/restaurant/{restaurant_id}", response_model=list[schemas.DeliveryResponse])
def get_restaurant_deliveries(
    restaurant_id: str,
    status: Optional[DeliveryStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    return DeliveryStore(db).list_for_restaurant(restaurant_id, status, start_date, end_date)


@router.post("/deliveries/{delivery_id}/assign-auto", response_model=schemas.AssignmentResponse)
async def assign_auto(delivery_id: UUID, orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator)):
    delivery, _ = await orchestrator.auto_assign(delivery_id)
    return schemas.AssignmentResponse(
        delivery_id=delivery.id,
        status=delivery.status,
        courier_id=delivery.courier_id,
        courier_name=delivery.courier_name,
    )


@router.post("/deliveries/{delivery_id}/assign-specific", response_model=schemas.AssignmentResponse)
async def assign_specific(
    delivery_id: UUID,
    request: schemas.AssignSpecificRequest,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    delivery = await orchestrator.assign_specific(delivery_id, request.courier_id)
    return schemas.AssignmentResponse(
        delivery_id=delivery.id,
        status=delivery.status,
        courier_id=delivery.courier_id,
        courier_name=delivery.courier_name,
    )


@router.put("/deliveries/{delivery_id}/status", response_model=schemas.DeliveryResponse)
async def update_delivery_status(
    delivery_id: UUID,
    request: schemas.StatusUpdateRequest,
    user_id: str = Depends(get_user_id),
    authorization: Optional[str] = Header(None),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    courier = await orchestrator.courier_for_user(user_id)
    location = None
    if request.latitude is not None and request.longitude is not None:
        location = Point(request.latitude, request.longitude)
    return await orchestrator.update_status(
        delivery_id,
        request.status,
        courier_id=courier.id,
        location=location,
        note=request.note,
        authorization=authorization,
    )


@router.get("/deliveries/{delivery_id}/tracking", response_model=schemas.TrackingResponse)
def get_delivery_tracking(delivery_id: UUID, db: Session = Depends(get_db)):
    delivery = DeliveryStore(db).get(delivery_id)
    return schemas.TrackingResponse(
        delivery_id=delivery.id,
        status=delivery.status,
        estimated_delivery_time=delivery.estimated_delivery_time,
        actual_delivery_time=delivery.actual_delivery_time,
        dropoff_address=delivery.dropoff_address,
        dropoff_latitude=delivery.dropoff_latitude,
        dropoff_longitude=delivery.dropoff_longitude,
        courier=schemas.CourierContact.model_validate(delivery.courier) if delivery.courier else None,
        tracking_history=[schemas.TrackingEntryResponse.model_validate(e) for e in delivery.tracking_history],
    )


@router.get("/deliveries/{delivery_id}", response_model=schemas.DeliveryResponse)
def get_delivery(delivery_id: UUID, db: Session = Depends(get_db)):
    return DeliveryStore(db).get(delivery_id)
