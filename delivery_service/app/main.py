import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import database, models
from .clients import OrderServiceClient, RestaurantServiceClient
from .config import settings
from .courier_routes import router as courier_router
from .exceptions import CollaboratorUnavailable, FulfillmentError
from .listeners import register_listeners
from .rabbitmq import EventGateway
from .routes import router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Delivery Service", version="1.0.0")

app.include_router(router, prefix="/api")
app.include_router(courier_router, prefix="/api")


def error_response(message: str, error_code: str = None, details: dict = None) -> dict:
    return {
        "success": False,
        "message": message,
        "error_code": error_code,
        "details": details,
        "timestamp": models.utcnow().isoformat(),
    }


@app.exception_handler(FulfillmentError)
async def fulfillment_exception_handler(request: Request, exc: FulfillmentError):
    logger.warning(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc.message}")
    headers = None
    if isinstance(exc, CollaboratorUnavailable):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.message, exc.__class__.__name__, exc.details),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.method} {request.url.path}: {exc}")
    errors = [
        {"field": ".".join(str(x) for x in error["loc"]), "message": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_response("Request validation failed", "VALIDATION_ERROR", {"errors": errors}),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=error_response("An unexpected error occurred. Please try again.", "INTERNAL_SERVER_ERROR"),
    )


def log_consumer_exit(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Event consumer stopped: {exc}", exc_info=exc)


@app.on_event("startup")
async def startup_event():
    models.Base.metadata.create_all(bind=database.engine)

    app.state.order_client = OrderServiceClient()
    app.state.restaurant_client = RestaurantServiceClient()
    app.state.gateway = EventGateway()
    register_listeners(
        app.state.gateway,
        database.SessionLocal,
        app.state.order_client,
        app.state.restaurant_client,
    )
    # Broker outages must not keep the HTTP API from starting.
    app.state.consumer_task = asyncio.create_task(app.state.gateway.start())
    app.state.consumer_task.add_done_callback(log_consumer_exit)


@app.on_event("shutdown")
async def shutdown_event():
    app.state.consumer_task.cancel()
    await app.state.gateway.close()
    await app.state.order_client.aclose()
    await app.state.restaurant_client.aclose()


@app.get("/")
def read_root():
    return {"message": "Delivery Service is running"}
