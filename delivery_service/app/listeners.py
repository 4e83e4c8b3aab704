import logging

from . import events
from .exceptions import RETRIABLE_ERRORS, FulfillmentError
from .fulfillment import FulfillmentOrchestrator

logger = logging.getLogger(__name__)

HANDLERS = {
    events.OrderConfirmed.routing_key: "handle_order_confirmed",
    events.OrderCancelled.routing_key: "handle_order_cancelled",
    events.OrderReady.routing_key: "handle_order_ready",
    events.UserRegistered.routing_key: "handle_user_registered",
    events.DeliveryStatusUpdate.routing_key: "handle_status_update",
    events.DeliveryLocationUpdate.routing_key: "handle_location_update",
}


def make_handler(method_name, session_factory, publisher, orders, restaurants):
    """
    Wrap an orchestrator method as a gateway handler.

    Retriable failures propagate so the gateway requeues the message. Other
    domain rejections will not go away on redelivery: they are logged and
    the message is acknowledged.
    """
    async def handle(event: events.Event):
        db = session_factory()
        try:
            orchestrator = FulfillmentOrchestrator(db, publisher, orders, restaurants)
            return await getattr(orchestrator, method_name)(event)
        except RETRIABLE_ERRORS:
            raise
        except FulfillmentError as e:
            logger.warning(f"Dropping {event.routing_key} event: {e.message} {e.details}")
            return None
        finally:
            db.close()

    return handle


def register_listeners(gateway, session_factory, orders, restaurants):
    for routing_key, method_name in HANDLERS.items():
        gateway.subscribe(routing_key, make_handler(method_name, session_factory, gateway, orders, restaurants))
