import logging
import random
from typing import Iterable, NamedTuple, Optional

from . import models
from .config import settings
from .couriers import CourierRegistry

logger = logging.getLogger(__name__)


class Match(NamedTuple):
    courier: models.Courier
    distance_km: Optional[float]


class CourierMatcher:
    """
    Picks a courier for a delivery.

    Nearest eligible courier to the pickup point wins. When nobody with a
    known location is in range, one of the eligible couriers that never
    reported a location is chosen at random.
    """

    def __init__(self, registry: CourierRegistry, rng: random.Random = None,
                 max_distance_m: float = None, candidate_limit: int = None):
        self.registry = registry
        self.rng = rng or random.Random()
        self.max_distance_m = max_distance_m if max_distance_m is not None else settings.MAX_DISTANCE_M
        self.candidate_limit = candidate_limit if candidate_limit is not None else settings.CANDIDATE_LIMIT

    def select_courier(self, delivery: models.Delivery, exclude: Iterable = ()) -> Optional[Match]:
        excluded = set(exclude)
        pickup = delivery.pickup_point

        candidates = []
        if pickup is not None:
            nearby = self.registry.find_nearby(pickup, self.max_distance_m, self.candidate_limit)
            candidates = [(courier, dist) for courier, dist in nearby if courier.id not in excluded]

        if candidates:
            # min() keeps the first of equal distances, i.e. query order.
            courier, dist = min(candidates, key=lambda pair: pair[1])
            logger.info(f"Nearest courier {courier.id} is {dist:.3f} km from pickup of delivery {delivery.id}")
            return Match(courier, dist)

        pool = [c for c in self.registry.find_without_location() if c.id not in excluded]
        if not pool:
            logger.info(f"No courier available for delivery {delivery.id}")
            return None

        courier = self.rng.choice(pool)
        logger.warning(
            f"No located courier in range for delivery {delivery.id}; "
            f"picked {courier.id} at random from {len(pool)} without location"
        )
        return Match(courier, None)
