"""
Ledger of outgoing events the broker did not accept, and the command that
replays them.

    python -m delivery_service.app.failed_events --max-retries 5 --batch-size 100

Run it periodically. Each failed replay backs the entry off exponentially,
capped at one hour, until max_retries is reached.
"""
import argparse
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from pydantic import ValidationError as SchemaError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import events, models
from .config import settings
from .database import SessionLocal
from .models import FailedEventStatus
from .rabbitmq import EventGateway

logger = logging.getLogger(__name__)


def record_failed_event(db: Session, routing_key: str, payload: dict, error: str) -> Optional[models.FailedEvent]:
    entry = models.FailedEvent(
        routing_key=routing_key,
        payload=payload,
        error_message=error,
        retry_count=0,
        status=FailedEventStatus.PENDING,
        next_retry_at=models.utcnow() + timedelta(minutes=1),
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not record failed {routing_key} event: {e}; payload={payload}")
        return None
    logger.warning(f"Recorded failed {routing_key} event {entry.id} for replay")
    return entry


def _schema_problem(entry: models.FailedEvent) -> Optional[str]:
    schema = events.PUBLISHED.get(entry.routing_key)
    if schema is None:
        return f"No event schema registered for {entry.routing_key}"
    try:
        schema.model_validate(entry.payload)
    except SchemaError as e:
        return f"Payload does not match {schema.__name__}: {e.error_count()} errors"
    return None


async def replay_failed_events(db: Session, publisher, max_retries: int = 5, batch_size: int = 100) -> Dict[str, int]:
    now = models.utcnow()
    entries = (
        db.query(models.FailedEvent)
        .filter(
            models.FailedEvent.status == FailedEventStatus.PENDING,
            models.FailedEvent.next_retry_at <= now,
            models.FailedEvent.retry_count < max_retries,
        )
        .order_by(models.FailedEvent.created_date)
        .limit(batch_size)
        .all()
    )

    processed = succeeded = failed = 0
    for entry in entries:
        processed += 1
        problem = _schema_problem(entry)
        if problem:
            entry.status = FailedEventStatus.FAILED
            entry.error_message = problem
            logger.error(f"Dropping {entry.routing_key} event {entry.id}: {problem}")
            failed += 1
            db.commit()
            continue
        try:
            await publisher.publish_raw(entry.routing_key, entry.payload)
        except Exception as e:
            entry.retry_count += 1
            entry.error_message = str(e)
            backoff_minutes = min(2 ** entry.retry_count, 60)
            entry.next_retry_at = models.utcnow() + timedelta(minutes=backoff_minutes)
            if entry.retry_count >= max_retries:
                entry.status = FailedEventStatus.FAILED
                logger.error(f"Giving up on {entry.routing_key} event {entry.id} after {entry.retry_count} attempts")
            failed += 1
        else:
            entry.status = FailedEventStatus.PROCESSED
            entry.processed_at = models.utcnow()
            succeeded += 1
        db.commit()

    logger.info(f"Failed event replay completed. Processed: {processed}, Succeeded: {succeeded}, Failed: {failed}")
    return {"processed": processed, "succeeded": succeeded, "failed": failed}


async def _run(max_retries: int, batch_size: int):
    gateway = EventGateway(settings.AMQP_URL, settings.EXCHANGE_NAME)
    await gateway.connect()
    db = SessionLocal()
    try:
        return await replay_failed_events(db, gateway, max_retries=max_retries, batch_size=batch_size)
    finally:
        db.close()
        await gateway.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Republish outgoing events that failed to reach the broker")
    parser.add_argument("--max-retries", type=int, default=5,
                        help="Maximum number of retry attempts per event (default: 5)")
    parser.add_argument("--batch-size", type=int, default=100,
                        help="Number of entries to process in one run (default: 100)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(_run(args.max_retries, args.batch_size))


if __name__ == "__main__":
    main()
