"""
Async Kafka producer for analytics events.

Publishes two event types:
  engagement-events — every accepted engagement operation.
  impressions       — post ids served by the feed endpoint.

Delivery is best effort: when the producer is not running (tests, local
runs without Kafka) events are dropped with a debug log.
"""
import json
import logging
import time
from typing import Optional

from aiokafka import AIOKafkaProducer

from feedpipe.config import settings

logger = logging.getLogger(__name__)

_producer: Optional[AIOKafkaProducer] = None


async def init_kafka() -> None:
    global _producer
    producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        acks=1,
    )
    try:
        await producer.start()
    except Exception as exc:
        logger.warning("Kafka unavailable (%s) — analytics events disabled", exc)
        return
    _producer = producer
    logger.info("Kafka producer started → %s", settings.kafka_bootstrap_servers)


async def stop_kafka() -> None:
    if _producer:
        await _producer.stop()


async def publish_engagement_event(
    subject_type: str,
    subject_id: str,
    user_id: str,
    kind: str,
    action: str,
) -> None:
    if _producer is None:
        logger.debug("Kafka producer not running — dropping engagement event")
        return
    payload = {
        "subject_type": subject_type,
        "subject_id": subject_id,
        "user_id": user_id,
        "kind": kind,
        "action": action,
        "timestamp": int(time.time() * 1000),
    }
    try:
        await _producer.send(settings.kafka_topic_engagement, payload)
    except Exception as exc:
        logger.warning("Failed to publish engagement event: %s", exc)


async def publish_impressions(user_id: str, post_ids: list[str]) -> None:
    """One message per post so downstream ingestion is row-level."""
    if _producer is None:
        logger.debug("Kafka producer not running — dropping %d impressions", len(post_ids))
        return
    ts = int(time.time() * 1000)
    try:
        for post_id in post_ids:
            payload = {"user_id": user_id, "post_id": post_id, "timestamp": ts}
            await _producer.send(settings.kafka_topic_impressions, payload)
    except Exception as exc:
        logger.warning("Failed to publish impressions for user_id=%s: %s", user_id, exc)
        return
    logger.debug("Published %d impression events for user_id=%s", len(post_ids), user_id)
