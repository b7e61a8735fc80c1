import json
from datetime import datetime, timezone
from uuid import uuid4

import aio_pika
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from order_pipeline import config

logger = structlog.get_logger(__name__)

connection = None
channel = None


def build_event(event_type: str, **fields) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **fields,
    }


async def setup_rabbitmq():
    global connection, channel
    if not config.PUBLISH_EVENTS:
        logger.info("Event publishing disabled")
        return
    try:
        connection = await aio_pika.connect_robust(config.RABBITMQ_URL)
        channel = await connection.channel()
        await channel.declare_exchange(config.EVENTS_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("RabbitMQ setup complete", exchange=config.EVENTS_EXCHANGE)
    except Exception as e:
        # The pipeline runs without events; notifications are best-effort
        logger.warning("RabbitMQ setup failed", error=str(e))
        connection = None
        channel = None


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=5), reraise=True)
async def _publish(routing_key: str, body: bytes):
    exchange = await channel.get_exchange(config.EVENTS_EXCHANGE)
    message = aio_pika.Message(
        body,
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )
    await exchange.publish(message, routing_key=routing_key)


async def publish_event(routing_key: str, message_data: dict) -> bool:
    """Publish a domain event. Never raises; returns whether it was sent."""
    if not config.PUBLISH_EVENTS:
        return False
    if channel is None:
        logger.warning("RabbitMQ channel not available, event dropped", routing_key=routing_key)
        return False

    body = json.dumps(message_data, default=str).encode("utf-8")
    try:
        await _publish(routing_key, body)
    except Exception as e:
        logger.warning("Event publish failed", routing_key=routing_key, error=str(e))
        return False
    logger.info("Published event", routing_key=routing_key, event_type=message_data.get("event_type"))
    return True
