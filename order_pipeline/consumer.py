import asyncio
import json

import aio_pika
import structlog

from order_pipeline import config
from order_pipeline.logging_config import configure_logging

logger = structlog.get_logger(__name__)

ROUTING_KEYS = ("order.materialized", "shipment.created", "order.status_changed")


def render_notification(event_data: dict) -> str:
    event_type = event_data.get("event_type", "UNKNOWN")
    if event_type == "OrderMaterialized":
        numbers = ", ".join(event_data.get("order_numbers") or [])
        return f"New order received: {numbers}"
    if event_type == "ShipmentCreated":
        return (
            f"Order {event_data.get('order_number')} shipped with "
            f"{event_data.get('courier') or 'courier'} (AWB {event_data.get('awb')})"
        )
    if event_type == "OrderStatusChanged":
        return (
            f"Order {event_data.get('order_number')} is now "
            f"{event_data.get('new_status')} (was {event_data.get('old_status')})"
        )
    return f"{event_type} for order {event_data.get('order_id', 'N/A')}"


async def process_notification_event(message: aio_pika.IncomingMessage):
    async with message.process():
        try:
            event_data = json.loads(message.body.decode())
        except ValueError as e:
            logger.error("Undecodable notification event", routing_key=message.routing_key, error=str(e))
            return

        logger.info(
            "Notification sent",
            event_type=event_data.get("event_type", "UNKNOWN"),
            event_id=event_data.get("event_id"),
            text=render_notification(event_data),
        )


async def main():
    configure_logging()
    connection = await aio_pika.connect_robust(config.RABBITMQ_URL)
    async with connection:
        channel = await connection.channel()

        exchange = await channel.declare_exchange(config.EVENTS_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)

        queue = await channel.declare_queue("order_notifications_q", durable=True)
        for routing_key in ROUTING_KEYS:
            await queue.bind(exchange, routing_key)

        logger.info("Notification consumer listening", routing_keys=list(ROUTING_KEYS))
        await queue.consume(process_notification_event)

        # Keep the main task running
        await asyncio.Future()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Notification consumer stopped")
