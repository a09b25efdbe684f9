import json

import pika
import structlog

from .. import config

logger = structlog.get_logger(__name__)


class OrderEventPublisher:
    """
    Publishes order lifecycle events ('order.created', 'order.status_changed')
    to a topic exchange once the owning transaction has committed.

    Delivery is best effort: the order is already persisted, so a broker
    outage is logged and never reported back to the HTTP caller.
    """

    def __init__(self, host, exchange_name="events", exchange_type="topic",
                 username="guest", password="guest"):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.credentials = pika.PlainCredentials(username, password)

    def _open_channel(self):
        connection = pika.BlockingConnection(
            pika.ConnectionParameters(
                host=self.host,
                credentials=self.credentials,
                heartbeat=600,
                blocked_connection_timeout=300,
            )
        )
        channel = connection.channel()
        # Declare the exchange (durable ensures it survives restarts)
        channel.exchange_declare(
            exchange=self.exchange_name,
            exchange_type=self.exchange_type,
            durable=True,
        )
        return connection, channel

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created').
            message (dict): The data payload to send.

        Returns:
            bool: True if the broker accepted the message.
        """
        # BlockingConnection is not thread-safe; each request thread uses its own.
        connection = None
        try:
            connection, channel = self._open_channel()
            channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type='application/json'
                )
            )
            logger.info("event_published", routing_key=routing_key, order_id=message.get("order_id"))
            return True
        except pika.exceptions.AMQPError as e:
            logger.warning("event_publish_failed", routing_key=routing_key, error=repr(e))
            return False
        finally:
            if connection is not None and connection.is_open:
                connection.close()


def get_publisher():
    """FastAPI dependency; returns None when no broker is configured."""
    if not config.RABBITMQ_HOST:
        return None
    return OrderEventPublisher(
        config.RABBITMQ_HOST,
        exchange_name=config.EVENTS_EXCHANGE,
        username=config.RABBITMQ_USER,
        password=config.RABBITMQ_PASSWORD,
    )
