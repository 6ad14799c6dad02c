
import json, logging
from kafka import KafkaProducer
from kafka.errors import KafkaError
from ecommerce_admin.core.config import settings

logger = logging.getLogger(__name__)

_producer = None

def get_producer() -> KafkaProducer:
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
        )
    return _producer

def send(topic: str, key: str, value: dict):
    p = get_producer()
    p.send(topic, key=key, value=value)
    p.flush(5)

def emit(event: dict):
    """Publish a domain event to order.events once its transaction is committed.

    Publishing is skipped when KAFKA_BOOTSTRAP is empty. A broker failure is
    logged and does not undo the committed change.
    """
    if not settings.KAFKA_BOOTSTRAP:
        logger.debug("Kafka disabled, dropping %s", event.get("type"))
        return
    try:
        send(settings.TOPIC_ORDER_EVENTS, key=str(event.get("order_id", "")), value=event)
    except KafkaError:
        logger.exception("Failed to publish %s for order %s", event.get("type"), event.get("order_id"))

def close():
    global _producer
    if _producer is not None:
        _producer.close(5)
        _producer = None
