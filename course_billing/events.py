import json
import logging
import threading
import time

import pika

from course_billing import database
from course_billing.clock import SystemClock
from course_billing.errors import BillingError, ConflictError
from course_billing.notifications import NotificationTransport
from course_billing.services import build_services

logger = logging.getLogger(__name__)

EXCHANGE = "ums_events"


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    params = pika.URLParameters(rabbitmq_url)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(event, default=str)
        channel.basic_publish(exchange=EXCHANGE, routing_key=routing_key, body=body)
    finally:
        connection.close()


class RabbitMQTransport(NotificationTransport):
    """Publishes each notification as a ``notification.events.<type>`` message."""

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url

    def send(self, notification) -> None:
        event = {
            "type": "NotificationCreated",
            "payload": {
                "notification_id": notification.id,
                "user_id": notification.user_id,
                "notification_type": notification.type.value,
                "related_entity_id": notification.related_entity_id,
                "message": notification.message,
                "created_at": notification.created_at,
            },
        }
        publish_event(self.rabbitmq_url, f"notification.events.{notification.type.value}", event)


def process_enrollment_event(body: dict, db, transport, settings, clock=None):
    """
    Called when the enrollment side publishes EnrollmentCreated.
    Creates the enrollment and its first payment; a redelivered event for an
    existing enrollment is acknowledged without changes.
    """
    if body.get("type") != "EnrollmentCreated":
        logger.debug("Ignoring event type=%s", body.get("type"))
        return None
    payload = body.get("payload", {})
    user_id = payload.get("user_id")
    course_id = payload.get("course_id")

    services = build_services(db, transport, clock or SystemClock(), settings)
    try:
        enrollment = services.access.enroll(user_id, course_id)
    except ConflictError:
        logger.info("Enrollment user=%s course=%s already exists, event ignored", user_id, course_id)
        return None
    logger.info("Created enrollment id=%s from event for user=%s course=%s", enrollment.id, user_id, course_id)
    return enrollment


def _consumer_runloop(settings, transport):
    """
    Persistent consumer loop: connects, declares exchange & queue, binds and consumes.
    Reconnects on errors with backoff.
    """
    database.init_db(settings.DATABASE_URL)
    queue_name = settings.ENROLLMENT_QUEUE

    while True:
        conn = None
        try:
            params = pika.URLParameters(settings.RABBITMQ_URL)
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)

            if queue_name:
                ch.queue_declare(queue=queue_name, durable=False, exclusive=False)
                actual_queue = queue_name
            else:
                q = ch.queue_declare(queue="", exclusive=True)
                actual_queue = q.method.queue

            ch.queue_bind(exchange=EXCHANGE, queue=actual_queue, routing_key="enrollment.events.#")
            logger.info("Billing consumer bound queue=%s to %s with key=enrollment.events.#", actual_queue, EXCHANGE)

            def callback(ch, method, properties, body):
                try:
                    payload = json.loads(body)
                    logger.info("Billing consumer received message: %s", payload)
                    with database.session_scope() as db:
                        process_enrollment_event(payload, db, transport, settings)
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                except (BillingError, ValueError) as exc:
                    logger.warning("Rejecting enrollment event: %s", exc)
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                except Exception:
                    logger.exception("Error processing enrollment event")
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

            ch.basic_qos(prefetch_count=1)
            ch.basic_consume(queue=actual_queue, on_message_callback=callback, auto_ack=False)
            ch.start_consuming()

        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("AMQP connection error in consumer: %s", e)
        except Exception:
            logger.exception("Unexpected exception in consumer loop")
        finally:
            if conn is not None and conn.is_open:
                conn.close()

        logger.info("Billing consumer will reconnect after backoff...")
        time.sleep(3)


_consumer = None


def start_consumer(settings, transport):
    global _consumer
    if _consumer is None:
        _consumer = threading.Thread(target=_consumer_runloop, args=(settings, transport), daemon=True)
        _consumer.start()
