"""Inbound adapter: consumes the result queue and feeds ScrapingResultConsumer."""

import logging
from typing import Any

import pydantic
from kombu import Connection
from kombu.message import Message
from kombu.mixins import ConsumerMixin

from src.core.errors import NotFoundError
from src.messaging.topology import Topology
from src.scraping.consumer import ScrapingResultConsumer
from src.scraping.events import JobCompletedEvent, JobFailedEvent

logger = logging.getLogger(__name__)


class UnroutableResultError(Exception):
    """A result message arrived with a routing key this service does not handle."""


class ResultListener(ConsumerMixin):
    """Dispatches result messages by routing key.

    Ack on success. Messages that can never succeed (unknown job, malformed
    body, unknown routing key) are rejected without requeue, which routes them
    to the dead-letter queue. Anything else is requeued once and dead-lettered
    on the redelivery.
    """

    def __init__(
        self,
        connection: Connection,
        topology: Topology,
        handler: ScrapingResultConsumer,
    ) -> None:
        self.connection = connection
        self._topology = topology
        self._handler = handler

    def get_consumers(self, Consumer: Any, channel: Any) -> list[Any]:  # noqa: N803
        return [
            Consumer(
                queues=[self._topology.result_queue],
                callbacks=[self.on_message],
                accept=["json"],
                prefetch_count=self._topology.config.prefetch_count,
            )
        ]

    def dispatch(self, routing_key: str | None, body: dict[str, Any]) -> None:
        config = self._topology.config
        if routing_key == config.completed_routing_key:
            self._handler.on_completed(JobCompletedEvent.model_validate(body))
        elif routing_key == config.failed_routing_key:
            self._handler.on_failed(JobFailedEvent.model_validate(body))
        else:
            msg = f"No handler for routing key {routing_key!r}"
            raise UnroutableResultError(msg)

    def on_message(self, body: dict[str, Any], message: Message) -> None:
        delivery_info = message.delivery_info or {}
        routing_key = delivery_info.get("routing_key")
        try:
            self.dispatch(routing_key, body)
        except (NotFoundError, pydantic.ValidationError, UnroutableResultError) as exc:
            logger.error("Dead-lettering result message (%s): %s", routing_key, exc)
            message.reject(requeue=False)
            return
        except Exception:
            redelivered = bool(delivery_info.get("redelivered"))
            logger.exception(
                "Failed to process result message (%s), %s",
                routing_key, "dead-lettering" if redelivered else "requeueing",
            )
            message.reject(requeue=not redelivered)
            return
        message.ack()
