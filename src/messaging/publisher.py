"""Outbound adapter: announces new scraping jobs to the worker fleet."""

import logging

from kombu import Connection, Producer

from src.core.errors import TransportError
from src.messaging.topology import Topology
from src.scraping.events import JobCreatedEvent

logger = logging.getLogger(__name__)


class JobPublisher:
    """Publishes JobCreated events on the job routing key.

    A failed publish raises TransportError. There is no retry here: the
    orchestrator marks the job failed and the caller decides what to do.
    """

    def __init__(self, connection: Connection, topology: Topology) -> None:
        self._connection = connection
        self._topology = topology
        self._producer: Producer | None = None

    def announce(self, event: JobCreatedEvent) -> None:
        logger.info(
            "Publishing job created event: job_id=%s, platform=%s, kind=%s",
            event.job_id, event.platform.value, event.job_type.value,
        )
        try:
            self._get_producer().publish(
                event.to_message(),
                exchange=self._topology.exchange,
                routing_key=self._topology.config.job_routing_key,
                declare=[self._topology.job_queue],
                delivery_mode=2,
                retry=False,
            )
        except Exception as exc:
            logger.error("Failed to publish job created event: job_id=%s: %s", event.job_id, exc)
            # The channel may be dead; build a fresh producer next time.
            self._producer = None
            msg = f"Failed to publish job {event.job_id} to queue: {exc}"
            raise TransportError(msg) from exc
        logger.debug("Published job %s", event.job_id)

    def _get_producer(self) -> Producer:
        if self._producer is None:
            self._producer = Producer(self._connection.default_channel, serializer="json")
        return self._producer
