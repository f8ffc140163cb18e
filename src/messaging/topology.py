"""Broker topology shared with the scraper fleet.

One topic exchange carries three kinds of message::

    scraping.job.created    -> job queue     (consumed by the workers, 1h TTL)
    scraping.job.completed  -> result queue  (consumed here)
    scraping.job.failed     -> result queue

Both queues dead-letter through the default exchange into the DLQ.
"""

import logging

from kombu import Connection, Exchange, Queue, binding

from src.core.config import BrokerConfig

logger = logging.getLogger(__name__)


class Topology:
    """kombu entities built from a BrokerConfig."""

    def __init__(self, config: BrokerConfig) -> None:
        self.config = config
        dead_letter_args = {
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": config.dead_letter_queue,
        }
        self.exchange = Exchange(config.exchange, type="topic", durable=True)
        self.dead_letter_queue = Queue(config.dead_letter_queue, durable=True)
        self.job_queue = Queue(
            config.job_queue,
            exchange=self.exchange,
            routing_key=config.job_routing_key,
            durable=True,
            queue_arguments={**dead_letter_args, "x-message-ttl": config.job_ttl_ms},
        )
        self.result_queue = Queue(
            config.result_queue,
            bindings=[
                binding(self.exchange, routing_key=config.completed_routing_key),
                binding(self.exchange, routing_key=config.failed_routing_key),
            ],
            durable=True,
            queue_arguments=dead_letter_args,
        )

    @property
    def queues(self) -> list[Queue]:
        return [self.dead_letter_queue, self.job_queue, self.result_queue]

    def declare(self, connection: Connection) -> None:
        """Declare the exchange, queues, and bindings. Safe to repeat."""
        channel = connection.default_channel
        self.exchange(channel).declare()
        for queue in self.queues:
            queue(channel).declare()
        logger.info(
            "Declared exchange '%s' with queues %s",
            self.exchange.name, [q.name for q in self.queues],
        )
