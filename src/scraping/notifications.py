"""In-process "data updated" notifications raised after result ingestion."""

import logging
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class DataUpdated(BaseModel):
    """New scraping data arrived for a location."""

    model_config = ConfigDict(frozen=True)

    location_id: str
    properties_count: int


Listener = Callable[[DataUpdated], None]


class DataUpdateBus:
    """Fire-and-forget fan-out of DataUpdated events.

    A failing listener is logged and skipped; publishing never raises, so
    message acknowledgment does not depend on downstream cache eviction.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def publish(self, event: DataUpdated) -> None:
        logger.debug(
            "Data updated for location %s (%d properties)",
            event.location_id, event.properties_count,
        )
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Data-updated listener %r failed for location %s",
                    listener, event.location_id,
                )
