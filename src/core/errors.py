"""Error taxonomy for the scraping coordinator.

Every error the coordinator raises on purpose derives from ScrapingError so
callers (CLI, batch loop, fan-out) can catch the whole family at once.
"""


class ScrapingError(Exception):
    """Base class for coordinator errors."""


class ValidationError(ScrapingError, ValueError):
    """Request rejected before any state change (unknown platform, empty batch, ...)."""


class NotFoundError(ScrapingError, LookupError):
    """A referenced job or location does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class StateConflictError(ScrapingError):
    """Operation is illegal in the current lifecycle state."""


class TransportError(ScrapingError):
    """The message broker could not accept an outbound message."""
