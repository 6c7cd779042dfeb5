import logging
from dataclasses import dataclass

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from stockledger.core.config import settings

logger = logging.getLogger("stockledger.db.capabilities")


@dataclass(frozen=True)
class SchemaCapabilities:
    """Storage features the engine may rely on, resolved once at startup."""

    location_states: bool
    default_state: str

    def resolve_state(self, requested: str | None) -> str:
        if not self.location_states:
            return self.default_state
        return (requested or self.default_state).strip().lower()


def resolve_schema_capabilities(engine: Engine) -> SchemaCapabilities:
    inspector = inspect(engine)
    has_state_column = False
    if inspector.has_table("stock_locations"):
        has_state_column = "state" in {column["name"] for column in inspector.get_columns("stock_locations")}

    capabilities = SchemaCapabilities(
        location_states=settings.track_location_states and has_state_column,
        default_state=settings.default_stock_state,
    )
    logger.info(
        "schema capabilities resolved: location_states=%s default_state=%s",
        capabilities.location_states,
        capabilities.default_state,
    )
    return capabilities
