"""Information unit models.

An information unit is one atomic, self-contained statement extracted from a
scraped page or a manually uploaded text. Units are deduplicated within an
extraction batch and later selected to compose articles or newsletters.
"""

import logging
import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.scout import Location

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class UnitType(str, Enum):
    FACT = "fact"                   # Verifiable fact
    EVENT = "event"                 # Announced or ongoing event
    ENTITY_UPDATE = "entity_update" # Change at a person/organization


class SourceType(str, Enum):
    SCOUT = "scout"
    MANUAL_TEXT = "manual_text"


def normalize_unit_type(value: str | UnitType | None) -> UnitType:
    """Normalize a raw unit type from model output, defaulting to fact."""
    if isinstance(value, UnitType):
        return value
    raw = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    try:
        return UnitType(raw)
    except ValueError:
        if raw:
            logger.debug("Unknown unit type; defaulting to fact | value=%s", value)
        return UnitType.FACT


class ExtractedUnit(BaseModel):
    """A single unit as produced by the extraction model.

    Field aliases match the camelCase JSON the model is instructed to emit.
    """

    model_config = ConfigDict(populate_by_name=True)

    statement: str = Field(description="Complete, self-contained sentence")
    unit_type: UnitType = Field(default=UnitType.FACT, alias="unitType")
    entities: list[str] = Field(default_factory=list)
    event_date: str | None = Field(default=None, alias="eventDate", description="YYYY-MM-DD or null")

    @field_validator("unit_type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        return normalize_unit_type(value)

    @field_validator("entities", mode="before")
    @classmethod
    def _coerce_entities(cls, value):
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if v]

    @field_validator("event_date", mode="before")
    @classmethod
    def _validate_date(cls, value):
        if isinstance(value, str) and _DATE_RE.match(value.strip()):
            return value.strip()
        return None


class ExtractionOutput(BaseModel):
    """Top-level extraction model output: {"units": [...]}."""

    units: list[ExtractedUnit] = Field(default_factory=list)


class InformationUnit(BaseModel):
    """A stored information unit."""

    id: str
    user_id: str
    scout_id: str | None = None
    execution_id: str | None = None
    statement: str
    unit_type: UnitType = UnitType.FACT
    entities: list[str] = Field(default_factory=list)
    source_url: str | None = None
    source_domain: str | None = None
    source_title: str | None = None
    location: Location | None = None
    topic: str | None = None
    embedding: list[float] | None = Field(default=None, repr=False, exclude=True)
    event_date: str | None = None
    used_in_article: bool = False
    source_type: SourceType = SourceType.SCOUT
    created_at: datetime | None = None
    similarity: float | None = Field(default=None, description="Set on semantic search hits")
