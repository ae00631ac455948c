"""Unit selection for the next village newsletter issue.

The chat model picks 5-15 of a scout's unused units with a strong bias
towards the last seven days. Only ids from the candidate pool are kept, so
a model that invents or repeats ids cannot select foreign units.
"""

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from agents.parsing import parse_model_output
from collaborators import LanguageModel
from database import Database
from errors import CollaboratorError, ValidationError
from models.unit import InformationUnit

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 100
MAX_SELECTED_UNITS = 15

SELECTOR_PROMPTS = {
    "de": """Du bist ein erfahrener Redakteur für einen wöchentlichen lokalen Newsletter.
Deine Aufgabe: Wähle die relevantesten Informationseinheiten für die nächste Ausgabe.

AUSWAHLKRITERIEN (nach Priorität):
1. AKTUALITÄT: Bevorzuge Informationen der letzten 7 Tage STARK.
   Informationen älter als 14 Tage nur bei aussergewöhnlicher Bedeutung.
2. RELEVANZ: Was interessiert die Einwohner dieses Dorfes JETZT?
3. VIELFALT: Decke verschiedene Themen ab (Politik, Kultur, Infrastruktur, Gesellschaft).
4. NEUIGKEITSWERT: Priorisiere Erstmeldungen über laufende Entwicklungen.

Wähle 5-15 Einheiten. Gib die IDs als JSON-Array zurück.
Heute ist: {today}

AUSGABEFORMAT (JSON):
{{
  "selected_unit_ids": ["uuid-1", "uuid-2"]
}}""",
    "en": """You are an experienced editor of a weekly local newsletter.
Your task: pick the most relevant information units for the next issue.

SELECTION CRITERIA (by priority):
1. RECENCY: STRONGLY prefer information from the last 7 days.
   Information older than 14 days only if exceptionally important.
2. RELEVANCE: What do the residents of this village care about NOW?
3. VARIETY: Cover different topics (politics, culture, infrastructure, society).
4. NEWS VALUE: Prioritize first reports on ongoing developments.

Pick 5-15 units. Return the ids as a JSON array.
Today is: {today}

OUTPUT FORMAT (JSON):
{{
  "selected_unit_ids": ["uuid-1", "uuid-2"]
}}""",
}

_USER_TEMPLATE = {
    "de": "Hier sind die verfügbaren Informationseinheiten:\n\n{units}\n\nWähle die relevantesten Einheiten für den Newsletter aus.",
    "en": "Here are the available information units:\n\n{units}\n\nPick the most relevant units for the newsletter.",
}

_UNKNOWN_DATE = {"de": "unbekannt", "en": "unknown"}


class UnitSelection(BaseModel):
    """Model output: {"selected_unit_ids": [...]}."""

    selected_unit_ids: list[str] = Field(default_factory=list)

    @field_validator("selected_unit_ids", mode="before")
    @classmethod
    def _coerce_ids(cls, value):
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if isinstance(v, (str, int))]


def format_candidates(units: list[InformationUnit], language: str = "de") -> str:
    """One numbered line per unit: '[n] ID: id | date | type | statement'."""
    unknown = _UNKNOWN_DATE.get(language, _UNKNOWN_DATE["de"])
    lines = []
    for index, unit in enumerate(units, start=1):
        if unit.event_date:
            date = unit.event_date
        elif unit.created_at is not None:
            date = unit.created_at.date().isoformat()
        else:
            date = unknown
        lines.append(f"[{index}] ID: {unit.id} | {date} | {unit.unit_type.value} | {unit.statement}")
    return "\n".join(lines)


async def select_units(
    db: Database,
    llm: LanguageModel,
    user_id: str,
    village_id: str,
    scout_id: str,
    language: str = "de",
    today: datetime | None = None,
) -> list[str]:
    """Pick unit ids for a village newsletter from the scout's unused units.

    Returns:
        Selected ids in model order, restricted to the candidate pool,
        without repeats and at most MAX_SELECTED_UNITS. Empty when the
        scout has no unused units (no model call is made).

    Raises:
        ValidationError: Missing village_id or scout_id
        CollaboratorError: Chat failure or unusable model output
    """
    if not village_id or not str(village_id).strip():
        raise ValidationError("village_id required")
    if not scout_id or not str(scout_id).strip():
        raise ValidationError("scout_id required")

    candidates = db.recent_unused_units(user_id, scout_id.strip(), limit=CANDIDATE_LIMIT)
    if not candidates:
        logger.info("No units to select | village=%s scout=%s", village_id, scout_id)
        return []

    lang = language if language in SELECTOR_PROMPTS else "de"
    today = (today or datetime.now(timezone.utc)).date().isoformat()
    raw = await llm.chat_complete(
        SELECTOR_PROMPTS[lang].format(today=today),
        _USER_TEMPLATE[lang].format(units=format_candidates(candidates, lang)),
        temperature=0.2,
        max_tokens=1000,
    )

    parsed = parse_model_output(raw, UnitSelection)
    if not parsed.ok:
        logger.warning("Unit selection output unusable | error=%s", parsed.error)
        raise CollaboratorError("Unit selection failed")

    valid = {unit.id for unit in candidates}
    selected = [uid for uid in dict.fromkeys(parsed.value.selected_unit_ids) if uid in valid]
    dropped = len(parsed.value.selected_unit_ids) - len(selected)
    if dropped:
        logger.debug("Selection ids dropped | count=%d", dropped)

    logger.info(
        "Units selected | village=%s candidates=%d selected=%d",
        village_id,
        len(candidates),
        min(len(selected), MAX_SELECTED_UNITS),
    )
    return selected[:MAX_SELECTED_UNITS]
