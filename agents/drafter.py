"""Draft agent for village newsletter generation.

Turns a selection of information units into a structured newsletter draft.
The system prompt has three layers:
    1. Village framing: write only from the provided units, invent nothing
    2. Writing guidelines: defaults, or the journalist's custom prompt
    3. Output format: the GeneratedDraft JSON structure
"""

import logging
from dataclasses import dataclass

from openai import AsyncOpenAI, OpenAIError
from pydantic_ai import Agent, PromptedOutput, RunContext, UsageLimits
from pydantic_ai.exceptions import AgentRunError
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from database import Database
from errors import CollaboratorError, NotFoundError, ValidationError
from models.draft import GeneratedDraft
from models.unit import InformationUnit, UnitType

logger = logging.getLogger(__name__)

MAX_DRAFT_UNITS = 20

LAYER_1 = {
    "de": """Du bist ein KI-Assistent für den Newsletter "{village} - Wochenüberblick".
Du schreibst AUSSCHLIESSLICH basierend auf den bereitgestellten Informationseinheiten.
ERFINDE KEINE Informationen. Wenn etwas unklar ist, kennzeichne es als "nicht bestätigt".""",
    "en": """You are an AI assistant for the newsletter "{village} - Weekly Overview".
You write EXCLUSIVELY based on the provided information units.
DO NOT INVENT information. If something is unclear, mark it as "unconfirmed".""",
}

LAYER_2_DEFAULT = {
    "de": """SCHREIBRICHTLINIEN:
- Newsletter-Format: Kurz, prägnant, informativ
- Beginne mit der wichtigsten Nachricht der Woche
- Fette **wichtige Namen, Zahlen, Daten**
- Sätze: Max 15-20 Wörter, aktive Sprache
- Zitiere Quellen inline [quelle.ch]
- Absätze: 2-3 Sätze pro Nachricht
- Gesamtlänge: 800-1200 Wörter
- Tonalität: Nahbar, lokal, vertrauenswürdig
- Schliesse mit einem Ausblick auf kommende Ereignisse""",
    "en": """WRITING GUIDELINES:
- Newsletter format: short, concise, informative
- Start with the most important news of the week
- Bold **important names, numbers, dates**
- Sentences: max 15-20 words, active voice
- Cite sources inline [source.ch]
- Paragraphs: 2-3 sentences per item
- Total length: 800-1200 words
- Tone: approachable, local, trustworthy
- Close with an outlook on upcoming events""",
}

LAYER_3_OUTPUT = {
    "de": """Schreibe den gesamten Newsletter auf Deutsch.

Ausgabeformat (JSON):
{
  "title": "Wochentitel",
  "greeting": "Kurze Begrüssung (1 Satz)",
  "sections": [{"heading": "Abschnittsüberschrift", "body": "Inhalt mit **Hervorhebungen** und [Quellen]"}],
  "outlook": "Ausblick auf nächste Woche",
  "sign_off": "Abschlussgruss"
}""",
    "en": """Write the entire newsletter in English.

Output format (JSON):
{
  "title": "Title of the week",
  "greeting": "Short greeting (1 sentence)",
  "sections": [{"heading": "Section heading", "body": "Content with **highlights** and [sources]"}],
  "outlook": "Outlook on next week",
  "sign_off": "Closing line"
}""",
}

_GROUP_LABELS = {
    "de": {
        UnitType.FACT: "FAKTEN",
        UnitType.EVENT: "EREIGNISSE",
        UnitType.ENTITY_UPDATE: "AKTUALISIERUNGEN",
        "unknown_date": "unbekannt",
        "untitled": "Unbenannter Entwurf",
        "intro": "Hier sind die Informationseinheiten für den Newsletter:",
        "outro": "Erstelle den Newsletter basierend auf diesen Informationen.",
    },
    "en": {
        UnitType.FACT: "FACTS",
        UnitType.EVENT: "EVENTS",
        UnitType.ENTITY_UPDATE: "UPDATES",
        "unknown_date": "unknown",
        "untitled": "Untitled draft",
        "intro": "Here are the information units for the newsletter:",
        "outro": "Write the newsletter based on this information.",
    },
}


@dataclass
class DraftContext:
    """Runtime context passed to the draft agent.

    Attributes:
        village_name: Village the newsletter is for
        custom_system_prompt: Replaces the default writing guidelines if set
        language: Output language ('de' or 'en')
    """

    village_name: str
    custom_system_prompt: str | None = None
    language: str = "de"


def build_system_prompt(ctx: DraftContext) -> str:
    """Assemble the three-layer system prompt."""
    lang = ctx.language if ctx.language in LAYER_1 else "de"
    layer2 = (ctx.custom_system_prompt or "").strip() or LAYER_2_DEFAULT[lang]
    return "\n\n".join([
        LAYER_1[lang].format(village=ctx.village_name),
        layer2,
        LAYER_3_OUTPUT[lang],
    ])


def format_unit(unit: InformationUnit, language: str = "de") -> str:
    """Format one unit as '- [date] statement [domain]'."""
    labels = _GROUP_LABELS.get(language, _GROUP_LABELS["de"])
    if unit.event_date:
        date = unit.event_date
    elif unit.created_at is not None:
        date = unit.created_at.date().isoformat()
    else:
        date = labels["unknown_date"]
    return f"- [{date}] {unit.statement} [{unit.source_domain or ''}]"


def format_units(units: list[InformationUnit], language: str = "de") -> str:
    """Group units by type (facts, events, updates) for the prompt."""
    labels = _GROUP_LABELS.get(language, _GROUP_LABELS["de"])
    blocks = []
    for unit_type in (UnitType.FACT, UnitType.EVENT, UnitType.ENTITY_UPDATE):
        group = [u for u in units if u.unit_type == unit_type]
        if group:
            lines = [f"{labels[unit_type]}:"] + [format_unit(u, language) for u in group]
            blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _create_agent(model) -> Agent[DraftContext, GeneratedDraft]:
    """Create the underlying PydanticAI agent for draft generation."""
    agent = Agent(
        model,
        output_type=PromptedOutput(GeneratedDraft),
        retries=2,
        model_settings=ModelSettings(temperature=0.2, max_tokens=2500),
    )

    @agent.system_prompt
    def dynamic_prompt(ctx: RunContext[DraftContext]) -> str:
        return build_system_prompt(ctx.deps)

    return agent


class DraftAgent:
    """Generates newsletter drafts from information units.

    Args:
        client: OpenAI-compatible client (shared with the LLM collaborator)
        model_name: Chat model for drafts
        language: Output language
        model: Optional PydanticAI model instance overriding the client
    """

    def __init__(self, client: AsyncOpenAI | None, model_name: str, language: str = "de", model=None):
        self.language = language if language in LAYER_1 else "de"
        if model is None:
            model = OpenAIChatModel(model_name, provider=OpenAIProvider(openai_client=client))
        self._agent = _create_agent(model)

    async def generate(
        self,
        village_name: str,
        units: list[InformationUnit],
        custom_system_prompt: str | None = None,
    ) -> GeneratedDraft:
        """Generate a draft from already-loaded units.

        Raises:
            CollaboratorError: If the model fails or never yields valid output
        """
        labels = _GROUP_LABELS[self.language]
        message = f"{labels['intro']}\n\n{format_units(units, self.language)}\n\n{labels['outro']}"
        deps = DraftContext(
            village_name=village_name,
            custom_system_prompt=custom_system_prompt,
            language=self.language,
        )

        try:
            result = await self._agent.run(
                message,
                deps=deps,
                usage_limits=UsageLimits(request_limit=3),
            )
        except (AgentRunError, OpenAIError) as e:
            logger.error("Draft generation failed | village=%s error=%s", village_name, e, exc_info=True)
            raise CollaboratorError(f"Draft generation failed: {e}") from e

        draft = result.output
        if not draft.title.strip():
            draft.title = labels["untitled"]
        logger.info(
            "Draft generated | village=%s units=%d sections=%d requests=%d",
            village_name,
            len(units),
            len(draft.sections),
            result.usage.requests,
        )
        return draft


async def generate_draft(
    db: Database,
    agent: DraftAgent,
    user_id: str,
    village_name: str,
    unit_ids: list[str],
    custom_system_prompt: str | None = None,
) -> tuple[GeneratedDraft, int]:
    """Validate a draft request, load the user's units and generate.

    Returns:
        Tuple of (generated draft, number of units used)

    Raises:
        ValidationError: Missing village name or not 1-20 unit ids
        NotFoundError: None of the ids belong to the user
    """
    if not isinstance(unit_ids, list) or not unit_ids:
        raise ValidationError("unit_ids array required")
    if len(unit_ids) > MAX_DRAFT_UNITS:
        raise ValidationError(f"At most {MAX_DRAFT_UNITS} units allowed")
    if not village_name or not str(village_name).strip():
        raise ValidationError("village_name required")

    units = db.get_units(user_id, [str(u) for u in unit_ids])
    if not units:
        raise NotFoundError("No units found")

    draft = await agent.generate(village_name.strip(), units, custom_system_prompt)
    return draft, len(units)
