"""LLM-backed agents for scout runs, newsletters and articles.

CriteriaAnalyzer:
    Decides whether changed page content matches a scout's criteria.

UnitExtractor:
    Decomposes scraped or uploaded text into deduplicated information units.

DraftAgent:
    PydanticAI agent writing a village newsletter draft from selected units.

ComposeAgent:
    PydanticAI agent writing a SMART BREVITY article draft, enriched with
    the units' scraped source pages.

select_units:
    Chat-model pick of recent unused units for the next newsletter issue.

Example:
    >>> from agents import CriteriaAnalyzer
    >>> analysis = await CriteriaAnalyzer(llm).analyze(markdown, criteria, recent)
"""

from agents.analyzer import CriteriaAnalyzer
from agents.composer import ComposeAgent, compose_article
from agents.drafter import DraftAgent, generate_draft
from agents.extractor import UnitExtractor
from agents.selector import select_units

__all__ = [
    "ComposeAgent",
    "CriteriaAnalyzer",
    "DraftAgent",
    "UnitExtractor",
    "compose_article",
    "generate_draft",
    "select_units",
]
