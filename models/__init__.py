"""Pydantic models for the Dorfkoenig scout service.

This package contains all data models used throughout the service:

Scout / ScoutExecution / ExecutionResult:
    Monitoring scouts, their persisted runs, and the run outcome returned
    to callers. Enums: Frequency, ExecutionStatus, ChangeStatus.

InformationUnit / ExtractedUnit / ExtractionOutput:
    Atomic statements extracted from scraped or uploaded text.

CriteriaAnalysis:
    Output of the criteria analyzer (matches, summary, key findings).

BajourDraft / VerificationResponse / VerificationStatus / GeneratedDraft:
    Village newsletter drafts and their WhatsApp verification state.

ArticleDraft / ComposedArticle:
    SMART BREVITY article drafts with open gaps and their sources.

Example:
    >>> from models import Scout, ChangeStatus
    >>> ChangeStatus.from_signal("new")
    <ChangeStatus.FIRST_RUN: 'first_run'>
"""

from models.scout import (
    ChangeStatus,
    ExecutionResult,
    ExecutionStatus,
    Frequency,
    Location,
    Scout,
    ScoutExecution,
)
from models.unit import ExtractedUnit, ExtractionOutput, InformationUnit, SourceType, UnitType
from models.analysis import CriteriaAnalysis
from models.article import ArticleDraft, ArticleSection, ArticleSource, ComposedArticle
from models.draft import (
    BajourDraft,
    DraftSection,
    GeneratedDraft,
    VerificationResponse,
    VerificationStatus,
)

__all__ = [
    "ChangeStatus",
    "ExecutionResult",
    "ExecutionStatus",
    "Frequency",
    "Location",
    "Scout",
    "ScoutExecution",
    "ExtractedUnit",
    "ExtractionOutput",
    "InformationUnit",
    "SourceType",
    "UnitType",
    "CriteriaAnalysis",
    "BajourDraft",
    "DraftSection",
    "GeneratedDraft",
    "VerificationResponse",
    "VerificationStatus",
    "ArticleDraft",
    "ArticleSection",
    "ArticleSource",
    "ComposedArticle",
]
