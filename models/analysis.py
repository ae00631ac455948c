"""Criteria analysis result model."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUMMARY_MAX_CHARS = 150
MAX_KEY_FINDINGS = 5

ANALYSIS_FAILED_SUMMARY = {
    "de": "Analyse fehlgeschlagen",
    "en": "Analysis failed",
}


class CriteriaAnalysis(BaseModel):
    """Whether scraped content matches a scout's criteria.

    The summary is clipped to 150 characters and key findings to five entries
    regardless of what the model returns.

    Example:
        >>> len(CriteriaAnalysis.model_validate({"matches": True, "summary": "x" * 400}).summary)
        150
    """

    model_config = ConfigDict(populate_by_name=True)

    matches: bool = Field(default=False, description="Content matches the criteria")
    summary: str = Field(default="", description="Short summary (max 150 chars)")
    key_findings: list[str] = Field(default_factory=list, alias="keyFindings")

    @field_validator("matches", mode="before")
    @classmethod
    def _coerce_matches(cls, value):
        if value is None:
            return False
        return value

    @field_validator("summary", mode="before")
    @classmethod
    def _clip_summary(cls, value):
        return str(value or "")[:SUMMARY_MAX_CHARS]

    @field_validator("key_findings", mode="before")
    @classmethod
    def _clip_findings(cls, value):
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if v][:MAX_KEY_FINDINGS]

    @classmethod
    def failed(cls, language: str = "de") -> "CriteriaAnalysis":
        """Safe fallback used when the model output cannot be used."""
        return cls(
            matches=False,
            summary=ANALYSIS_FAILED_SUMMARY.get(language, ANALYSIS_FAILED_SUMMARY["en"]),
            key_findings=[],
        )

    def __str__(self) -> str:
        status = "MATCH" if self.matches else "NO_MATCH"
        return f"CriteriaAnalysis({status}, findings={len(self.key_findings)})"
