"""Article draft models.

An article draft is a working draft for a journalist, composed from selected
information units and optionally enriched with the scraped source pages. It
is not publishable copy: `gaps` lists what is still missing or needs
verification.
"""

from pydantic import BaseModel, Field, field_validator


class ArticleSection(BaseModel):
    heading: str = Field(default="", description="Short heading (2-4 words)")
    content: str = Field(default="", description="News first, then context, with inline [source.ch] citations")


class ArticleDraft(BaseModel):
    """Structured article draft produced by the compose agent."""

    title: str = Field(default="", description="Article title")
    headline: str = Field(default="", description="One-sentence lead with the most newsworthy aspect")
    sections: list[ArticleSection] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list, description="Missing information, people to interview, data to verify")

    @field_validator("gaps", mode="before")
    @classmethod
    def _coerce_gaps(cls, value):
        if not isinstance(value, list):
            return []
        return [str(v) for v in value if v]

    def word_count(self) -> int:
        text = " ".join([self.headline] + [s.content for s in self.sections])
        return len(text.split())


class ArticleSource(BaseModel):
    url: str
    title: str | None = None
    domain: str | None = None


class ComposedArticle(BaseModel):
    """Article draft plus the metadata returned to callers."""

    title: str
    headline: str = ""
    sections: list[ArticleSection] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)
    sources: list[ArticleSource] = Field(default_factory=list)
    word_count: int = 0
    units_used: int = 0
