"""Village newsletter draft and verification models.

Verification flow:
    Draft created (pending, never sent)
        -> sent to the village's correspondents via WhatsApp
        -> correspondents answer with confirm/reject buttons
        -> resolved by majority, or auto-confirmed after the timeout

Responses and verification timestamps are written only by the verification
service. The draft owner may only force-override the status.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class VerificationResponse(BaseModel):
    """One correspondent's answer to a verification request."""

    name: str
    phone: str
    response: VerificationStatus
    responded_at: datetime


class BajourDraft(BaseModel):
    """A village newsletter draft."""

    id: str
    user_id: str
    village_id: str
    village_name: str
    title: str | None = None
    body: str
    selected_unit_ids: list[str] = Field(default_factory=list)
    custom_system_prompt: str | None = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verification_responses: list[VerificationResponse] = Field(default_factory=list)
    verification_sent_at: datetime | None = None
    verification_resolved_at: datetime | None = None
    verification_timeout_at: datetime | None = None
    whatsapp_message_ids: list[str] = Field(default_factory=list)
    created_at: datetime | None = None

    def display_status(self, now: datetime) -> VerificationStatus:
        """Status to show users.

        A pending draft whose timeout has passed displays as confirmed while
        the server-side sweep has not yet resolved it.
        """
        if (
            self.verification_status == VerificationStatus.PENDING
            and self.verification_timeout_at is not None
            and self.verification_timeout_at < now
        ):
            return VerificationStatus.CONFIRMED
        return self.verification_status

    def has_responded(self, normalized_phone: str) -> bool:
        """Check whether a correspondent (by normalized phone) already answered."""
        return any(r.phone.lstrip("+") == normalized_phone for r in self.verification_responses)

    def to_dict(self, now: datetime) -> dict:
        data = self.model_dump(mode="json")
        data["display_status"] = self.display_status(now).value
        return data


class DraftSection(BaseModel):
    heading: str = Field(description="Section heading")
    body: str = Field(description="Section content with **highlights** and [sources]")


class GeneratedDraft(BaseModel):
    """Structured newsletter draft produced by the draft agent."""

    title: str = Field(default="", description="Title for the week")
    greeting: str = Field(default="", description="Short greeting (one sentence)")
    sections: list[DraftSection] = Field(default_factory=list, description="Newsletter sections")
    outlook: str = Field(default="", description="Outlook on the coming week")
    sign_off: str = Field(default="", description="Closing line")
