"""Newsletter verification via WhatsApp correspondents.

State machine for a draft's verification_status:

    pending --(majority rejects)------------------> rejected
    pending --(majority confirms, or full tie)----> confirmed
    pending --(timeout passed, timeout sweep)-----> confirmed
    any     --(owner override)--------------------> any

Sending (re)starts a round: responses are cleared and the timeout is set
to now + VERIFICATION_TIMEOUT_HOURS. Webhook deliveries never raise for
expected outcomes; they return a WebhookStatus the HTTP layer echoes back
with a 200 so the WhatsApp platform does not retry.
"""

import hashlib
import hmac
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from collaborators import Messenger
from config import Config
from database import Database
from errors import ConflictError, NotFoundError, ValidationError
from models.draft import BajourDraft, VerificationResponse, VerificationStatus
from observability.logging import clear_context, mask_phone, set_run_context
from observability.tracing import trace_operation

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

# Button titles (lowercased) mapped to the status they vote for
RESPONSE_TITLES = {
    "bestätigt": VerificationStatus.CONFIRMED,
    "abgelehnt": VerificationStatus.REJECTED,
    "confirmed": VerificationStatus.CONFIRMED,
    "rejected": VerificationStatus.REJECTED,
}


class WebhookStatus(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    NO_MESSAGE = "no_message"
    IGNORED = "ignored"
    UNKNOWN_RESPONSE = "unknown_response"
    UNKNOWN_PHONE = "unknown_phone"
    ALREADY_RESPONDED = "already_responded"
    NO_PENDING_DRAFT = "no_pending_draft"
    PROCESSED = "processed"
    DB_ERROR = "db_error"
    UPDATE_ERROR = "update_error"
    ERROR = "error"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_phone(phone: str) -> str:
    """Strip a leading '+' so '+41791234567' and '41791234567' compare equal."""
    return phone[1:] if phone.startswith("+") else phone


def verify_signature(secret: str, raw_body: bytes, header: str | None) -> bool:
    """Check an X-Hub-Signature-256 header against the raw request body.

    The header has the form 'sha256=<hex>'; the digest is HMAC-SHA256 of the
    body keyed with the app secret. A missing secret rejects everything.
    """
    if not secret or not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    received = header[len(SIGNATURE_PREFIX):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


def resolve_verification_status(responses: list[VerificationResponse], total: int) -> VerificationStatus:
    """Apply the majority rule to a village's responses.

    majority = floor(total / 2) + 1. Rejections are checked first. When
    everyone has answered and the vote is tied, the draft is confirmed.

    >>> resolve_verification_status([], 3)
    <VerificationStatus.PENDING: 'pending'>
    """
    confirms = sum(1 for r in responses if r.response == VerificationStatus.CONFIRMED)
    rejects = sum(1 for r in responses if r.response == VerificationStatus.REJECTED)
    majority = total // 2 + 1

    if rejects >= majority:
        return VerificationStatus.REJECTED
    if confirms >= majority:
        return VerificationStatus.CONFIRMED
    if len(responses) == total and confirms == rejects:
        return VerificationStatus.CONFIRMED
    return VerificationStatus.PENDING


def _first_message(body: Any) -> dict | None:
    """Dig entry[0].changes[0].value.messages[0] out of a webhook payload."""
    try:
        message = body["entry"][0]["changes"][0]["value"]["messages"][0]
    except (KeyError, IndexError, TypeError):
        return None
    return message if isinstance(message, dict) else None


def _reply_title(message: dict) -> str | None:
    """Title of the pressed button, for interactive replies and template quick replies."""
    interactive = message.get("interactive")
    if isinstance(interactive, dict) and isinstance(interactive.get("button_reply"), dict):
        return interactive["button_reply"].get("title")
    button = message.get("button")
    if isinstance(button, dict):
        return button.get("text")
    return None


class VerificationService:
    """Sends drafts to correspondents and resolves their answers.

    Args:
        config: Provides correspondents, secrets and the timeout window
        db: Draft storage
        messenger: WhatsApp collaborator
    """

    def __init__(self, config: Config, db: Database, messenger: Messenger):
        self.db = db
        self.messenger = messenger
        self.correspondents = config.correspondents
        self.app_secret = config.whatsapp_app_secret
        self.verify_token = config.whatsapp_verify_token
        self.timeout = timedelta(hours=config.verification_timeout_hours)

    def _find_correspondent(self, phone: str) -> dict[str, str] | None:
        target = normalize_phone(phone)
        for entries in self.correspondents.values():
            for entry in entries:
                if normalize_phone(entry["phone"]) == target:
                    return entry
        return None

    def _serves_village(self, village_id: str, phone: str) -> bool:
        target = normalize_phone(phone)
        return any(normalize_phone(c["phone"]) == target for c in self.correspondents.get(village_id, []))

    async def send(self, draft_id: str, user_id: str, now: datetime | None = None) -> int:
        """Send a draft to its village's correspondents.

        Each correspondent receives the draft body as text, then the
        confirm/reject template. Returns the number of correspondents.

        Raises:
            ValidationError: Missing draft id or no correspondents for the village
            NotFoundError: Draft does not exist for this user
            ConflictError: A previous round is unresolved and not timed out
            CollaboratorError: Any message failed to send
        """
        if not draft_id:
            raise ValidationError("draft_id required")

        draft = self.db.get_draft(draft_id, user_id)
        if draft is None:
            raise NotFoundError("Draft not found")

        now = now or _now()
        if (
            draft.verification_sent_at is not None
            and draft.verification_resolved_at is None
            and draft.verification_status == VerificationStatus.PENDING
            and draft.verification_timeout_at is not None
            and draft.verification_timeout_at > now
        ):
            raise ConflictError("Verification already in progress", code="VERIFICATION_PENDING")

        correspondents = self.correspondents.get(draft.village_id, [])
        if not correspondents:
            raise ValidationError(f'No correspondents found for village "{draft.village_id}"')

        message_ids: list[str] = []
        for correspondent in correspondents:
            phone = correspondent["phone"]
            message_ids.append(await self.messenger.send_text(phone, draft.body))
            message_ids.append(await self.messenger.send_verification_template(phone, draft.village_name))
            logger.debug("Verification sent | to=%s", mask_phone(normalize_phone(phone)))

        self.db.mark_draft_sent(draft.id, message_ids, sent_at=now, timeout_at=now + self.timeout)
        logger.info(
            "Verification round started | draft=%s village=%s correspondents=%d",
            draft.id,
            draft.village_id,
            len(correspondents),
        )
        return len(correspondents)

    def verify_subscription(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """GET handshake: the challenge to echo, or None to refuse (403)."""
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            logger.info("Webhook subscription verified")
            return challenge or ""
        logger.warning("Webhook subscription refused | mode=%s", mode)
        return None

    def handle_webhook(self, raw_body: bytes, signature: str | None, now: datetime | None = None) -> WebhookStatus:
        """Process one inbound webhook delivery.

        A correctly signed body that is not valid JSON yields ERROR.
        """
        set_run_context(f"wh-{uuid.uuid4().hex[:6]}")
        try:
            with trace_operation("webhook.verification") as attrs:
                status = self._handle(raw_body, signature, now or _now())
                attrs["status"] = status.value
                return status
        finally:
            clear_context()

    def _handle(self, raw_body: bytes, signature: str | None, now: datetime) -> WebhookStatus:
        if not verify_signature(self.app_secret, raw_body, signature):
            logger.warning("Invalid webhook signature")
            return WebhookStatus.INVALID_SIGNATURE

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            logger.warning("Webhook body is not JSON | error=%s", e)
            return WebhookStatus.ERROR

        message = _first_message(payload)
        if message is None:
            return WebhookStatus.NO_MESSAGE

        title = _reply_title(message)
        if title is None:
            logger.info("Webhook message ignored | type=%s", message.get("type"))
            return WebhookStatus.IGNORED

        vote = RESPONSE_TITLES.get(str(title).strip().lower())
        if vote is None:
            logger.warning("Unknown verification response | title=%s", title)
            return WebhookStatus.UNKNOWN_RESPONSE

        phone = normalize_phone(str(message.get("from", "")))
        correspondent = self._find_correspondent(phone)
        if correspondent is None:
            logger.warning("Unknown correspondent phone | phone=%s", mask_phone(phone))
            return WebhookStatus.UNKNOWN_PHONE

        try:
            pending = self.db.pending_sent_drafts()
        except sqlite3.Error as e:
            logger.error("Loading pending drafts failed | error=%s", e)
            return WebhookStatus.DB_ERROR

        draft = next((d for d in pending if self._serves_village(d.village_id, phone)), None)
        if draft is None:
            logger.warning(
                "No pending draft for correspondent | name=%s phone=%s",
                correspondent["name"],
                mask_phone(phone),
            )
            return WebhookStatus.NO_PENDING_DRAFT

        if draft.has_responded(phone):
            logger.info("Correspondent already responded | name=%s draft=%s", correspondent["name"], draft.id)
            return WebhookStatus.ALREADY_RESPONDED

        status = self._record_vote(draft, correspondent, vote, now)
        if status is None:
            return WebhookStatus.UPDATE_ERROR

        logger.info(
            "Verification response | name=%s vote=%s draft=%s status=%s",
            correspondent["name"],
            vote.value,
            draft.id,
            status.value,
        )

        try:
            self.db.resolve_timeouts(now)
        except sqlite3.Error as e:
            logger.error("Timeout sweep after webhook failed | error=%s", e)

        return WebhookStatus.PROCESSED

    def _record_vote(
        self,
        draft: BajourDraft,
        correspondent: dict[str, str],
        vote: VerificationStatus,
        now: datetime,
    ) -> VerificationStatus | None:
        """Append the vote and store the resolved status; None on write failure."""
        responses = draft.verification_responses + [
            VerificationResponse(
                name=correspondent["name"],
                phone=correspondent["phone"],
                response=vote,
                responded_at=now,
            )
        ]
        total = len(self.correspondents.get(draft.village_id, []))
        status = resolve_verification_status(responses, total)
        resolved_at = now if status != VerificationStatus.PENDING else None

        try:
            self.db.update_draft_verification(draft.id, responses, status, resolved_at)
        except sqlite3.Error as e:
            logger.error("Storing verification response failed | draft=%s error=%s", draft.id, e)
            return None
        return status

    def resolve_timeouts(self, now: datetime | None = None) -> int:
        """Confirm every pending draft whose timeout has passed."""
        return self.db.resolve_timeouts(now or _now())

    def override_status(self, draft_id: str, user_id: str, status: str) -> BajourDraft:
        """Owner sets the verification status directly.

        Raises:
            ValidationError: Status is not pending, confirmed or rejected
            NotFoundError: Draft does not exist for this user
        """
        try:
            new_status = VerificationStatus(status)
        except ValueError:
            raise ValidationError("verification_status must be pending, confirmed or rejected")

        draft = self.db.override_draft_status(draft_id, user_id, new_status)
        if draft is None:
            raise NotFoundError("Draft not found")
        logger.info("Verification status overridden | draft=%s status=%s", draft_id, new_status.value)
        return draft
