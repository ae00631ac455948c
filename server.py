"""HTTP surface for the scout service.

Thin FastAPI handlers over the pipeline, verification service, unit store
and draft agent. Callers identify themselves with the `x-user-id` header;
every lookup is scoped to that user. Errors use one envelope:

    {"error": {"message": "...", "code": "NOT_FOUND"}}

The WhatsApp webhook is the exception: POSTs always answer 200 with a
`{"status": ...}` body so the platform does not retry.
"""

import logging
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from agents.composer import ComposeAgent, compose_article
from agents.drafter import DraftAgent, generate_draft
from agents.extractor import UnitExtractor
from agents.selector import select_units
from collaborators import Collaborators
from config import Config
from database import Database
from errors import AuthenticationError, DorfkoenigError, NotFoundError, ValidationError
from models.scout import Location
from pipeline import ScoutPipeline
from verification import VerificationService

logger = logging.getLogger(__name__)


# === Request bodies ===


class ExecuteScoutRequest(BaseModel):
    scout_id: str
    execution_id: str | None = None
    skip_notification: bool = False
    extract_units: bool = True


class SendVerificationRequest(BaseModel):
    draft_id: str = ""


class CreateDraftRequest(BaseModel):
    village_id: str = Field(min_length=1)
    village_name: str = Field(min_length=1)
    body: str = Field(min_length=1)
    title: str | None = None
    selected_unit_ids: list[str] = Field(default_factory=list)
    custom_system_prompt: str | None = None


class DraftStatusRequest(BaseModel):
    verification_status: str


class MarkUsedRequest(BaseModel):
    unit_ids: list[str] = Field(default_factory=list)


class GenerateDraftRequest(BaseModel):
    village_name: str = ""
    unit_ids: list[str] = Field(default_factory=list)
    custom_system_prompt: str | None = None


class ComposeRequest(BaseModel):
    unit_ids: list[str] = Field(default_factory=list)
    include_sources: bool = True
    custom_system_prompt: str | None = None


class SelectUnitsRequest(BaseModel):
    village_id: str = ""
    scout_id: str = ""


class ManualTextRequest(BaseModel):
    text: str = ""
    location: Location | None = None
    topic: str | None = None
    source_title: str | None = None


# === Dependencies ===


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Authentication required")
    return x_user_id.strip()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_pipeline(request: Request) -> ScoutPipeline:
    return request.app.state.pipeline


def get_verification(request: Request) -> VerificationService:
    return request.app.state.verification


def get_extractor(request: Request) -> UnitExtractor:
    return request.app.state.pipeline.extractor


def get_drafter(request: Request) -> DraftAgent:
    state = request.app.state
    if state.drafter is None:
        config: Config = state.config
        state.drafter = DraftAgent(
            getattr(state.collaborators.llm, "client", None),
            config.draft_model,
            language=config.language,
        )
    return state.drafter


def get_composer(request: Request) -> ComposeAgent:
    state = request.app.state
    if state.composer is None:
        config: Config = state.config
        state.composer = ComposeAgent(
            getattr(state.collaborators.llm, "client", None),
            config.draft_model,
            language=config.language,
        )
    return state.composer


def _error(status: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": {"message": message, "code": code}})


def create_app(
    config: Config,
    db: Database,
    collaborators: Collaborators,
    drafter: DraftAgent | None = None,
    composer: ComposeAgent | None = None,
) -> FastAPI:
    """Build the application around one database and one set of collaborators."""
    app = FastAPI(title="Dorfkoenig API", version="0.1.0")
    app.state.config = config
    app.state.db = db
    app.state.collaborators = collaborators
    app.state.pipeline = ScoutPipeline(config, db, collaborators)
    app.state.verification = VerificationService(config, db, collaborators.messenger)
    app.state.drafter = drafter
    app.state.composer = composer

    @app.exception_handler(DorfkoenigError)
    async def handle_app_error(request: Request, exc: DorfkoenigError) -> JSONResponse:
        if exc.status >= 500:
            logger.error("Request failed | path=%s error=%s", request.url.path, exc.message)
        return _error(exc.status, exc.message, exc.code)

    @app.exception_handler(RequestValidationError)
    async def handle_bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid')}" if field else "Invalid request"
        return _error(400, message, "VALIDATION_ERROR")

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error | path=%s error=%s", request.url.path, exc, exc_info=exc)
        return _error(500, str(exc) or type(exc).__name__, "INTERNAL_ERROR")

    # --- Scout execution ---

    @app.post("/execute-scout")
    async def execute_scout(
        payload: ExecuteScoutRequest,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
        pipeline: ScoutPipeline = Depends(get_pipeline),
    ):
        """Run one scout now. A failed scrape is still a 200 with status=failed."""
        if db.get_scout(payload.scout_id, user_id) is None:
            raise NotFoundError("Scout not found")
        result = await pipeline.execute(
            payload.scout_id,
            execution_id=payload.execution_id,
            skip_notification=payload.skip_notification,
            extract_units=payload.extract_units,
        )
        return {"data": result.to_dict()}

    # --- WhatsApp webhook ---

    @app.get("/bajour-whatsapp-webhook")
    async def webhook_handshake(
        mode: str | None = Query(default=None, alias="hub.mode"),
        token: str | None = Query(default=None, alias="hub.verify_token"),
        challenge: str | None = Query(default=None, alias="hub.challenge"),
        verification: VerificationService = Depends(get_verification),
    ):
        echoed = verification.verify_subscription(mode, token, challenge)
        if echoed is None:
            return PlainTextResponse("Forbidden", status_code=403)
        return PlainTextResponse(echoed)

    @app.post("/bajour-whatsapp-webhook")
    async def webhook_delivery(
        request: Request,
        verification: VerificationService = Depends(get_verification),
    ):
        raw_body = await request.body()
        try:
            status = verification.handle_webhook(raw_body, request.headers.get("x-hub-signature-256"))
        except Exception as e:
            logger.error("Webhook processing failed | error=%s", e, exc_info=True)
            return {"status": "error", "message": str(e)}
        return {"status": status.value}

    # --- Drafts and verification ---

    @app.post("/bajour-drafts", status_code=201)
    async def create_draft(
        payload: CreateDraftRequest,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        draft = db.create_draft(
            user_id,
            payload.village_id,
            payload.village_name,
            payload.body,
            title=payload.title,
            selected_unit_ids=payload.selected_unit_ids,
            custom_system_prompt=payload.custom_system_prompt,
        )
        return {"data": draft.to_dict(datetime.now(timezone.utc))}

    @app.patch("/bajour-drafts/{draft_id}")
    async def override_draft_status(
        draft_id: str,
        payload: DraftStatusRequest,
        user_id: str = Depends(get_user_id),
        verification: VerificationService = Depends(get_verification),
    ):
        draft = verification.override_status(draft_id, user_id, payload.verification_status)
        return {"data": draft.to_dict(datetime.now(timezone.utc))}

    @app.post("/bajour-send-verification")
    async def send_verification(
        payload: SendVerificationRequest,
        user_id: str = Depends(get_user_id),
        verification: VerificationService = Depends(get_verification),
    ):
        sent = await verification.send(payload.draft_id, user_id)
        return {"data": {"sent_count": sent}}

    @app.post("/bajour-generate-draft")
    async def generate(
        request: Request,
        payload: GenerateDraftRequest,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        draft, units_used = await generate_draft(
            db,
            get_drafter(request),
            user_id,
            payload.village_name,
            payload.unit_ids,
            payload.custom_system_prompt,
        )
        return {"data": {**draft.model_dump(), "units_used": units_used}}

    @app.post("/bajour-select-units")
    async def select(
        request: Request,
        payload: SelectUnitsRequest,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        state = request.app.state
        selected = await select_units(
            db,
            state.collaborators.llm,
            user_id,
            payload.village_id,
            payload.scout_id,
            language=state.config.language,
        )
        return {"data": {"selected_unit_ids": selected}}

    # --- Articles ---

    @app.post("/compose")
    async def compose(
        request: Request,
        payload: ComposeRequest,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        """Article draft from units, enriched with their scraped source pages."""
        article = await compose_article(
            db,
            get_composer(request),
            request.app.state.collaborators.scraper,
            user_id,
            payload.unit_ids,
            include_sources=payload.include_sources,
            custom_system_prompt=payload.custom_system_prompt,
        )
        return {"data": article.model_dump()}

    # --- Units ---

    @app.get("/units")
    async def list_units(
        location_city: str | None = None,
        topic: str | None = None,
        unused_only: bool = True,
        scout_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        units = db.list_units(
            user_id,
            location_city=location_city,
            topic=topic,
            unused_only=unused_only,
            scout_id=scout_id,
            limit=limit,
            offset=offset,
        )
        return {
            "data": [u.model_dump(mode="json", exclude={"similarity"}) for u in units],
            "meta": {"limit": min(max(limit, 1), 100), "offset": max(offset, 0)},
        }

    @app.get("/units/locations")
    async def unit_locations(
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        return {"data": db.unit_locations(user_id)}

    @app.get("/units/search")
    async def search_units(
        q: str | None = None,
        location_city: str | None = None,
        topic: str | None = None,
        unused_only: bool = True,
        min_similarity: float = 0.3,
        limit: int = 20,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        if not q or not q.strip():
            raise ValidationError("Search query required")
        embedding = await app.state.collaborators.llm.embed(q.strip())
        units = db.search_units(
            user_id,
            embedding,
            location_city=location_city,
            topic=topic,
            unused_only=unused_only,
            min_similarity=min_similarity,
            limit=limit,
        )
        return {"data": [u.model_dump(mode="json") for u in units]}

    @app.patch("/units/mark-used")
    async def mark_used(
        payload: MarkUsedRequest,
        user_id: str = Depends(get_user_id),
        db: Database = Depends(get_db),
    ):
        if not payload.unit_ids:
            raise ValidationError("unit_ids array required")
        return {"data": {"marked_count": db.mark_units_used(user_id, payload.unit_ids)}}

    @app.post("/manual-upload")
    async def manual_upload(
        payload: ManualTextRequest,
        user_id: str = Depends(get_user_id),
        extractor: UnitExtractor = Depends(get_extractor),
    ):
        """Extract units from pasted text."""
        unit_ids = await extractor.extract_from_text(
            payload.text,
            user_id,
            location=payload.location,
            topic=(payload.topic or "").strip() or None,
            source_title=payload.source_title,
        )
        return {"data": {"units_created": len(unit_ids), "unit_ids": unit_ids}}

    return app
