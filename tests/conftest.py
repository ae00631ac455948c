"""Shared fixtures: in-memory collaborators and a real SQLite database."""

import json
from pathlib import Path

import pytest

from collaborators import Collaborators
from config import Config
from database import Database
from errors import CollaboratorError
from notifications import EmailResult
from pipeline import ScoutPipeline
from tools.scrape import ScrapeResult

EMBEDDING_DIM = 16

CORRESPONDENTS = {
    "riehen": [
        {"name": "Anna", "phone": "+41791111111"},
        {"name": "Beat", "phone": "+41792222222"},
        {"name": "Carla", "phone": "+41793333333"},
    ],
    "arlesheim": [
        {"name": "Dora", "phone": "+41794444444"},
        {"name": "Emil", "phone": "+41795555555"},
    ],
}


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeScraper:
    """Returns a fixed ScrapeResult and records calls."""

    def __init__(self, result: ScrapeResult | None = None):
        self.result = result or ScrapeResult(success=True, markdown="# Gemeinde\n\nNeuigkeiten", change_signal="changed")
        self.calls: list[tuple[str, str | None]] = []

    async def scrape(self, url: str, tag: str | None = None) -> ScrapeResult:
        self.calls.append((url, tag))
        return self.result


class FakeLLM:
    """Scripted chat responses and deterministic embeddings.

    Chat responses are consumed in order (dicts are JSON-encoded). Texts
    without an explicit embedding get a fresh one-hot vector, so distinct
    texts are orthogonal unless a test says otherwise.
    """

    def __init__(self, responses: list | None = None, embeddings: dict[str, list[float]] | None = None):
        self.responses = list(responses or [])
        self.embeddings = dict(embeddings or {})
        self.chat_calls: list[dict] = []
        self.embed_calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.fail_chat = False
        self.fail_embed = False
        self._next_axis = 0

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def vector(self, text: str) -> list[float]:
        if text not in self.embeddings:
            vec = [0.0] * EMBEDDING_DIM
            vec[self._next_axis % EMBEDDING_DIM] = 1.0
            self._next_axis += 1
            self.embeddings[text] = vec
        return self.embeddings[text]

    async def chat_complete(self, system, user, temperature=0.2, max_tokens=None, json_mode=True) -> str:
        self.chat_calls.append({"system": system, "user": user, "temperature": temperature, "json_mode": json_mode})
        if self.fail_chat:
            raise CollaboratorError("LLM request failed: connection reset")
        if not self.responses:
            raise AssertionError("Unexpected chat_complete call")
        response = self.responses.pop(0)
        return response if isinstance(response, str) else json.dumps(response)

    async def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if self.fail_embed:
            raise CollaboratorError("Embedding request failed")
        return self.vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls.append(list(texts))
        if self.fail_embed:
            raise CollaboratorError("Embedding request failed")
        return [self.vector(t) for t in texts]


class FakeMailer:
    def __init__(self, result: EmailResult | None = None):
        self.result = result or EmailResult(success=True, id="email-1")
        self.sent: list[dict] = []

    async def send_email(self, to: str, subject: str, html_body: str) -> EmailResult:
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return self.result


class FakeMessenger:
    """Records WhatsApp sends; fails on the n-th call when fail_on is set."""

    def __init__(self, fail_on: int | None = None):
        self.fail_on = fail_on
        self.sent: list[tuple[str, str, str]] = []

    def _record(self, kind: str, to: str, payload: str) -> str:
        if self.fail_on is not None and len(self.sent) + 1 == self.fail_on:
            raise CollaboratorError("WhatsApp API error: 400 - invalid recipient")
        self.sent.append((kind, to, payload))
        return f"wamid.{len(self.sent)}"

    async def send_text(self, to: str, text: str) -> str:
        return self._record("text", to, text)

    async def send_verification_template(self, to: str, village_name: str) -> str:
        return self._record("template", to, village_name)


# =============================================================================
# Helpers
# =============================================================================


def analysis(matches=True, summary="Gemeinderat beschliesst neues Schulhaus", findings=("Budget 12 Mio.",)) -> dict:
    return {"matches": matches, "summary": summary, "keyFindings": list(findings)}


def extraction(*statements: str, unit_type: str = "fact") -> dict:
    return {
        "units": [
            {"statement": s, "unitType": unit_type, "entities": ["Gemeinderat"], "eventDate": None}
            for s in statements
        ]
    }


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        openrouter_api_key="test-key",
        db_path=tmp_path / "test.db",
        log_dir=tmp_path / "log",
        whatsapp_app_secret="app-secret",
        whatsapp_verify_token="verify-me",
        correspondents={k: [dict(c) for c in v] for k, v in CORRESPONDENTS.items()},
    )


@pytest.fixture
def db(config: Config):
    database = Database(config.db_path)
    yield database
    database.close()


@pytest.fixture
def scraper() -> FakeScraper:
    return FakeScraper()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def collaborators(scraper, llm, mailer, messenger) -> Collaborators:
    return Collaborators(scraper=scraper, llm=llm, mailer=mailer, messenger=messenger)


@pytest.fixture
def pipeline(config, db, collaborators) -> ScoutPipeline:
    return ScoutPipeline(config, db, collaborators)
