"""External collaborator interfaces and their production wiring.

The pipeline and verification service depend only on these protocols.
Production clients are built once per process with Collaborators.from_config
and passed in; tests pass in-memory fakes instead.
"""

from dataclasses import dataclass
from typing import Protocol

from config import Config
from notifications import EmailResult, ResendMailer
from tools.llm import LLMClient
from tools.scrape import FirecrawlScraper, ScrapeResult
from tools.whatsapp import WhatsAppMessenger


class Scraper(Protocol):
    async def scrape(self, url: str, tag: str | None = None) -> ScrapeResult: ...


class LanguageModel(Protocol):
    async def chat_complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        json_mode: bool = True,
    ) -> str: ...

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class Mailer(Protocol):
    async def send_email(self, to: str, subject: str, html_body: str) -> EmailResult: ...


class Messenger(Protocol):
    async def send_text(self, to: str, text: str) -> str: ...

    async def send_verification_template(self, to: str, village_name: str) -> str: ...


@dataclass
class Collaborators:
    """The set of external services one process talks to."""

    scraper: Scraper
    llm: LanguageModel
    mailer: Mailer
    messenger: Messenger

    @classmethod
    def from_config(cls, config: Config) -> "Collaborators":
        return cls(
            scraper=FirecrawlScraper(
                config.firecrawl_api_key,
                config.firecrawl_base_url,
                timeout=config.scrape_timeout_seconds,
            ),
            llm=LLMClient(
                config.openrouter_api_key,
                config.openrouter_base_url,
                config.chat_model,
                config.embedding_model,
            ),
            mailer=ResendMailer(config.resend_api_key, config.email_from),
            messenger=WhatsAppMessenger(
                config.whatsapp_phone_number_id,
                config.whatsapp_api_token,
                config.whatsapp_template_name,
            ),
        )
