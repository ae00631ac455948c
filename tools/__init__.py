"""Clients for the external services a scout run talks to.

FirecrawlScraper:
    Page to markdown with change tracking.

LLMClient:
    OpenAI-compatible chat completions and embeddings (OpenRouter).

WhatsAppMessenger:
    Draft text and verification template messages.

The Resend mailer lives in notifications.py next to the alert email builder.
"""

from tools.llm import LLMClient
from tools.scrape import FirecrawlScraper, ScrapeResult, get_domain
from tools.whatsapp import WhatsAppMessenger

__all__ = [
    "FirecrawlScraper",
    "LLMClient",
    "ScrapeResult",
    "WhatsAppMessenger",
    "get_domain",
]
