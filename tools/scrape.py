"""Firecrawl scraping client with change tracking.

The scraper fetches a URL as markdown and reports whether the page changed
since the last scrape under the same tag. Scouts use the tag
``scout-<scout_id>`` so each scout has its own change history. Untagged
scrapes (article source enrichment) skip change tracking.

Change signal values:
    new:     First scrape under this tag
    same:    Content unchanged
    changed: Content changed
    unknown: The API did not report a change status

Failures never raise: they are returned as ScrapeResult(success=False) so the
pipeline can record them on the execution.
"""

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import aiohttp

from tools.utils import bearer_headers, create_ssl_context

logger = logging.getLogger(__name__)

_KNOWN_SIGNALS = frozenset({"new", "same", "changed"})


@dataclass
class ScrapeResult:
    """Result of a single scrape call."""

    success: bool
    markdown: str | None = None
    title: str | None = None
    change_signal: str = "unknown"
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> "ScrapeResult":
        return cls(success=False, error=error)


def get_domain(url: str) -> str:
    """Return the URL's hostname without a leading 'www.'.

    Falls back to the input string when it cannot be parsed as a URL.
    """
    host = urlparse(url).hostname
    if not host:
        return url
    return host[4:] if host.startswith("www.") else host


class FirecrawlScraper:
    """Scrape collaborator backed by the Firecrawl v2 API."""

    def __init__(self, api_key: str, base_url: str = "https://api.firecrawl.dev/v2", timeout: int = 60):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def scrape(self, url: str, tag: str | None = None) -> ScrapeResult:
        """Scrape a URL to markdown, with change tracking when tagged.

        Args:
            url: Page to scrape
            tag: Change-tracking tag (one history per tag). Untagged scrapes
                report change_signal "unknown".

        Returns:
            ScrapeResult with markdown and change signal, or an error
        """
        formats: list = ["markdown"]
        if tag:
            formats.append({"type": "changeTracking", "tag": tag})
        payload = {"url": url, "formats": formats}
        headers = bearer_headers(self.api_key)

        logger.debug("Scraping | url=%s tag=%s", url, tag)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.base_url}/scrape",
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ssl=create_ssl_context(),
                ) as resp:
                    if resp.status >= 300:
                        text = await resp.text()
                        return ScrapeResult.failed(f"Firecrawl API error: {resp.status} - {text[:500]}")
                    body = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning("Scrape timeout | url=%s timeout=%ds", url, self.timeout)
            return ScrapeResult.failed("Scraping timed out")
        except aiohttp.ClientError as e:
            logger.warning("Scrape transport error | url=%s error=%s", url, e)
            return ScrapeResult.failed(str(e) or type(e).__name__)
        except ValueError as e:
            logger.warning("Scrape invalid response | url=%s error=%s", url, e)
            return ScrapeResult.failed(f"Invalid Firecrawl response: {e}")

        if not isinstance(body, dict):
            return ScrapeResult.failed("Unexpected Firecrawl response")
        data = body.get("data")
        if not body.get("success") or not isinstance(data, dict):
            return ScrapeResult.failed(body.get("error") or "Unknown scraping error")

        tracking = data.get("changeTracking") or {}
        signal = tracking.get("changeStatus")
        metadata = data.get("metadata") or {}
        return ScrapeResult(
            success=True,
            markdown=data.get("markdown") or None,
            title=metadata.get("title") or None,
            change_signal=signal if signal in _KNOWN_SIGNALS else "unknown",
        )
