"""Email notifications for scout alerts.

This module handles the alert email sent when a scout run matches its
criteria and is not a duplicate of a recent run:
- HTML alert body (summary, key findings, link to the source)
- Delivery through the Resend API

Sending fails gracefully: errors are logged and returned in EmailResult so
the pipeline can record notification_error without failing the run.
"""

import asyncio
import html
import logging
from dataclasses import dataclass

import aiohttp

from tools.utils import bearer_headers, create_ssl_context

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_LABELS = {
    "de": {
        "title": "Scout-Alarm",
        "findings": "Kernpunkte",
        "cta": "Quelle ansehen",
        "footer": "Diese E-Mail wurde automatisch von Dorfkönig gesendet.",
    },
    "en": {
        "title": "Scout Alert",
        "findings": "Key findings",
        "cta": "View source",
        "footer": "This email was sent automatically by Dorfkönig.",
    },
}

_STYLE = """
    body { font-family: 'DM Sans', -apple-system, sans-serif; line-height: 1.6; color: #1c1917;
           margin: 0; padding: 0; background-color: #fafaf9; }
    .container { max-width: 600px; margin: 0 auto; background: white; border-radius: 12px; overflow: hidden; }
    .header { background: #ea726e; color: white; padding: 32px 24px; text-align: center; }
    .header h1 { margin: 0; font-family: 'Crimson Pro', Georgia, serif; font-size: 24px; }
    .header .subtitle { margin: 8px 0 0; font-size: 14px; opacity: 0.9; }
    .content { padding: 24px; }
    .summary { font-size: 18px; margin-bottom: 24px; padding: 16px; background: #fafaf9;
               border-radius: 8px; border-left: 4px solid #ea726e; }
    .findings { border: 1px solid #e7e5e4; border-radius: 8px; padding: 16px; margin-bottom: 24px; }
    .findings h3 { margin: 0 0 12px; font-size: 14px; color: #57534e; text-transform: uppercase; }
    .cta { display: inline-block; background: #ea726e; color: white; padding: 14px 28px;
           border-radius: 8px; text-decoration: none; }
    .footer { padding: 24px; text-align: center; color: #a8a29e; font-size: 13px; border-top: 1px solid #e7e5e4; }
"""


@dataclass
class EmailResult:
    """Outcome of a send attempt."""

    success: bool
    id: str | None = None
    error: str | None = None


def build_alert_subject(scout_name: str, city: str | None) -> str:
    """Build the alert subject: 'Scout-Alarm: <name> (<city>)'."""
    suffix = f" ({city})" if city else ""
    return f"Scout-Alarm: {scout_name}{suffix}"


def build_scout_alert_email(
    scout_name: str,
    summary: str,
    key_findings: list[str],
    source_url: str,
    location_city: str | None = None,
    language: str = "de",
) -> str:
    """Render the HTML body of a scout alert.

    All user- and model-supplied text is HTML-escaped, including the source
    URL in the link target.
    """
    labels = _LABELS.get(language, _LABELS["de"])
    location_label = f" ({location_city})" if location_city else ""

    lines = [
        "<!DOCTYPE html>",
        f'<html lang="{html.escape(language)}">',
        "<head>",
        '  <meta charset="utf-8">',
        '  <meta name="viewport" content="width=device-width, initial-scale=1.0">',
        f"  <style>{_STYLE}</style>",
        "</head>",
        "<body>",
        '  <div class="container">',
        '    <div class="header">',
        f"      <h1>{labels['title']}</h1>",
        f'      <p class="subtitle">{html.escape(scout_name)}{html.escape(location_label)}</p>',
        "    </div>",
        '    <div class="content">',
        f'      <div class="summary">{html.escape(summary)}</div>',
    ]

    if key_findings:
        lines.extend([
            '      <div class="findings">',
            f"        <h3>{labels['findings']}</h3>",
            "        <ul>",
        ])
        lines.extend(f"          <li>{html.escape(finding)}</li>" for finding in key_findings)
        lines.extend(["        </ul>", "      </div>"])

    lines.extend([
        f'      <a href="{html.escape(source_url, quote=True)}" class="cta">{labels["cta"]}</a>',
        "    </div>",
        '    <div class="footer">',
        f"      <p>{labels['footer']}</p>",
        "    </div>",
        "  </div>",
        "</body>",
        "</html>",
    ])
    return "\n".join(lines)


class ResendMailer:
    """Email collaborator backed by the Resend API."""

    def __init__(self, api_key: str, sender: str, url: str = RESEND_API_URL):
        self.api_key = api_key
        self.sender = sender
        self.url = url

    async def send_email(self, to: str, subject: str, html_body: str) -> EmailResult:
        """Send an HTML email.

        Returns:
            EmailResult with the provider message id, or the error text
        """
        payload = {"from": self.sender, "to": to, "subject": subject, "html": html_body}
        headers = bearer_headers(self.api_key)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=30),
                    ssl=create_ssl_context(),
                ) as resp:
                    data = await resp.json(content_type=None)
                    if resp.status >= 300:
                        message = data.get("message") if isinstance(data, dict) else None
                        logger.warning("Email failed | status=%d subject=%s", resp.status, subject[:40])
                        return EmailResult(success=False, error=message or f"Resend API error: {resp.status}")
        except asyncio.TimeoutError:
            logger.warning("Email timeout | subject=%s", subject[:40])
            return EmailResult(success=False, error="Email request timed out")
        except (aiohttp.ClientError, ValueError) as e:
            logger.error("Email error: %s (%s)", e, type(e).__name__, exc_info=True)
            return EmailResult(success=False, error=str(e) or type(e).__name__)

        logger.debug("Email sent | subject=%s", subject[:40])
        return EmailResult(success=True, id=data.get("id") if isinstance(data, dict) else None)
