"""WhatsApp Business Cloud API messenger.

Sends the two messages each correspondent receives for a verification
request: the draft text, then a template carrying confirm/reject buttons.
Any non-2xx response raises CollaboratorError so the caller can fail the
whole send.
"""

import asyncio
import logging

import aiohttp

from errors import CollaboratorError
from tools.utils import bearer_headers, create_ssl_context

logger = logging.getLogger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v21.0"


class WhatsAppMessenger:
    """Message collaborator for the WhatsApp Business API."""

    def __init__(
        self,
        phone_number_id: str,
        api_token: str,
        template_name: str = "bajour_draft_verification",
        base_url: str = GRAPH_API_URL,
    ):
        self.phone_number_id = phone_number_id
        self.api_token = api_token
        self.template_name = template_name
        self.base_url = base_url.rstrip("/")

    async def send_message(self, to: str, payload_kind: str, payload: dict) -> str:
        """Send one message and return its message id.

        Args:
            to: Recipient phone number
            payload_kind: WhatsApp message type ('text' or 'template')
            payload: Body for that message type

        Raises:
            CollaboratorError: On transport failure or non-2xx response
        """
        body = {"messaging_product": "whatsapp", "to": to, "type": payload_kind, payload_kind: payload}
        headers = bearer_headers(self.api_token)
        url = f"{self.base_url}/{self.phone_number_id}/messages"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=body,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=30),
                    ssl=create_ssl_context(),
                ) as resp:
                    if resp.status >= 300:
                        text = await resp.text()
                        raise CollaboratorError(f"WhatsApp API error: {resp.status} - {text[:500]}")
                    data = await resp.json(content_type=None)
        except ValueError as e:
            raise CollaboratorError(f"Unexpected WhatsApp response: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CollaboratorError(f"WhatsApp transport error: {e or type(e).__name__}") from e

        messages = data.get("messages") if isinstance(data, dict) else None
        if not messages or not isinstance(messages, list):
            return "unknown"
        if not isinstance(messages[0], dict):
            raise CollaboratorError("Unexpected WhatsApp response: malformed messages entry")
        return messages[0].get("id") or "unknown"

    async def send_text(self, to: str, text: str) -> str:
        return await self.send_message(to, "text", {"body": text})

    async def send_verification_template(self, to: str, village_name: str) -> str:
        """Send the confirm/reject template naming the village."""
        return await self.send_message(
            to,
            "template",
            {
                "name": self.template_name,
                "language": {"code": "de"},
                "components": [
                    {"type": "body", "parameters": [{"type": "text", "text": village_name}]},
                ],
            },
        )
