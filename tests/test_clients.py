"""Tests for the HTTP collaborator clients against a local aiohttp server."""

import asyncio
import json

import pytest
from aiohttp import test_utils, web

from errors import CollaboratorError
from notifications import ResendMailer
from tools.llm import LLMClient
from tools.scrape import FirecrawlScraper
from tools.whatsapp import WhatsAppMessenger


class LocalApi:
    """Starts one aiohttp app per test and records every request body."""

    def __init__(self):
        self.requests: list[tuple[str, dict, dict]] = []
        self._servers: list[test_utils.TestServer] = []

    async def start(self, routes: dict) -> str:
        app = web.Application()
        for path, handler in routes.items():
            app.router.add_post(path, self._recording(handler))
        server = test_utils.TestServer(app, host="127.0.0.1")
        await server.start_server()
        self._servers.append(server)
        return f"http://127.0.0.1:{server.port}"

    def _recording(self, handler):
        async def wrapped(request: web.Request) -> web.StreamResponse:
            raw = await request.read()
            body = json.loads(raw) if raw else {}
            self.requests.append((request.path, dict(request.headers), body))
            return await handler(request)

        return wrapped

    async def close(self):
        for server in self._servers:
            await server.close()


@pytest.fixture
async def api():
    local = LocalApi()
    yield local
    await local.close()


def reply(payload, status: int = 200):
    async def handler(request):
        return web.json_response(payload, status=status)

    return handler


def reply_text(text: str, status: int = 200, content_type: str = "text/html"):
    async def handler(request):
        return web.Response(text=text, status=status, content_type=content_type)

    return handler


def firecrawl_page(signal: str | None, markdown: str = "# Riehen\n\nNeuigkeiten") -> dict:
    data = {"markdown": markdown, "metadata": {"title": "Gemeinde Riehen"}}
    if signal is not None:
        data["changeTracking"] = {"changeStatus": signal}
    return {"success": True, "data": data}


# =============================================================================
# Firecrawl
# =============================================================================


class TestFirecrawlScraper:
    @pytest.mark.parametrize(
        "signal,expected",
        [
            ("new", "new"),
            ("same", "same"),
            ("changed", "changed"),
            ("removed", "unknown"),
            (None, "unknown"),
        ],
    )
    async def test_change_signals(self, api, signal, expected):
        base = await api.start({"/scrape": reply(firecrawl_page(signal))})
        scraper = FirecrawlScraper("fc-key", base_url=base)

        result = await scraper.scrape("https://www.riehen.ch/aktuell", "scout-s1")

        assert result.success
        assert result.change_signal == expected
        assert result.markdown.startswith("# Riehen")
        assert result.title == "Gemeinde Riehen"

    async def test_request_carries_tag_and_token(self, api):
        base = await api.start({"/scrape": reply(firecrawl_page("new"))})
        await FirecrawlScraper("fc-key", base_url=base + "/").scrape("https://www.riehen.ch", "scout-s1")

        path, headers, body = api.requests[0]
        assert path == "/scrape"
        assert headers["Authorization"] == "Bearer fc-key"
        assert body["url"] == "https://www.riehen.ch"
        assert body["formats"] == ["markdown", {"type": "changeTracking", "tag": "scout-s1"}]

    async def test_untagged_scrape_skips_change_tracking(self, api):
        base = await api.start({"/scrape": reply(firecrawl_page(None))})
        result = await FirecrawlScraper("fc-key", base_url=base).scrape("https://www.riehen.ch")

        assert result.success
        assert result.change_signal == "unknown"
        assert api.requests[0][2]["formats"] == ["markdown"]

    async def test_non_2xx(self, api):
        base = await api.start({"/scrape": reply_text("upstream down", status=502)})
        result = await FirecrawlScraper("fc-key", base_url=base).scrape("https://www.riehen.ch", "t")

        assert not result.success
        assert result.error.startswith("Firecrawl API error: 502")
        assert "upstream down" in result.error

    async def test_non_json_success_body(self, api):
        base = await api.start({"/scrape": reply_text("<html>Wartung</html>")})
        result = await FirecrawlScraper("fc-key", base_url=base).scrape("https://www.riehen.ch", "t")

        assert not result.success
        assert result.error.startswith("Invalid Firecrawl response")

    async def test_unsuccessful_body(self, api):
        base = await api.start({"/scrape": reply({"success": False, "error": "Blocked by robots.txt"})})
        result = await FirecrawlScraper("fc-key", base_url=base).scrape("https://www.riehen.ch", "t")

        assert not result.success
        assert result.error == "Blocked by robots.txt"

    async def test_non_object_body(self, api):
        base = await api.start({"/scrape": reply(["not", "an", "object"])})
        result = await FirecrawlScraper("fc-key", base_url=base).scrape("https://www.riehen.ch", "t")

        assert not result.success
        assert result.error == "Unexpected Firecrawl response"

    async def test_timeout(self, api):
        async def slow(request):
            await asyncio.sleep(2)
            return web.json_response(firecrawl_page("new"))

        base = await api.start({"/scrape": slow})
        result = await FirecrawlScraper("fc-key", base_url=base, timeout=1).scrape("https://www.riehen.ch", "t")

        assert not result.success
        assert result.error == "Scraping timed out"


# =============================================================================
# WhatsApp
# =============================================================================


class TestWhatsAppMessenger:
    async def test_returns_message_id(self, api):
        base = await api.start({"/12345/messages": reply({"messages": [{"id": "wamid.ABC"}]})})
        messenger = WhatsAppMessenger("12345", "wa-token", base_url=base)

        message_id = await messenger.send_text("+41791111111", "Entwurf")

        assert message_id == "wamid.ABC"
        _, headers, body = api.requests[0]
        assert headers["Authorization"] == "Bearer wa-token"
        assert body == {
            "messaging_product": "whatsapp",
            "to": "+41791111111",
            "type": "text",
            "text": {"body": "Entwurf"},
        }

    async def test_template_names_village(self, api):
        base = await api.start({"/12345/messages": reply({"messages": [{"id": "wamid.T"}]})})
        messenger = WhatsAppMessenger("12345", "wa-token", base_url=base)

        await messenger.send_verification_template("+41791111111", "Riehen")

        template = api.requests[0][2]["template"]
        assert template["name"] == "bajour_draft_verification"
        assert template["components"][0]["parameters"] == [{"type": "text", "text": "Riehen"}]

    async def test_non_2xx_raises(self, api):
        base = await api.start({"/12345/messages": reply({"error": {"message": "Invalid token"}}, status=401)})
        messenger = WhatsAppMessenger("12345", "wa-token", base_url=base)

        with pytest.raises(CollaboratorError, match="WhatsApp API error: 401"):
            await messenger.send_text("+41791111111", "Entwurf")

    @pytest.mark.parametrize("payload", [{"messages": ["wamid.ABC"]}, {"messages": [None]}])
    async def test_malformed_messages_entry_raises(self, api, payload):
        base = await api.start({"/12345/messages": reply(payload)})
        messenger = WhatsAppMessenger("12345", "wa-token", base_url=base)

        with pytest.raises(CollaboratorError, match="malformed"):
            await messenger.send_text("+41791111111", "Entwurf")

    async def test_non_json_body_raises(self, api):
        base = await api.start({"/12345/messages": reply_text("ok")})
        messenger = WhatsAppMessenger("12345", "wa-token", base_url=base)

        with pytest.raises(CollaboratorError):
            await messenger.send_text("+41791111111", "Entwurf")

    async def test_missing_id_is_unknown(self, api):
        base = await api.start({"/12345/messages": reply({"contacts": []})})
        messenger = WhatsAppMessenger("12345", "wa-token", base_url=base)

        assert await messenger.send_text("+41791111111", "Entwurf") == "unknown"


# =============================================================================
# Resend
# =============================================================================


class TestResendMailer:
    async def test_success(self, api):
        base = await api.start({"/emails": reply({"id": "em_123"})})
        mailer = ResendMailer("re-key", "Dorfkönig <scouts@example.ch>", url=f"{base}/emails")

        result = await mailer.send_email("redaktion@example.ch", "Scout-Alarm: Riehen", "<p>Hallo</p>")

        assert result.success
        assert result.id == "em_123"
        body = api.requests[0][2]
        assert body["from"] == "Dorfkönig <scouts@example.ch>"
        assert body["to"] == "redaktion@example.ch"

    async def test_error_body(self, api):
        base = await api.start({"/emails": reply({"message": "Domain not verified"}, status=403)})
        mailer = ResendMailer("re-key", "scouts@example.ch", url=f"{base}/emails")

        result = await mailer.send_email("redaktion@example.ch", "Betreff", "<p>x</p>")

        assert not result.success
        assert result.error == "Domain not verified"

    async def test_error_without_message(self, api):
        base = await api.start({"/emails": reply({}, status=500)})
        mailer = ResendMailer("re-key", "scouts@example.ch", url=f"{base}/emails")

        result = await mailer.send_email("redaktion@example.ch", "Betreff", "<p>x</p>")

        assert not result.success
        assert result.error == "Resend API error: 500"

    async def test_non_json_body(self, api):
        base = await api.start({"/emails": reply_text("Bad Gateway", status=502)})
        mailer = ResendMailer("re-key", "scouts@example.ch", url=f"{base}/emails")

        result = await mailer.send_email("redaktion@example.ch", "Betreff", "<p>x</p>")

        assert not result.success
        assert result.error


# =============================================================================
# OpenAI-compatible API
# =============================================================================


def embedding_body(*items: tuple[int, list[float]]) -> dict:
    return {
        "object": "list",
        "model": "text-embedding-3-small",
        "usage": {"prompt_tokens": 4, "total_tokens": 4},
        "data": [{"object": "embedding", "index": index, "embedding": vector} for index, vector in items],
    }


def chat_body(choices: list) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": choices,
        "usage": {"prompt_tokens": 10, "completion_tokens": 3, "total_tokens": 13},
    }


def llm_for(base: str) -> LLMClient:
    return LLMClient("llm-key", base, "gpt-4o-mini", "text-embedding-3-small")


class TestLLMClient:
    async def test_embed_batch_restores_input_order(self, api):
        base = await api.start({"/embeddings": reply(embedding_body((1, [0.0, 1.0]), (0, [1.0, 0.0])))})

        vectors = await llm_for(base).embed_batch(["Schulhaus", "Dorffest"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        body = api.requests[0][2]
        assert body["input"] == ["Schulhaus", "Dorffest"]
        assert body["model"] == "text-embedding-3-small"

    async def test_embed_batch_count_mismatch(self, api):
        base = await api.start({"/embeddings": reply(embedding_body((0, [1.0, 0.0])))})

        with pytest.raises(CollaboratorError, match="expected 2, got 1"):
            await llm_for(base).embed_batch(["Schulhaus", "Dorffest"])

    async def test_embed_batch_empty_makes_no_request(self, api):
        base = await api.start({"/embeddings": reply(embedding_body())})
        assert await llm_for(base).embed_batch([]) == []
        assert api.requests == []

    async def test_embedding_rejected(self, api):
        base = await api.start({"/embeddings": reply({"error": {"message": "bad model"}}, status=400)})

        with pytest.raises(CollaboratorError, match="Embedding request failed"):
            await llm_for(base).embed("Schulhaus")

    async def test_chat_complete_json_mode(self, api):
        choice = {"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": '{"ok": true}'}}
        base = await api.start({"/chat/completions": reply(chat_body([choice]))})

        text = await llm_for(base).chat_complete("system", "user", temperature=0.1, max_tokens=50)

        assert text == '{"ok": true}'
        body = api.requests[0][2]
        assert body["response_format"] == {"type": "json_object"}
        assert body["max_tokens"] == 50
        assert [m["role"] for m in body["messages"]] == ["system", "user"]

    async def test_chat_complete_without_choices(self, api):
        base = await api.start({"/chat/completions": reply(chat_body([]))})

        with pytest.raises(CollaboratorError, match="no choices"):
            await llm_for(base).chat_complete("system", "user")
