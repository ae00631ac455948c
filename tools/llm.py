"""Language-model collaborator: chat completions and embeddings.

Both go through an OpenAI-compatible API (OpenRouter by default). Setting
EMBEDDING_MODEL to ``local:<hf-model>`` routes embeddings to a
sentence-transformers model instead, leaving chat on the remote API.

Transport failures raise CollaboratorError. Callers decide whether that is
fatal (the pipeline degrades; semantic search surfaces it).
"""

import asyncio
import logging

from openai import AsyncOpenAI, OpenAIError

from embeddings import LocalEmbeddingModel
from errors import CollaboratorError

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local:"


class LLMClient:
    """Chat and embedding client shared by the analyzer, extractor and search.

    Example:
        >>> llm = LLMClient(api_key, "https://openrouter.ai/api/v1", "openai/gpt-4o-mini",
        ...                 "openai/text-embedding-3-small")
        >>> text = await llm.chat_complete(system, user, temperature=0.2)
        >>> vectors = await llm.embed_batch(["a", "b"])
    """

    def __init__(self, api_key: str, base_url: str, chat_model: str, embedding_model: str):
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self.client = AsyncOpenAI(base_url=base_url, api_key=api_key)
        self._local: LocalEmbeddingModel | None = None
        if embedding_model.startswith(LOCAL_PREFIX):
            self._local = LocalEmbeddingModel(embedding_model[len(LOCAL_PREFIX):])

    async def chat_complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.2,
        max_tokens: int | None = None,
        json_mode: bool = True,
    ) -> str:
        """Run a single system+user chat completion and return the text."""
        kwargs = {
            "model": self.chat_model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            resp = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            raise CollaboratorError(f"Chat completion failed: {e}") from e

        if not resp.choices:
            raise CollaboratorError("Chat completion returned no choices")
        usage = resp.usage
        logger.debug(
            "Chat completion | model=%s tokens=%d/%d",
            self.chat_model,
            usage.prompt_tokens if usage else 0,
            usage.completion_tokens if usage else 0,
        )
        return resp.choices[0].message.content or ""

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts in one call; output order matches input order."""
        if not texts:
            return []
        if self._local is not None:
            return await asyncio.to_thread(self._local.encode_batch, texts)

        try:
            resp = await self.client.embeddings.create(model=self.embedding_model, input=texts)
        except OpenAIError as e:
            raise CollaboratorError(f"Embedding request failed: {e}") from e

        data = sorted(resp.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise CollaboratorError(f"Embedding count mismatch: expected {len(texts)}, got {len(data)}")
        return [list(d.embedding) for d in data]
