"""Embeddings for the vector index, backed by OpenAI or SentenceTransformers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from enum import Enum, auto
from typing import TYPE_CHECKING, Final, List

import openai
from openai import OpenAI

from .config import Settings
from .errors import IndexingError

if TYPE_CHECKING:  # pragma: no cover
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

_OPENAI_DIMENSIONS: Final[dict[str, int]] = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
}
_DEFAULT_BATCH_SIZE: Final[int] = 64


class EmbeddingBackend(Enum):
    OPENAI = auto()
    HUGGINGFACE = auto()


class EmbeddingService:
    """Embed chunk texts and search queries for ``QdrantKnowledgeIndex``.

    Backend calls block, so ``embed_documents`` and ``embed_query`` run them
    in a worker thread. Their failures surface as ``IndexingError``: requests
    the backend rejects (4xx other than 429) are permanent, the rest are
    transient and left to the ingestion manager's retries.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        validate: bool = True,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        openai_client: OpenAI | None = None,
    ) -> None:
        self._model = settings.embedding_model.strip()
        self._batch_size = max(1, batch_size)
        self._backend = (
            EmbeddingBackend.OPENAI if settings.is_openai_embedding_backend else EmbeddingBackend.HUGGINGFACE
        )
        self._dimension: int | None = None
        self._openai_client: OpenAI | None = None
        self._hf_model: SentenceTransformer | None = None

        if self._backend is EmbeddingBackend.OPENAI:
            self._setup_openai(settings.openai_api_key, openai_client, validate)
        else:
            self._setup_huggingface(validate)
        logger.info(
            "embeddings.ready backend=%s model=%s dimension=%s",
            self._backend.name.lower(),
            self._model,
            self._dimension,
        )

    @property
    def backend(self) -> EmbeddingBackend:
        return self._backend

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            msg = "Embedding dimension is not initialised."
            raise RuntimeError(msg)
        return self._dimension

    @property
    def model_identifier(self) -> str:
        return self._model

    async def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_checked, list(texts))

    async def embed_query(self, text: str) -> List[float]:
        vectors = await asyncio.to_thread(self._embed_checked, [text])
        return vectors[0]

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in batches of ``batch_size``, keeping their order."""

        vectors: List[List[float]] = []
        for start in range(0, len(texts), self._batch_size):
            vectors.extend(self._embed_batch(list(texts[start : start + self._batch_size])))
        return vectors

    def _embed_checked(self, texts: List[str]) -> List[List[float]]:
        try:
            vectors = self.embed(texts)
        except openai.APIStatusError as exc:
            transient = exc.status_code >= 500 or exc.status_code == 429
            raise IndexingError(
                f"Embedding request failed (status {exc.status_code}): {exc.message}",
                transient=transient,
            ) from exc
        except Exception as exc:
            raise IndexingError(f"Embedding failed: {exc}") from exc
        if len(vectors) != len(texts):
            raise IndexingError(f"Embedding backend returned {len(vectors)} vectors for {len(texts)} texts")
        return vectors

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        if self._backend is EmbeddingBackend.OPENAI:
            assert self._openai_client is not None  # for mypy
            result = self._openai_client.embeddings.create(model=self._model, input=batch)
            return [item.embedding for item in result.data]

        assert self._hf_model is not None
        vectors = self._hf_model.encode(batch, show_progress_bar=False)
        if hasattr(vectors, "tolist"):
            return vectors.tolist()
        return [list(vector) for vector in vectors]

    def _setup_openai(self, api_key: str | None, client: OpenAI | None, validate: bool) -> None:
        if client is None and not api_key:
            msg = "OPENAI_API_KEY must be set when using the OpenAI embedding backend."
            raise ValueError(msg)
        if self._model not in _OPENAI_DIMENSIONS:
            msg = f"Unknown OpenAI embedding model '{self._model}'."
            raise ValueError(msg)
        # Retries are owned by the ingestion manager, not the SDK.
        self._openai_client = client or OpenAI(api_key=api_key, max_retries=0)
        self._dimension = _OPENAI_DIMENSIONS[self._model]

        if validate:
            self._openai_client.models.retrieve(self._model)

    def _setup_huggingface(self, validate: bool) -> None:
        from sentence_transformers import SentenceTransformer

        self._hf_model = SentenceTransformer(self._model)
        self._dimension = int(self._hf_model.get_sentence_embedding_dimension())

        if validate and self._dimension <= 0:
            msg = f"Unexpected embedding dimension ({self._dimension}) for model '{self._model}'."
            raise ValueError(msg)


__all__ = ["EmbeddingBackend", "EmbeddingService"]
