"""
Embedding Batch Generator  —  sequential, rate-limited, write-per-batch
════════════════════════════════════════════════════════════════════════

Flow per document:

    chunks ──► [b0][b1][b2] …        fixed-size batches (default 5)
                │
                ├─ provider.embed_documents(texts)   one call per batch,
                │                                    bounded by wait_for
                ├─ chunk_store.insert_chunks(...)    one write per batch
                ├─ progress.report((i+1)/n)
                └─ sleep(batch_delay)                 not after the last batch

Batches run strictly in chunk_index order, never concurrently, so the
persisted chunk rows always form a contiguous prefix of the document and
progress only moves forward.

Failure policy:
  Any provider error, timeout, vector-count mismatch or write error aborts
  the whole run with EmbeddingError(batch_index). Rows written by earlier
  batches stay in place; the orchestrator marks the document ERROR and a
  re-processing run clears them before starting over.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol, Sequence

from docpipe.core.errors import EmbeddingError, ProcessingCancelled
from docpipe.processing.progress import NULL_PROGRESS, CancellationToken, ProgressSink

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE      = 5
DEFAULT_BATCH_DELAY     = 0.2     # seconds between batches
DEFAULT_REQUEST_TIMEOUT = 30.0    # seconds per provider call


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------

class EmbeddingProvider(Protocol):
    async def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    async def embed_query(self, text: str) -> list[float]: ...


@dataclass
class ChunkRecord:
    """One row of the chunk store."""
    chunk_index: int
    content:     str
    embedding:   list[float] | None
    metadata:    dict = field(default_factory=dict)


class ChunkSink(Protocol):
    async def insert_chunks(self, document_id, records: Sequence[ChunkRecord]) -> None: ...


# ---------------------------------------------------------------------------
# OpenAI provider (LangChain)
# ---------------------------------------------------------------------------

class OpenAIEmbeddingProvider:
    """
    Thin adapter over langchain_openai.OpenAIEmbeddings.

    text-embedding-3-small → 1536 dims  (default, cost-efficient)
    text-embedding-3-large → 3072 dims  (higher accuracy, 2× cost)
    """

    def __init__(self, model: str, api_key: str, dimensions: int) -> None:
        from langchain_openai import OpenAIEmbeddings

        self.model = model
        self._embeddings = OpenAIEmbeddings(
            model=model,
            api_key=api_key,
            dimensions=dimensions,
        )

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return await self._embeddings.aembed_documents(texts)

    async def embed_query(self, text: str) -> list[float]:
        return await self._embeddings.aembed_query(text)


def build_embedding_provider(api_key: str | None = None) -> OpenAIEmbeddingProvider:
    from docpipe.core.config import settings

    return OpenAIEmbeddingProvider(
        model=settings.embedding_model,
        api_key=api_key or settings.openai_api_key,
        dimensions=settings.embedding_dimensions,
    )


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class EmbeddingRunResult:
    chunks_count: int
    batches:      int
    elapsed_ms:   float


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class EmbeddingBatchGenerator:
    """
    Embeds ordered chunks batch by batch and persists each batch as one write.

    The provider, the chunk store and the sleep function are injected so
    tests can run without network access or real delays.
    """

    def __init__(
        self,
        provider:        EmbeddingProvider,
        chunk_store:     ChunkSink,
        batch_size:      int   = DEFAULT_BATCH_SIZE,
        batch_delay:     float = DEFAULT_BATCH_DELAY,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._provider        = provider
        self._chunk_store     = chunk_store
        self._batch_size      = batch_size
        self._batch_delay     = batch_delay
        self._request_timeout = request_timeout
        self._sleep           = sleep

    @staticmethod
    def partition(chunks: Sequence[str], batch_size: int) -> list[list[tuple[int, str]]]:
        indexed = list(enumerate(chunks))
        return [indexed[i : i + batch_size] for i in range(0, len(indexed), batch_size)]

    async def embed_and_store(
        self,
        document_id,
        chunks:         Sequence[str],
        progress:       ProgressSink = NULL_PROGRESS,
        cancel:         CancellationToken | None = None,
        extra_metadata: dict | None = None,
    ) -> EmbeddingRunResult:
        """
        Embed `chunks` (already in reading order) and persist them.

        Raises:
            EmbeddingError       provider / timeout / persistence failure
            ProcessingCancelled  cancel token set between two batches
        """
        t0 = time.monotonic()
        total   = len(chunks)
        batches = self.partition(chunks, self._batch_size)

        logger.info(
            "Embedding | doc=%s chunks=%d batches=%d batch_size=%d",
            document_id, total, len(batches), self._batch_size,
        )

        for batch_index, batch in enumerate(batches):
            if cancel is not None:
                cancel.raise_if_cancelled()

            await self._embed_batch(document_id, batch_index, batch, total, extra_metadata)
            await progress.report((batch_index + 1) / len(batches), "embedding")

            if batch_index < len(batches) - 1 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedding done | doc=%s chunks=%d batches=%d elapsed_ms=%.0f",
            document_id, total, len(batches), elapsed_ms,
        )
        return EmbeddingRunResult(chunks_count=total, batches=len(batches), elapsed_ms=elapsed_ms)

    async def _embed_batch(
        self,
        document_id,
        batch_index:    int,
        batch:          list[tuple[int, str]],
        total:          int,
        extra_metadata: dict | None,
    ) -> None:
        texts = [content for _, content in batch]
        t_api = time.monotonic()

        try:
            vectors = await asyncio.wait_for(
                self._provider.embed_documents(texts),
                timeout=self._request_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingError(
                f"Embedding request timed out after {self._request_timeout:.0f}s "
                f"(batch {batch_index})",
                batch_index=batch_index,
            ) from exc
        except (ProcessingCancelled, asyncio.CancelledError):
            raise
        except Exception as exc:
            logger.error(
                "Embedding provider error | doc=%s batch=%d error=%s: %s",
                document_id, batch_index, type(exc).__name__, exc,
            )
            raise EmbeddingError(
                f"Embedding provider failed on batch {batch_index}: {exc}",
                batch_index=batch_index,
            ) from exc

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} chunks "
                f"(batch {batch_index})",
                batch_index=batch_index,
            )

        records = [
            ChunkRecord(
                chunk_index=index,
                content=content,
                embedding=list(vector),
                metadata={
                    **(extra_metadata or {}),
                    "chunk_index":  index,
                    "total_chunks": total,
                },
            )
            for (index, content), vector in zip(batch, vectors)
        ]

        try:
            await self._chunk_store.insert_chunks(document_id, records)
        except Exception as exc:
            logger.error(
                "Chunk write failed | doc=%s batch=%d error=%s",
                document_id, batch_index, exc,
            )
            raise EmbeddingError(
                f"Failed to store chunks for batch {batch_index}: {exc}",
                batch_index=batch_index,
            ) from exc

        logger.debug(
            "Embedding batch | doc=%s batch=%d size=%d api_ms=%.0f",
            document_id, batch_index, len(batch), (time.monotonic() - t_api) * 1000,
        )
