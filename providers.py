"""Embedding and completion providers.

Embeddings come from Ollama when it is the configured provider, with Google
Gemini as the fallback; completions come from Gemini. Every call here is
blocking and is run off the event loop by the orchestrator.
"""

from __future__ import annotations

import logging
import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
import requests

from config import CONFIG
from errors import CompletionError, EmbeddingError

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    def embed(self, text: str, model_id: str | None = None) -> list[float]: ...


class Completer(Protocol):
    def complete(self, prompt: str, context: str, model_id: str | None = None) -> str: ...


# =============================================================================
# Google GenAI client
# =============================================================================

_lock = threading.RLock()
_genai_client: GenAIClient | None = None


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ValueError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def get_genai_client() -> GenAIClient:
    """Get or create the GenAI client singleton (thread-safe)."""
    global _genai_client
    if _genai_client is None:
        with _lock:
            if _genai_client is None:  # Double-check after acquiring lock
                from google import genai

                _genai_client = genai.Client(api_key=_get_api_key())
    return _genai_client


# =============================================================================
# Embeddings
# =============================================================================


def fit_dimension(values, dim: int = CONFIG.embedding_dim) -> list[float]:
    """Truncate or zero-pad to ``dim`` and L2-normalise."""
    embedding = np.asarray(values, dtype=np.float64)
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def _embed_ollama(text: str, model: str) -> list[float]:
    response = requests.post(
        f"{CONFIG.ollama_base_url}/api/embeddings",
        json={"model": model, "prompt": text},
        timeout=CONFIG.embed_timeout,
    )
    response.raise_for_status()
    values = response.json().get("embedding") or []
    if not values:
        raise EmbeddingError(f"Ollama returned no embedding for model {model}")
    return fit_dimension(values)


def _embed_google(text: str) -> list[float]:
    from google.genai import types

    response = get_genai_client().models.embed_content(
        model=CONFIG.google_embedding_model,
        contents=text,
        config=types.EmbedContentConfig(
            task_type="SEMANTIC_SIMILARITY", output_dimensionality=CONFIG.embedding_dim
        ),
    )
    return fit_dimension(response.embeddings[0].values)


@lru_cache(maxsize=128)
def _embed_cached(text: str, model: str, provider: str) -> tuple[float, ...]:
    """Cached embedding computation to avoid redundant API calls."""
    if provider == "ollama":
        try:
            return tuple(_embed_ollama(text, model))
        except Exception as e:
            logger.warning("Ollama embedding error, falling back to Google: %s", e)
    try:
        return tuple(_embed_google(text))
    except Exception as e:
        raise EmbeddingError(f"All embedding providers failed: {e}") from e


class DefaultEmbedder:
    """Ollama first (when configured), then Gemini. Raises ``EmbeddingError`` when both fail."""

    def __init__(self, provider: str = CONFIG.embedding_provider):
        self.provider = provider.lower()

    def embed(self, text: str, model_id: str | None = None) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        return list(_embed_cached(text, model_id or CONFIG.embedding_model, self.provider))


# =============================================================================
# Completions
# =============================================================================


class GeminiCompleter:
    """Gemini chat completion with the memory context as system instruction."""

    def complete(self, prompt: str, context: str, model_id: str | None = None) -> str:
        from google.genai import types

        try:
            response = get_genai_client().models.generate_content(
                model=model_id or CONFIG.llm_model,
                contents=prompt,
                config=types.GenerateContentConfig(system_instruction=context),
            )
        except Exception as e:
            raise CompletionError(f"Completion failed: {e}") from e
        text = (response.text or "").strip()
        if not text:
            raise CompletionError("Completion returned no text")
        return text
