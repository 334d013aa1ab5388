"""One chat turn: remember the prompt, retrieve and rank context, answer, remember the answer."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any

import memory_store
import storage
from config import CONFIG
from content_processor import process_content
from errors import CompletionError, EmbeddingError, ProviderError, ValidationError
from hybrid_ranker import HYBRID_RELAXATION, keyword_thresholds, rank
from models import MemoryType, Message, RetrievedMemory, Role
from prompts import OPERATING_INSTRUCTIONS, build_system_prompt
from providers import Completer, Embedder
from query_analysis import classify_query
from utils import normalize_threshold, now_iso, parse_factor

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_FACTOR = 0.7
DEFAULT_STATEMENT_FACTOR = 0.85
CANDIDATE_MULTIPLIER = 4


class TurnState(str, Enum):
    IDLE = "idle"
    EMBEDDING_QUERY = "embedding_query"
    SEARCHING_MEMORY = "searching_memory"
    RANKING = "ranking"
    GENERATING_RESPONSE = "generating_response"
    PERSISTING = "persisting"


def merge_candidates(*groups: list[RetrievedMemory]) -> list[RetrievedMemory]:
    """Concatenate candidate lists, keeping the first occurrence of each memory id."""
    seen: set[int] = set()
    merged = []
    for group in groups:
        for memory in group:
            if memory.id not in seen:
                seen.add(memory.id)
                merged.append(memory)
    return merged


def _type_label(memory_type: str) -> str:
    return "user prompt" if memory_type == MemoryType.PROMPT.value else "assistant response"


def build_context(memories: list[RetrievedMemory], history: list[Message]) -> str:
    """Context block: ranked memories, the recent conversation, then operating instructions.

    Empty when there is nothing to ground the answer in.
    """
    if not memories and not history:
        return ""
    sections = []
    if memories:
        lines = ["Relevant memories:"]
        for i, memory in enumerate(memories, 1):
            lines.append(
                f"[Memory {i}] (relevance {memory.similarity:.0%}, {memory.timestamp[:19]}, "
                f"{_type_label(memory.type)}) {memory.content}"
            )
        sections.append("\n".join(lines))
    if history:
        lines = ["Recent conversation:"]
        lines.extend(f"{message.role}: {message.content}" for message in history)
        sections.append("\n".join(lines))
    sections.append(OPERATING_INSTRUCTIONS)
    return "\n\n".join(sections)


class ChatOrchestrator:
    def __init__(
        self,
        embedder: Embedder,
        completer: Completer,
        use_case: str = CONFIG.use_case,
        embed_timeout: float = CONFIG.embed_timeout,
        completion_timeout: float = CONFIG.completion_timeout,
    ):
        self.embedder = embedder
        self.completer = completer
        self.use_case = use_case
        self.embed_timeout = embed_timeout
        self.completion_timeout = completion_timeout

    def _transition(self, turn: int, state: TurnState) -> None:
        logger.info("Turn %d -> %s", turn, state.value)

    async def _embed(self, text: str, model_id: str) -> list[float]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.embedder.embed, text, model_id), timeout=self.embed_timeout
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingError(f"Embedding timed out after {self.embed_timeout}s") from e
        except ProviderError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding failed: {e}") from e

    async def _complete(self, prompt: str, context: str, model_id: str) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.completer.complete, prompt, context, model_id),
                timeout=self.completion_timeout,
            )
        except asyncio.TimeoutError as e:
            raise CompletionError(f"Completion timed out after {self.completion_timeout}s") from e
        except ProviderError:
            raise
        except Exception as e:
            raise CompletionError(f"Completion failed: {e}") from e

    async def submit_chat_turn(self, content, model_id: str | None = None) -> dict[str, Any]:
        """Run one turn and return ``{message, context}``.

        Whatever was persisted before a failure (the user message, the prompt
        memory) stays persisted.
        """
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content is required")
        if model_id is not None and (not isinstance(model_id, str) or not model_id.strip()):
            raise ValidationError("model_id must be a non-empty string")

        settings = storage.get_settings()
        model_id = model_id or settings.default_model_id
        context_size = max(1, settings.context_size)

        user_message = storage.create_message(content, Role.USER.value, model_id)
        turn = user_message.id

        self._transition(turn, TurnState.EMBEDDING_QUERY)
        query_vector = await self._embed(process_content(content), settings.default_embedding_model_id)
        prompt_memory = memory_store.create_memory(
            content,
            query_vector,
            MemoryType.PROMPT.value,
            user_message.id,
            metadata={"timestamp": now_iso()},
        )

        threshold = normalize_threshold(settings.similarity_threshold)
        query_class = classify_query(content)
        if query_class.is_question:
            factor = parse_factor(settings.question_threshold_factor, DEFAULT_QUESTION_FACTOR)
        else:
            factor = parse_factor(settings.statement_threshold_factor, DEFAULT_STATEMENT_FACTOR)
        adjusted = normalize_threshold(threshold * factor)
        strong, moderate = keyword_thresholds(threshold)

        self._transition(turn, TurnState.SEARCHING_MEMORY)
        candidate_limit = context_size * CANDIDATE_MULTIPLIER
        by_vector = memory_store.query_by_embedding(
            query_vector, candidate_limit, adjusted, exclude_id=prompt_memory.id, query_text=content
        )
        by_keyword = memory_store.query_by_keywords(
            content, query_vector, candidate_limit, moderate, exclude_id=prompt_memory.id
        )
        candidates = merge_candidates(by_vector, by_keyword)

        self._transition(turn, TurnState.RANKING)
        relevant = rank(content, candidates, threshold)[:context_size]

        history = storage.recent_messages(CONFIG.history_window, before_id=user_message.id)
        context = build_system_prompt(
            build_context(relevant, history),
            remote_available=storage.get_sync_state().is_enabled,
            use_case=self.use_case,
        )

        self._transition(turn, TurnState.GENERATING_RESPONSE)
        reply = await self._complete(content, context, model_id)

        self._transition(turn, TurnState.PERSISTING)
        assistant_message = storage.create_message(reply, Role.ASSISTANT.value, model_id)
        response_vector = await self._embed(process_content(reply), settings.default_embedding_model_id)
        memory_store.create_memory(
            reply,
            response_vector,
            MemoryType.RESPONSE.value,
            assistant_message.id,
            metadata={"timestamp": now_iso(), "relevantMemories": [m.id for m in relevant]},
        )
        self._transition(turn, TurnState.IDLE)

        logger.info(
            "Turn %d answered with %d memories (%d vector, %d keyword candidates)",
            turn,
            len(relevant),
            len(by_vector),
            len(by_keyword),
        )
        return {
            "message": assistant_message.model_dump(),
            "context": {
                "relevantMemories": [m.model_dump(by_alias=True) for m in relevant],
                "similarityThreshold": threshold,
                "thresholdDetails": {
                    "queryType": query_class.kind.value,
                    "subjectHint": query_class.subject_hint,
                    "thresholdFactor": factor,
                    "adjustedThreshold": adjusted,
                    "hybridThreshold": threshold * HYBRID_RELAXATION,
                    "strongKeywordThreshold": strong,
                    "moderateKeywordThreshold": moderate,
                },
            },
        }
