"""Content cleaning, key-sentence extraction and chunking before embedding.

Everything here is a pure string transform: no I/O, no exceptions for bad
input (non-strings simply produce empty output).
"""

from __future__ import annotations

import re

DEFAULT_MAX_CHUNK_SIZE = 500

# UI / debug markup that leaks into stored messages when users paste chat transcripts
_UI_MARKERS = [
    re.compile(r"AI\s*Retrieved\s*Memories\s*\d+\s*memories\s*RAG\s*Active", re.IGNORECASE),
    re.compile(r"Memory\s*retrieval\s*powered\s*by\s*vector\s*embedding\s*similarity\s*search", re.IGNORECASE),
    re.compile(r"Showing\s*relevant\s*context\s*used\s*to\s*generate\s*this\s*response", re.IGNORECASE),
    re.compile(r"\b\d+\s+memories\b", re.IGNORECASE),
    re.compile(r"Similarity:\s*[0-9.]+%", re.IGNORECASE),
    re.compile(r"Memory\s*#\d+", re.IGNORECASE),
    re.compile(r"High\s*relevance", re.IGNORECASE),
    re.compile(r"[0-9.]+%\s*match", re.IGNORECASE),
]

IMPORTANT_KEYWORDS = (
    "because",
    "therefore",
    "important",
    "key",
    "main",
    "significant",
    "crucial",
    "essential",
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_SPLIT = re.compile(r"\n{2,}")


def clean_content(content) -> str:
    """Strip UI markers, collapse whitespace and trim."""
    if not isinstance(content, str) or not content:
        return ""

    cleaned = content
    for pattern in _UI_MARKERS:
        cleaned = pattern.sub("", cleaned)

    cleaned = re.sub(r"[ \t\f\v]+", " ", cleaned)
    cleaned = re.sub(r" *\n *", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    cleaned = cleaned.strip()

    original = content.strip()
    # Over-aggressive stripping of short memories: keep what the user wrote
    if len(cleaned) < 10 and len(cleaned) <= len(original) * 0.1:
        return original or content
    return cleaned


def extract_key_info(content) -> str:
    """Keep questions, sentences with important keywords and short plain statements."""
    if not isinstance(content, str) or not content:
        return ""

    cleaned = clean_content(content)
    key_sentences = []
    for raw in _SENTENCE_SPLIT.split(cleaned):
        sentence = raw.strip()
        if not sentence:
            continue
        if sentence.endswith("?"):
            key_sentences.append(sentence)
        elif any(keyword in sentence.lower() for keyword in IMPORTANT_KEYWORDS):
            key_sentences.append(sentence)
        elif len(sentence) < 100 and "," not in sentence:
            key_sentences.append(sentence)

    extracted = " ".join(key_sentences)
    if key_sentences and len(extracted) >= len(cleaned) * 0.3:
        return extracted
    return cleaned


def _hard_slices(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def chunk_content(content, max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE) -> list[str]:
    """Split into chunks of at most ``max_chunk_size`` characters.

    Paragraph boundaries are preferred, then sentence boundaries, then a hard
    character split for sentences that are still too long.
    """
    if not isinstance(content, str) or not content:
        return []
    max_chunk_size = max(1, int(max_chunk_size))
    if len(content) <= max_chunk_size:
        return [content]

    chunks: list[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current.strip():
            chunks.append(current)
        current = ""

    for paragraph in _PARAGRAPH_SPLIT.split(content):
        if not paragraph.strip():
            continue
        if len(paragraph) > max_chunk_size:
            for sentence in _SENTENCE_SPLIT.split(paragraph):
                if not sentence:
                    continue
                if len(sentence) > max_chunk_size:
                    flush()
                    chunks.extend(s for s in _hard_slices(sentence, max_chunk_size) if s.strip())
                elif current and len(current) + len(sentence) + 1 > max_chunk_size:
                    flush()
                    current = sentence
                else:
                    current = f"{current} {sentence}" if current else sentence
        elif current and len(current) + len(paragraph) + 2 > max_chunk_size:
            flush()
            current = paragraph
        else:
            current = f"{current}\n\n{paragraph}" if current else paragraph
    flush()

    # Whitespace-only input longer than the limit still yields one chunk
    return chunks or _hard_slices(content, max_chunk_size)[:1]


def process_content(
    content,
    *,
    clean: bool = True,
    extract: bool = False,
    chunk: bool = False,
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
) -> str | list[str]:
    """Prepare content for embedding. Returns a list only when ``chunk`` is set."""
    if not isinstance(content, str) or not content:
        return [] if chunk else ""

    processed = content
    if clean:
        processed = clean_content(processed)
    if extract:
        processed = extract_key_info(processed)
    if chunk:
        return chunk_content(processed, max_chunk_size)
    return processed
