"""Split extracted text into retrievable chunks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List

_WORD_RE = re.compile(r"\w+")
_SENTENCE_SPLIT_RE = re.compile(r'(?<=[.!?])\s+(?=[A-Z0-9"\'\(])')

DEFAULT_MAX_TOKENS = 200
DEFAULT_OVERLAP_TOKENS = 20


@dataclass(slots=True)
class Chunk:
    index: int
    text: str
    token_count: int
    char_count: int
    summary: str | None
    language: str | None


def count_tokens(text: str) -> int:
    return len(_WORD_RE.findall(text))


def _normalize_block(text: str) -> str:
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"[ \t]+", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def _split_sentences(paragraph: str) -> List[str]:
    paragraph = paragraph.strip()
    if not paragraph:
        return []
    return [sentence.strip() for sentence in _SENTENCE_SPLIT_RE.split(paragraph) if sentence.strip()]


def _split_paragraphs(text: str) -> List[str]:
    paragraphs: List[str] = []
    buffer: List[str] = []
    for line in text.split("\n"):
        if line.strip():
            buffer.append(line.strip())
            continue
        if buffer:
            paragraphs.append(" ".join(buffer))
            buffer = []
    if buffer:
        paragraphs.append(" ".join(buffer))
    return paragraphs


def _split_words(text: str, max_tokens: int) -> List[str]:
    words = text.split()
    return [" ".join(words[i : i + max_tokens]) for i in range(0, len(words), max_tokens)]


def _pieces(paragraphs: Iterable[str], max_tokens: int) -> Iterable[str]:
    """Yield paragraph pieces no larger than ``max_tokens``."""

    for paragraph in paragraphs:
        if count_tokens(paragraph) <= max_tokens:
            yield paragraph
            continue
        for sentence in _split_sentences(paragraph):
            if count_tokens(sentence) <= max_tokens:
                yield sentence
            else:
                yield from _split_words(sentence, max_tokens)


def _tail_words(text: str, overlap_tokens: int) -> str:
    words = text.split()
    if overlap_tokens <= 0 or len(words) <= overlap_tokens:
        return ""
    return " ".join(words[-overlap_tokens:])


def _detect_language(text: str) -> str | None:
    if not text:
        return None
    if any("가" <= char <= "힣" for char in text):
        return "ko"
    if any("一" <= char <= "鿿" for char in text):
        return "zh"
    return "en"


def _summarize(text: str, *, max_length: int = 200) -> str | None:
    sentences = _split_sentences(text)
    if not sentences:
        return None
    summary = sentences[0]
    if len(summary) > max_length:
        summary = summary[: max_length - 1].rstrip() + "…"
    return summary


def chunk_text(
    text: str,
    *,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> List[Chunk]:
    """Pack ``text`` into chunks of at most ``max_tokens`` words.

    Consecutive chunks share up to ``overlap_tokens`` trailing words (capped
    at half the chunk size). The output is deterministic for a given input,
    which keeps re-indexing idempotent.
    """

    text = _normalize_block(text or "")
    if not text:
        return []
    max_tokens = max(1, max_tokens)
    overlap_tokens = max(0, min(overlap_tokens, max_tokens // 2))

    bodies: List[str] = []
    parts: List[str] = []
    current_tokens = 0
    has_new = False

    for piece in _pieces(_split_paragraphs(text), max_tokens):
        tokens = count_tokens(piece)
        if tokens == 0:
            continue
        if has_new and current_tokens + tokens > max_tokens:
            bodies.append("\n\n".join(parts))
            carry = _tail_words(bodies[-1], overlap_tokens)
            parts = [carry] if carry else []
            current_tokens = count_tokens(carry)
            has_new = False
        if not has_new and parts and current_tokens + tokens > max_tokens:
            # carried overlap does not fit next to this piece
            parts = []
            current_tokens = 0
        parts.append(piece)
        current_tokens += tokens
        has_new = True

    if has_new:
        bodies.append("\n\n".join(parts))

    return [
        Chunk(
            index=index,
            text=body,
            token_count=count_tokens(body),
            char_count=len(body),
            summary=_summarize(body),
            language=_detect_language(body),
        )
        for index, body in enumerate(bodies)
    ]


__all__ = ["Chunk", "chunk_text", "count_tokens", "DEFAULT_MAX_TOKENS", "DEFAULT_OVERLAP_TOKENS"]
