"""Text cleanup and chunking before sending content to the inference API."""

import re
from typing import List

_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`]*`")
_URL = re.compile(r"https?://\S+")
_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE_END = re.compile(r"[.!?]+")


def clean_text(text: str) -> str:
    """Strip code, URLs and markup, collapse whitespace."""
    text = _CODE_BLOCK.sub(" ", text or "")
    text = _INLINE_CODE.sub(" ", text)
    text = _URL.sub(" ", text)
    text = _HTML_TAG.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def _split_words(sentence: str, max_chars: int) -> List[str]:
    chunks = []
    current = ""
    for word in sentence.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
            continue
        if current:
            chunks.append(current)
        current = word[:max_chars]
    if current:
        chunks.append(current)
    return chunks


def chunk_text(text: str, max_chars: int) -> List[str]:
    """Split text into chunks of at most `max_chars`, on sentence boundaries
    where possible and on word boundaries for over-long sentences."""
    if len(text) <= max_chars:
        return [text]

    chunks: List[str] = []
    current = ""
    for sentence in _SENTENCE_END.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        candidate = f"{current}. {sentence}" if current else sentence
        if len(candidate) + 1 <= max_chars:
            current = candidate
            continue
        if current:
            chunks.append(current + ".")
            current = ""
        if len(sentence) + 1 > max_chars:
            chunks.extend(_split_words(sentence, max_chars))
        else:
            current = sentence
    if current:
        chunks.append(current + ".")

    return chunks or [text[:max_chars]]
